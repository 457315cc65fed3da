from __future__ import annotations

from dataclasses import dataclass
from typing import List


class CommunityError(RuntimeError):
    """Base error for clustering and community maintenance."""


class SummarizationError(CommunityError):
    """A pairwise summary failed and its round was abandoned."""


@dataclass
class ClusterFailure:
    member_uuids: List[str]
    error: Exception

    def __str__(self) -> str:
        return f"cluster of {len(self.member_uuids)} ({', '.join(self.member_uuids[:3])}...): {self.error}"


class CommunityBuildError(CommunityError):
    """One or more clusters could not be turned into communities."""

    def __init__(self, failures: List[ClusterFailure]) -> None:
        self.failures = list(failures)
        details = "; ".join(str(f) for f in self.failures)
        super().__init__(
            f"some errors arose during community building ({len(self.failures)} failed): {details}"
        )
