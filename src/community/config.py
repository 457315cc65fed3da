from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class CommunityConfig:
    """Consolidation limits."""

    # Clusters built at the same time; pair summaries inside one cluster are not capped.
    max_concurrency: int = 10
    max_iterations: int = 100
    # Retries for each summarization / naming call.
    text_max_retries: int = 8

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

    @classmethod
    def from_env(cls) -> "CommunityConfig":
        return cls(
            max_concurrency=int(os.getenv("KG_COMMUNITY_MAX_CONCURRENCY", "10")),
            max_iterations=int(os.getenv("KG_COMMUNITY_MAX_ITERATIONS", "100")),
            text_max_retries=int(os.getenv("KG_COMMUNITY_TEXT_MAX_RETRIES", "8")),
        )
