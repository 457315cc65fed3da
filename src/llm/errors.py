from __future__ import annotations

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .continuation import BadCsvResponse


class ExtractionError(RuntimeError):
    """
    Raised when a chat call could not be turned into a valid document.

    ``partial`` holds the best-effort text (possibly invalid); ``errors``
    holds the per-attempt failures in the order they happened.
    """

    def __init__(
        self,
        message: str,
        partial: str = "",
        errors: Optional[List[Exception]] = None,
    ) -> None:
        super().__init__(message)
        self.partial = partial
        self.errors: List[Exception] = list(errors or [])

    @property
    def last_error(self) -> Optional[Exception]:
        return self.errors[-1] if self.errors else None


class StagnationError(ExtractionError):
    """The model repeated itself: a continuation added nothing new."""

    def __init__(
        self,
        message: str,
        partial: str,
        validation_error: Exception,
        last_call_error: Optional[Exception] = None,
        errors: Optional[List[Exception]] = None,
    ) -> None:
        super().__init__(message, partial=partial, errors=errors)
        self.validation_error = validation_error
        self.last_call_error = last_call_error


class RetriesExhaustedError(ExtractionError):
    """Every attempt failed; ``partial`` is the repaired buffer."""


class ExtractionCancelled(ExtractionError):
    """The caller signalled cancellation between attempts."""


class CsvExtractionError(ExtractionError):
    def __init__(self, message: str, report: "BadCsvResponse") -> None:
        super().__init__(message, partial=report.response, errors=report.errors)
        self.report = report
