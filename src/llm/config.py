"""Settings for the retry/continuation loop around chat calls."""
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class ContinuationConfig:
    """Retry budget and per-attempt timeout schedule.

    Attempt ``n`` gets ``base_timeout + n * timeout_step`` seconds, jittered by
    ``±jitter`` and never less than ``min_timeout``.
    """

    max_retries: int = 8
    base_timeout: float = 90.0
    timeout_step: float = 45.0
    jitter: float = 0.2
    min_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retries <= 0:
            self.max_retries = 8
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_env(cls) -> "ContinuationConfig":
        return cls(
            max_retries=_env_int("KG_LLM_MAX_RETRIES", 8),
            base_timeout=_env_float("KG_LLM_BASE_TIMEOUT", 90.0),
            timeout_step=_env_float("KG_LLM_TIMEOUT_STEP", 45.0),
            jitter=_env_float("KG_LLM_TIMEOUT_JITTER", 0.2),
            min_timeout=_env_float("KG_LLM_MIN_TIMEOUT", 30.0),
        )


DEFAULT_CONFIG = ContinuationConfig()
