"""Retry scheduling and deterministic failure classification.

Backoff computation is a pure function of ``(attempt, backoff_ms, exponential)``
so delay schedules can be tested without timers.  Failure classification is
table driven: the first matching pattern group decides whether an error counts
as transient and therefore qualifies for the engine's immediate recovery retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .errors import ExecutorNotFoundError, TaskTimeoutError
from .types import RetryConfig

FAILURE_CLASSIFIER_VERSION = 1

TIMEOUT = "timeout"
TRANSIENT = "transient"
NON_RETRYABLE = "non_retryable"
EXECUTION = "execution"

_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline exceeded",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "econnreset",
    "service unavailable",
)


@dataclass(frozen=True)
class FailureClassification:
    failure_class: str
    matched_rule: str
    matched_pattern: Optional[str] = None

    @property
    def transient(self) -> bool:
        return self.failure_class in {TIMEOUT, TRANSIENT}

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def backoff_delay_ms(attempt: int, backoff_ms: int, exponential: bool) -> int:
    """Delay before the retry that follows failed ``attempt`` (1-based)."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if backoff_ms <= 0:
        return 0
    if exponential:
        return int(backoff_ms * (2 ** (attempt - 1)))
    return int(backoff_ms)


def retry_schedule(config: RetryConfig) -> List[int]:
    """All delays applied between the ``max_attempts`` attempts of ``config``."""

    return [
        backoff_delay_ms(attempt, config.backoff_ms, config.exponential)
        for attempt in range(1, config.max_attempts)
    ]


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify ``error`` into a deterministic retry class."""

    if isinstance(error, ExecutorNotFoundError):
        return FailureClassification(NON_RETRYABLE, "executor_not_found")
    if isinstance(error, TaskTimeoutError):
        return FailureClassification(TIMEOUT, "task_timeout")

    haystack = str(error).lower()
    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(TIMEOUT, "timeout_message", pattern)
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(TRANSIENT, "rate_limit_transient", pattern)
    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(TRANSIENT, "generic_transient", pattern)
    return FailureClassification(EXECUTION, "fallback_execution")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


__all__ = [
    "EXECUTION",
    "FAILURE_CLASSIFIER_VERSION",
    "FailureClassification",
    "NON_RETRYABLE",
    "TIMEOUT",
    "TRANSIENT",
    "backoff_delay_ms",
    "classify_failure",
    "retry_schedule",
]
