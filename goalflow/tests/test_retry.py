from __future__ import annotations

import pytest

from goalflow.src.core.errors import ExecutorNotFoundError, TaskExecutionError, TaskTimeoutError
from goalflow.src.core.retry import (
    EXECUTION,
    NON_RETRYABLE,
    TIMEOUT,
    TRANSIENT,
    backoff_delay_ms,
    classify_failure,
    retry_schedule,
)
from goalflow.src.core.types import RetryConfig


def test_constant_backoff():
    assert [backoff_delay_ms(attempt, 250, False) for attempt in (1, 2, 3)] == [250, 250, 250]


def test_exponential_backoff_doubles_each_attempt():
    assert [backoff_delay_ms(attempt, 100, True) for attempt in (1, 2, 3, 4)] == [100, 200, 400, 800]


def test_backoff_rejects_non_positive_attempts():
    with pytest.raises(ValueError):
        backoff_delay_ms(0, 100, True)


def test_retry_schedule_has_one_delay_between_each_attempt():
    assert retry_schedule(RetryConfig(max_attempts=3, backoff_ms=100, exponential=True)) == [100, 200]
    assert retry_schedule(RetryConfig()) == []
    assert retry_schedule(RetryConfig(max_attempts=4, backoff_ms=0)) == [0, 0, 0]


def test_retry_config_validates_fields():
    with pytest.raises(ValueError):
        RetryConfig(max_attempts=0)
    with pytest.raises(ValueError):
        RetryConfig(backoff_ms=-1)


@pytest.mark.parametrize(
    ("message", "failure_class", "pattern"),
    [
        ("Network timeout while fetching", TIMEOUT, "timeout"),
        ("upstream timed out", TIMEOUT, "timed out"),
        ("HTTP 429 Too Many Requests", TRANSIENT, "too many requests"),
        ("Connection reset by peer", TRANSIENT, "connection reset"),
        ("division by zero", EXECUTION, None),
    ],
)
def test_classification_by_message(message, failure_class, pattern):
    classification = classify_failure(RuntimeError(message))

    assert classification.failure_class == failure_class
    assert classification.matched_pattern == pattern


def test_engine_errors_have_dedicated_rules():
    timeout = classify_failure(TaskTimeoutError(100, chain_id="c", task_id="t"))
    missing = classify_failure(ExecutorNotFoundError("custom"))

    assert timeout.matched_rule == "task_timeout"
    assert timeout.transient
    assert missing.failure_class == NON_RETRYABLE
    assert not missing.transient
    assert not classify_failure(TaskExecutionError("bad input")).transient


def test_event_details_are_stable():
    details = classify_failure(RuntimeError("rate limit exceeded")).to_event_details()

    assert details == {
        "classifier_version": 1,
        "failure_class": TRANSIENT,
        "matched_rule": "rate_limit_transient",
        "matched_pattern": "rate limit",
    }
