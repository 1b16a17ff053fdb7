"""
Tests for failure classification and retry decisions
"""

import pytest

from printdispatch.errors import (
    ConnectionFailedError, HardwareError, NetworkError, PrinterBusyError, TaskTimeoutError
)
from printdispatch.failures import (
    FailureCategory, RetryAction, RetryPolicy, classify, decide
)
from printdispatch.models import Job, PrinterConfig


@pytest.mark.parametrize("message, category", [
    ("Device busy", FailureCategory.RESOURCE_BUSY),
    ("printer already connected to another host", FailureCategory.RESOURCE_BUSY),
    ("Connection refused", FailureCategory.NETWORK_ERROR),
    ("read timeout after 5s", FailureCategory.NETWORK_ERROR),
    ("No route to host", FailureCategory.NETWORK_ERROR),
    ("No such device /dev/usb/lp0", FailureCategory.HARDWARE_ERROR),
    ("Permission denied", FailureCategory.HARDWARE_ERROR),
    ("could not connect", FailureCategory.CONNECTION_FAILED),
    ("paper roll is empty", FailureCategory.UNKNOWN),
])
def test_classify_by_message(message, category):
    assert classify(RuntimeError(message)).category == category


def test_busy_wins_over_later_categories():
    # "in use" and "connection" both match; busy is checked first
    analysis = classify(RuntimeError("connection in use"))
    assert analysis.category == FailureCategory.RESOURCE_BUSY


def test_connection_refused_is_network_not_connection():
    assert classify(RuntimeError("connection refused")).category == FailureCategory.NETWORK_ERROR


def test_hardware_is_fatal():
    analysis = classify(HardwareError("device not found: P1"))
    assert analysis.is_fatal
    assert not analysis.should_retry


def test_timeout_error_always_task_timeout():
    # Message mentions "device busy" but the type decides
    error = TaskTimeoutError("job_1", 1.0)
    error.args = ("device busy",)
    assert classify(error).category == FailureCategory.TASK_TIMEOUT


def test_reason_names_printer():
    printer = PrinterConfig(printer_id="P7", name="Front desk")
    analysis = classify(PrinterBusyError("printer busy"), printer)
    assert "P7" in analysis.reason


@pytest.mark.parametrize("error", [
    PrinterBusyError("printer busy"), NetworkError("network timeout"), ConnectionFailedError("connect failed"),
])
def test_typed_executor_errors_are_retryable(error):
    assert classify(error).should_retry


# ===== BACKOFF =====

def test_backoff_formulas():
    policy = RetryPolicy(base=1.0, jitter=0.0)

    assert policy.backoff(1, FailureCategory.RESOURCE_BUSY) == 1.0
    assert policy.backoff(3, FailureCategory.RESOURCE_BUSY) == 4.0
    assert policy.backoff(2, FailureCategory.NETWORK_ERROR) == 1.5
    assert policy.backoff(3, FailureCategory.CONNECTION_FAILED) == 3.0
    assert policy.backoff(2, FailureCategory.HARDWARE_ERROR) == 2.0
    assert policy.backoff(2, FailureCategory.UNKNOWN) == 2.0
    assert policy.backoff(5, FailureCategory.TASK_TIMEOUT) == 0.0


def test_backoff_is_clamped():
    policy = RetryPolicy(base=1.0)

    for attempt in range(1, 12):
        assert policy.backoff(attempt, FailureCategory.RESOURCE_BUSY) <= 5.0
        assert policy.backoff(attempt, FailureCategory.NETWORK_ERROR) <= 5.0
        assert policy.backoff(attempt, FailureCategory.HARDWARE_ERROR) <= 3.0
    assert policy.backoff(10, FailureCategory.UNKNOWN) == 5.0


def test_busy_jitter_within_range():
    policy = RetryPolicy(base=0.1, jitter=2.0, caps={"RESOURCE_BUSY": 100.0})
    delays = [policy.backoff(1, FailureCategory.RESOURCE_BUSY) for _ in range(50)]
    assert all(0.1 <= d <= 2.1 for d in delays)


# ===== DECISIONS =====

def _job(retry_count=0, max_retries=3):
    return Job(id="j", resource_id="P1", payload="{}", retry_count=retry_count, max_retries=max_retries)


def test_decide_requeues_while_attempts_remain():
    decision = decide(_job(0, 3), classify(RuntimeError("device busy")), RetryPolicy(jitter=0.0))

    assert decision.action == RetryAction.REQUEUE
    assert decision.attempt == 1
    assert decision.delay == 1.0


def test_decide_fails_when_exhausted():
    decision = decide(_job(2, 3), classify(RuntimeError("device busy")), RetryPolicy())

    assert decision.action == RetryAction.FAIL
    assert decision.attempt == 3


def test_decide_fatal_short_circuits():
    decision = decide(_job(0, 5), classify(HardwareError("permission denied")), RetryPolicy())
    assert decision.action == RetryAction.FAIL


def test_timeout_requeues_immediately():
    decision = decide(_job(0, 3), classify(TaskTimeoutError("j", 2.0)), RetryPolicy())

    assert decision.action == RetryAction.REQUEUE
    assert decision.delay == 0.0


def test_single_attempt_job_fails_first_time():
    decision = decide(_job(0, 1), classify(RuntimeError("whatever")), RetryPolicy())
    assert decision.action == RetryAction.FAIL
