"""
Failure classification and retry policy

Maps an executor error onto a failure category by matching its text, and turns
that category into a retry decision with a category-specific backoff.
"""

import enum
import random
from dataclasses import dataclass
from typing import Dict, Optional

from printdispatch.config import Config
from printdispatch.errors import TaskTimeoutError


class FailureCategory(str, enum.Enum):
    RESOURCE_BUSY = "RESOURCE_BUSY"
    NETWORK_ERROR = "NETWORK_ERROR"
    HARDWARE_ERROR = "HARDWARE_ERROR"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TASK_TIMEOUT = "TASK_TIMEOUT"
    UNKNOWN = "UNKNOWN"


# Checked in order, first match wins
FAILURE_PATTERNS = (
    (FailureCategory.RESOURCE_BUSY, (
        "device busy", "resource busy", "printer busy",
        "already connected", "in use", "occupied",
    )),
    (FailureCategory.NETWORK_ERROR, (
        "connection refused", "timeout", "network",
        "host unreachable", "no route to host",
    )),
    (FailureCategory.HARDWARE_ERROR, (
        "no such device", "device not found",
        "permission denied", "access denied",
    )),
    (FailureCategory.CONNECTION_FAILED, (
        "connection", "connect",
    )),
)

FATAL_CATEGORIES = {FailureCategory.HARDWARE_ERROR}


@dataclass(frozen=True)
class FailureAnalysis:
    category: FailureCategory
    reason: str
    is_fatal: bool
    should_retry: bool


def classify(error, printer=None) -> FailureAnalysis:
    """Classify an executor error. `printer` only enriches the reason text."""
    message = str(error) if error is not None else ""
    where = f" on {printer.printer_id}" if printer is not None else ""

    if isinstance(error, TaskTimeoutError):
        return FailureAnalysis(
            category=FailureCategory.TASK_TIMEOUT,
            reason=f"Job timed out{where}: {message}",
            is_fatal=False,
            should_retry=True,
        )

    text = message.lower()
    category = FailureCategory.UNKNOWN
    for candidate, patterns in FAILURE_PATTERNS:
        if any(pattern in text for pattern in patterns):
            category = candidate
            break

    is_fatal = category in FATAL_CATEGORIES
    return FailureAnalysis(
        category=category,
        reason=f"{category.value}{where}: {message or type(error).__name__}",
        is_fatal=is_fatal,
        should_retry=not is_fatal,
    )


class RetryPolicy:
    """
    Category-specific backoff.

    busy:       base * 2^(attempt-1) + U(0, jitter)
    network:    base * 1.5^(attempt-1)
    connection, hardware, unknown: base * attempt
    timeout:    immediate

    Every delay is clamped to its category cap.
    """

    def __init__(self, base: float = None, caps: Optional[Dict[str, float]] = None,
                 jitter: float = None):
        self.base = Config.BACKOFF_BASE if base is None else base
        self.caps = dict(Config.BACKOFF_CAPS)
        if caps:
            self.caps.update(caps)
        self.jitter = Config.BUSY_JITTER if jitter is None else jitter

    def backoff(self, attempt: int, category: FailureCategory) -> float:
        attempt = max(1, attempt)
        category = FailureCategory(category)

        if category == FailureCategory.TASK_TIMEOUT:
            return 0.0
        if category == FailureCategory.RESOURCE_BUSY:
            delay = self.base * 2 ** (attempt - 1) + random.uniform(0, self.jitter)
        elif category == FailureCategory.NETWORK_ERROR:
            delay = self.base * 1.5 ** (attempt - 1)
        else:
            delay = self.base * attempt

        cap = self.caps.get(category.value, self.caps["UNKNOWN"])
        return max(0.0, min(cap, delay))


class RetryAction(str, enum.Enum):
    FAIL = "FAIL"
    REQUEUE = "REQUEUE"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    attempt: int
    delay: float = 0.0


def decide(job, analysis: FailureAnalysis, policy: RetryPolicy) -> RetryDecision:
    """Fail terminally or requeue, counting this failure as one attempt"""
    attempt = job.retry_count + 1
    if analysis.is_fatal or attempt >= job.max_retries:
        return RetryDecision(RetryAction.FAIL, attempt)
    return RetryDecision(RetryAction.REQUEUE, attempt, policy.backoff(attempt, analysis.category))
