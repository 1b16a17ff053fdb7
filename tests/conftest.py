"""
Shared pytest fixtures.

Every test gets its own SQLite file under tmp_path; nothing touches the
working directory.
"""

import threading
import time
from datetime import timedelta

import pytest

from printdispatch.database import init_db, make_engine, make_session_factory
from printdispatch.failures import RetryPolicy
from printdispatch.job_store import JobStore
from printdispatch.models import Job, utcnow

ESCPOS_PAYLOAD = {
    "driver": "escpos",
    "items": [{"kind": "text", "content": "hello"}],
}


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> JobStore:
    return JobStore(make_session_factory(engine))


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Backoff scaled down so retry tests finish quickly"""
    return RetryPolicy(
        base=0.01,
        caps={key: 0.05 for key in ("RESOURCE_BUSY", "NETWORK_ERROR", "CONNECTION_FAILED",
                                    "HARDWARE_ERROR", "UNKNOWN")},
        jitter=0.01,
    )


@pytest.fixture
def make_job():
    """Factory for PENDING jobs with increasing created_at"""
    base = utcnow() - timedelta(minutes=5)
    counter = {"n": 0}

    def _make(resource_id="P1", job_id=None, priority=0, max_retries=3, offset=None,
              persistent=False):
        counter["n"] += 1
        seconds = counter["n"] if offset is None else offset
        return Job(
            id=job_id or f"job_{counter['n']}",
            resource_id=resource_id,
            payload='{"driver": "escpos", "items": [{"kind": "text", "content": "hi"}]}',
            priority=priority,
            max_retries=max_retries,
            created_at=base + timedelta(seconds=seconds),
            metadata={"kind": "escpos", "persistent": persistent},
        )

    return _make


def wait_for(condition, timeout=5.0, interval=0.02):
    """Poll `condition` until it is truthy or the timeout elapses"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return bool(condition())


class RecordingExecutor:
    """Executor that records calls and can be told to fail or block"""

    def __init__(self, fail_with=None, block=None, delay=0.0):
        self.fail_with = fail_with
        self.block = block
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, job):
        with self._lock:
            self.calls.append(job.id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.block is not None:
                self.block.wait(10)
            if self.delay:
                time.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
        finally:
            with self._lock:
                self.active -= 1

    def close(self):
        pass
