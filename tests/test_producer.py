"""
Tests for JobProducer
"""

import re

import pytest

from conftest import ESCPOS_PAYLOAD, RecordingExecutor, wait_for
from printdispatch.dispatcher import Dispatcher
from printdispatch.errors import SchedulerNotRunningError, ValidationError
from printdispatch.models import JobStatusEnum, PrinterConfig, PrinterKind
from printdispatch.payloads import decode_payload
from printdispatch.producer import JobProducer, generate_job_id


@pytest.fixture
def dispatcher(store, fast_policy):
    dispatcher = Dispatcher(store, RecordingExecutor(), check_interval=0.05,
                            heartbeat_interval=0.05, retry_policy=fast_policy)
    dispatcher.start()
    yield dispatcher
    dispatcher.stop(timeout=2)


def test_generated_job_id_format():
    assert re.fullmatch(r"job_\d{13}_[0-9a-f]{6}", generate_job_id())


def test_submit_persists_and_dispatches(store, dispatcher):
    producer = JobProducer(store, dispatcher)

    job_id = producer.submit("P1", ESCPOS_PAYLOAD, {"priority": 3, "persistent": True})

    assert wait_for(lambda: store.get(job_id).status == JobStatusEnum.COMPLETED)
    job = store.get(job_id)
    assert job.priority == 3
    assert job.metadata == {"kind": "escpos", "persistent": True}
    assert dispatcher.executor.calls == [job_id]


def test_submit_without_dispatcher_only_persists(store):
    producer = JobProducer(store)

    job_id = producer.submit("P1", ESCPOS_PAYLOAD, {"job_id": "fixed"})

    assert job_id == "fixed"
    assert store.get("fixed").status == JobStatusEnum.PENDING


def test_submit_validates(store):
    producer = JobProducer(store)

    with pytest.raises(ValidationError):
        producer.submit("P1", {"driver": "escpos", "items": []})
    with pytest.raises(ValidationError):
        producer.submit("P1", ESCPOS_PAYLOAD, {"max_retries": 0})
    with pytest.raises(ValidationError):
        producer.submit("", ESCPOS_PAYLOAD)


def test_submit_fills_connection_from_printer(store):
    store.save_printer(PrinterConfig(
        printer_id="P1", name="Counter", kind=PrinterKind.ESCPOS,
        connection_params={"type": "tcp", "target": "192.168.0.50:9100"},
    ))
    producer = JobProducer(store)

    job_id = producer.submit("P1", ESCPOS_PAYLOAD)

    assert decode_payload(store.get(job_id).payload).connection.target == "192.168.0.50:9100"


def test_submit_batch_notifies_each_printer(store, dispatcher):
    producer = JobProducer(store, dispatcher)

    job_ids = producer.submit_batch([
        ("P1", ESCPOS_PAYLOAD, None),
        ("P1", ESCPOS_PAYLOAD, {"priority": 5}),
        ("P2", ESCPOS_PAYLOAD, None),
    ])

    assert len(set(job_ids)) == 3
    assert wait_for(lambda: store.stats()["completed"] == 3)


def test_clear_pending_keeps_persistent(store):
    producer = JobProducer(store)
    keep = producer.submit("P1", ESCPOS_PAYLOAD, {"persistent": True})
    drop = producer.submit("P1", ESCPOS_PAYLOAD)

    assert producer.clear_pending("P1") == 1
    assert store.get(keep) is not None
    assert store.get(drop) is None


class _StoppingDispatcher:
    """Reports running, then loses the race with stop()"""
    running = True

    def notify(self, resource_id, full_reload=False):
        raise SchedulerNotRunningError("Dispatcher is not running")

    def clear_queue(self, resource_id):
        return 0


def test_submit_keeps_job_when_dispatcher_stops_mid_call(store):
    producer = JobProducer(store, _StoppingDispatcher())

    job_id = producer.submit("P1", ESCPOS_PAYLOAD)
    job_ids = producer.submit_batch([("P2", ESCPOS_PAYLOAD, None)])

    assert store.get(job_id).status == JobStatusEnum.PENDING
    assert store.get(job_ids[0]).status == JobStatusEnum.PENDING
    assert producer.clear_pending("P1") == 1
