"""
Tests for job executors (bridge calls go through httpx.MockTransport)
"""

import json

import httpx
import pytest

from printdispatch.errors import (
    ConnectionFailedError, HardwareError, JobExecutionError, NetworkError, PrinterBusyError
)
from printdispatch.executors import CallableExecutor, HttpBridgeExecutor
from printdispatch.failures import FailureCategory, classify


def bridge(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpBridgeExecutor(bridge_url="http://bridge.local/", client=client)


def test_posts_payload_to_printer_endpoint(make_job):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    job = make_job("P9", job_id="abc")
    bridge(handler).execute(job)

    assert seen["url"] == "http://bridge.local/printers/P9/print"
    assert seen["body"]["job_id"] == "abc"
    assert seen["body"]["attempt"] == 1
    assert seen["body"]["payload"]["driver"] == "escpos"
    assert seen["body"]["payload"]["items"][0]["content"] == "hi"


@pytest.mark.parametrize("status, error, category", [
    (409, PrinterBusyError, FailureCategory.RESOURCE_BUSY),
    (423, PrinterBusyError, FailureCategory.RESOURCE_BUSY),
    (404, HardwareError, FailureCategory.HARDWARE_ERROR),
])
def test_status_codes_map_to_typed_errors(make_job, status, error, category):
    executor = bridge(lambda request: httpx.Response(status, json={"detail": "nope"}))

    with pytest.raises(error) as exc:
        executor.execute(make_job())

    assert classify(exc.value).category == category


def test_server_error_is_generic(make_job):
    executor = bridge(lambda request: httpx.Response(500, text="paper jam"))

    with pytest.raises(JobExecutionError) as exc:
        executor.execute(make_job())

    assert type(exc.value) is JobExecutionError
    assert "paper jam" in str(exc.value)


def test_transport_timeout_is_network_error(make_job):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(NetworkError) as exc:
        bridge(handler).execute(make_job())

    assert classify(exc.value).category == FailureCategory.NETWORK_ERROR


def test_connect_error_is_connection_failure(make_job):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ConnectionFailedError) as exc:
        bridge(handler).execute(make_job())

    assert classify(exc.value).should_retry


def test_callable_executor_passes_job(make_job):
    seen = []
    CallableExecutor(seen.append).execute(make_job(job_id="x"))
    assert [job.id for job in seen] == ["x"]
