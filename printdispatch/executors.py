"""
Job executors - perform the device I/O for one job

An executor returns on success and raises on failure. The text of the raised
error is what the failure classifier reads, so executors phrase their errors
with the classifier's vocabulary ("printer busy", "connection refused", ...).
"""

from abc import ABC, abstractmethod
import logging

import httpx

from printdispatch.config import Config
from printdispatch.errors import (
    ConnectionFailedError, HardwareError, JobExecutionError, NetworkError, PrinterBusyError
)

logger = logging.getLogger("printdispatch.executors")


class JobExecutor(ABC):
    """Executes a single claimed job"""

    @abstractmethod
    def execute(self, job):
        """Return on success, raise on failure"""
        raise NotImplementedError

    def close(self):
        pass


class CallableExecutor(JobExecutor):
    """Adapts a plain function `fn(job)` to the executor contract"""

    def __init__(self, fn):
        self.fn = fn

    def execute(self, job):
        return self.fn(job)


class HttpBridgeExecutor(JobExecutor):
    """
    Sends jobs to the printer bridge service.

    POST {bridge_url}/printers/{resource_id}/print with the decoded payload as
    the JSON body. The bridge owns the device transport.
    """

    def __init__(self, bridge_url=None, timeout=None, client=None):
        self.bridge_url = (bridge_url or Config.BRIDGE_URL).rstrip("/")
        self.timeout = timeout or Config.BRIDGE_TIMEOUT
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=self.timeout)

    def execute(self, job):
        url = f"{self.bridge_url}/printers/{job.resource_id}/print"
        body = {
            "job_id": job.id,
            "attempt": job.retry_count + 1,
            "payload": job.document.model_dump(mode="json"),
        }

        try:
            response = self.client.post(url, json=body, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise NetworkError(f"network timeout talking to bridge for {job.resource_id}: {e}") from e
        except httpx.ConnectError as e:
            raise ConnectionFailedError(f"connection refused by bridge at {self.bridge_url}: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"network error talking to bridge: {e}") from e

        if response.status_code in (409, 423):
            raise PrinterBusyError(f"printer busy: {job.resource_id} ({self._detail(response)})")
        if response.status_code == 404:
            raise HardwareError(f"device not found: {job.resource_id} ({self._detail(response)})")
        if response.status_code >= 400:
            raise JobExecutionError(
                f"Bridge returned {response.status_code} for {job.id}: {self._detail(response)}"
            )

        logger.info(f"✅ Job {job.id} printed on {job.resource_id}")

    @staticmethod
    def _detail(response):
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, dict):
            return data.get("detail") or data.get("message") or str(data)
        return str(data)

    def close(self):
        if self._owns_client:
            self.client.close()
