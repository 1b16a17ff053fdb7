"""
Producer-facing submission API

Validates the payload, persists the job and wakes the dispatcher. Submission is
fire-and-forget: outcomes are read back from the store.
"""

import logging
import secrets
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from printdispatch.config import Config
from printdispatch.errors import SchedulerNotRunningError, ValidationError
from printdispatch.models import Job
from printdispatch.payloads import decode_payload, fill_connection

logger = logging.getLogger("printdispatch.producer")


def generate_job_id() -> str:
    """job_<epoch-ms>_<6 hex chars>"""
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class JobProducer:
    """Entry point for code that wants something printed"""

    def __init__(self, store, dispatcher=None):
        self.store = store
        self.dispatcher = dispatcher

    def _build_job(self, resource_id: str, payload: Any, options: Optional[Dict] = None) -> Job:
        if not resource_id:
            raise ValidationError("resource_id is required")
        options = dict(options or {})

        max_retries = options.get("max_retries", Config.DEFAULT_MAX_RETRIES)
        if max_retries is None or int(max_retries) < 1:
            raise ValidationError("max_retries must be >= 1")

        document = decode_payload(payload)
        document = fill_connection(document, self.store.get_printer(resource_id))

        return Job(
            id=options.get("job_id") or generate_job_id(),
            resource_id=resource_id,
            payload=document.model_dump_json(),
            priority=int(options.get("priority") or 0),
            max_retries=int(max_retries),
            metadata={
                "kind": document.driver,
                "persistent": bool(options.get("persistent", False)),
            },
        )

    def _wake(self, resource_ids: Iterable[str], full_reload: bool = False):
        if self.dispatcher is None or not self.dispatcher.running:
            logger.info("Dispatcher not running, jobs will be picked up on start")
            return
        for resource_id in resource_ids:
            try:
                self.dispatcher.notify(resource_id, full_reload=full_reload)
            except SchedulerNotRunningError:
                # Stopped after the running check; the jobs are already stored
                logger.warning(f"Dispatcher stopped before {resource_id} was notified")
                return

    def submit(self, resource_id: str, payload: Any, options: Optional[Dict] = None) -> str:
        """Persist one job and notify its printer. Returns the job id."""
        job = self._build_job(resource_id, payload, options)
        self.store.append(job)
        logger.info(f"📥 Job {job.id} submitted for {resource_id} (priority={job.priority})")
        self._wake([resource_id])
        return job.id

    def submit_batch(self, entries: Iterable[Tuple[str, Any, Optional[Dict]]]) -> List[str]:
        """Persist many jobs in one statement, then notify each printer once"""
        jobs = [self._build_job(resource_id, payload, options)
                for resource_id, payload, options in entries]
        if not jobs:
            return []

        self.store.append_batch(jobs)
        resource_ids = list(dict.fromkeys(job.resource_id for job in jobs))
        logger.info(f"📥 Batch of {len(jobs)} job(s) submitted for {len(resource_ids)} printer(s)")
        self._wake(resource_ids)
        return [job.id for job in jobs]

    def clear_pending(self, resource_id: str) -> int:
        """Drop non-persistent pending jobs of a printer from the store and the queue"""
        deleted = self.store.purge_non_persistent(resource_id)
        if self.dispatcher is not None:
            self.dispatcher.clear_queue(resource_id)
            # Persistent jobs that were queued go back in
            self._wake([resource_id], full_reload=True)
        return deleted
