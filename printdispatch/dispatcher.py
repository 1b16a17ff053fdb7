"""
Print Dispatcher - worker lifecycle for the durable print queue

Features:
- One worker thread per printer: jobs of a printer never run concurrently
- Global worker ceiling shared by all printers, with a FIFO wait-list
- Event-driven: producers call notify() after appending a job
- Per-job timeout with heartbeat refresh while the executor runs
- Category-specific retry with delayed redelivery
- Crash recovery: orphaned claims on start, stale heartbeats while running

A printer moves NO_WORKER -> WORKER_RUNNING -> NO_WORKER, or through WAITING
when the ceiling is reached. The only synchronization on job state between
workers is the store's conditional claim; the dispatcher lock guards the queue
index, the worker map and the wait-list.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
import time
import uuid
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from printdispatch.config import Config, clamp_timeout, clamp_workers
from printdispatch.errors import SchedulerNotRunningError, TaskTimeoutError
from printdispatch.failures import RetryAction, RetryPolicy, classify, decide, FailureCategory
from printdispatch.logs import events
from printdispatch.models import utcnow
from printdispatch.queue_index import QueueIndex

logger = logging.getLogger("printdispatch.dispatcher")

# Redelivery fires slightly after available_at so the job is claimable
REDELIVERY_SLACK = 0.05


@dataclass
class WorkerInfo:
    worker_id: str
    resource_id: str
    started_at: datetime
    thread: Optional[threading.Thread] = None


class Dispatcher:
    """Concurrency-bounded per-printer job dispatcher"""

    def __init__(self, store, executor, max_concurrent_workers=None, task_timeout=None,
                 check_interval=None, heartbeat_interval=None, stale_after=None,
                 stale_check_interval=None, retry_policy=None):
        self.store = store
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()

        self.max_concurrent_workers = clamp_workers(
            max_concurrent_workers or Config.MAX_CONCURRENT_WORKERS
        )
        self.task_timeout = clamp_timeout(task_timeout or Config.TASK_TIMEOUT)
        self.check_interval = check_interval or Config.CHECK_INTERVAL
        self.heartbeat_interval = heartbeat_interval or Config.HEARTBEAT_INTERVAL
        self.stale_after = Config.STALE_AFTER if stale_after is None else stale_after
        self.stale_check_interval = stale_check_interval or Config.STALE_CHECK_INTERVAL

        self._lock = threading.RLock()
        self._index = QueueIndex()
        self._workers: Dict[str, WorkerInfo] = {}
        self._waiting = deque()
        self._timers = set()
        self._redelivery_due: Dict[str, float] = {}
        # job_id -> (worker_id, resource_id) of claims whose outcome was never written
        self._unreleased: Dict[str, Tuple[str, str]] = {}

        self._shutdown = threading.Event()
        self._wake = threading.Event()
        self._monitor: Optional[threading.Thread] = None
        self._running = False
        self._last_stale_check = time.monotonic()

    @property
    def running(self) -> bool:
        return self._running

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    def start(self):
        """Recover orphaned claims, resume pending printers and start the monitor"""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._shutdown.clear()

        # Nothing in this process holds a claim yet, so every CLAIMED row is an orphan
        orphans = self.store.recover_stale(0)
        if orphans:
            logger.warning(f"♻️ Requeued {len(orphans)} job(s) orphaned by a previous run")

        resources = self.store.pending_resources()
        for resource_id in resources:
            self.notify(resource_id, full_reload=True)

        self._last_stale_check = time.monotonic()
        self._ensure_monitor()
        logger.info(
            f"🚀 Dispatcher started (max_workers={self.max_concurrent_workers}, "
            f"timeout={self.task_timeout}s, resumed={len(resources)} printer(s))"
        )

    def stop(self, timeout=None):
        """Cooperative shutdown. In-flight jobs finish; queued jobs stay in the store."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._shutdown.set()
            timers = list(self._timers)
            self._timers.clear()
            self._redelivery_due.clear()
            workers = list(self._workers.values())
            monitor = self._monitor

        for timer in timers:
            timer.cancel()
        self._wake.set()

        for info in workers:
            if info.thread is not None:
                info.thread.join(timeout)
        if monitor is not None:
            monitor.join(timeout)

        with self._lock:
            self._index.clear_all()
            self._waiting.clear()
            self._unreleased.clear()
            self._monitor = None

        logger.info("🛑 Dispatcher stopped")

    # ============================================================================
    # NOTIFY
    # ============================================================================

    def notify(self, resource_id: str, full_reload: bool = False) -> int:
        """
        Ingest new jobs of a printer and make sure a worker serves it.

        Returns the number of jobs added to the in-memory queue. Store read
        errors are logged and count as no new jobs.
        """
        if not self._running:
            raise SchedulerNotRunningError("Dispatcher is not running")

        try:
            printer = self.store.get_printer(resource_id)
            if printer is not None and not printer.is_enabled:
                logger.info(f"⏸️ Printer {resource_id} is disabled, not dispatching")
                return 0

            with self._lock:
                watermark = None if full_reload else self._index.watermark(resource_id)
            if watermark is not None:
                # Index dedup absorbs the jobs this re-reads
                watermark -= timedelta(seconds=Config.WATERMARK_OVERLAP)
            jobs = self.store.load_since(resource_id, watermark)
            deferred_until = self.store.next_available_at(resource_id) if full_reload else None
        except SQLAlchemyError as e:
            logger.error(f"❌ Failed to load jobs for {resource_id}: {e}")
            events.log_error('load_failed', f"{resource_id}: {e}")
            return 0

        with self._lock:
            if self._shutdown.is_set():
                return 0
            added = self._index.append(resource_id, jobs)
            blocked = any(rid == resource_id for _, rid in self._unreleased.values())
            if (resource_id not in self._workers and not blocked
                    and not self._index.is_empty(resource_id)):
                if len(self._workers) < self.max_concurrent_workers:
                    self._start_worker(resource_id)
                elif resource_id not in self._waiting:
                    self._waiting.append(resource_id)
                    logger.info(
                        f"⏳ {resource_id} waiting for a worker slot "
                        f"({len(self._workers)}/{self.max_concurrent_workers} busy)"
                    )

        if added:
            logger.debug(f"Queued {added} job(s) for {resource_id}")
        if deferred_until is not None:
            # Backed-off jobs whose timer died with a previous run or stop()
            delay = (deferred_until - utcnow()).total_seconds()
            self._schedule_redelivery(resource_id, max(delay, REDELIVERY_SLACK))
        self._ensure_monitor()
        self._wake.set()
        return added

    # ============================================================================
    # WORKERS
    # ============================================================================

    def _start_worker(self, resource_id):
        """Caller holds the lock"""
        worker_id = f"worker_{resource_id}_{uuid.uuid4().hex[:6]}"
        info = WorkerInfo(worker_id=worker_id, resource_id=resource_id, started_at=utcnow())
        info.thread = threading.Thread(
            target=self._worker_loop, args=(info,), name=worker_id, daemon=True
        )
        self._workers[resource_id] = info
        info.thread.start()

        events.log_event('worker_started', {
            'worker_id': worker_id,
            'resource_id': resource_id,
            'active_workers': len(self._workers),
        })

    def _promote_waiting(self) -> int:
        """Fill free worker slots from the wait-list. Caller holds the lock."""
        promoted = 0
        while (self._waiting and not self._shutdown.is_set()
               and len(self._workers) < self.max_concurrent_workers):
            resource_id = self._waiting.popleft()
            if resource_id in self._workers or self._index.is_empty(resource_id):
                continue
            self._start_worker(resource_id)
            promoted += 1
        return promoted

    def _worker_loop(self, info: WorkerInfo):
        resource_id = info.resource_id
        processed = 0
        try:
            while True:
                with self._lock:
                    job = None if self._shutdown.is_set() else self._index.shift(resource_id)
                    if job is None:
                        # Deregister in the same critical section as the empty check
                        self._release_worker(info)
                        break
                if not self._process(info, job):
                    break
                processed += 1
        except Exception:
            logger.exception(f"Worker {info.worker_id} crashed")
        finally:
            with self._lock:
                self._release_worker(info)
            self._wake.set()

        events.log_event('worker_stopped', {
            'worker_id': info.worker_id,
            'resource_id': resource_id,
            'jobs_processed': processed,
        })

    def _release_worker(self, info: WorkerInfo):
        """Caller holds the lock"""
        if self._workers.get(info.resource_id) is info:
            del self._workers[info.resource_id]
            self._promote_waiting()

    def _process(self, info: WorkerInfo, job) -> bool:
        """Run one job. False means the worker must stop serving this printer."""
        try:
            claimed = self.store.claim(job.id, info.worker_id)
        except SQLAlchemyError:
            logger.exception(f"Store error claiming job {job.id}")
            return True
        if claimed is None:
            logger.debug(f"Job {job.id} no longer claimable, skipping")
            return True

        error = None
        try:
            self._execute(info, claimed)
        except Exception as e:
            error = e

        attempts = Config.OUTCOME_WRITE_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                if error is None:
                    self.store.mark_completed(claimed.id)
                else:
                    self._handle_failure(claimed, error)
                return True
            except SQLAlchemyError as e:
                logger.warning(
                    f"Store error recording outcome of job {claimed.id} "
                    f"(try {attempt}/{attempts}): {e}"
                )
                if attempt < attempts:
                    time.sleep(Config.OUTCOME_RETRY_DELAY * attempt)

        # The claim still blocks every other job of this printer; the monitor releases it
        with self._lock:
            self._unreleased[claimed.id] = (info.worker_id, claimed.resource_id)
        logger.error(f"❌ Outcome of job {claimed.id} not recorded, stopping {info.worker_id}")
        events.log_error('outcome_not_recorded', f"{claimed.id} ({info.worker_id})")
        self._ensure_monitor()
        return False

    def _execute(self, info: WorkerInfo, job):
        """Run the executor in its own thread, bounded by the task timeout"""
        done = threading.Event()
        outcome = {}

        def run():
            try:
                self.executor.execute(job)
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        timeout = self.task_timeout
        runner = threading.Thread(target=run, name=f"exec_{job.id}", daemon=True)
        runner.start()

        deadline = time.monotonic() + timeout
        while not done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                # The runner thread is abandoned, not killed
                raise TaskTimeoutError(job.id, timeout)
            if done.wait(min(self.heartbeat_interval, remaining)):
                break
            try:
                self.store.heartbeat(job.id, info.worker_id)
            except SQLAlchemyError as e:
                logger.warning(f"Heartbeat failed for {job.id}: {e}")

        if "error" in outcome:
            raise outcome["error"]

    def _handle_failure(self, job, error):
        printer = self.store.get_printer(job.resource_id)
        analysis = classify(error, printer)
        decision = decide(job, analysis, self.retry_policy)

        events.log_event('job_failed_attempt', {
            'job_id': job.id,
            'resource_id': job.resource_id,
            'category': analysis.category.value,
            'attempt': decision.attempt,
            'max_retries': job.max_retries,
            'action': decision.action.value,
            'error': str(error),
        }, level='warning')

        if decision.action == RetryAction.FAIL:
            message = analysis.reason
            if not analysis.is_fatal:
                message = f"{message} (gave up after {decision.attempt} attempt(s))"
            self.store.mark_failed(job.id, message)
            logger.error(f"❌ Job {job.id} failed: {message}")
            return

        requeued = self.store.requeue(
            job.id, decision.delay, decision.attempt, job.max_retries, analysis.reason
        )
        if not requeued:
            return
        if analysis.category == FailureCategory.TASK_TIMEOUT:
            logger.warning(f"⏱️ Job {job.id} timed out, requeued (attempt {decision.attempt})")
        else:
            logger.info(
                f"🔁 Job {job.id} requeued in {decision.delay:.2f}s "
                f"({analysis.category.value}, attempt {decision.attempt}/{job.max_retries})"
            )
        self._schedule_redelivery(job.resource_id, decision.delay)

    def _schedule_redelivery(self, resource_id, delay):
        """Re-ingest a printer once a requeued job becomes available again"""
        if self._shutdown.is_set():
            return
        if delay <= 0:
            self.notify(resource_id, full_reload=True)
            return

        due = time.monotonic() + delay

        def fire():
            with self._lock:
                self._timers.discard(timer)
                if self._redelivery_due.get(resource_id) == due:
                    del self._redelivery_due[resource_id]
            if not self._running or self._shutdown.is_set():
                return
            try:
                self.notify(resource_id, full_reload=True)
            except SchedulerNotRunningError:
                logger.debug(f"Redelivery for {resource_id} dropped, dispatcher stopped")

        timer = threading.Timer(delay + REDELIVERY_SLACK, fire)
        timer.daemon = True
        with self._lock:
            if self._shutdown.is_set():
                return
            armed = self._redelivery_due.get(resource_id)
            # An earlier timer reloads the printer and re-arms for anything still deferred
            if armed is not None and armed <= due + REDELIVERY_SLACK:
                return
            self._redelivery_due[resource_id] = due
            self._timers.add(timer)
        timer.start()

    # ============================================================================
    # MONITOR
    # ============================================================================

    def _ensure_monitor(self):
        with self._lock:
            if not self._running or self._shutdown.is_set():
                return
            if self._monitor is not None and self._monitor.is_alive():
                return
            self._monitor = threading.Thread(
                target=self._monitor_loop, name="dispatch_monitor", daemon=True
            )
            self._monitor.start()

    def _monitor_loop(self):
        logger.debug("Monitor started")
        while not self._shutdown.is_set():
            self._wake.wait(self.check_interval)
            self._wake.clear()
            if self._shutdown.is_set():
                break

            try:
                with self._lock:
                    self._promote_waiting()
                if self._unreleased:
                    self._release_unrecorded()

                now = time.monotonic()
                if now - self._last_stale_check >= self.stale_check_interval:
                    self._last_stale_check = now
                    self._recover_stale()
                    self._sweep_pending()

                if self._is_idle():
                    # Last look before exiting; notify() restarts the monitor
                    self._sweep_pending()
                    with self._lock:
                        if self._is_idle():
                            self._monitor = None
                            logger.debug("Monitor idle, exiting")
                            return

                stats = self.get_queue_stats()
                logger.debug(
                    f"📊 workers={stats['active_workers']}/{self.max_concurrent_workers} "
                    f"waiting={stats['waiting_resources']} queued={stats['total_jobs']}"
                )
            except Exception:
                logger.exception("Monitor iteration failed")

    def _is_idle(self) -> bool:
        with self._lock:
            return not (self._workers or self._waiting or self._timers
                        or self._unreleased or self._index.resource_ids())

    def _release_unrecorded(self):
        """Hand back claims left by workers that could not record an outcome"""
        with self._lock:
            pending = list(self._unreleased.items())
        for job_id, (worker_id, resource_id) in pending:
            try:
                self.store.release(
                    job_id, worker_id, "Outcome not recorded - released for another attempt"
                )
            except SQLAlchemyError as e:
                logger.warning(f"Still cannot release job {job_id}: {e}")
                continue
            with self._lock:
                self._unreleased.pop(job_id, None)
            logger.info(f"♻️ Released job {job_id} held by {worker_id}")
            self.notify(resource_id, full_reload=True)

    def _sweep_pending(self):
        """Notify printers that have PENDING rows but no worker or wait-list entry"""
        for resource_id in self.store.pending_resources():
            with self._lock:
                known = resource_id in self._workers or resource_id in self._waiting
            if not known and self._running:
                self.notify(resource_id, full_reload=True)

    def _recover_stale(self):
        with self._lock:
            live_owners = [info.worker_id for info in self._workers.values()]
        recovered = self.store.recover_stale(self.stale_after, exclude_owners=live_owners)
        for resource_id in {job.resource_id for job in recovered}:
            self.notify(resource_id, full_reload=True)

    # ============================================================================
    # SETTINGS & OBSERVABILITY
    # ============================================================================

    def set_max_concurrent_workers(self, value: int) -> int:
        with self._lock:
            self.max_concurrent_workers = clamp_workers(value)
            self._promote_waiting()
        self._wake.set()
        logger.info(f"⚙️ max_concurrent_workers = {self.max_concurrent_workers}")
        return self.max_concurrent_workers

    def set_task_timeout(self, seconds: float) -> float:
        self.task_timeout = clamp_timeout(seconds)
        logger.info(f"⚙️ task_timeout = {self.task_timeout}s")
        return self.task_timeout

    def clear_queue(self, resource_id: str) -> int:
        """Drop a printer's in-memory queue; the store is untouched"""
        with self._lock:
            return self._index.clear(resource_id)

    def get_worker_status(self) -> List[Dict]:
        with self._lock:
            return [
                {
                    "resource_id": info.resource_id,
                    "worker_id": info.worker_id,
                    "started_at": info.started_at,
                    "queue_length": self._index.length(info.resource_id),
                }
                for info in self._workers.values()
            ]

    def get_queue_stats(self) -> Dict:
        with self._lock:
            stats = self._index.stats()
            stats["active_workers"] = len(self._workers)
            stats["waiting_resources"] = len(self._waiting)
            return stats
