"""
Job Store - durable persistence for print jobs and printer records.

The JobStore is the single source of truth for job existence and status across
restarts, and the only component that mutates persisted job state. Every call
opens its own session, so the store is safe for concurrent callers without
external locking.

Claiming is a single conditional UPDATE: the row only changes if it is still
PENDING, eligible (available_at unset or past) and no other job of the same
printer is CLAIMED. A zero rowcount means another worker won.

Usage:
    store = JobStore(make_session_factory(engine))
    store.append(Job(id="job_1", resource_id="P1", payload="{...}"))
    job = store.claim_next("P1", worker_id="worker_P1_ab12cd")
    store.mark_completed(job.id)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import aliased

from printdispatch.database import session_scope
from printdispatch.errors import (
    PrinterInUseError, PrinterNotFoundError, ValidationError
)
from printdispatch.logs import events
from printdispatch.models import (
    Job, JobStatusEnum, PrintJob, Printer, PrinterConfig, PrinterStatusEnum,
    TERMINAL_STATUSES, utcnow
)

logger = logging.getLogger("printdispatch.job_store")

# Columns a duplicate submission may overwrite while the row is still PENDING
_UPSERT_COLUMNS = ("payload", "priority", "max_retries", "metadata")


class JobStore:
    """Durable, concurrency-safe job table"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _session(self):
        return session_scope(self.session_factory)

    # ============================================================================
    # APPEND
    # ============================================================================

    def _job_values(self, job: Job, now) -> Dict[str, Any]:
        return {
            "id": job.id,
            "resource_id": job.resource_id,
            "payload": job.payload,
            "status": JobStatusEnum.PENDING,
            "priority": job.priority or 0,
            "retry_count": 0,
            "max_retries": max(1, job.max_retries or 1),
            "created_at": job.created_at or now,
            "metadata": job.metadata or {},
        }

    def append(self, job: Job) -> None:
        """Insert a PENDING job; a duplicate id updates the row in place"""
        self.append_batch([job])

    def append_batch(self, jobs: Iterable[Job]) -> int:
        """Upsert many jobs in one statement. Returns number of jobs written."""
        # Last submission wins for ids repeated within one batch
        jobs = list({job.id: job for job in jobs}.values())
        if not jobs:
            return 0

        now = utcnow()
        values = [self._job_values(job, now) for job in jobs]
        table = PrintJob.__table__

        with self._session() as db:
            dialect = db.get_bind().dialect.name
            if dialect in ("sqlite", "postgresql"):
                insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
                stmt = insert(table).values(values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.id],
                    set_={col: stmt.excluded[col] for col in _UPSERT_COLUMNS},
                    where=table.c.status == JobStatusEnum.PENDING,
                )
                db.execute(stmt)
            else:
                for job in jobs:
                    existing = db.get(PrintJob, job.id)
                    if existing is None:
                        db.add(PrintJob(
                            job_id=job.id,
                            resource_id=job.resource_id,
                            payload=job.payload,
                            status=JobStatusEnum.PENDING,
                            priority=job.priority or 0,
                            retry_count=0,
                            max_retries=max(1, job.max_retries or 1),
                            created_at=job.created_at or now,
                            meta=job.metadata or {},
                        ))
                    elif existing.status == JobStatusEnum.PENDING:
                        existing.payload = job.payload
                        existing.priority = job.priority or 0
                        existing.max_retries = max(1, job.max_retries or 1)
                        existing.meta = job.metadata or {}

        logger.debug(f"Appended {len(jobs)} job(s)")
        return len(jobs)

    # ============================================================================
    # CLAIM
    # ============================================================================

    def _claimable(self, now):
        """Filter terms shared by claim() and claim_next()"""
        other = aliased(PrintJob)
        # Correlated against the row being updated
        no_active_claim = ~(
            select(other.job_id)
            .where(
                other.resource_id == PrintJob.resource_id,
                other.status == JobStatusEnum.CLAIMED,
            )
            .correlate(PrintJob)
            .exists()
        )
        return (
            PrintJob.status == JobStatusEnum.PENDING,
            (PrintJob.available_at.is_(None)) | (PrintJob.available_at <= now),
            no_active_claim,
        )

    def _claim_values(self, worker_id, now):
        return {
            PrintJob.status: JobStatusEnum.CLAIMED,
            PrintJob.worker_owner: worker_id,
            PrintJob.last_heartbeat_at: now,
            PrintJob.started_at: func.coalesce(PrintJob.started_at, now),
        }

    def claim_next(self, resource_id: str, worker_id: str) -> Optional[Job]:
        """
        Atomically claim the best eligible job of a printer.

        Returns the claimed job, or None if nothing was eligible or another
        worker got there first.
        """
        now = utcnow()
        with self._session() as db:
            candidate = aliased(PrintJob)
            next_id = (
                select(candidate.job_id)
                .where(
                    candidate.resource_id == resource_id,
                    candidate.status == JobStatusEnum.PENDING,
                    (candidate.available_at.is_(None)) | (candidate.available_at <= now),
                )
                .order_by(candidate.priority.desc(), candidate.created_at.asc())
                .limit(1)
                .scalar_subquery()
            )
            updated = (
                db.query(PrintJob)
                .filter(PrintJob.job_id == next_id, *self._claimable(now))
                .update(self._claim_values(worker_id, now), synchronize_session=False)
            )
            if updated != 1:
                return None

            row = (
                db.query(PrintJob)
                .filter(
                    PrintJob.worker_owner == worker_id,
                    PrintJob.status == JobStatusEnum.CLAIMED,
                )
                .order_by(PrintJob.last_heartbeat_at.desc())
                .first()
            )
            job = Job.from_row(row) if row else None

        if job:
            events.log_transition(job.id, "PENDING", "CLAIMED", worker=worker_id)
        return job

    def claim(self, job_id: str, worker_id: str) -> Optional[Job]:
        """Conditionally claim one specific job. None if it is no longer claimable."""
        now = utcnow()
        with self._session() as db:
            updated = (
                db.query(PrintJob)
                .filter(PrintJob.job_id == job_id, *self._claimable(now))
                .update(self._claim_values(worker_id, now), synchronize_session=False)
            )
            if updated != 1:
                return None
            job = Job.from_row(db.get(PrintJob, job_id))

        events.log_transition(job.id, "PENDING", "CLAIMED", worker=worker_id)
        return job

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Refresh last_heartbeat_at while the worker still owns the job"""
        with self._session() as db:
            updated = (
                db.query(PrintJob)
                .filter(
                    PrintJob.job_id == job_id,
                    PrintJob.worker_owner == worker_id,
                    PrintJob.status == JobStatusEnum.CLAIMED,
                )
                .update({PrintJob.last_heartbeat_at: utcnow()}, synchronize_session=False)
            )
        return updated == 1

    # ============================================================================
    # STATUS TRANSITIONS
    # ============================================================================

    def mark_completed(self, job_id: str) -> bool:
        """Terminal success transition"""
        now = utcnow()
        with self._session() as db:
            updated = (
                db.query(PrintJob)
                .filter(PrintJob.job_id == job_id, PrintJob.status.notin_(TERMINAL_STATUSES))
                .update({
                    PrintJob.status: JobStatusEnum.COMPLETED,
                    PrintJob.completed_at: now,
                    PrintJob.error_message: None,
                }, synchronize_session=False)
            )
        if updated:
            events.log_transition(job_id, "CLAIMED", "COMPLETED")
        return updated == 1

    def mark_failed(self, job_id: str, message: Optional[str] = None) -> bool:
        """Terminal failure transition"""
        now = utcnow()
        with self._session() as db:
            updated = (
                db.query(PrintJob)
                .filter(PrintJob.job_id == job_id, PrintJob.status.notin_(TERMINAL_STATUSES))
                .update({
                    PrintJob.status: JobStatusEnum.FAILED,
                    PrintJob.completed_at: now,
                    PrintJob.error_message: message,
                    PrintJob.worker_owner: None,
                }, synchronize_session=False)
            )
        if updated:
            events.log_transition(job_id, "CLAIMED", "FAILED", error=message)
        return updated == 1

    def requeue(self, job_id: str, delay: float, attempt: int, max_retries: int,
                message: Optional[str] = None) -> bool:
        """Return a CLAIMED job to PENDING, eligible again after `delay` seconds"""
        available_at = utcnow() + timedelta(seconds=max(0.0, delay))
        with self._session() as db:
            updated = (
                db.query(PrintJob)
                .filter(PrintJob.job_id == job_id, PrintJob.status == JobStatusEnum.CLAIMED)
                .update({
                    PrintJob.status: JobStatusEnum.PENDING,
                    PrintJob.available_at: available_at,
                    PrintJob.retry_count: attempt,
                    PrintJob.max_retries: max_retries,
                    PrintJob.worker_owner: None,
                    PrintJob.error_message: message,
                }, synchronize_session=False)
            )
        if updated:
            events.log_transition(
                job_id, "CLAIMED", "PENDING",
                attempt=attempt, max_retries=max_retries, retry_in=round(delay, 3)
            )
        return updated == 1

    def recover_stale(self, stale_after: float, exclude_owners: Iterable[str] = ()) -> List[Job]:
        """
        Requeue CLAIMED jobs whose heartbeat is older than `stale_after` seconds.

        Jobs held by workers listed in `exclude_owners` are left alone. Recovery
        does not consume a retry attempt. Returns the recovered jobs.
        """
        cutoff = utcnow() - timedelta(seconds=max(0.0, stale_after))
        exclude_owners = list(exclude_owners)

        with self._session() as db:
            query = db.query(PrintJob).filter(
                PrintJob.status == JobStatusEnum.CLAIMED,
                (PrintJob.last_heartbeat_at.is_(None)) | (PrintJob.last_heartbeat_at <= cutoff),
            )
            if exclude_owners:
                query = query.filter(
                    (PrintJob.worker_owner.is_(None)) | (PrintJob.worker_owner.notin_(exclude_owners))
                )
            stale = [Job.from_row(row) for row in query.all()]
            if not stale:
                return []

            (
                db.query(PrintJob)
                .filter(
                    PrintJob.job_id.in_([job.id for job in stale]),
                    PrintJob.status == JobStatusEnum.CLAIMED,
                )
                .update({
                    PrintJob.status: JobStatusEnum.PENDING,
                    PrintJob.worker_owner: None,
                    PrintJob.available_at: None,
                    PrintJob.error_message: "Heartbeat expired - worker may have crashed",
                }, synchronize_session=False)
            )

        for job in stale:
            events.log_event('heartbeat_expired', {
                'job_id': job.id,
                'resource_id': job.resource_id,
                'original_worker': job.worker_owner,
            }, level='warning')
        logger.info(f"Recovered {len(stale)} stale job claim(s)")
        return stale

    def release(self, job_id: str, worker_id: str, message: Optional[str] = None) -> bool:
        """Hand a claim held by `worker_id` back to PENDING without using an attempt"""
        with self._session() as db:
            updated = (
                db.query(PrintJob)
                .filter(
                    PrintJob.job_id == job_id,
                    PrintJob.worker_owner == worker_id,
                    PrintJob.status == JobStatusEnum.CLAIMED,
                )
                .update({
                    PrintJob.status: JobStatusEnum.PENDING,
                    PrintJob.worker_owner: None,
                    PrintJob.available_at: None,
                    PrintJob.error_message: message,
                }, synchronize_session=False)
            )
        if updated:
            events.log_transition(job_id, "CLAIMED", "PENDING", worker=worker_id, released=True)
        return updated == 1

    # ============================================================================
    # READS
    # ============================================================================

    def load_since(self, resource_id: str, watermark=None) -> List[Job]:
        """Eligible PENDING jobs of a printer created after `watermark` (all if None)"""
        now = utcnow()
        with self._session() as db:
            query = db.query(PrintJob).filter(
                PrintJob.resource_id == resource_id,
                PrintJob.status == JobStatusEnum.PENDING,
                (PrintJob.available_at.is_(None)) | (PrintJob.available_at <= now),
            )
            if watermark is not None:
                query = query.filter(PrintJob.created_at > watermark)
            rows = query.order_by(PrintJob.priority.desc(), PrintJob.created_at.asc()).all()
            return [Job.from_row(row) for row in rows]

    def next_available_at(self, resource_id: str) -> Optional[datetime]:
        """Earliest future available_at among a printer's PENDING jobs, or None"""
        now = utcnow()
        with self._session() as db:
            return (
                db.query(func.min(PrintJob.available_at))
                .filter(
                    PrintJob.resource_id == resource_id,
                    PrintJob.status == JobStatusEnum.PENDING,
                    PrintJob.available_at > now,
                )
                .scalar()
            )

    def pending_resources(self) -> List[str]:
        """Printers that currently have PENDING jobs"""
        with self._session() as db:
            rows = (
                db.query(PrintJob.resource_id)
                .filter(PrintJob.status == JobStatusEnum.PENDING)
                .distinct()
                .all()
            )
            return [row[0] for row in rows]

    def get(self, job_id: str) -> Optional[Job]:
        with self._session() as db:
            row = db.get(PrintJob, job_id)
            return Job.from_row(row) if row else None

    def list_all(self, resource_id: Optional[str] = None, status: Optional[JobStatusEnum] = None,
                 limit: Optional[int] = None, offset: Optional[int] = None) -> List[Job]:
        """Jobs newest first, optionally filtered and paged"""
        with self._session() as db:
            query = db.query(PrintJob)
            if resource_id:
                query = query.filter(PrintJob.resource_id == resource_id)
            if status:
                query = query.filter(PrintJob.status == JobStatusEnum(status))
            query = query.order_by(PrintJob.created_at.desc())
            if limit:
                query = query.limit(limit)
            if offset:
                query = query.offset(offset)
            return [Job.from_row(row) for row in query.all()]

    def stats(self, resource_id: Optional[str] = None) -> Dict[str, int]:
        """Job counts per status"""
        def count_of(status):
            return func.sum(case((PrintJob.status == status, 1), else_=0))

        with self._session() as db:
            query = db.query(
                func.count(PrintJob.job_id),
                count_of(JobStatusEnum.PENDING),
                count_of(JobStatusEnum.CLAIMED),
                count_of(JobStatusEnum.COMPLETED),
                count_of(JobStatusEnum.FAILED),
            )
            if resource_id:
                query = query.filter(PrintJob.resource_id == resource_id)
            total, pending, claimed, completed, failed = query.one()

        return {
            "total": total or 0,
            "pending": pending or 0,
            "claimed": claimed or 0,
            "completed": completed or 0,
            "failed": failed or 0,
        }

    # ============================================================================
    # CLEANUP
    # ============================================================================

    def purge(self, resource_id: Optional[str] = None, status: Optional[JobStatusEnum] = None,
              older_than: Optional[timedelta] = None) -> int:
        """
        Delete job rows. Without a status only terminal rows are removed;
        CLAIMED rows are never purged.
        """
        if status is not None and JobStatusEnum(status) == JobStatusEnum.CLAIMED:
            raise ValidationError("Cannot purge CLAIMED jobs while they are in flight")

        with self._session() as db:
            query = db.query(PrintJob)
            if resource_id:
                query = query.filter(PrintJob.resource_id == resource_id)
            if status is not None:
                query = query.filter(PrintJob.status == JobStatusEnum(status))
            else:
                query = query.filter(PrintJob.status.in_(TERMINAL_STATUSES))
            if older_than is not None:
                query = query.filter(PrintJob.created_at < utcnow() - older_than)
            deleted = query.delete(synchronize_session=False)

        logger.info(f"Purged {deleted} job(s)")
        return deleted

    def purge_non_persistent(self, resource_id: str) -> int:
        """Delete PENDING jobs of a printer that were not submitted as persistent"""
        with self._session() as db:
            rows = (
                db.query(PrintJob.job_id, PrintJob.meta)
                .filter(
                    PrintJob.resource_id == resource_id,
                    PrintJob.status == JobStatusEnum.PENDING,
                )
                .all()
            )
            doomed = [job_id for job_id, meta in rows if not (meta or {}).get("persistent")]
            if not doomed:
                return 0
            deleted = (
                db.query(PrintJob)
                .filter(
                    PrintJob.job_id.in_(doomed),
                    PrintJob.status == JobStatusEnum.PENDING,
                )
                .delete(synchronize_session=False)
            )
        logger.info(f"Cleared {deleted} non-persistent pending job(s) for {resource_id}")
        return deleted

    # ============================================================================
    # PRINTERS
    # ============================================================================

    def save_printer(self, printer: PrinterConfig) -> PrinterConfig:
        """Insert or replace a printer record"""
        with self._session() as db:
            row = db.get(Printer, printer.printer_id)
            if row is None:
                row = Printer(printer_id=printer.printer_id, created_at=printer.created_at or utcnow())
                db.add(row)
            row.name = printer.name
            row.kind = printer.kind
            row.connection_params = printer.connection_params or {}
            row.is_enabled = printer.is_enabled
            row.status = printer.status
            row.updated_at = utcnow()
            db.flush()
            return PrinterConfig.from_row(row)

    def get_printer(self, printer_id: str) -> Optional[PrinterConfig]:
        with self._session() as db:
            row = db.get(Printer, printer_id)
            return PrinterConfig.from_row(row) if row else None

    def list_printers(self) -> List[PrinterConfig]:
        with self._session() as db:
            rows = db.query(Printer).order_by(Printer.created_at.desc()).all()
            return [PrinterConfig.from_row(row) for row in rows]

    def update_printer_status(self, printer_id: str, status: PrinterStatusEnum) -> None:
        with self._session() as db:
            updated = (
                db.query(Printer)
                .filter(Printer.printer_id == printer_id)
                .update({Printer.status: PrinterStatusEnum(status), Printer.updated_at: utcnow()},
                        synchronize_session=False)
            )
            if not updated:
                raise PrinterNotFoundError(printer_id)

    def delete_printer(self, printer_id: str, delete_jobs: bool = True) -> Dict[str, Any]:
        """Delete a printer and optionally its jobs in one transaction"""
        result = self.delete_printers([printer_id], delete_jobs=delete_jobs)
        return {"deleted_jobs": result["deleted_jobs"], "printer_deleted": True}

    def delete_printers(self, printer_ids: List[str], delete_jobs: bool = True) -> Dict[str, Any]:
        """
        Delete several printers atomically.

        Raises PrinterInUseError when jobs remain and delete_jobs is False, and
        PrinterNotFoundError when any id is unknown. Nothing is deleted in either case.
        """
        if not printer_ids:
            return {"deleted_jobs": 0, "deleted_printers": []}

        with self._session() as db:
            found = {
                row[0] for row in
                db.query(Printer.printer_id).filter(Printer.printer_id.in_(printer_ids)).all()
            }
            missing = [pid for pid in printer_ids if pid not in found]
            if missing:
                raise PrinterNotFoundError(missing[0])

            deleted_jobs = 0
            jobs = db.query(PrintJob).filter(PrintJob.resource_id.in_(printer_ids))
            if delete_jobs:
                deleted_jobs = jobs.delete(synchronize_session=False)
            else:
                counts = dict(
                    db.query(PrintJob.resource_id, func.count(PrintJob.job_id))
                    .filter(PrintJob.resource_id.in_(printer_ids))
                    .group_by(PrintJob.resource_id)
                    .all()
                )
                if counts:
                    raise PrinterInUseError(counts)

            db.query(Printer).filter(Printer.printer_id.in_(printer_ids)).delete(synchronize_session=False)

        logger.info(f"Deleted printers {printer_ids} ({deleted_jobs} jobs)")
        return {"deleted_jobs": deleted_jobs, "deleted_printers": list(printer_ids)}
