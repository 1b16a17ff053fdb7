from datetime import timedelta
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from printdispatch.errors import DispatchError, JobNotFoundError
from printdispatch.models import JobStatusEnum
from printdispatch.payloads import PrintPayload
from printdispatch.routes.deps import get_producer, get_store, http_error

router = APIRouter(tags=["Jobs"])

logger = logging.getLogger("printdispatch.routes.jobs")

# ==================== Pydantic Models ====================

class SubmitJobRequest(BaseModel):
    payload: PrintPayload
    priority: int = 0
    max_retries: Optional[int] = Field(default=None, ge=1)
    persistent: bool = False
    job_id: Optional[str] = Field(default=None, min_length=1, max_length=100)

    def options(self):
        options = {
            "priority": self.priority,
            "persistent": self.persistent,
            "job_id": self.job_id,
        }
        if self.max_retries is not None:
            options["max_retries"] = self.max_retries
        return options


class BatchJobEntry(SubmitJobRequest):
    printer_id: str = Field(..., min_length=1)


class BatchSubmitRequest(BaseModel):
    jobs: List[BatchJobEntry] = Field(..., min_length=1)

# ==================== Submission ====================

@router.post("/printers/{printer_id}/jobs", status_code=201)
def submit_job(printer_id: str, request: SubmitJobRequest, producer=Depends(get_producer)):
    """Queue a print job for a printer"""
    try:
        job_id = producer.submit(printer_id, request.payload, request.options())
    except DispatchError as e:
        raise http_error(e) from e
    return {"job_id": job_id, "printer_id": printer_id, "status": JobStatusEnum.PENDING.value}


@router.post("/jobs/batch", status_code=201)
def submit_batch(request: BatchSubmitRequest, producer=Depends(get_producer)):
    """Queue several jobs in one write"""
    entries = [(entry.printer_id, entry.payload, entry.options()) for entry in request.jobs]
    try:
        job_ids = producer.submit_batch(entries)
    except DispatchError as e:
        raise http_error(e) from e
    return {"job_ids": job_ids, "count": len(job_ids)}


@router.delete("/printers/{printer_id}/jobs/pending")
def clear_pending_jobs(printer_id: str, producer=Depends(get_producer)):
    """Remove pending jobs that were not submitted as persistent"""
    deleted = producer.clear_pending(printer_id)
    return {"printer_id": printer_id, "deleted": deleted}

# ==================== Queries ====================

@router.get("/jobs")
def list_jobs(
    printer_id: Optional[str] = None,
    status: Optional[JobStatusEnum] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    store=Depends(get_store),
):
    """List jobs, newest first"""
    jobs = store.list_all(resource_id=printer_id, status=status, limit=limit, offset=offset)
    return {
        "jobs": [job.to_dict() for job in jobs],
        "count": len(jobs),
        "limit": limit,
        "offset": offset,
    }


@router.get("/jobs/stats")
def job_stats(printer_id: Optional[str] = None, store=Depends(get_store)):
    return store.stats(printer_id)


@router.get("/jobs/{job_id}")
def get_job(job_id: str, store=Depends(get_store)):
    job = store.get(job_id)
    if job is None:
        raise http_error(JobNotFoundError(job_id))
    return job.to_dict()

# ==================== Cleanup ====================

@router.delete("/jobs")
def purge_jobs(
    printer_id: Optional[str] = None,
    status: Optional[JobStatusEnum] = None,
    older_than_seconds: Optional[float] = Query(None, ge=0),
    store=Depends(get_store),
):
    """Delete finished jobs (or the given status, never CLAIMED)"""
    older_than = timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None
    try:
        deleted = store.purge(resource_id=printer_id, status=status, older_than=older_than)
    except DispatchError as e:
        raise http_error(e) from e
    logger.info(f"🧹 Purged {deleted} job(s) (printer={printer_id}, status={status})")
    return {"deleted": deleted}
