from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from printdispatch.routes.deps import get_dispatcher

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


class SchedulerSettings(BaseModel):
    max_concurrent_workers: Optional[int] = Field(default=None, ge=1)
    task_timeout: Optional[float] = Field(default=None, gt=0)


@router.get("/workers")
def worker_status(dispatcher=Depends(get_dispatcher)):
    workers = dispatcher.get_worker_status()
    return {"active": len(workers), "workers": workers}


@router.get("/queues")
def queue_stats(dispatcher=Depends(get_dispatcher)):
    return dispatcher.get_queue_stats()


@router.put("/settings")
def update_settings(body: SchedulerSettings, dispatcher=Depends(get_dispatcher)):
    """Adjust the worker ceiling and per-job timeout at runtime. Values are clamped."""
    if body.max_concurrent_workers is not None:
        dispatcher.set_max_concurrent_workers(body.max_concurrent_workers)
    if body.task_timeout is not None:
        dispatcher.set_task_timeout(body.task_timeout)
    return {
        "max_concurrent_workers": dispatcher.max_concurrent_workers,
        "task_timeout": dispatcher.task_timeout,
        "running": dispatcher.running,
    }
