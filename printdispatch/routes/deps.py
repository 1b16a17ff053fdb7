"""
Shared route dependencies and error translation
"""

from fastapi import HTTPException, Request

from printdispatch.errors import (
    DispatchError, JobNotFoundError, PrinterInUseError, PrinterNotFoundError,
    SchedulerNotRunningError, ValidationError
)


def _state(request: Request, name: str, label: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{label} not initialized")
    return value


def get_store(request: Request):
    return _state(request, "store", "Job store")


def get_dispatcher(request: Request):
    return _state(request, "dispatcher", "Dispatcher")


def get_producer(request: Request):
    return _state(request, "producer", "Producer")


def http_error(error: DispatchError) -> HTTPException:
    """Map a DispatchError onto the matching HTTP status"""
    if isinstance(error, (JobNotFoundError, PrinterNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, PrinterInUseError):
        return HTTPException(status_code=409, detail={
            "message": str(error),
            "job_counts": error.job_counts,
        })
    if isinstance(error, ValidationError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, SchedulerNotRunningError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
