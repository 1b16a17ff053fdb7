from dataclasses import asdict
from typing import Any, Dict
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from printdispatch.errors import DispatchError, PrinterNotFoundError
from printdispatch.models import PrinterConfig, PrinterKind, PrinterStatusEnum
from printdispatch.routes.deps import get_store, http_error

router = APIRouter(prefix="/printers", tags=["Printers"])

logger = logging.getLogger("printdispatch.routes.printers")

# ==================== Pydantic Models ====================

class PrinterUpsert(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    kind: PrinterKind = PrinterKind.ESCPOS
    connection_params: Dict[str, Any] = Field(default_factory=dict)
    is_enabled: bool = True
    status: PrinterStatusEnum = PrinterStatusEnum.IDLE


def _printer_out(printer: PrinterConfig):
    data = asdict(printer)
    data["kind"] = printer.kind.value
    data["status"] = printer.status.value
    return data

# ==================== Endpoints ====================

@router.put("/{printer_id}")
def upsert_printer(printer_id: str, body: PrinterUpsert, request: Request, store=Depends(get_store)):
    """Create or replace a printer record"""
    saved = store.save_printer(PrinterConfig(
        printer_id=printer_id,
        name=body.name,
        kind=body.kind,
        connection_params=body.connection_params,
        is_enabled=body.is_enabled,
        status=body.status,
    ))
    logger.info(f"📠 Printer {printer_id} saved (enabled={saved.is_enabled})")

    # Re-enabling a printer resumes its backlog
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if saved.is_enabled and dispatcher is not None and dispatcher.running:
        dispatcher.notify(printer_id, full_reload=True)
    return _printer_out(saved)


@router.get("")
def list_printers(store=Depends(get_store)):
    printers = store.list_printers()
    return {"total": len(printers), "printers": [_printer_out(p) for p in printers]}


@router.get("/{printer_id}")
def get_printer(printer_id: str, store=Depends(get_store)):
    printer = store.get_printer(printer_id)
    if printer is None:
        raise http_error(PrinterNotFoundError(printer_id))
    return _printer_out(printer)


@router.delete("/{printer_id}")
def delete_printer(printer_id: str, request: Request, delete_jobs: bool = True, store=Depends(get_store)):
    """Delete a printer, and its jobs unless delete_jobs=false"""
    try:
        result = store.delete_printer(printer_id, delete_jobs=delete_jobs)
    except DispatchError as e:
        raise http_error(e) from e

    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is not None:
        dispatcher.clear_queue(printer_id)
    return {"printer_id": printer_id, **result}
