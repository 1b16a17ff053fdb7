"""
SQLAlchemy Database Models - durable print job queue
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cached_property
from typing import Any, Dict, Optional
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Text, Index, Enum as SQLEnum

from printdispatch.database import Base


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# ==================== Enums ====================

class JobStatusEnum(str, enum.Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (JobStatusEnum.COMPLETED, JobStatusEnum.FAILED)


class PrinterStatusEnum(str, enum.Enum):
    IDLE = "IDLE"
    BUSY = "BUSY"
    ERROR = "ERROR"
    OFFLINE = "OFFLINE"


class PrinterKind(str, enum.Enum):
    ESCPOS = "escpos"
    XPRINTER = "xprinter"
    EPSON = "epson"
    IMIN = "imin"

# ==================== Models ====================

class Printer(Base):
    __tablename__ = "printers"

    printer_id = Column(String(100), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    kind = Column(SQLEnum(PrinterKind), default=PrinterKind.ESCPOS, nullable=False)
    connection_params = Column(JSON, default=dict)
    is_enabled = Column(Boolean, default=True, nullable=False)
    status = Column(SQLEnum(PrinterStatusEnum), default=PrinterStatusEnum.IDLE, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Printer(id={self.printer_id}, kind={self.kind}, enabled={self.is_enabled})>"


class PrintJob(Base):
    """
    Persistent job row - single source of truth for job existence and status
    """
    __tablename__ = "print_jobs"

    job_id = Column("id", String(100), primary_key=True)
    resource_id = Column(String(100), nullable=False, index=True)
    payload = Column(Text, nullable=False)
    status = Column(SQLEnum(JobStatusEnum), default=JobStatusEnum.PENDING, nullable=False, index=True)
    priority = Column(Integer, default=0, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)

    # Timing
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    available_at = Column(DateTime, nullable=True)

    # Ownership
    worker_owner = Column(String(100), nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)

    error_message = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("idx_print_jobs_dispatch", "resource_id", "status", "priority", "created_at"),
    )

    def __repr__(self):
        return f"<PrintJob(id={self.job_id}, printer={self.resource_id}, status={self.status})>"

# ==================== Detached records ====================

@dataclass
class Job:
    """Detached snapshot of a print_jobs row, safe to pass between threads"""
    id: str
    resource_id: str
    payload: str
    status: JobStatusEnum = JobStatusEnum.PENDING
    priority: int = 0
    created_at: datetime = field(default_factory=utcnow)
    available_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    worker_owner: Optional[str] = None
    last_heartbeat_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: PrintJob) -> "Job":
        return cls(
            id=row.job_id,
            resource_id=row.resource_id,
            payload=row.payload,
            status=JobStatusEnum(row.status),
            priority=row.priority or 0,
            created_at=row.created_at,
            available_at=row.available_at,
            retry_count=row.retry_count or 0,
            max_retries=row.max_retries or 1,
            worker_owner=row.worker_owner,
            last_heartbeat_at=row.last_heartbeat_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            error_message=row.error_message,
            metadata=dict(row.meta or {}),
        )

    @cached_property
    def document(self):
        """Typed payload, decoded on first access"""
        from printdispatch.payloads import decode_payload
        return decode_payload(self.payload)

    @property
    def is_persistent(self) -> bool:
        return bool(self.metadata.get("persistent"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.id,
            "resource_id": self.resource_id,
            "status": self.status.value,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "available_at": self.available_at,
            "worker_owner": self.worker_owner,
            "last_heartbeat_at": self.last_heartbeat_at,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class PrinterConfig:
    """Detached printer configuration record"""
    printer_id: str
    name: str
    kind: PrinterKind = PrinterKind.ESCPOS
    connection_params: Dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True
    status: PrinterStatusEnum = PrinterStatusEnum.IDLE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Printer) -> "PrinterConfig":
        return cls(
            printer_id=row.printer_id,
            name=row.name,
            kind=PrinterKind(row.kind),
            connection_params=dict(row.connection_params or {}),
            is_enabled=bool(row.is_enabled),
            status=PrinterStatusEnum(row.status),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
