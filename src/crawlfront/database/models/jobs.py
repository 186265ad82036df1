"""SQLAlchemy models for job records."""

from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    String, Integer, Boolean, DateTime, JSON, Index, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class JobStatus(str, Enum):
    """Enumeration of job statuses."""
    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
QUEUED_STATUSES = frozenset({JobStatus.PENDING, JobStatus.WAITING})


class JobKind(str, Enum):
    """Enumeration of job kinds."""
    SCRAPE = "scrape"
    SEARCH = "search"
    CRAWL_ROOT = "crawl_root"
    CRAWL_CHILD = "crawl_child"


class JobRecord(Base):
    """One unit of billable work, or a crawl root aggregating many."""

    __tablename__ = "jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    kind: Mapped[JobKind] = mapped_column(SQLEnum(JobKind), nullable=False)
    engine: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(JobStatus),
        default=JobStatus.PENDING,
        nullable=False
    )

    url: Mapped[Optional[str]] = mapped_column(String(4096), nullable=True)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Crawl linkage; parent_id is set only for crawl children
    parent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_success: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    credits_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    error_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Page counters for crawl roots
    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expire_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_parent", "parent_id", "sequence"),
        Index("idx_jobs_expire", "expire_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the record is past its retention window."""
        return self.expire_at < (now or datetime.utcnow())

    def __repr__(self) -> str:
        return (
            f"JobRecord("
            f"job_id={self.job_id!r}, "
            f"kind={self.kind.value}, "
            f"status={self.status.value}"
            f")"
        )
