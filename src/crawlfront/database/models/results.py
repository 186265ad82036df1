"""SQLAlchemy model for per-page job results."""

from typing import Any, Dict, Optional
from enum import Enum

from sqlalchemy import String, Integer, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class JobResult(Base):
    """Result of one finished page, read back in submission order."""

    __tablename__ = "job_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    root_id: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(String(4096), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_job_results_root_sequence", "root_id", "sequence"),
    )

    def to_entry(self) -> Dict[str, Any]:
        """Caller-facing representation: url, status, and data or error."""
        entry: Dict[str, Any] = {"url": self.url, "status": self.status}
        if self.status == ResultStatus.SUCCESS.value:
            entry["data"] = self.data
        else:
            entry["error"] = self.error
        return entry
