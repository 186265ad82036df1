"""SQLAlchemy models for the crawlfront database."""

from .base import Base
from .jobs import JobRecord, JobKind, JobStatus, TERMINAL_STATUSES, QUEUED_STATUSES
from .results import JobResult, ResultStatus
from .accounts import CreditAccount, CreditDebit

__all__ = [
    "Base",
    "JobRecord",
    "JobKind",
    "JobStatus",
    "TERMINAL_STATUSES",
    "QUEUED_STATUSES",
    "JobResult",
    "ResultStatus",
    "CreditAccount",
    "CreditDebit",
]
