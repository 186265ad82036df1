"""Units of work passed between the queues, the lifecycle and crawl frontiers."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..database.models import JobKind, JobStatus


def new_job_id() -> str:
    return str(uuid.uuid4())


@dataclass
class UnitRequest:
    """What a caller asks an engine queue to run."""
    kind: JobKind
    url: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None
    account_id: Optional[str] = None
    depth: int = 0
    sequence: int = 0
    job_id: Optional[str] = None


@dataclass(frozen=True)
class WorkUnit:
    """One engine invocation tied to exactly one job id."""
    job_id: str
    kind: JobKind
    engine: str
    url: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None
    account_id: Optional[str] = None
    depth: int = 0
    sequence: int = 0
    retry_count: int = 0

    @property
    def root_id(self) -> str:
        """Root the unit's result is filed under; a job is its own root unless it is a crawl child."""
        return self.parent_id or self.job_id

    def describe(self) -> Dict[str, Any]:
        """Unit data kept with a failure for later inspection."""
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "engine": self.engine,
            "url": self.url,
            "payload": self.payload,
            "options": self.options,
            "depth": self.depth,
            "retry_count": self.retry_count,
        }


@dataclass(frozen=True)
class UnitFinished:
    """Terminal outcome of a crawl unit, delivered to its crawl orchestrator.

    For the root's own unit a ``COMPLETED`` status means the seed page was
    fetched; the root job itself stays running until its frontier drains.
    """
    job_id: str
    root_id: str
    kind: JobKind
    status: JobStatus
    depth: int = 0
    url: Optional[str] = None
    links: List[str] = field(default_factory=list)
    base_url: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED
