"""Job state machine: transitions, result persistence and completion signals."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .events import CompletionEvent, CompletionEventBus
from .extract import Extraction
from .store import JobStore
from .units import UnitFinished, UnitRequest, WorkUnit, new_job_id
from ..database.models import (
    JobKind, JobRecord, JobResult, JobStatus, ResultStatus
)
from ..foundation.errors import InvalidTransitionError, JobNotFoundError
from ..foundation.logging import get_logger
from ..foundation.metrics import MetricsCollector

logger = get_logger(__name__)

CANCELLABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.WAITING, JobStatus.RUNNING})

DEFAULT_EXPIRE_SECONDS = {
    JobKind.SCRAPE.value: 3600,
    JobKind.SEARCH.value: 3600,
    JobKind.CRAWL_ROOT.value: 3 * 3600,
    JobKind.CRAWL_CHILD.value: 3 * 3600,
}

UnitListener = Callable[[UnitFinished], Awaitable[None]]


def fans_out(kind: JobKind, payload: Optional[Dict[str, Any]]) -> bool:
    """A search given scrape options scrapes each result as a child job."""
    return kind == JobKind.SEARCH and (payload or {}).get("scrape_options") is not None


def is_root_job(record: JobRecord) -> bool:
    """Jobs that stay running until the children they submitted finish."""
    return record.kind == JobKind.CRAWL_ROOT or fans_out(record.kind, record.payload)


def reports_units(record: JobRecord) -> bool:
    return record.parent_id is not None or is_root_job(record)


@dataclass(frozen=True)
class CancelOutcome:
    job_id: str
    previous_status: JobStatus
    new_status: JobStatus

    @property
    def changed(self) -> bool:
        return self.previous_status != self.new_status


class JobLifecycleManager:
    """Owns the state machine of every job.

    Every transition is a conditional UPDATE guarded by the allowed source
    states, so a job that reached a terminal state can never leave it.
    """

    def __init__(
        self,
        store: JobStore,
        events: CompletionEventBus,
        metrics: Optional[MetricsCollector] = None,
        expire_seconds: Optional[Dict[str, int]] = None,
        default_expire_seconds: int = 3600
    ):
        self.store = store
        self.events = events
        self.metrics = metrics or MetricsCollector()
        self.expire_seconds = dict(DEFAULT_EXPIRE_SECONDS)
        self.expire_seconds.update(expire_seconds or {})
        self.default_expire_seconds = default_expire_seconds

        self._cancel_tokens: Dict[str, asyncio.Event] = {}
        self._terminal_events: Dict[str, asyncio.Event] = {}
        self._unit_listeners: List[UnitListener] = []

    def add_unit_listener(self, listener: UnitListener) -> None:
        """Register a callback awaited whenever a unit under a root job finishes."""
        self._unit_listeners.append(listener)

    def cancel_token(self, job_id: str) -> asyncio.Event:
        if job_id not in self._cancel_tokens:
            self._cancel_tokens[job_id] = asyncio.Event()
        return self._cancel_tokens[job_id]

    def is_cancelled(self, job_id: str) -> bool:
        token = self._cancel_tokens.get(job_id)
        return token is not None and token.is_set()

    def release(self, job_id: str) -> None:
        """Drop the cancel token once no worker holds the job's unit."""
        self._cancel_tokens.pop(job_id, None)

    def terminal_event(self, job_id: str) -> asyncio.Event:
        """Event set when the job reaches a terminal state in this process."""
        if job_id not in self._terminal_events:
            self._terminal_events[job_id] = asyncio.Event()
        return self._terminal_events[job_id]

    def discard_terminal_event(self, job_id: str) -> None:
        """Forget a waiter's event that was never set, e.g. after a timeout."""
        event = self._terminal_events.get(job_id)
        if event is not None and not event.is_set():
            del self._terminal_events[job_id]

    def expire_at_for(self, kind: JobKind, now: Optional[datetime] = None) -> datetime:
        seconds = self.expire_seconds.get(kind.value, self.default_expire_seconds)
        return (now or datetime.utcnow()) + timedelta(seconds=seconds)

    async def create_job(self, request: UnitRequest, engine: str) -> JobRecord:
        """Persist a new job record in the pending state."""
        record = JobRecord(
            job_id=request.job_id or new_job_id(),
            kind=request.kind,
            engine=engine,
            status=JobStatus.PENDING,
            url=request.url,
            payload=request.payload,
            parent_id=request.parent_id,
            account_id=request.account_id,
            depth=request.depth,
            sequence=request.sequence,
            total=1 if request.kind == JobKind.CRAWL_ROOT or fans_out(request.kind, request.payload) else 0,
            expire_at=self.expire_at_for(request.kind),
        )
        record = await self.store.create_job_record(record)
        self.cancel_token(record.job_id)

        if request.parent_id:
            await self.store.increment_counters(request.parent_id, total=1)

        self.metrics.increment_counter("jobs.submitted", tags={"kind": request.kind.value})
        return record

    async def _transition(
        self,
        job_id: str,
        target: JobStatus,
        from_statuses: Iterable[JobStatus],
        values: Optional[Dict[str, Any]] = None,
        result: Optional[JobResult] = None
    ) -> None:
        allowed = frozenset(from_statuses)
        update_values = {"status": target}
        update_values.update(values or {})

        updated = await self.store.update_job_record(
            job_id, update_values, from_statuses=allowed, result=result
        )
        if updated:
            logger.debug(f"[{job_id}] -> {target.value}")
            return

        record = await self.store.get_job_record(job_id, include_expired=True)
        if record is None:
            raise JobNotFoundError(job_id)
        error = InvalidTransitionError(job_id, record.status, target)
        logger.warning(f"[{job_id}] {error.message}")
        raise error

    def _signal_terminal(self, job_id: str, held: bool = False) -> None:
        # A running unit keeps its token until its worker releases it
        if not held:
            self._cancel_tokens.pop(job_id, None)
        event = self._terminal_events.pop(job_id, None)
        if event is not None:
            event.set()

    async def _notify_unit(self, finished: UnitFinished) -> None:
        for listener in list(self._unit_listeners):
            await listener(finished)

    async def mark_waiting(self, job_id: str) -> None:
        """Job accepted by a queue: pending -> waiting."""
        await self._transition(job_id, JobStatus.WAITING, {JobStatus.PENDING})

    async def mark_running(self, job_id: str) -> None:
        """Job dequeued by a worker: waiting -> running."""
        await self._transition(
            job_id, JobStatus.RUNNING, {JobStatus.WAITING},
            values={"started_at": datetime.utcnow()}
        )

    async def mark_retrying(self, job_id: str, retry_count: int) -> None:
        """Job handed back to its queue for another attempt: running -> waiting."""
        await self._transition(
            job_id, JobStatus.WAITING, {JobStatus.RUNNING},
            values={"retry_count": retry_count}
        )

    async def complete_unit(self, unit: WorkUnit, extraction: Extraction) -> None:
        """Record a successful engine invocation for any kind of unit."""
        if unit.kind == JobKind.CRAWL_ROOT or fans_out(unit.kind, unit.payload):
            await self.record_seed_result(unit.job_id, extraction)
        else:
            await self.mark_completed(unit.job_id, extraction)

    async def mark_completed(self, job_id: str, result: Extraction) -> JobRecord:
        """running -> completed, persisting the result.

        Raises:
            InvalidTransitionError: If the job is not running (for example a
                late result for a cancelled job)
        """
        record = await self._require(job_id)
        if is_root_job(record):
            raise InvalidTransitionError(job_id, record.status, JobStatus.COMPLETED)

        now = datetime.utcnow()
        await self._transition(
            job_id,
            JobStatus.COMPLETED,
            {JobStatus.RUNNING},
            values={"is_success": True, "finished_at": now},
            result=JobResult(
                job_id=job_id,
                root_id=record.parent_id or job_id,
                url=record.url,
                status=ResultStatus.SUCCESS.value,
                data=result.payload,
                sequence=record.sequence,
            ),
        )
        self.metrics.increment_counter("jobs.completed", tags={"engine": record.engine})
        self._signal_terminal(job_id)

        if record.parent_id:
            await self.store.increment_counters(record.parent_id, completed=1)

        self.events.publish(self._completion_event(record))

        if reports_units(record):
            await self._notify_unit(UnitFinished(
                job_id=job_id,
                root_id=record.parent_id or job_id,
                kind=record.kind,
                status=JobStatus.COMPLETED,
                depth=record.depth,
                url=record.url,
                links=list(result.links),
                base_url=result.base_url or record.url,
            ))
        return record

    async def record_seed_result(self, root_id: str, result: Extraction) -> None:
        """Store the page a running root job fetched itself.

        For a crawl that is the seed page; for a search that scrapes its
        results it is the results pages. The root stays running; its orchestrator
        finalizes it once its children have finished.
        """
        record = await self._require(root_id)
        await self._transition(
            root_id,
            JobStatus.RUNNING,
            {JobStatus.RUNNING},
            values={"completed": JobRecord.completed + 1},
            result=JobResult(
                job_id=root_id,
                root_id=root_id,
                url=record.url,
                status=ResultStatus.SUCCESS.value,
                data=result.payload,
                sequence=0,
            ),
        )
        self.metrics.increment_counter("jobs.pages", tags={"engine": record.engine})
        self.events.publish(self._completion_event(record))

        await self._notify_unit(UnitFinished(
            job_id=root_id,
            root_id=root_id,
            kind=record.kind,
            status=JobStatus.COMPLETED,
            depth=0,
            url=record.url,
            links=list(result.links),
            base_url=result.base_url or record.url,
        ))

    async def finalize_root(
        self,
        root_id: str,
        is_success: bool,
        kind: JobKind = JobKind.CRAWL_ROOT
    ) -> None:
        """running -> completed for a root job whose children have all finished."""
        await self._transition(
            root_id,
            JobStatus.COMPLETED,
            {JobStatus.RUNNING},
            values={"is_success": is_success, "finished_at": datetime.utcnow()},
        )
        self.metrics.increment_counter("jobs.completed", tags={"kind": kind.value})
        self._signal_terminal(root_id)
        logger.info(f"[{root_id}] {kind.value} finished (success: {is_success})")

    async def mark_failed(
        self,
        job_id: str,
        error_message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """running -> failed, keeping error details for inspection."""
        record = await self._require(job_id)
        result = None
        if reports_units(record):
            result = JobResult(
                job_id=job_id,
                root_id=record.parent_id or job_id,
                url=record.url,
                status=ResultStatus.FAILED.value,
                error=error_message[:2048],
                sequence=record.sequence,
            )

        await self._transition(
            job_id,
            JobStatus.FAILED,
            {JobStatus.RUNNING},
            values={
                "is_success": False,
                "error_message": error_message[:2048],
                "error_details": details,
                "finished_at": datetime.utcnow(),
            },
            result=result,
        )
        self.metrics.increment_counter("jobs.failed", tags={"engine": record.engine})
        self._signal_terminal(job_id)

        if record.parent_id:
            await self.store.increment_counters(record.parent_id, failed=1)

        if result is not None:
            await self._notify_unit(UnitFinished(
                job_id=job_id,
                root_id=record.parent_id or job_id,
                kind=record.kind,
                status=JobStatus.FAILED,
                depth=record.depth,
                url=record.url,
            ))

    async def cancel(
        self,
        job_id: str,
        from_statuses: Iterable[JobStatus] = CANCELLABLE_STATUSES,
        notify: bool = True
    ) -> CancelOutcome:
        """Cancel a job that has not reached a terminal state.

        Cancelling a terminal job, or one whose status is outside
        ``from_statuses``, changes nothing and reports the current status.

        Raises:
            JobNotFoundError: If the job is unknown
        """
        allowed = frozenset(from_statuses) & CANCELLABLE_STATUSES
        while True:
            record = await self._require(job_id)
            previous = record.status
            if previous not in allowed:
                return CancelOutcome(job_id, previous, previous)

            updated = await self.store.update_job_record(
                job_id,
                {"status": JobStatus.CANCELLED, "is_success": False, "finished_at": datetime.utcnow()},
                from_statuses={previous},
            )
            if updated:
                break
            # Status moved underneath us; look again

        token = self._cancel_tokens.get(job_id)
        if token is not None:
            token.set()
        self.metrics.increment_counter("jobs.cancelled")
        logger.info(f"[{job_id}] Cancelled (was {previous.value})")
        self._signal_terminal(job_id, held=previous == JobStatus.RUNNING)

        if notify and reports_units(record):
            await self._notify_unit(UnitFinished(
                job_id=job_id,
                root_id=record.parent_id or job_id,
                kind=record.kind,
                status=JobStatus.CANCELLED,
                depth=record.depth,
                url=record.url,
            ))
        return CancelOutcome(job_id, previous, JobStatus.CANCELLED)

    async def _require(self, job_id: str) -> JobRecord:
        record = await self.store.get_job_record(job_id, include_expired=True)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def _completion_event(self, record: JobRecord) -> CompletionEvent:
        return CompletionEvent(
            job_id=record.job_id,
            kind=record.kind,
            engine=record.engine,
            account_id=record.account_id,
            parent_id=record.parent_id,
            url=record.url,
            payload=dict(record.payload or {}),
            pages=int((record.payload or {}).get("pages", 1)) if record.kind == JobKind.SEARCH else 1,
        )
