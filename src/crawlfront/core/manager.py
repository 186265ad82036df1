"""Registry and router over all engine queues."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .engines import EngineKind, EngineRegistry
from .extract import Extractor
from .lifecycle import JobLifecycleManager
from .queue import EngineQueue
from .units import UnitRequest, WorkUnit
from ..database.models import JobKind, JobRecord, JobStatus
from ..foundation.config import EngineSettings
from ..foundation.errors import (
    ErrorHandler, JobNotFoundError, QueueUnavailableError, UnsupportedEngineError
)
from ..foundation.logging import get_logger
from ..foundation.metrics import MetricsCollector

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobStatusInfo:
    """Snapshot of a job's lifecycle state."""
    job_id: str
    kind: JobKind
    engine: str
    status: JobStatus
    is_success: Optional[bool]
    credits_used: int
    retry_count: int
    error_message: Optional[str]
    parent_id: Optional[str]
    total: int
    completed: int
    failed: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusInfo":
        return cls(
            job_id=record.job_id,
            kind=record.kind,
            engine=record.engine,
            status=record.status,
            is_success=record.is_success,
            credits_used=record.credits_used,
            retry_count=record.retry_count,
            error_message=record.error_message,
            parent_id=record.parent_id,
            total=record.total,
            completed=record.completed,
            failed=record.failed,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


@dataclass(frozen=True)
class CompletionOutcome:
    """Result of waiting for a job; ``timed_out`` leaves the job untouched."""
    job_id: str
    status: JobStatus
    is_success: Optional[bool] = None
    timed_out: bool = False


class EngineQueueManager:
    """Routes submitted units to the queue for their engine."""

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        registry: EngineRegistry,
        extractor: Extractor,
        engine_settings: Dict[str, EngineSettings],
        error_handler: Optional[ErrorHandler] = None,
        metrics: Optional[MetricsCollector] = None,
        poll_interval: float = 0.5
    ):
        self.lifecycle = lifecycle
        self.registry = registry
        self.metrics = metrics or lifecycle.metrics
        self.poll_interval = poll_interval

        self._queues: Dict[EngineKind, EngineQueue] = {}
        for kind, engine in registry.items():
            settings = engine_settings.get(kind.value) or EngineSettings()
            if not settings.enabled:
                logger.info(f"[{kind.value}] Engine disabled by configuration")
                continue
            self._queues[kind] = EngineQueue(
                name=kind.value,
                engine=engine,
                extractor=extractor,
                lifecycle=lifecycle,
                settings=settings,
                error_handler=error_handler,
                metrics=self.metrics,
            )

    def engines(self) -> List[str]:
        return [kind.value for kind in self._queues]

    def queue(self, engine_id: Union[str, EngineKind]) -> EngineQueue:
        """Get the queue serving an engine.

        Raises:
            UnsupportedEngineError: If no queue serves the engine
        """
        kind = self.registry.parse_kind(engine_id)
        queue = self._queues.get(kind)
        if queue is None:
            raise UnsupportedEngineError(kind.value, available=self.engines())
        return queue

    async def submit(self, engine_id: Union[str, EngineKind], unit: UnitRequest) -> str:
        """Create the job and enqueue its unit without waiting for execution.

        Raises:
            UnsupportedEngineError: If the engine is not registered
            QueueUnavailableError: If the engine's queue has been stopped
        """
        queue = self.queue(engine_id)
        if not queue.accepting:
            raise QueueUnavailableError(queue.name)

        record = await self.lifecycle.create_job(unit, queue.name)
        await self.lifecycle.mark_waiting(record.job_id)

        work = WorkUnit(
            job_id=record.job_id,
            kind=unit.kind,
            engine=queue.name,
            url=unit.url,
            payload=unit.payload,
            options=unit.options,
            parent_id=unit.parent_id,
            account_id=unit.account_id,
            depth=unit.depth,
            sequence=unit.sequence,
        )
        try:
            queue.enqueue(work)
        except QueueUnavailableError:
            await self.lifecycle.cancel(record.job_id, notify=False)
            raise

        logger.debug(f"[{queue.name}] [{record.job_id}] Submitted {unit.kind.value}")
        return record.job_id

    async def status(self, job_id: str) -> JobStatusInfo:
        """Get a job's lifecycle state.

        Raises:
            JobNotFoundError: If the job is unknown or expired
        """
        record = await self.lifecycle.store.get_job_record(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return JobStatusInfo.from_record(record)

    async def await_completion(
        self,
        job_id: str,
        timeout: Optional[float] = None
    ) -> CompletionOutcome:
        """Suspend until the job is terminal or the timeout elapses.

        Jobs finishing in this process wake the caller directly; jobs run
        elsewhere are polled every ``poll_interval`` seconds.

        Raises:
            JobNotFoundError: If the job is unknown or expired
        """
        info = await self.status(job_id)
        if info.is_terminal:
            return CompletionOutcome(job_id, info.status, info.is_success)

        terminal = self.lifecycle.terminal_event(job_id)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        try:
            while True:
                info = await self.status(job_id)
                if info.is_terminal:
                    return CompletionOutcome(job_id, info.status, info.is_success)

                wait = self.poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return CompletionOutcome(job_id, info.status, info.is_success, timed_out=True)
                    wait = min(wait, remaining)

                try:
                    await asyncio.wait_for(terminal.wait(), wait)
                except asyncio.TimeoutError:
                    continue
        finally:
            self.lifecycle.discard_terminal_event(job_id)

    def start_all(self) -> None:
        for queue in self._queues.values():
            queue.start()

    async def stop_all(self, timeout: Optional[float] = None) -> None:
        """Stop every queue, draining in-flight work. Used at shutdown."""
        await asyncio.gather(*(queue.stop(timeout) for queue in self._queues.values()))

    def queue_stats(self) -> Dict[str, Dict[str, Any]]:
        return {kind.value: queue.stats() for kind, queue in self._queues.items()}
