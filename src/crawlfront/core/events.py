"""Completion event channel between the job lifecycle and its subscribers."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..database.models import JobKind
from ..foundation.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompletionEvent:
    """A unit of work finished successfully and is eligible for billing."""
    job_id: str
    kind: JobKind
    engine: str
    account_id: Optional[str] = None
    parent_id: Optional[str] = None
    url: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    pages: int = 1
    completed_at: datetime = field(default_factory=datetime.utcnow)


CompletionHandler = Callable[[CompletionEvent], Awaitable[None]]


class CompletionEventBus:
    """Fans completion events out to subscribers without blocking the publisher.

    Each delivery runs as its own task. ``join()`` waits for deliveries that
    are still in flight, which is what shutdown and tests use.
    """

    def __init__(self):
        self._subscribers: List[CompletionHandler] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, handler: CompletionHandler) -> None:
        self._subscribers.append(handler)

    def publish(self, event: CompletionEvent) -> None:
        for handler in list(self._subscribers):
            task = asyncio.create_task(handler(event))
            self._tasks.add(task)
            task.add_done_callback(self._on_delivered)

    def _on_delivered(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Completion subscriber failed: {error!r}", exc_info=error)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every published event has been delivered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
