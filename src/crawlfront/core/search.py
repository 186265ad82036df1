"""Search fan-out: scrapes each result of one search job as a child job."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from .lifecycle import JobLifecycleManager
from .units import UnitFinished
from ..database.models import JobKind, JobStatus, QUEUED_STATUSES
from ..foundation.errors import CrawlfrontError, InvalidTransitionError
from ..foundation.logging import get_logger

logger = get_logger(__name__)

ResultSubmitter = Callable[[str, int], Awaitable[str]]


@dataclass
class FanoutState:
    """Counters of one search fan-out, guarded by its lock."""
    pending: int = 1
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    search_done: bool = False
    closed: bool = False
    finalized: bool = False


class SearchFanout:
    """Owns the result scrapes of one search job.

    The search stays running until every scrape it submitted has finished.
    Each scrape is a job of its own and is billed on its own. The result
    URLs are already deduplicated and capped by the search unit.
    """

    def __init__(self, root_id: str, submit_result: ResultSubmitter, lifecycle: JobLifecycleManager):
        self.root_id = root_id
        self.submit_result = submit_result
        self.lifecycle = lifecycle

        self.state = FanoutState()
        self._children: List[str] = []
        self._lock = asyncio.Lock()

    @property
    def done(self) -> bool:
        return self.state.finalized or (self.state.closed and self.state.pending <= 0)

    def progress(self) -> Dict[str, Any]:
        return {
            "submitted": self.state.submitted,
            "pending": self.state.pending,
            "succeeded": self.state.succeeded,
            "failed": self.state.failed,
            "cancelled": self.state.cancelled,
        }

    async def on_unit_finished(self, event: UnitFinished) -> None:
        if event.job_id == self.root_id and event.status != JobStatus.COMPLETED:
            if event.status == JobStatus.CANCELLED:
                await self.close()
            else:
                async with self._lock:
                    self.state.search_done = True
                    self.state.closed = True
                    self.state.finalized = True
                logger.info(f"[{self.root_id}] Search failed, no results scraped")
            return

        async with self._lock:
            admitted: List[Tuple[str, int]] = []
            if event.job_id == self.root_id:
                self.state.search_done = True
                if not self.state.closed:
                    for url in event.links:
                        self.state.submitted += 1
                        self.state.pending += 1
                        admitted.append((url, self.state.submitted))
            elif event.status == JobStatus.COMPLETED:
                self.state.succeeded += 1
            elif event.status == JobStatus.FAILED:
                self.state.failed += 1
            else:
                self.state.cancelled += 1
            self.state.pending -= 1
            finalize = self._should_finalize()

        if admitted:
            logger.info(f"[{self.root_id}] Scraping {len(admitted)} search result(s)")
            await self._submit(admitted)
        if finalize:
            await self._finalize()

    async def _submit(self, admitted: List[Tuple[str, int]]) -> None:
        for url, sequence in admitted:
            if self.state.closed:
                await self._abandon()
                continue
            try:
                child_id = await self.submit_result(url, sequence)
            except CrawlfrontError as e:
                logger.warning(f"[{self.root_id}] Could not submit scrape of {url}: {e.message}")
                await self._abandon()
                continue

            async with self._lock:
                self._children.append(child_id)
                closed = self.state.closed
            if closed:
                await self.lifecycle.cancel(child_id, from_statuses=QUEUED_STATUSES)

    async def _abandon(self) -> None:
        async with self._lock:
            self.state.pending -= 1
            finalize = self._should_finalize()
        if finalize:
            await self._finalize()

    def _should_finalize(self) -> bool:
        if self.state.pending == 0 and not self.state.closed and not self.state.finalized:
            self.state.finalized = True
            return True
        return False

    async def _finalize(self) -> None:
        # The results pages themselves were fetched; failed scrapes do not fail the search
        try:
            await self.lifecycle.finalize_root(self.root_id, True, kind=JobKind.SEARCH)
        except InvalidTransitionError:
            logger.info(f"[{self.root_id}] Search already finished, not finalizing")

    async def close(self) -> None:
        """Stop submitting scrapes and cancel those still queued."""
        async with self._lock:
            if self.state.closed:
                return
            self.state.closed = True
            if not self.state.search_done:
                self.state.search_done = True
                self.state.pending -= 1
            children = list(self._children)

        logger.info(f"[{self.root_id}] Search closed, cancelling queued result scrapes")
        for child_id in children:
            await self.lifecycle.cancel(child_id, from_statuses=QUEUED_STATUSES)
