"""Crawl frontier: expands one crawl root into deduplicated child page jobs."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .lifecycle import JobLifecycleManager
from .store import JobStore
from .units import UnitFinished
from .urls import CrawlStrategy, normalize_url, passes_path_filters, passes_strategy
from ..database.models import JobStatus, QUEUED_STATUSES
from ..foundation.errors import CrawlfrontError, InvalidTransitionError, ValidationError
from ..foundation.logging import get_logger

logger = get_logger(__name__)

ChildSubmitter = Callable[[str, int, int], Awaitable[str]]


@dataclass
class CrawlRule:
    """Bounds and filters for one crawl."""
    max_depth: int = 10
    limit: int = 100
    include_paths: List[str] = field(default_factory=list)
    exclude_paths: List[str] = field(default_factory=list)
    strategy: CrawlStrategy = CrawlStrategy.SAME_DOMAIN
    ignore_query_parameters: bool = False

    def __post_init__(self):
        if self.max_depth < 0:
            raise ValidationError("max_depth must be at least 0", field="max_depth")
        if self.limit < 0:
            raise ValidationError("limit must be at least 0", field="limit")
        try:
            self.strategy = CrawlStrategy(self.strategy)
        except ValueError:
            raise ValidationError(f"Unknown crawl strategy: {self.strategy}", field="strategy") from None


@dataclass
class CrawlState:
    """Counters of one crawl, guarded by its orchestrator's lock."""
    pending: int = 1
    submitted: int = 0
    sequence: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    seed_done: bool = False
    closed: bool = False
    finalized: bool = False


class CrawlOrchestrator:
    """Owns the frontier of one crawl root.

    The pending counter starts at 1 for the root's own seed unit. Links a
    finished unit reports are admitted before that unit is counted down, so
    the root cannot finish while admissible work remains, and it finishes as
    soon as the last unit reports no new links.
    """

    def __init__(
        self,
        root_id: str,
        seed_url: str,
        rule: CrawlRule,
        submit_child: ChildSubmitter,
        lifecycle: JobLifecycleManager,
        store: Optional[JobStore] = None
    ):
        normalized = normalize_url(seed_url, ignore_query_parameters=rule.ignore_query_parameters)
        if normalized is None:
            raise ValidationError(f"Invalid seed URL: {seed_url}", field="url")

        self.root_id = root_id
        self.seed_url = normalized
        self.rule = rule
        self.submit_child = submit_child
        self.lifecycle = lifecycle
        self.store = store or lifecycle.store

        self.state = CrawlState()
        self._visited = {normalized}
        self._children: List[str] = []
        self._lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self.state.closed

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
            "closed": self.state.closed,
            "finalized": self.state.finalized,
        }

    async def on_unit_finished(self, event: UnitFinished) -> None:
        """Take the outcome of the seed unit or a child and expand the frontier."""
        if event.job_id == self.root_id and event.status != JobStatus.COMPLETED:
            if event.status == JobStatus.CANCELLED:
                await self.close()
            else:
                async with self._lock:
                    self.state.failed += 1
                    self.state.pending -= 1
                    self.state.seed_done = True
                    self.state.closed = True
                    self.state.finalized = True
                logger.info(f"[{self.root_id}] Seed page failed, crawl failed")
            return

        async with self._lock:
            if event.job_id == self.root_id:
                self.state.seed_done = True
            if event.status == JobStatus.COMPLETED:
                self.state.succeeded += 1
            elif event.status == JobStatus.FAILED:
                self.state.failed += 1
            else:
                self.state.cancelled += 1

            admitted: List[Tuple[str, int, int]] = []
            if event.succeeded and not self.state.closed:
                admitted = self._admit(event.links, event.base_url or event.url, event.depth)
            self.state.pending -= 1
            finalize = self._should_finalize()

        if admitted:
            logger.debug(f"[{self.root_id}] Admitted {len(admitted)} link(s) from depth {event.depth}")
            await self._submit(admitted)
        if finalize:
            await self._finalize()

    def _admit(
        self,
        links: List[str],
        base_url: Optional[str],
        depth: int
    ) -> List[Tuple[str, int, int]]:
        child_depth = depth + 1
        if child_depth > self.rule.max_depth:
            return []

        admitted = []
        for link in links:
            if self.state.submitted >= self.rule.limit:
                break
            url = normalize_url(
                link, base_url, ignore_query_parameters=self.rule.ignore_query_parameters
            )
            if url is None or url in self._visited:
                continue
            if not passes_strategy(url, self.seed_url, self.rule.strategy):
                continue
            if not passes_path_filters(url, self.rule.include_paths, self.rule.exclude_paths):
                continue

            self._visited.add(url)
            self.state.submitted += 1
            self.state.sequence += 1
            self.state.pending += 1
            admitted.append((url, child_depth, self.state.sequence))
        return admitted

    async def _submit(self, admitted: List[Tuple[str, int, int]]) -> None:
        for url, depth, sequence in admitted:
            if self.state.closed:
                await self._abandon(1)
                continue

            try:
                child_id = await self.submit_child(url, depth, sequence)
            except CrawlfrontError as e:
                logger.warning(f"[{self.root_id}] Could not submit child {url}: {e.message}")
                await self._abandon(1)
                continue

            async with self._lock:
                self._children.append(child_id)
                closed = self.state.closed
            if closed:
                await self.lifecycle.cancel(child_id, from_statuses=QUEUED_STATUSES)

    async def _abandon(self, count: int) -> None:
        async with self._lock:
            self.state.pending -= count
            finalize = self._should_finalize()
        if finalize:
            await self._finalize()

    def _should_finalize(self) -> bool:
        if self.state.pending == 0 and not self.state.closed and not self.state.finalized:
            self.state.finalized = True
            return True
        return False

    async def _finalize(self) -> None:
        is_success = self.state.succeeded > 0
        try:
            await self.lifecycle.finalize_root(self.root_id, is_success)
        except InvalidTransitionError:
            logger.info(f"[{self.root_id}] Crawl root already finished, not finalizing")

    async def close(self) -> None:
        """Stop admitting children and cancel those still waiting in a queue.

        Running children finish; their results are kept and their links are
        ignored.
        """
        async with self._lock:
            if self.state.closed:
                return
            self.state.closed = True
            if not self.state.seed_done:
                # A cancelled root never reports its own unit
                self.state.seed_done = True
                self.state.pending -= 1
            children = list(self._children)

        logger.info(f"[{self.root_id}] Crawl closed, cancelling queued children")
        for child_id in children:
            await self.lifecycle.cancel(child_id, from_statuses=QUEUED_STATUSES)

    async def results(self) -> List[Dict[str, Any]]:
        """Seed result followed by finished children, in submission order."""
        return [row.to_entry() for row in await self.store.get_results(self.root_id)]


class CrawlRegistry:
    """Routes unit outcomes to the orchestrator owning their root.

    Crawl frontiers and search fan-outs register here alike; both expose
    ``root_id``, ``done`` and ``on_unit_finished``.
    """

    def __init__(self):
        self._orchestrators: Dict[str, Any] = {}

    def register(self, orchestrator: Any) -> None:
        self._orchestrators[orchestrator.root_id] = orchestrator

    def unregister(self, root_id: str) -> None:
        self._orchestrators.pop(root_id, None)

    def get(self, root_id: str) -> Optional[Any]:
        return self._orchestrators.get(root_id)

    def __len__(self) -> int:
        return len(self._orchestrators)

    async def on_unit_finished(self, event: UnitFinished) -> None:
        orchestrator = self._orchestrators.get(event.root_id)
        if orchestrator is None:
            logger.debug(f"[{event.root_id}] No active orchestrator for finished unit {event.job_id}")
            return
        await orchestrator.on_unit_finished(event)
        if orchestrator.done:
            self.unregister(event.root_id)
