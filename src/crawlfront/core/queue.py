"""Bounded work queue and elastic worker pool for one fetch engine."""

import asyncio
from typing import Any, Dict, List, Optional, Set

from .engines import FetchEngine, RawContent
from .extract import Extraction, Extractor
from .failures import FailureHandler
from .lifecycle import JobLifecycleManager
from .units import WorkUnit
from .urls import build_search_url, search_result_urls
from ..database.models import JobKind
from ..foundation.config import EngineSettings
from ..foundation.errors import (
    CrawlfrontError, EngineFetchError, ErrorHandler, ExtractionError, FetchErrorKind,
    InvalidTransitionError, QueueUnavailableError, RetryConfig
)
from ..foundation.logging import get_logger, job_prefix
from ..foundation.metrics import MetricsCollector

logger = get_logger(__name__)


class EngineQueue:
    """Holds pending units for one engine and runs them with bounded parallelism.

    The pool keeps ``min_concurrency`` workers alive and grows towards
    ``max_concurrency`` while the backlog exceeds the number of idle workers.
    Workers above the minimum exit after ``idle_timeout`` seconds without work.
    """

    def __init__(
        self,
        name: str,
        engine: FetchEngine,
        extractor: Extractor,
        lifecycle: JobLifecycleManager,
        settings: EngineSettings,
        error_handler: Optional[ErrorHandler] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.settings = settings.validate_settings(name)
        self.name = name
        self.engine = engine
        self.extractor = extractor
        self.lifecycle = lifecycle
        self.metrics = metrics or lifecycle.metrics

        self.failure_handler = FailureHandler(
            lifecycle=lifecycle,
            requeue=self._requeue,
            max_retries=settings.max_retries,
            retry_config=RetryConfig(
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            error_handler=error_handler,
            metrics=self.metrics,
            queue_name=name,
        )

        self._queue: "asyncio.Queue[WorkUnit]" = asyncio.Queue()
        self._workers: Set[asyncio.Task] = set()
        self._idle = 0
        self._in_flight = 0
        self._running = False
        self._stopped = False
        self._worker_seq = 0

    @property
    def min_concurrency(self) -> int:
        return self.settings.min_concurrency

    @property
    def max_concurrency(self) -> int:
        return self.settings.max_concurrency

    @property
    def accepting(self) -> bool:
        return not self._stopped

    def start(self) -> None:
        """Start the worker pool. Calling start on a running queue does nothing."""
        if self._running:
            return
        if self._stopped:
            raise QueueUnavailableError(self.name)
        self._running = True
        for _ in range(self.min_concurrency):
            self._spawn_worker(persistent=True)
        self._scale_up()
        logger.info(f"[{self.name}] Started with {self.min_concurrency} worker(s)")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work and drain queued and in-flight units.

        Args:
            timeout: Give up draining after this many seconds and cancel the
                remaining workers
        """
        if self._stopped:
            return
        self._stopped = True

        if self._running and (self._queue.qsize() or self._in_flight):
            logger.info(
                f"[{self.name}] Draining {self._queue.qsize()} queued and "
                f"{self._in_flight} in-flight unit(s)"
            )
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[{self.name}] Drain timed out after {timeout}s with "
                    f"{self._queue.qsize()} queued and {self._in_flight} in-flight unit(s)"
                )
        elif self._queue.qsize():
            logger.warning(f"[{self.name}] Stopped before start with {self._queue.qsize()} queued unit(s)")

        workers = list(self._workers)
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._running = False
        logger.info(f"[{self.name}] Stopped")

    def enqueue(self, unit: WorkUnit) -> None:
        """Admit a unit of work.

        Raises:
            QueueUnavailableError: If the queue has been stopped
        """
        if self._stopped:
            raise QueueUnavailableError(self.name)
        self._queue.put_nowait(unit)
        self._scale_up()

    def _requeue(self, unit: WorkUnit) -> None:
        # Retries belong to already-admitted work and bypass the stopped check
        self._queue.put_nowait(unit)
        self._scale_up()

    def stats(self) -> Dict[str, Any]:
        return {
            "engine": self.name,
            "running": self._running,
            "accepting": self.accepting,
            "backlog": self._queue.qsize(),
            "in_flight": self._in_flight,
            "workers": len(self._workers),
            "idle_workers": self._idle,
            "min_concurrency": self.min_concurrency,
            "max_concurrency": self.max_concurrency,
        }

    def _scale_up(self) -> None:
        if not self._running:
            return
        while len(self._workers) < self.max_concurrency and self._queue.qsize() > self._idle:
            self._spawn_worker(persistent=False)

    def _spawn_worker(self, persistent: bool) -> None:
        self._worker_seq += 1
        name = f"{self.name}-worker-{self._worker_seq}"
        task = asyncio.create_task(self._worker_loop(name, persistent), name=name)
        self._workers.add(task)
        # A fresh worker counts as idle until it starts waiting
        self._idle += 1
        task.add_done_callback(self._workers.discard)

    async def _worker_loop(self, worker_name: str, persistent: bool) -> None:
        logger.debug(f"[{self.name}] Worker {worker_name} started")
        try:
            while True:
                try:
                    if persistent:
                        unit = await self._queue.get()
                    else:
                        unit = await asyncio.wait_for(
                            self._queue.get(), self.settings.idle_timeout
                        )
                except asyncio.TimeoutError:
                    logger.debug(f"[{self.name}] Worker {worker_name} idle, exiting")
                    return

                self._idle -= 1
                self._in_flight += 1
                try:
                    await self._process_unit(unit)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(
                        f"{job_prefix(self.name, unit.job_id)} Worker {worker_name} error: {e}"
                    )
                finally:
                    self._in_flight -= 1
                    self._idle += 1
                    self._queue.task_done()
        finally:
            self._idle -= 1
            logger.debug(f"[{self.name}] Worker {worker_name} stopped")

    async def _process_unit(self, unit: WorkUnit) -> None:
        requeued = False
        try:
            requeued = await self._run_unit(unit)
        finally:
            if not requeued:
                self.lifecycle.release(unit.job_id)

    async def _run_unit(self, unit: WorkUnit) -> bool:
        """Run one attempt. Returns True if the unit went back to the queue."""
        prefix = job_prefix(self.name, unit.job_id)

        try:
            await self.lifecycle.mark_running(unit.job_id)
        except InvalidTransitionError:
            logger.info(f"{prefix} Skipping unit, job is no longer queued")
            return False

        self.metrics.increment_counter("jobs.started", tags={"engine": self.name})
        logger.info(f"{prefix} Processing {unit.kind.value} (attempt {unit.retry_count + 1})")

        try:
            with self.metrics.timer("queue.fetch", tags={"engine": self.name}):
                extraction = await self._execute(unit)
        except CrawlfrontError as error:
            return await self.failure_handler.handle_failed_task(unit, error)

        if self.lifecycle.is_cancelled(unit.job_id):
            logger.info(f"{prefix} Discarding result of cancelled job")
            return False

        try:
            await self.lifecycle.complete_unit(unit, extraction)
        except InvalidTransitionError:
            logger.info(f"{prefix} Discarding late result")
            return False
        logger.info(f"{prefix} Completed")
        return False

    async def _execute(self, unit: WorkUnit) -> Extraction:
        if unit.kind == JobKind.SEARCH:
            return await self._execute_search(unit)
        raw = await self._fetch(unit.url, unit.options)
        return self._extract(raw, unit.options)

    async def _execute_search(self, unit: WorkUnit) -> Extraction:
        query = unit.payload["query"]
        lang = unit.payload.get("lang", "en")
        offset = int(unit.payload.get("offset") or 0)
        limit = unit.payload.get("limit")

        pages = []
        results: List[str] = []
        for page in range(int(unit.payload.get("pages", 1))):
            raw = await self._fetch(build_search_url(query, page, lang, offset), unit.options)
            extraction = self._extract(raw, unit.options)
            pages.append(extraction.payload)
            for url in search_result_urls(extraction.links, extraction.base_url or raw.url):
                if url not in results:
                    results.append(url)
        if limit is not None:
            results = results[:int(limit)]
        return Extraction(
            payload={"query": query, "pages": pages, "results": results},
            links=results,
        )

    async def _fetch(self, url: str, options: Dict[str, Any]) -> RawContent:
        try:
            return await asyncio.wait_for(
                self.engine.fetch(url, options), self.settings.request_timeout
            )
        except CrawlfrontError:
            raise
        except asyncio.TimeoutError as e:
            raise EngineFetchError(
                f"Fetch exceeded {self.settings.request_timeout}s: {url}",
                kind=FetchErrorKind.TIMEOUT, url=url
            ) from e
        except Exception as e:
            raise EngineFetchError(
                f"Engine {self.name} failed fetching {url}: {e}",
                kind=FetchErrorKind.NETWORK, url=url
            ) from e

    def _extract(self, raw: RawContent, options: Dict[str, Any]) -> Extraction:
        try:
            return self.extractor.extract(raw, options)
        except CrawlfrontError:
            raise
        except Exception as e:
            raise ExtractionError(f"Extraction failed for {raw.url}: {e}", step="extract") from e
