"""Explicit wiring of stores, queues, lifecycle, crawl frontiers and billing."""

from typing import Dict, Optional

from .crawl import CrawlRegistry
from .engines import EngineKind, EngineRegistry, FetchEngine, HttpxFetchEngine
from .events import CompletionEventBus
from .extract import Extractor, HtmlExtractor
from .ledger import CreditLedger
from .lifecycle import JobLifecycleManager
from .manager import EngineQueueManager
from .store import JobStore
from ..database.connection import DatabaseManager
from ..foundation.config import ConfigManager
from ..foundation.errors import ErrorHandler
from ..foundation.logging import get_logger
from ..foundation.metrics import MetricsCollector

logger = get_logger(__name__)


class OrchestrationContext:
    """Owns one set of collaborating components.

    Nothing here is a process-wide singleton; tests build as many contexts as
    they need, each with its own database, metrics and queues.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        db_manager: Optional[DatabaseManager] = None,
        engines: Optional[Dict[str, FetchEngine]] = None,
        extractor: Optional[Extractor] = None,
        error_handler: Optional[ErrorHandler] = None
    ):
        self.config_manager = config_manager or ConfigManager()
        config = self.config_manager.config

        self.db = db_manager or DatabaseManager(self.config_manager)
        self.store = JobStore(self.db)
        self.events = CompletionEventBus()
        self.metrics = MetricsCollector()
        self.error_handler = error_handler or ErrorHandler()

        self.lifecycle = JobLifecycleManager(
            store=self.store,
            events=self.events,
            metrics=self.metrics,
            expire_seconds=config.jobs.expire_seconds,
            default_expire_seconds=config.jobs.default_expire_seconds,
        )

        self.ledger = CreditLedger(
            self.db, billing=config.billing, metrics=self.metrics
        )
        self.events.subscribe(self.ledger.on_completion)

        self.registry = EngineRegistry()
        self._owned_engines = []
        if engines is None:
            http_engine = HttpxFetchEngine(
                user_agent=config.http.user_agent,
                follow_redirects=config.http.follow_redirects,
            )
            self._owned_engines.append(http_engine)
            engines = {EngineKind.HTTP.value: http_engine}
        for engine_id, engine in engines.items():
            self.registry.register(engine_id, engine)

        engine_settings = {
            kind: self.config_manager.get_engine_settings(kind) for kind in self.registry.kinds()
        }
        self.manager = EngineQueueManager(
            lifecycle=self.lifecycle,
            registry=self.registry,
            extractor=extractor or HtmlExtractor(),
            engine_settings=engine_settings,
            error_handler=self.error_handler,
            metrics=self.metrics,
            poll_interval=config.jobs.poll_interval,
        )

        self.crawls = CrawlRegistry()
        self.lifecycle.add_unit_listener(self.crawls.on_unit_finished)

    async def start(self) -> None:
        """Prepare the database and start every engine's worker pool."""
        await self.db.initialize()
        await self.store.purge_expired()
        self.manager.start_all()
        logger.info(f"Orchestration started with engines: {', '.join(self.manager.engines())}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Drain queues, deliver outstanding completion events and release resources."""
        await self.manager.stop_all(timeout)
        await self.events.join()
        for engine in self._owned_engines:
            await engine.close()
        await self.db.close()
        logger.info("Orchestration stopped")

    async def __aenter__(self) -> "OrchestrationContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
