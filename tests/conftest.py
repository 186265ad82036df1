"""Pytest configuration and shared fixtures."""

import asyncio
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from crawlfront.core.context import OrchestrationContext
from crawlfront.core.engines import RawContent
from crawlfront.core.events import CompletionEventBus
from crawlfront.core.ledger import CreditLedger
from crawlfront.core.lifecycle import JobLifecycleManager
from crawlfront.core.store import JobStore
from crawlfront.database.connection import DatabaseManager
from crawlfront.foundation.config import ConfigManager
from crawlfront.foundation.errors import EngineFetchError, ErrorHandler, FetchErrorKind
from crawlfront.foundation.metrics import MetricsCollector
from crawlfront.services.jobs import JobService

PageSource = Union[str, BaseException, Callable[[str], Union[str, RawContent]]]


def html_page(title: str, links: Optional[List[str]] = None, body: str = "") -> str:
    """Small HTML document with a title and outbound anchors."""
    anchors = "".join(f'<a href="{link}">{link}</a>' for link in links or [])
    return (
        f"<html lang=\"en\"><head><title>{title}</title></head>"
        f"<body><h1>{title}</h1><p>{body or title}</p>{anchors}</body></html>"
    )


class FakeEngine:
    """In-memory fetch engine keyed by URL.

    A page source may be HTML, an exception to raise, or a callable taking
    the URL. Unknown URLs fail like an HTTP 404. URLs listed in ``gates``
    block until their event is set.
    """

    def __init__(self, pages: Optional[Dict[str, PageSource]] = None, default: Optional[str] = None):
        self.pages: Dict[str, PageSource] = dict(pages or {})
        self.default = default
        self.calls: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def hold(self, *urls: str) -> asyncio.Event:
        gate = asyncio.Event()
        for url in urls:
            self.gates[url] = gate
        return gate

    def call_count(self, url: str) -> int:
        return self.calls.count(url)

    async def fetch(self, url: str, options: Dict[str, Any]) -> RawContent:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            gate = self.gates.get(url)
            if gate is not None:
                await gate.wait()
            await asyncio.sleep(0)

            source = self.pages.get(url, self.default)
            if source is None:
                raise EngineFetchError(
                    f"HTTP 404 fetching {url}",
                    kind=FetchErrorKind.HTTP_STATUS,
                    status_code=404,
                    url=url,
                )
            if isinstance(source, BaseException):
                raise source
            if callable(source):
                source = source(url)
            if isinstance(source, RawContent):
                return source
            return RawContent(url=url, content=source)
        finally:
            self.in_flight -= 1


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def config_manager():
    """Configuration with an in-memory database and immediate retries."""
    config_manager = ConfigManager()
    config_manager.set_setting("storage.database_path", ":memory:")
    config_manager.set_setting("engines.http.max_concurrency", 4)
    config_manager.set_setting("engines.http.max_retries", 2)
    config_manager.set_setting("engines.http.retry_base_delay", 0)
    config_manager.set_setting("engines.http.request_timeout", 5)
    config_manager.set_setting("engines.http.idle_timeout", 1)
    config_manager.set_setting("jobs.poll_interval", 0.05)
    return config_manager


@pytest.fixture
def error_handler():
    return ErrorHandler()


@pytest.fixture
def metrics_collector():
    return MetricsCollector()


@pytest.fixture
async def database_manager(config_manager):
    """Initialized in-memory database."""
    db_manager = DatabaseManager(config_manager=config_manager, database_path=":memory:")
    await db_manager.initialize()
    yield db_manager
    await db_manager.close()


@pytest.fixture
def store(database_manager):
    return JobStore(database_manager)


@pytest.fixture
def events():
    return CompletionEventBus()


@pytest.fixture
def lifecycle(store, events, metrics_collector):
    return JobLifecycleManager(store, events, metrics=metrics_collector)


@pytest.fixture
def ledger(database_manager, metrics_collector):
    return CreditLedger(database_manager, metrics=metrics_collector)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
async def make_context(config_manager, fake_engine):
    """Factory for started orchestration contexts; settings override the config."""
    contexts: List[OrchestrationContext] = []

    async def factory(engine: Optional[FakeEngine] = None, **settings: Any) -> OrchestrationContext:
        for key, value in settings.items():
            config_manager.set_setting(key.replace("__", "."), value)
        context = OrchestrationContext(
            config_manager,
            db_manager=DatabaseManager(config_manager, database_path=":memory:"),
            engines={"http": engine or fake_engine},
        )
        await context.start()
        contexts.append(context)
        return context

    yield factory

    for context in contexts:
        _, engine = context.registry.resolve("http")
        for gate in getattr(engine, "gates", {}).values():
            gate.set()
        await context.stop(timeout=5)


@pytest.fixture
async def context(make_context):
    return await make_context()


@pytest.fixture
def service(context):
    return JobService(context)
