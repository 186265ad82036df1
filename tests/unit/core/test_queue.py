"""Tests for engine queues and the queue manager."""

import asyncio

import pytest

from crawlfront.core.engines import EngineRegistry, RawContent
from crawlfront.core.extract import HtmlExtractor
from crawlfront.core.manager import EngineQueueManager
from crawlfront.core.units import UnitRequest
from crawlfront.database.models import JobKind, JobStatus
from crawlfront.foundation.config import EngineSettings
from crawlfront.foundation.errors import (
    ConfigurationError, EngineFetchError, QueueUnavailableError, UnsupportedEngineError
)

from conftest import FakeEngine, html_page, wait_until


@pytest.fixture
async def build_manager(lifecycle):
    """Factory for started queue managers over a single fake http engine."""
    managers = []

    def factory(engine, **settings):
        registry = EngineRegistry()
        registry.register("http", engine)
        settings.setdefault("retry_base_delay", 0)
        settings.setdefault("idle_timeout", 1)
        manager = EngineQueueManager(
            lifecycle,
            registry,
            HtmlExtractor(),
            {"http": EngineSettings(**settings)},
            poll_interval=0.05,
        )
        manager.start_all()
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        await manager.stop_all(timeout=1)


def scrape(url):
    return UnitRequest(kind=JobKind.SCRAPE, url=url)


class TestEngineQueue:

    async def test_parallelism_bounded_by_max_concurrency(self, build_manager):
        urls = [f"https://example.com/{i}" for i in range(6)]
        engine = FakeEngine({url: html_page(url) for url in urls})
        gate = engine.hold(*urls)
        manager = build_manager(engine, max_concurrency=2)

        job_ids = [await manager.submit("http", scrape(url)) for url in urls]
        await wait_until(lambda: engine.in_flight == 2)
        await asyncio.sleep(0.05)
        assert engine.in_flight == 2

        gate.set()
        outcomes = [await manager.await_completion(job_id, timeout=5) for job_id in job_ids]

        assert all(outcome.status == JobStatus.COMPLETED for outcome in outcomes)
        assert engine.max_in_flight == 2

    async def test_pool_starts_with_minimum_workers(self, build_manager):
        manager = build_manager(FakeEngine(), min_concurrency=2, max_concurrency=4)

        stats = manager.queue("http").stats()

        assert stats["workers"] == 2
        assert stats["running"] and stats["accepting"]

    async def test_invalid_pool_settings_rejected(self, build_manager):
        with pytest.raises(ConfigurationError):
            build_manager(FakeEngine(), min_concurrency=3, max_concurrency=2)

    async def test_request_timeout_fails_as_timeout(self, build_manager, store):
        engine = FakeEngine({"https://example.com/slow": html_page("slow")})
        engine.hold("https://example.com/slow")
        manager = build_manager(engine, request_timeout=0.05, max_retries=0)

        job_id = await manager.submit("http", scrape("https://example.com/slow"))
        outcome = await manager.await_completion(job_id, timeout=5)

        assert outcome.status == JobStatus.FAILED
        record = await store.get_job_record(job_id)
        assert "exceeded" in record.error_message
        assert record.error_details["error_details"]["kind"] == "timeout"

    async def test_permanent_extraction_error_is_not_retried(self, build_manager, store):
        url = "https://example.com/report.pdf"
        engine = FakeEngine({url: RawContent(url=url, content="%PDF", content_type="application/pdf")})
        manager = build_manager(engine, max_retries=3)

        job_id = await manager.submit("http", scrape(url))
        outcome = await manager.await_completion(job_id, timeout=5)

        assert outcome.status == JobStatus.FAILED
        assert engine.call_count(url) == 1
        assert (await store.get_job_record(job_id)).retry_count == 0

    async def test_transient_failure_retried_then_completed(self, build_manager, store):
        url = "https://example.com/flaky"
        responses = iter(["   ", html_page("Recovered")])
        engine = FakeEngine({url: lambda _: next(responses)})
        manager = build_manager(engine, max_retries=2)

        job_id = await manager.submit("http", scrape(url))
        outcome = await manager.await_completion(job_id, timeout=5)

        assert outcome.status == JobStatus.COMPLETED
        assert engine.call_count(url) == 2
        assert (await store.get_job_record(job_id)).retry_count == 1
        assert (await store.get_result(job_id)).data["metadata"]["title"] == "Recovered"
        assert len(manager.lifecycle._cancel_tokens) == 0

    async def test_always_failing_unit_runs_max_retries_plus_one(self, build_manager, store):
        url = "https://example.com/down"
        engine = FakeEngine({url: EngineFetchError("connection refused")})
        manager = build_manager(engine, max_retries=2)

        job_id = await manager.submit("http", scrape(url))
        outcome = await manager.await_completion(job_id, timeout=5)

        assert outcome.status == JobStatus.FAILED
        assert engine.call_count(url) == 3
        record = await store.get_job_record(job_id)
        assert record.error_message == "connection refused"
        assert record.error_details["data"]["url"] == url

    async def test_cancelled_unit_is_never_fetched(self, build_manager, lifecycle):
        first, second = "https://example.com/first", "https://example.com/second"
        engine = FakeEngine({first: html_page("1"), second: html_page("2")})
        gate = engine.hold(first)
        manager = build_manager(engine, max_concurrency=1)

        first_id = await manager.submit("http", scrape(first))
        second_id = await manager.submit("http", scrape(second))
        await wait_until(lambda: engine.in_flight == 1)
        await lifecycle.cancel(second_id)
        gate.set()

        assert (await manager.await_completion(first_id, timeout=5)).status == JobStatus.COMPLETED
        assert (await manager.await_completion(second_id, timeout=5)).status == JobStatus.CANCELLED
        await manager.stop_all(timeout=1)
        assert engine.call_count(second) == 0

    async def test_result_of_job_cancelled_mid_fetch_is_discarded(self, build_manager, lifecycle, store):
        url = "https://example.com/page"
        engine = FakeEngine({url: html_page("page")})
        gate = engine.hold(url)
        manager = build_manager(engine)

        job_id = await manager.submit("http", scrape(url))
        await wait_until(lambda: engine.in_flight == 1)
        await lifecycle.cancel(job_id)
        gate.set()
        await manager.stop_all(timeout=1)

        assert (await store.get_job_record(job_id)).status == JobStatus.CANCELLED
        assert await store.get_result(job_id) is None
        assert len(lifecycle._cancel_tokens) == 0

    async def test_search_fetches_every_results_page(self, build_manager, store):
        engine = FakeEngine(default=html_page("Results"))
        manager = build_manager(engine)

        job_id = await manager.submit("http", UnitRequest(
            kind=JobKind.SEARCH, payload={"query": "python", "pages": 2, "lang": "en"}
        ))
        outcome = await manager.await_completion(job_id, timeout=5)

        assert outcome.status == JobStatus.COMPLETED
        assert len(engine.calls) == 2
        assert "start=10" in engine.calls[1]
        data = (await store.get_result(job_id)).data
        assert data["query"] == "python"
        assert len(data["pages"]) == 2

    async def test_search_collects_result_urls_across_pages(self, build_manager, store):
        engine = FakeEngine(default=lambda url: html_page(
            "Results", ["https://a.test/one", "/url?q=https://b.test/two", "/search?q=python&start=10"]
            if "start=0" in url else ["https://a.test/one", "https://c.test/three"]
        ))
        manager = build_manager(engine)

        job_id = await manager.submit("http", UnitRequest(
            kind=JobKind.SEARCH, payload={"query": "python", "pages": 2, "limit": 2}
        ))
        await manager.await_completion(job_id, timeout=5)

        data = (await store.get_result(job_id)).data
        assert data["results"] == ["https://a.test/one", "https://b.test/two"]


class TestEngineQueueManager:

    async def test_unknown_engine_rejected(self, build_manager):
        manager = build_manager(FakeEngine())

        with pytest.raises(UnsupportedEngineError):
            await manager.submit("playwright", scrape("https://example.com/"))
        with pytest.raises(UnsupportedEngineError):
            manager.queue("cheerio")

    async def test_submit_after_stop_rejected(self, build_manager):
        manager = build_manager(FakeEngine(default=html_page("x")))
        await manager.stop_all()

        with pytest.raises(QueueUnavailableError):
            await manager.submit("http", scrape("https://example.com/"))

    async def test_stop_drains_queued_work(self, build_manager, store):
        urls = [f"https://example.com/{i}" for i in range(4)]
        engine = FakeEngine({url: html_page(url) for url in urls})
        manager = build_manager(engine, max_concurrency=1)

        job_ids = [await manager.submit("http", scrape(url)) for url in urls]
        await manager.stop_all(timeout=5)

        statuses = [(await store.get_job_record(job_id)).status for job_id in job_ids]
        assert statuses == [JobStatus.COMPLETED] * 4

    async def test_await_completion_times_out_without_side_effects(self, build_manager):
        url = "https://example.com/held"
        engine = FakeEngine({url: html_page("held")})
        gate = engine.hold(url)
        manager = build_manager(engine)

        job_id = await manager.submit("http", scrape(url))
        outcome = await manager.await_completion(job_id, timeout=0.05)

        assert outcome.timed_out
        assert len(manager.lifecycle._terminal_events) == 0
        assert outcome.status in (JobStatus.WAITING, JobStatus.RUNNING)
        gate.set()
        assert (await manager.await_completion(job_id, timeout=5)).status == JobStatus.COMPLETED

    async def test_status_snapshot(self, build_manager):
        manager = build_manager(FakeEngine(default=html_page("x")))

        job_id = await manager.submit("http", scrape("https://example.com/"))
        await manager.await_completion(job_id, timeout=5)
        info = await manager.status(job_id)

        assert info.kind == JobKind.SCRAPE
        assert info.engine == "http"
        assert info.is_terminal and info.is_success

    async def test_queue_stats_and_fetch_timing(self, build_manager, metrics_collector):
        manager = build_manager(FakeEngine(default=html_page("x")), max_concurrency=3)

        job_id = await manager.submit("http", scrape("https://example.com/"))
        await manager.await_completion(job_id, timeout=5)

        stats = manager.queue_stats()["http"]
        assert stats["running"] and stats["accepting"]
        assert stats["max_concurrency"] == 3
        assert stats["backlog"] == 0
        assert metrics_collector.get_metric_summary("queue.fetch.duration").count == 1
        assert metrics_collector.get_counter_value("jobs.started") == 1
