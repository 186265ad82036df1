"""End-to-end orchestration over the httpx engine and a file database."""

import httpx
import pytest

from crawlfront.core.context import OrchestrationContext
from crawlfront.core.engines import HttpxFetchEngine
from crawlfront.database.connection import DatabaseManager
from crawlfront.database.models import JobStatus
from crawlfront.services import JobService

from conftest import FakeEngine, html_page, wait_until

SEED = "https://example.com/"


class MockSite:
    """httpx handler serving a small site with a redirect, a flaky page and a PDF."""

    def __init__(self):
        self.calls = []

    def __call__(self, request):
        path = request.url.path
        self.calls.append(path)

        if path == "/":
            return httpx.Response(200, html=html_page("Home", ["/docs", "/old", "/flaky", "/file.pdf"]))
        if path == "/docs":
            return httpx.Response(200, html=html_page("Docs", ["/docs/a", "https://other.org/"]))
        if path == "/docs/a":
            return httpx.Response(200, html=html_page("Docs A"))
        if path == "/old":
            return httpx.Response(301, headers={"Location": "/docs/moved"})
        if path == "/docs/moved":
            return httpx.Response(200, html=html_page("Moved"))
        if path == "/flaky":
            if self.calls.count("/flaky") == 1:
                return httpx.Response(503)
            return httpx.Response(200, html=html_page("Flaky"))
        if path == "/file.pdf":
            return httpx.Response(200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"})
        return httpx.Response(404)


@pytest.fixture
def database_path(temp_dir):
    return str(temp_dir / "jobs.db")


def open_context(config_manager, database_path, engine):
    return OrchestrationContext(
        config_manager,
        db_manager=DatabaseManager(config_manager, database_path=database_path),
        engines={"http": engine},
    )


@pytest.mark.integration
class TestOrchestrationEndToEnd:

    async def test_crawl_over_http_and_read_back_after_restart(self, config_manager, database_path):
        site = MockSite()
        engine = HttpxFetchEngine(transport=httpx.MockTransport(site))

        async with open_context(config_manager, database_path, engine) as context:
            service = JobService(context)
            root_id = await service.submit("http", "crawl_root", {"url": SEED, "max_depth": 2})
            outcome = await service.await_completion(root_id, timeout=10)
            await context.events.join()
        await engine.close()

        assert outcome.status == JobStatus.COMPLETED
        assert site.calls.count("/flaky") == 2
        assert site.calls.count("/file.pdf") == 1

        # A fresh context on the same database sees the finished crawl
        async with open_context(config_manager, database_path, FakeEngine()) as context:
            service = JobService(context)
            status = await service.get_status(root_id)
            result = await service.get_result(root_id)

        assert status.is_success is True
        assert (status.total, status.completed, status.failed) == (6, 5, 1)
        assert status.credits_used == 5
        assert [(item["url"], item["status"]) for item in result.items] == [
            (SEED, "success"),
            (SEED + "docs", "success"),
            (SEED + "old", "success"),
            (SEED + "flaky", "success"),
            (SEED + "file.pdf", "failed"),
            (SEED + "docs/a", "success"),
        ]
        assert result.items[2]["data"]["url"] == SEED + "docs/moved"

    async def test_cancel_from_another_context_sweeps_queued_children(self, config_manager, database_path):
        children = [SEED + name for name in ("a", "b", "c")]
        engine = FakeEngine({SEED: html_page("Home", ["/a", "/b", "/c"])})
        engine.pages.update({url: html_page(url) for url in children})
        gate = engine.hold(*children)

        config_manager.set_setting("engines.http.max_concurrency", 1)
        owner = open_context(config_manager, database_path, engine)
        await owner.start()
        try:
            root_id = await JobService(owner).submit("http", "crawl_root", {"url": SEED})
            await wait_until(lambda: len(engine.calls) == 2 and engine.in_flight == 1)

            async with open_context(config_manager, database_path, FakeEngine()) as other:
                outcome = await JobService(other).cancel(root_id)

            gate.set()
            await owner.manager.stop_all(timeout=5)
            child_statuses = [
                record.status for record in await owner.store.list_children(root_id)
            ]
            root = await owner.store.get_job_record(root_id)
        finally:
            gate.set()
            await owner.stop(timeout=5)

        assert outcome.changed
        assert root.status == JobStatus.CANCELLED
        assert child_statuses == [JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.CANCELLED]
        assert engine.calls == [SEED, children[0]]
