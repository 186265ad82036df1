"""Tests for the job lifecycle state machine."""

from datetime import datetime, timedelta

import pytest

from crawlfront.core.extract import Extraction
from crawlfront.core.units import UnitRequest
from crawlfront.database.models import JobKind, JobStatus, QUEUED_STATUSES
from crawlfront.foundation.errors import InvalidTransitionError, JobNotFoundError


async def create(lifecycle, kind=JobKind.SCRAPE, url="https://example.com/", **kwargs):
    record = await lifecycle.create_job(UnitRequest(kind=kind, url=url, **kwargs), "http")
    return record.job_id


async def run(lifecycle, job_id):
    await lifecycle.mark_waiting(job_id)
    await lifecycle.mark_running(job_id)


class TestTransitions:

    async def test_happy_path(self, lifecycle, store):
        job_id = await create(lifecycle)
        assert (await store.get_job_record(job_id)).status == JobStatus.PENDING

        await lifecycle.mark_waiting(job_id)
        assert (await store.get_job_record(job_id)).status == JobStatus.WAITING

        await lifecycle.mark_running(job_id)
        record = await store.get_job_record(job_id)
        assert record.status == JobStatus.RUNNING
        assert record.started_at is not None

        await lifecycle.mark_completed(job_id, Extraction(payload={"text": "hi"}))
        record = await store.get_job_record(job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.is_success is True
        assert (await store.get_result(job_id)).data == {"text": "hi"}

    async def test_retry_returns_running_job_to_waiting(self, lifecycle, store):
        job_id = await create(lifecycle)
        await run(lifecycle, job_id)

        await lifecycle.mark_retrying(job_id, retry_count=1)

        record = await store.get_job_record(job_id)
        assert record.status == JobStatus.WAITING
        assert record.retry_count == 1

    async def test_cannot_skip_states(self, lifecycle):
        job_id = await create(lifecycle)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.mark_running(job_id)
        with pytest.raises(InvalidTransitionError):
            await lifecycle.mark_completed(job_id, Extraction(payload={}))

    @pytest.mark.parametrize("finish", ["completed", "failed", "cancelled"])
    async def test_terminal_states_are_final(self, lifecycle, store, finish):
        job_id = await create(lifecycle)
        await run(lifecycle, job_id)
        if finish == "completed":
            await lifecycle.mark_completed(job_id, Extraction(payload={}))
        elif finish == "failed":
            await lifecycle.mark_failed(job_id, "boom")
        else:
            await lifecycle.cancel(job_id)
        final = (await store.get_job_record(job_id)).status

        for attempt in (
            lambda: lifecycle.mark_waiting(job_id),
            lambda: lifecycle.mark_running(job_id),
            lambda: lifecycle.mark_retrying(job_id, 1),
            lambda: lifecycle.mark_completed(job_id, Extraction(payload={})),
            lambda: lifecycle.mark_failed(job_id, "again"),
        ):
            with pytest.raises(InvalidTransitionError):
                await attempt()

        assert (await store.get_job_record(job_id)).status == final

    async def test_unknown_job(self, lifecycle):
        with pytest.raises(JobNotFoundError):
            await lifecycle.mark_waiting("missing")


class TestCancel:

    async def test_cancel_is_idempotent(self, lifecycle):
        job_id = await create(lifecycle)
        await lifecycle.mark_waiting(job_id)

        first = await lifecycle.cancel(job_id)
        second = await lifecycle.cancel(job_id)

        assert first.previous_status == JobStatus.WAITING
        assert first.new_status == JobStatus.CANCELLED
        assert first.changed
        assert second.previous_status == second.new_status == JobStatus.CANCELLED
        assert not second.changed

    async def test_cancelled_queued_jobs_leave_no_tokens(self, lifecycle):
        for _ in range(50):
            job_id = await create(lifecycle)
            await lifecycle.mark_waiting(job_id)
            await lifecycle.cancel(job_id)

        assert len(lifecycle._cancel_tokens) == 0

    async def test_running_job_keeps_token_until_released(self, lifecycle):
        job_id = await create(lifecycle)
        await run(lifecycle, job_id)

        await lifecycle.cancel(job_id)
        assert lifecycle.is_cancelled(job_id)

        lifecycle.release(job_id)
        assert not lifecycle.is_cancelled(job_id)
        assert len(lifecycle._cancel_tokens) == 0

    async def test_finished_jobs_leave_no_tokens(self, lifecycle):
        done = await create(lifecycle)
        broken = await create(lifecycle)
        for job_id in (done, broken):
            await run(lifecycle, job_id)

        await lifecycle.mark_completed(done, Extraction(payload={}))
        await lifecycle.mark_failed(broken, "boom")

        assert len(lifecycle._cancel_tokens) == 0

    async def test_cancel_completed_job_is_noop(self, lifecycle, store):
        job_id = await create(lifecycle)
        await run(lifecycle, job_id)
        await lifecycle.mark_completed(job_id, Extraction(payload={}))

        outcome = await lifecycle.cancel(job_id)

        assert not outcome.changed
        assert (await store.get_job_record(job_id)).status == JobStatus.COMPLETED

    async def test_cancel_limited_to_queued_statuses(self, lifecycle, store):
        job_id = await create(lifecycle)
        await run(lifecycle, job_id)

        outcome = await lifecycle.cancel(job_id, from_statuses=QUEUED_STATUSES)

        assert not outcome.changed
        assert (await store.get_job_record(job_id)).status == JobStatus.RUNNING

    async def test_late_result_after_cancel_is_rejected(self, lifecycle, store):
        job_id = await create(lifecycle)
        await run(lifecycle, job_id)
        await lifecycle.cancel(job_id)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.mark_completed(job_id, Extraction(payload={"late": True}))

        assert await store.get_result(job_id) is None

    async def test_terminal_event_set_on_cancel(self, lifecycle):
        job_id = await create(lifecycle)
        event = lifecycle.terminal_event(job_id)

        await lifecycle.cancel(job_id)

        assert event.is_set()


class TestCompletionEvents:

    async def test_completion_published_once(self, lifecycle, events):
        received = []

        async def subscriber(event):
            received.append(event)

        events.subscribe(subscriber)
        job_id = await create(lifecycle, account_id="acct-1")
        await run(lifecycle, job_id)

        await lifecycle.mark_completed(job_id, Extraction(payload={}))
        with pytest.raises(InvalidTransitionError):
            await lifecycle.mark_completed(job_id, Extraction(payload={}))
        await events.join()

        assert [event.job_id for event in received] == [job_id]
        assert received[0].account_id == "acct-1"

    async def test_failure_publishes_nothing(self, lifecycle, events):
        received = []

        async def subscriber(event):
            received.append(event)

        events.subscribe(subscriber)
        job_id = await create(lifecycle)
        await run(lifecycle, job_id)

        await lifecycle.mark_failed(job_id, "boom", {"message": "boom"})
        await events.join()

        assert received == []

    async def test_search_event_counts_pages(self, lifecycle, events):
        received = []

        async def subscriber(event):
            received.append(event)

        events.subscribe(subscriber)
        job_id = await create(lifecycle, kind=JobKind.SEARCH, url=None, payload={"query": "q", "pages": 3})
        await run(lifecycle, job_id)
        await lifecycle.mark_completed(job_id, Extraction(payload={"pages": []}))
        await events.join()

        assert received[0].pages == 3


class TestCrawlBookkeeping:

    async def test_child_updates_parent_counters(self, lifecycle, store):
        root_id = await create(lifecycle, kind=JobKind.CRAWL_ROOT)
        child_ok = await create(lifecycle, kind=JobKind.CRAWL_CHILD, url="https://example.com/a",
                                parent_id=root_id, depth=1, sequence=1)
        child_bad = await create(lifecycle, kind=JobKind.CRAWL_CHILD, url="https://example.com/b",
                                 parent_id=root_id, depth=1, sequence=2)
        for job_id in (child_ok, child_bad):
            await run(lifecycle, job_id)

        await lifecycle.mark_completed(child_ok, Extraction(payload={"text": "a"}))
        await lifecycle.mark_failed(child_bad, "HTTP 500")

        root = await store.get_job_record(root_id)
        assert (root.total, root.completed, root.failed) == (3, 1, 1)
        entries = [row.to_entry() for row in await store.get_results(root_id)]
        assert entries == [
            {"url": "https://example.com/a", "status": "success", "data": {"text": "a"}},
            {"url": "https://example.com/b", "status": "failed", "error": "HTTP 500"},
        ]

    async def test_seed_result_keeps_root_running(self, lifecycle, store):
        root_id = await create(lifecycle, kind=JobKind.CRAWL_ROOT)
        await run(lifecycle, root_id)

        await lifecycle.record_seed_result(root_id, Extraction(payload={"text": "seed"}))

        root = await store.get_job_record(root_id)
        assert root.status == JobStatus.RUNNING
        assert root.completed == 1
        with pytest.raises(InvalidTransitionError):
            await lifecycle.mark_completed(root_id, Extraction(payload={}))

        await lifecycle.finalize_root(root_id, is_success=True)
        assert (await store.get_job_record(root_id)).status == JobStatus.COMPLETED

    async def test_unit_listener_receives_child_outcome(self, lifecycle):
        finished = []

        async def listener(event):
            finished.append(event)

        lifecycle.add_unit_listener(listener)
        root_id = await create(lifecycle, kind=JobKind.CRAWL_ROOT)
        child_id = await create(lifecycle, kind=JobKind.CRAWL_CHILD, url="https://example.com/a",
                                parent_id=root_id, depth=1, sequence=1)
        await run(lifecycle, child_id)

        await lifecycle.mark_completed(child_id, Extraction(payload={}, links=["/b"]))

        assert len(finished) == 1
        assert finished[0].root_id == root_id
        assert finished[0].links == ["/b"]
        assert finished[0].succeeded


class TestExpiry:

    async def test_expiry_depends_on_kind(self, lifecycle):
        now = datetime(2024, 1, 1)

        assert lifecycle.expire_at_for(JobKind.SCRAPE, now) == now + timedelta(hours=1)
        assert lifecycle.expire_at_for(JobKind.CRAWL_ROOT, now) == now + timedelta(hours=3)

    async def test_expired_job_not_found(self, store, events):
        from crawlfront.core.lifecycle import JobLifecycleManager

        short_lived = JobLifecycleManager(store, events, expire_seconds={"scrape": -1})
        job_id = await create(short_lived)

        assert await store.get_job_record(job_id) is None
        assert await store.get_job_record(job_id, include_expired=True) is not None
