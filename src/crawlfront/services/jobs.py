"""Submission and query boundary for scrape, search and crawl jobs."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..core.context import OrchestrationContext
from ..core.crawl import CrawlOrchestrator, CrawlRule
from ..core.engines import EngineKind
from ..core.lifecycle import CancelOutcome, is_root_job
from ..core.manager import CompletionOutcome
from ..core.search import SearchFanout
from ..core.units import UnitRequest, new_job_id
from ..database.models import JobKind, JobRecord, JobStatus, QUEUED_STATUSES, ResultStatus
from ..foundation.errors import (
    CrawlfrontError, JobNotFoundError, JobNotReadyError, ValidationError
)
from ..foundation.logging import get_logger
from ..models.requests import CrawlRequest, ScrapeRequest, SearchRequest, parse_request

logger = get_logger(__name__)

MAX_RESULTS_PER_PAGE = 100

REQUEST_MODELS = {
    JobKind.SCRAPE: ScrapeRequest,
    JobKind.SEARCH: SearchRequest,
    JobKind.CRAWL_ROOT: CrawlRequest,
}


@dataclass(frozen=True)
class JobStatusView:
    """What a caller may see about a job. Retries and tracebacks stay internal."""
    job_id: str
    kind: JobKind
    status: JobStatus
    is_success: Optional[bool]
    credits_used: int
    error: Optional[str] = None
    total: Optional[int] = None
    completed: Optional[int] = None
    failed: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "is_success": self.is_success,
            "credits_used": self.credits_used,
            "error": self.error,
        }
        if self.total is not None:
            data.update(total=self.total, completed=self.completed, failed=self.failed)
        return data


@dataclass(frozen=True)
class JobResultSet:
    """One page of a job's result entries; root entries are in submission order.

    ``total`` counts the entries stored so far and ``next_skip`` is the
    ``skip`` of the following page, or None on the last one.
    """
    job_id: str
    status: JobStatus
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    skip: int = 0
    next_skip: Optional[int] = None

    @property
    def is_partial(self) -> bool:
        return not self.status.is_terminal

    def __len__(self) -> int:
        return len(self.items)


class JobService:
    """Validates requests, submits them to engine queues and answers queries."""

    def __init__(self, context: OrchestrationContext):
        self.context = context
        self.manager = context.manager
        self.lifecycle = context.lifecycle
        self.store = context.store
        self.ledger = context.ledger
        self.crawls = context.crawls
        self.crawl_defaults = context.config_manager.config.crawl

    async def submit(
        self,
        engine_id: Union[str, EngineKind],
        kind: Union[str, JobKind],
        payload: Optional[Dict[str, Any]],
        account_id: Optional[str] = None
    ) -> str:
        """Submit a job and return its id without waiting for it to run.

        Raises:
            ValidationError: If the kind or payload is invalid
            UnsupportedEngineError: If no queue serves the engine
            QueueUnavailableError: If the engine's queue has been stopped
            InsufficientBalanceError: If the account has no credits left
            AccountNotFoundError: If the account does not exist
        """
        job_kind = self._parse_kind(kind)
        queue = self.manager.queue(engine_id)
        request = parse_request(REQUEST_MODELS[job_kind], payload)
        await self.ledger.check_available(account_id)

        if job_kind == JobKind.SCRAPE:
            if request.engine is not None and request.engine != queue.name:
                raise ValidationError(
                    f"Payload engine {request.engine} does not match {queue.name}", field="engine"
                )
            unit = UnitRequest(
                kind=JobKind.SCRAPE,
                url=request.url,
                payload=request.model_dump(mode="json"),
                options=request.options.model_dump(),
                account_id=account_id,
            )
            return await self.manager.submit(queue.name, unit)

        if job_kind == JobKind.SEARCH:
            return await self._submit_search(queue.name, request, account_id)

        return await self._submit_crawl(queue.name, request, account_id)

    async def _submit_search(
        self,
        engine: str,
        request: SearchRequest,
        account_id: Optional[str]
    ) -> str:
        unit = UnitRequest(
            kind=JobKind.SEARCH,
            payload=request.model_dump(mode="json"),
            options=request.options.model_dump(),
            account_id=account_id,
        )
        if request.scrape_options is None:
            return await self.manager.submit(engine, unit)

        search_id = new_job_id()
        scrape_options = request.scrape_options.model_dump()

        async def submit_result(url: str, sequence: int) -> str:
            return await self.manager.submit(engine, UnitRequest(
                kind=JobKind.SCRAPE,
                url=url,
                payload={"url": url, "options": scrape_options},
                options=scrape_options,
                parent_id=search_id,
                account_id=account_id,
                sequence=sequence,
            ))

        unit.job_id = search_id
        # Registered first so the search outcome always finds its fan-out
        self.crawls.register(SearchFanout(search_id, submit_result, self.lifecycle))
        try:
            await self.manager.submit(engine, unit)
        except CrawlfrontError:
            self.crawls.unregister(search_id)
            raise
        return search_id

    async def _submit_crawl(
        self,
        engine: str,
        request: CrawlRequest,
        account_id: Optional[str]
    ) -> str:
        defaults = self.crawl_defaults
        rule = CrawlRule(
            max_depth=defaults.max_depth if request.max_depth is None else request.max_depth,
            limit=defaults.limit if request.limit is None else request.limit,
            include_paths=list(request.include_paths),
            exclude_paths=list(request.exclude_paths),
            strategy=request.strategy or defaults.strategy,
            ignore_query_parameters=(
                defaults.ignore_query_parameters
                if request.ignore_query_parameters is None
                else request.ignore_query_parameters
            ),
        )
        scrape_options = request.scrape_options.model_dump()
        root_id = new_job_id()

        async def submit_child(url: str, depth: int, sequence: int) -> str:
            return await self.manager.submit(engine, UnitRequest(
                kind=JobKind.CRAWL_CHILD,
                url=url,
                payload={"scrape_options": scrape_options},
                options=scrape_options,
                parent_id=root_id,
                account_id=account_id,
                depth=depth,
                sequence=sequence,
            ))

        orchestrator = CrawlOrchestrator(root_id, request.url, rule, submit_child, self.lifecycle)
        # Registered first so the seed's outcome always finds its frontier
        self.crawls.register(orchestrator)

        payload = request.model_dump(mode="json")
        payload.update(max_depth=rule.max_depth, limit=rule.limit, strategy=rule.strategy.value)
        try:
            await self.manager.submit(engine, UnitRequest(
                kind=JobKind.CRAWL_ROOT,
                url=orchestrator.seed_url,
                payload=payload,
                options=scrape_options,
                account_id=account_id,
                job_id=root_id,
            ))
        except CrawlfrontError:
            self.crawls.unregister(root_id)
            raise

        logger.info(
            f"[{engine}] [{root_id}] Crawl submitted for {orchestrator.seed_url} "
            f"(max_depth={rule.max_depth}, limit={rule.limit}, strategy={rule.strategy.value})"
        )
        return root_id

    @staticmethod
    def _parse_kind(kind: Union[str, JobKind]) -> JobKind:
        try:
            job_kind = JobKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown job kind: {kind}", field="kind") from None
        if job_kind not in REQUEST_MODELS:
            raise ValidationError(f"Jobs of kind {job_kind.value} cannot be submitted", field="kind")
        return job_kind

    async def _record(self, job_id: str) -> JobRecord:
        record = await self.store.get_job_record(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    async def get_status(self, job_id: str) -> JobStatusView:
        """Get the caller-visible state of a job.

        Raises:
            JobNotFoundError: If the job is unknown or expired
        """
        record = await self._record(job_id)
        is_root = is_root_job(record)
        return JobStatusView(
            job_id=record.job_id,
            kind=record.kind,
            status=record.status,
            is_success=record.is_success if record.is_terminal else None,
            credits_used=record.credits_used,
            error=record.error_message,
            total=record.total if is_root else None,
            completed=record.completed if is_root else None,
            failed=record.failed if is_root else None,
        )

    async def get_result(
        self,
        job_id: str,
        skip: int = 0,
        limit: Optional[int] = MAX_RESULTS_PER_PAGE
    ) -> JobResultSet:
        """Get one page of the results of a job.

        A root job (a crawl, or a search that scrapes its results) returns
        whatever entries have finished so far, in submission order, starting
        at ``skip``. Other jobs have a result only once terminal; a cancelled
        job has none.

        Raises:
            ValidationError: If ``skip`` or ``limit`` is out of range
            JobNotFoundError: If the job is unknown or expired
            JobNotReadyError: If a scrape or plain search job is not terminal yet
        """
        if skip < 0:
            raise ValidationError("skip cannot be negative", field="skip")
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1", field="limit")
        record = await self._record(job_id)

        if is_root_job(record):
            rows = await self.store.get_results(job_id, skip=skip, limit=limit)
            # Counted after the page so the total covers every row returned
            total = await self.store.count_results(job_id)
            end = skip + len(rows)
            return JobResultSet(
                job_id, record.status, [row.to_entry() for row in rows],
                total=total, skip=skip, next_skip=end if end < total else None,
            )

        if not record.is_terminal:
            raise JobNotReadyError(job_id, record.status)

        row = await self.store.get_result(job_id)
        if row is not None:
            items = [row.to_entry()]
        elif record.status == JobStatus.FAILED:
            items = [{
                "url": record.url,
                "status": ResultStatus.FAILED.value,
                "error": record.error_message,
            }]
        else:
            items = []
        return JobResultSet(job_id, record.status, items, total=len(items))

    async def cancel(self, job_id: str) -> CancelOutcome:
        """Cancel a job. Cancelling a root job stops submitting its children.

        Raises:
            JobNotFoundError: If the job is unknown or expired
        """
        record = await self._record(job_id)
        outcome = await self.lifecycle.cancel(job_id)

        if outcome.changed and is_root_job(record) and self.crawls.get(job_id) is None:
            # Root owned by another process: sweep its queued children directly
            for child in await self.store.list_children(job_id, QUEUED_STATUSES):
                await self.lifecycle.cancel(child.job_id, from_statuses=QUEUED_STATUSES, notify=False)
        return outcome

    async def await_completion(
        self,
        job_id: str,
        timeout: Optional[float] = None
    ) -> CompletionOutcome:
        """Wait for a job to reach a terminal state, or for the timeout."""
        return await self.manager.await_completion(job_id, timeout)
