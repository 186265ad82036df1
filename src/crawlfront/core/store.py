"""Persistence for job records and page results."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, not_, select, update, delete, func

from ..database.connection import DatabaseManager
from ..database.models import JobRecord, JobResult, JobStatus, TERMINAL_STATUSES
from ..foundation.logging import get_logger

logger = get_logger(__name__)


class JobStore:
    """Job record and result storage keyed by job id.

    Records returned from the store are detached snapshots; mutate them only
    through the store's update methods.
    """

    COUNTER_COLUMNS = ("credits_used", "total", "completed", "failed")

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def create_job_record(self, record: JobRecord) -> JobRecord:
        """Insert a new job record."""
        async with self.db.get_session() as session:
            session.add(record)
            await session.flush()
            await session.refresh(record)
        return record

    async def get_job_record(
        self,
        job_id: str,
        include_expired: bool = False
    ) -> Optional[JobRecord]:
        """Fetch a job record, or None if unknown or past its expiry."""
        async with self.db.get_session() as session:
            record = await session.get(JobRecord, job_id)
        if record is None:
            return None
        if not include_expired and record.is_expired():
            return None
        return record

    async def update_job_record(
        self,
        job_id: str,
        values: Dict[str, Any],
        from_statuses: Optional[Iterable[JobStatus]] = None,
        result: Optional[JobResult] = None
    ) -> bool:
        """Apply a conditional update to a job record.

        When ``from_statuses`` is given the UPDATE only matches rows whose
        current status is one of them. ``result`` is inserted in the same
        transaction when the update matched.

        Returns:
            True if a row was updated
        """
        stmt = update(JobRecord).where(JobRecord.job_id == job_id)
        if from_statuses is not None:
            stmt = stmt.where(JobRecord.status.in_(list(from_statuses)))
        stmt = stmt.values(**values)

        async with self.db.get_session() as session:
            outcome = await session.execute(stmt)
            updated = outcome.rowcount > 0
            if updated and result is not None:
                session.add(result)
        return updated

    async def increment_counters(self, job_id: str, **deltas: int) -> None:
        """Atomically add to integer counters of a job record."""
        values = {}
        for column, delta in deltas.items():
            if column not in self.COUNTER_COLUMNS:
                raise ValueError(f"Not a counter column: {column}")
            values[column] = getattr(JobRecord, column) + delta
        if not values:
            return
        async with self.db.get_session() as session:
            await session.execute(
                update(JobRecord).where(JobRecord.job_id == job_id).values(**values)
            )

    async def get_result(self, job_id: str) -> Optional[JobResult]:
        """Fetch the page result recorded for a single job."""
        async with self.db.get_session() as session:
            outcome = await session.execute(
                select(JobResult).where(JobResult.job_id == job_id)
            )
            return outcome.scalar_one_or_none()

    async def get_results(
        self,
        root_id: str,
        skip: int = 0,
        limit: Optional[int] = None
    ) -> List[JobResult]:
        """Fetch page results of a root in submission order.

        Rows are ordered by the sequence assigned at submission, so a page
        read while the crawl is running never shifts earlier pages.
        """
        stmt = (
            select(JobResult)
            .where(JobResult.root_id == root_id)
            .order_by(JobResult.sequence, JobResult.id)
            .offset(skip)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.db.get_session() as session:
            outcome = await session.execute(stmt)
            return list(outcome.scalars().all())

    async def count_results(self, root_id: str) -> int:
        async with self.db.get_session() as session:
            outcome = await session.execute(
                select(func.count()).select_from(JobResult).where(JobResult.root_id == root_id)
            )
            return outcome.scalar_one()

    async def list_children(
        self,
        parent_id: str,
        statuses: Optional[Iterable[JobStatus]] = None
    ) -> List[JobRecord]:
        """List the children of a root job in submission order, optionally filtered by status."""
        stmt = select(JobRecord).where(JobRecord.parent_id == parent_id)
        if statuses is not None:
            stmt = stmt.where(JobRecord.status.in_(list(statuses)))
        async with self.db.get_session() as session:
            outcome = await session.execute(stmt.order_by(JobRecord.sequence))
            return list(outcome.scalars().all())

    async def list_jobs(self, limit: int = 20) -> List[JobRecord]:
        """List the most recent top-level jobs."""
        stmt = (
            select(JobRecord)
            .where(JobRecord.parent_id.is_(None))
            .order_by(JobRecord.created_at.desc())
            .limit(limit)
        )
        async with self.db.get_session() as session:
            outcome = await session.execute(stmt)
            return list(outcome.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        async with self.db.get_session() as session:
            outcome = await session.execute(
                select(JobRecord.status, func.count()).group_by(JobRecord.status)
            )
            return {status.value: count for status, count in outcome.all()}

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired terminal jobs and their results.

        A root is purged together with its children, and only once every
        child is expired and terminal too. Children of a root that stays are
        kept.

        Returns:
            Number of job records deleted
        """
        now = now or datetime.utcnow()
        purgeable = and_(
            JobRecord.expire_at < now,
            JobRecord.status.in_(list(TERMINAL_STATUSES))
        )
        async with self.db.get_session() as session:
            outcome = await session.execute(
                select(JobRecord.job_id, JobRecord.parent_id).where(purgeable)
            )
            expired = dict(outcome.all())
            if not expired:
                return 0

            roots = [job_id for job_id, parent_id in expired.items() if parent_id is None]
            blocked = set()
            if roots:
                outcome = await session.execute(
                    select(JobRecord.parent_id)
                    .where(JobRecord.parent_id.in_(roots), not_(purgeable))
                    .distinct()
                )
                blocked = {row[0] for row in outcome.all()}
            purged_roots = set(roots) - blocked

            parents = {parent_id for parent_id in expired.values() if parent_id is not None}
            outcome = await session.execute(
                select(JobRecord.job_id).where(JobRecord.job_id.in_(list(parents)))
            )
            existing_parents = {row[0] for row in outcome.all()}

            job_ids = list(purged_roots) + [
                job_id for job_id, parent_id in expired.items()
                if parent_id is not None
                and (parent_id in purged_roots or parent_id not in existing_parents)
            ]
            if not job_ids:
                return 0
            await session.execute(delete(JobResult).where(JobResult.job_id.in_(job_ids)))
            await session.execute(delete(JobRecord).where(JobRecord.job_id.in_(job_ids)))

        if blocked:
            logger.debug(f"Kept {len(blocked)} expired root(s) with live children")
        logger.info(f"Purged {len(job_ids)} expired jobs")
        return len(job_ids)
