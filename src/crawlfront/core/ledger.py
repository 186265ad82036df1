"""Credit accounts and exactly-once debits per job id."""

import asyncio
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .events import CompletionEvent
from .lifecycle import is_root_job
from ..database.connection import DatabaseManager
from ..database.models import CreditAccount, CreditDebit, JobRecord
from ..foundation.config import BillingConfig
from ..foundation.errors import (
    AccountNotFoundError, AlreadyDebitedError, CrawlfrontError, InsufficientBalanceError,
    ValidationError
)
from ..foundation.logging import get_logger
from ..foundation.metrics import MetricsCollector

logger = get_logger(__name__)


class CreditLedger:
    """Debits account balances at most once per job id.

    The debit record, the balance update and the job's credit bookkeeping
    are written in one transaction. Without a pre-check a balance may go
    negative.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        billing: Optional[BillingConfig] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.db = db_manager
        self.billing = billing or BillingConfig()
        self.metrics = metrics or MetricsCollector()
        self._lock = asyncio.Lock()

    async def open_account(self, balance: int = 0, account_id: Optional[str] = None) -> str:
        """Create an account and return its id."""
        if balance < 0:
            raise ValidationError("Opening balance cannot be negative", field="balance")
        account_id = account_id or str(uuid.uuid4())
        async with self.db.get_session() as session:
            session.add(CreditAccount(uuid=account_id, balance=balance))
        logger.info(f"Opened account {account_id} with {balance} credits")
        return account_id

    async def balance(self, account_id: str) -> int:
        async with self.db.get_session() as session:
            account = await session.get(CreditAccount, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return account.balance

    async def top_up(self, account_id: str, amount: int) -> int:
        """Add credits to an account and return the new balance."""
        if amount <= 0:
            raise ValidationError("Top-up amount must be positive", field="amount")
        async with self._lock:
            async with self.db.get_session() as session:
                account = await session.get(CreditAccount, account_id)
                if account is None:
                    raise AccountNotFoundError(account_id)
                account.balance += amount
                new_balance = account.balance
        logger.info(f"Topped up account {account_id} by {amount}, balance {new_balance}")
        return new_balance

    async def check_available(self, account_id: Optional[str]) -> None:
        """Submission-time check that the account still has credits.

        Raises:
            InsufficientBalanceError: If the balance is not positive
            AccountNotFoundError: If the account does not exist
        """
        if not self.billing.credits_enabled or account_id is None:
            return
        balance = await self.balance(account_id)
        if balance <= 0:
            raise InsufficientBalanceError(account_id, balance, 1)

    async def debit(
        self,
        account_id: Optional[str],
        job_id: str,
        amount: int,
        pre_check: bool = False
    ) -> Optional[int]:
        """Charge ``amount`` for ``job_id`` exactly once.

        Leaf jobs get ``credits_used`` set; a root job's own page and every
        child add to the root's ``credits_used``. Without an account only
        the job bookkeeping is written.

        Returns:
            The account's new balance, or None when no account is charged

        Raises:
            AlreadyDebitedError: If ``job_id`` was already debited
            InsufficientBalanceError: If ``pre_check`` is set and the balance
                is below ``amount``
            AccountNotFoundError: If the account does not exist
        """
        if amount < 0:
            raise ValidationError("Debit amount cannot be negative", field="amount")

        async with self._lock:
            try:
                async with self.db.get_session() as session:
                    new_balance = await self._apply_debit(
                        session, account_id, job_id, amount, pre_check
                    )
            except IntegrityError as e:
                raise AlreadyDebitedError(job_id) from e

        self.metrics.increment_counter("billing.debited", value=amount)
        logger.debug(f"[{job_id}] Debited {amount} credit(s) from {account_id}")
        return new_balance

    async def _apply_debit(self, session, account_id, job_id, amount, pre_check) -> Optional[int]:
        existing = await session.execute(
            select(CreditDebit.id).where(CreditDebit.job_id == job_id)
        )
        if existing.first() is not None:
            raise AlreadyDebitedError(job_id)

        new_balance = None
        if account_id is not None:
            account = await session.get(CreditAccount, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if pre_check and account.balance < amount:
                raise InsufficientBalanceError(account_id, account.balance, amount)
            account.balance -= amount
            account.last_used_at = datetime.utcnow()
            new_balance = account.balance

        session.add(CreditDebit(job_id=job_id, account_id=account_id, amount=amount))
        await session.flush()

        job = await session.get(JobRecord, job_id)
        if job is not None:
            if is_root_job(job):
                await session.execute(
                    update(JobRecord)
                    .where(JobRecord.job_id == job_id)
                    .values(credits_used=JobRecord.credits_used + amount)
                )
            else:
                await session.execute(
                    update(JobRecord)
                    .where(JobRecord.job_id == job_id, JobRecord.credits_used == 0)
                    .values(credits_used=amount)
                )
            if job.parent_id:
                await session.execute(
                    update(JobRecord)
                    .where(JobRecord.job_id == job.parent_id)
                    .values(credits_used=JobRecord.credits_used + amount)
                )
        return new_balance

    async def debit_account(self, account_id: str, amount: int) -> int:
        """Charge an account without a job idempotency key."""
        async with self._lock:
            async with self.db.get_session() as session:
                account = await session.get(CreditAccount, account_id)
                if account is None:
                    raise AccountNotFoundError(account_id)
                account.balance -= amount
                account.last_used_at = datetime.utcnow()
                return account.balance

    def price(self, event: CompletionEvent) -> int:
        """Credits for one finished unit of work."""
        cost = self.billing.default_cost * max(event.pages, 1)
        options = event.payload.get("options") or event.payload.get("scrape_options") or {}
        formats = options.get("formats") or []
        if "json" in formats or "extract" in formats:
            cost += self.billing.extract_json_credits
        return cost

    async def on_completion(self, event: CompletionEvent) -> None:
        """Completion-event subscriber. Billing errors are logged, never raised."""
        if not self.billing.credits_enabled:
            return
        amount = self.price(event)
        try:
            await self.debit(event.account_id, event.job_id, amount, pre_check=self.billing.pre_check)
        except AlreadyDebitedError:
            self.metrics.increment_counter("billing.rejected")
            logger.warning(f"[{event.job_id}] Duplicate completion, already debited")
        except CrawlfrontError as e:
            self.metrics.increment_counter("billing.rejected")
            logger.error(f"[{event.job_id}] Billing failed: {e.message}")
        except SQLAlchemyError as e:
            self.metrics.increment_counter("billing.rejected")
            logger.error(f"[{event.job_id}] Billing failed: {e}")
