"""SQLAlchemy models for credit accounts and debits."""

from typing import Optional
from datetime import datetime

from sqlalchemy import String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class CreditAccount(Base):
    """Credit balance for one account."""

    __tablename__ = "credit_accounts"

    uuid: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class CreditDebit(Base):
    """Idempotency record: at most one debit per job id."""

    __tablename__ = "credit_debits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
