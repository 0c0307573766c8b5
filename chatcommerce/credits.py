"""Prepaid credit balances backed by SQLAlchemy.

Every mutation is a single conditional UPDATE ... RETURNING statement, so the
datastore serializes concurrent deductions for the same user and a balance can
never go negative, no matter how many turns run at once.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, create_engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, declarative_base, mapped_column, sessionmaker

from .errors import CreditAccountNotFound, InsufficientCreditsError

logger = logging.getLogger("chatcommerce.credits")

BASE_TURN_COST = 1
VOICE_SURCHARGE = 4

Base = declarative_base()


class CreditAccount(Base):
    __tablename__ = "credit_accounts"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    credits_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_used_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class CreditsLedger:
    """Atomic credit balance operations per user."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "CreditsLedger":
        """Purpose: Build a ledger on a fresh engine and ensure the table exists.
        Inputs/Outputs: Input is a SQLAlchemy database URL; output is a CreditsLedger.
        Side Effects / State: Creates the engine and the credit_accounts table if missing.
        Dependencies: Uses create_engine, Base.metadata and sessionmaker.
        Failure Modes: Unreachable databases raise SQLAlchemy errors at create_all.
        If Removed: The app cannot gate or bill turns.
        Testing Notes: Use a sqlite file under tmp_path so threads share one database.
        """
        # SQLite needs cross-thread access because wrappers run in worker threads.
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        engine = create_engine(database_url, connect_args=connect_args, future=True)
        Base.metadata.create_all(engine)
        return cls(sessionmaker(bind=engine, expire_on_commit=False))

    @staticmethod
    def cost(voice_enabled: bool = False) -> int:
        # One credit per AI reply, plus the speech synthesis surcharge.
        return BASE_TURN_COST + (VOICE_SURCHARGE if voice_enabled else 0)

    def open_account(self, user_id: str, balance: int = 0) -> bool:
        """Purpose: Create a credit account unless one already exists.
        Inputs/Outputs: Inputs are user_id and an opening balance; output is True when
            this call created the row.
        Side Effects / State: One INSERT; an existing balance is never touched.
        Dependencies: Uses CreditAccount and the session factory.
        Failure Modes: A concurrent insert of the same user loses on the primary key and
            returns False; ValueError for a negative opening balance.
        If Removed: New merchants cannot be credited.
        Testing Notes: Opening twice keeps the first balance.
        """
        # Insert-if-absent; balances only move through deduct and add afterwards.
        if balance < 0:
            raise ValueError("opening balance must be >= 0")
        session: Session = self._session_factory()
        try:
            if session.get(CreditAccount, user_id) is not None:
                return False
            session.add(CreditAccount(user_id=user_id, credits_balance=balance, credits_used_this_month=0))
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("user=%s credits=account_exists", user_id)
            return False
        finally:
            session.close()
        logger.info("user=%s credits=opened balance=%s", user_id, balance)
        return True

    def top_up(self, user_id: str, amount: int) -> int:
        # Create the account at zero if needed, then credit it atomically.
        _check_amount(amount)
        self.open_account(user_id)
        return self.add(user_id, amount)

    def balance(self, user_id: str) -> Optional[int]:
        session: Session = self._session_factory()
        try:
            return session.execute(
                select(CreditAccount.credits_balance).where(CreditAccount.user_id == user_id)
            ).scalar_one_or_none()
        finally:
            session.close()

    def has_balance(self, user_id: str) -> bool:
        """Purpose: Tell whether a user can start a billable turn.
        Inputs/Outputs: Input is user_id; output is True when the balance is positive.
        Side Effects / State: One read query.
        Dependencies: Uses balance().
        Failure Modes: Unknown users return False; database errors propagate.
        If Removed: Turns would run for merchants with nothing left to spend.
        Testing Notes: Balance 0 and missing account both give False.
        """
        # Missing accounts are treated as empty.
        current = self.balance(user_id)
        return bool(current and current > 0)

    def deduct(self, user_id: str, amount: int) -> int:
        """Purpose: Atomically subtract credits when the balance covers the amount.
        Inputs/Outputs: Inputs are user_id and a positive amount; output is the new balance.
        Side Effects / State: One conditional UPDATE ... RETURNING; commits on success.
        Dependencies: Uses CreditAccount and the session factory.
        Failure Modes: Raises InsufficientCreditsError when the balance is too low,
            CreditAccountNotFound for unknown users, ValueError for non-positive amounts.
        If Removed: Billable tools and turns cannot be charged.
        Testing Notes: Two concurrent deduct(6) on balance 10 leave exactly 4.
        """
        # The WHERE clause is the balance check; no row back means it failed.
        _check_amount(amount)
        statement = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, CreditAccount.credits_balance >= amount)
            .values(
                credits_balance=CreditAccount.credits_balance - amount,
                credits_used_this_month=CreditAccount.credits_used_this_month + amount,
            )
            .returning(CreditAccount.credits_balance)
            .execution_options(synchronize_session=False)
        )
        session: Session = self._session_factory()
        try:
            new_balance = session.execute(statement).scalar_one_or_none()
            if new_balance is None:
                session.rollback()
                if session.get(CreditAccount, user_id) is None:
                    raise CreditAccountNotFound(user_id)
                logger.info("user=%s credits=insufficient requested=%s", user_id, amount)
                raise InsufficientCreditsError(user_id, amount)
            session.commit()
        finally:
            session.close()
        logger.info("user=%s credits=deducted amount=%s balance=%s", user_id, amount, new_balance)
        return new_balance

    def add(self, user_id: str, amount: int) -> int:
        _check_amount(amount)
        statement = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(credits_balance=CreditAccount.credits_balance + amount)
            .returning(CreditAccount.credits_balance)
            .execution_options(synchronize_session=False)
        )
        session: Session = self._session_factory()
        try:
            new_balance = session.execute(statement).scalar_one_or_none()
            if new_balance is None:
                session.rollback()
                raise CreditAccountNotFound(user_id)
            session.commit()
        finally:
            session.close()
        logger.info("user=%s credits=added amount=%s balance=%s", user_id, amount, new_balance)
        return new_balance

    async def ahas_balance(self, user_id: str) -> bool:
        return await asyncio.to_thread(self.has_balance, user_id)

    async def adeduct(self, user_id: str, amount: int) -> int:
        return await asyncio.to_thread(self.deduct, user_id, amount)

    async def aadd(self, user_id: str, amount: int) -> int:
        return await asyncio.to_thread(self.add, user_id, amount)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"credit amount must be a positive integer, got {amount!r}")
