"""Ledger adapter: debit/credit with an atomic balance check.

The engine only needs two operations. ``SqlLedger`` performs them in the
caller's transaction, so a failed awarding rolls the ledger back too.
"""

import enum
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.logging_config import get_logger
from peerflow.datetime_utils import utcnow
from peerflow.models import LedgerAccount, LedgerEntry

logger = get_logger(__name__)


class LedgerStatus(str, enum.Enum):
    ok = "ok"
    insufficient_funds = "insufficient_funds"


def user_account(user_id: UUID | str) -> str:
    return f"user:{user_id}"


def escrow_account(activity_id: UUID | str) -> str:
    return f"escrow:{activity_id}"


class LedgerService(Protocol):
    async def debit(
        self, account: str, amount: int, reason: str, activity_ref: UUID | None = None
    ) -> LedgerStatus: ...

    async def credit(
        self, account: str, amount: int, reason: str, activity_ref: UUID | None = None
    ) -> LedgerStatus: ...


class SqlLedger:
    """Ledger backed by the ``ledger_accounts`` and ``ledger_entries`` tables."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _lock(self, account: str) -> LedgerAccount | None:
        result = await self.session.execute(
            select(LedgerAccount)
            .where(LedgerAccount.account == account)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def balance(self, account: str) -> int:
        value = await self.session.scalar(
            select(LedgerAccount.balance).where(LedgerAccount.account == account)
        )
        return value or 0

    async def debit(
        self, account: str, amount: int, reason: str, activity_ref: UUID | None = None
    ) -> LedgerStatus:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        if amount == 0:
            return LedgerStatus.ok

        row = await self._lock(account)
        if row is None or row.balance < amount:
            logger.warning(
                "ledger_insufficient_funds",
                account=account,
                amount=amount,
                balance=row.balance if row else 0,
            )
            return LedgerStatus.insufficient_funds

        row.balance -= amount
        row.updated_at = utcnow()
        self.session.add(
            LedgerEntry(account=account, delta=-amount, reason=reason, activity_id=activity_ref)
        )
        await self.session.flush()
        logger.debug("ledger_debit", account=account, amount=amount, reason=reason)
        return LedgerStatus.ok

    async def credit(
        self, account: str, amount: int, reason: str, activity_ref: UUID | None = None
    ) -> LedgerStatus:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        if amount == 0:
            return LedgerStatus.ok

        row = await self._lock(account)
        if row is None:
            row = LedgerAccount(account=account, balance=0)
            self.session.add(row)
        row.balance += amount
        row.updated_at = utcnow()
        self.session.add(
            LedgerEntry(account=account, delta=amount, reason=reason, activity_id=activity_ref)
        )
        await self.session.flush()
        logger.debug("ledger_credit", account=account, amount=amount, reason=reason)
        return LedgerStatus.ok
