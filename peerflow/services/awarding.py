"""Awarding and ranking.

Runs once, inside the transition that enters a template's awarding stage.
Payouts, the platform-pool credit and the stage change commit together or
not at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.config import get_settings
from peerflow.exceptions import InsufficientFunds, LedgerError
from peerflow.logging_config import get_logger
from peerflow.models import Activity, AwardAllocation, Participant, ParticipantRole, RankMethod
from peerflow.registry import Template
from peerflow.schemas import AwardingResult, PayoutResponse
from peerflow.services.ledger import (
    LedgerService,
    LedgerStatus,
    SqlLedger,
    escrow_account,
    user_account,
)
from peerflow.services.team import ACTIVE

logger = get_logger(__name__)


@dataclass(frozen=True)
class Payout:
    user_id: UUID
    points: int
    rank: int
    tokens: int


def rank_participants(
    totals: Mapping[UUID, int],
    method: RankMethod | str = RankMethod.dense,
) -> list[tuple[UUID, int, int]]:
    """Rank participants by points, highest first.

    ``dense``: ties share a rank and the next score takes the next integer
    (10, 10, 5 -> 1, 1, 2). ``competition``: ties share a rank and consume
    the slots they occupy (10, 10, 5 -> 1, 1, 3).

    Returns ``(user_id, points, rank)`` tuples. Order among tied participants
    is by user id so the result is stable.
    """
    method = RankMethod(method)
    ordered = sorted(totals.items(), key=lambda item: (-item[1], str(item[0])))

    ranked: list[tuple[UUID, int, int]] = []
    rank = 0
    previous: int | None = None
    for position, (user_id, points) in enumerate(ordered, start=1):
        if points != previous:
            rank = rank + 1 if method == RankMethod.dense else position
            previous = points
        ranked.append((user_id, points, rank))
    return ranked


def compute_payouts(
    totals: Mapping[UUID, int],
    rank_to_tokens: Sequence[int],
    method: RankMethod | str = RankMethod.dense,
) -> list[Payout]:
    """Map ranks to token amounts. Ranks beyond the table receive zero."""
    payouts = []
    for user_id, points, rank in rank_participants(totals, method):
        tokens = rank_to_tokens[rank - 1] if rank <= len(rank_to_tokens) else 0
        payouts.append(Payout(user_id=user_id, points=points, rank=rank, tokens=tokens))
    return payouts


class AwardingEngine:
    """Aggregates award points, ranks reviewers and pays out escrow."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerService | None = None,
        platform_pool_account: str | None = None,
    ):
        self.session = session
        self.ledger = ledger or SqlLedger(session)
        self.platform_pool_account = (
            platform_pool_account or get_settings().platform_pool_account
        )

    async def point_totals(self, activity_id: UUID) -> dict[UUID, int]:
        """Points received per active reviewer (zero if they received none)."""
        result = await self.session.execute(
            select(Participant.user_id).where(
                Participant.activity_id == activity_id,
                Participant.role == ParticipantRole.reviewer.value,
                Participant.status.in_(ACTIVE),
            )
        )
        totals: dict[UUID, int] = {user_id: 0 for user_id in result.scalars().all()}

        received = await self.session.execute(
            select(AwardAllocation.receiver_id, func.sum(AwardAllocation.points))
            .where(AwardAllocation.activity_id == activity_id)
            .group_by(AwardAllocation.receiver_id)
        )
        for receiver_id, points in received.all():
            if receiver_id in totals:
                totals[receiver_id] = int(points or 0)
        return totals

    async def distribute(self, activity: Activity, template: Template) -> AwardingResult:
        """Rank, pay out, sweep leftover escrow to the platform pool.

        Payouts go in rank order while the escrow covers them. Ties under
        dense ranking can ask for more than the pool; a reward the remaining
        escrow cannot cover is skipped and logged, and the activity still
        completes.

        The caller holds the activity lock. A ledger failure raises and the
        caller's transaction rolls back every payout made so far.

        Raises:
            InsufficientFunds: the ledger refused an escrow debit.
            LedgerError: the ledger refused a credit.
        """
        await self.session.flush()
        totals = await self.point_totals(activity.id)
        payouts = compute_payouts(totals, template.rank_to_tokens, template.rank_method)

        participants = await self.session.execute(
            select(Participant).where(
                Participant.activity_id == activity.id,
                Participant.user_id.in_([p.user_id for p in payouts]),
            )
        )
        by_user = {p.user_id: p for p in participants.scalars().all()}

        escrow = escrow_account(activity.id)
        total_paid = 0
        responses = []
        for payout in payouts:
            by_user[payout.user_id].rank = payout.rank
            paid, skipped = 0, False
            if payout.tokens > activity.escrow_balance:
                logger.warning(
                    "payout_skipped",
                    activity_id=str(activity.id),
                    user_id=str(payout.user_id),
                    rank=payout.rank,
                    tokens=payout.tokens,
                    escrow_balance=activity.escrow_balance,
                )
                skipped = True
            elif payout.tokens > 0:
                await self._move(
                    activity, escrow, user_account(payout.user_id), payout.tokens,
                    reason=f"award_rank_{payout.rank}",
                )
                paid = payout.tokens
                total_paid += paid
            responses.append(
                PayoutResponse(
                    user_id=payout.user_id,
                    points=payout.points,
                    rank=payout.rank,
                    tokens=paid,
                    skipped=skipped,
                )
            )

        leftover = activity.escrow_balance
        if leftover > 0:
            await self._move(
                activity, escrow, self.platform_pool_account, leftover,
                reason="leftover_escrow",
            )

        logger.info(
            "awards_distributed",
            activity_id=str(activity.id),
            ranked=len(payouts),
            total_paid=total_paid,
            platform_credit=leftover,
        )
        return AwardingResult(
            activity_id=activity.id,
            payouts=responses,
            total_paid=total_paid,
            platform_credit=leftover,
        )

    async def _move(
        self,
        activity: Activity,
        source: str,
        destination: str,
        amount: int,
        reason: str,
    ) -> None:
        status = await self.ledger.debit(source, amount, reason, activity.id)
        if status != LedgerStatus.ok:
            logger.warning("escrow_debit_failed", activity_id=str(activity.id), amount=amount)
            raise InsufficientFunds(source, amount)

        status = await self.ledger.credit(destination, amount, reason, activity.id)
        if status != LedgerStatus.ok:
            raise LedgerError(f"Credit of {amount} to '{destination}' failed")

        activity.escrow_balance -= amount
