"""Integration tests for awarding: ranking, payouts, escrow accounting and rollback."""

from uuid import uuid4

import pytest

from peerflow.database import unit_of_work
from peerflow.exceptions import InsufficientFunds, NotEligible
from peerflow.services.ledger import LedgerStatus, SqlLedger, escrow_account, user_account
from tests.factories import make_allocation


class FailingLedger(SqlLedger):
    """Reports insufficient funds on the Nth debit."""

    def __init__(self, session, fail_on: int):
        super().__init__(session)
        self.fail_on = fail_on
        self.debits = 0

    async def debit(self, account, amount, reason, activity_ref=None):
        self.debits += 1
        if self.debits == self.fail_on:
            return LedgerStatus.insufficient_funds
        return await super().debit(account, amount, reason, activity_ref)


async def _award_tie(harness, activity, reviewers, **handler_kwargs):
    """Two reviewers at 10 points, one at 5. The last call triggers awarding."""
    a, b, c = reviewers
    await harness.award(
        activity.id,
        activity.creator_id,
        [make_allocation(a, "insight"), make_allocation(b, "insight"), make_allocation(c, "minor")],
    )
    await harness.award(activity.id, a, [])
    await harness.award(activity.id, b, [])
    return await harness.award(activity.id, c, [], **handler_kwargs)


class TestTieScenarios:
    @pytest.mark.asyncio
    async def test_dense_ranking_tie(self, harness):
        activity, reviewers = await harness.run_to_awarding("three_reviewer_v1")
        a, b, c = reviewers

        result = await _award_tie(harness, activity, reviewers)

        awarding = result.transitions[0].awarding
        payouts = {p.user_id: (p.points, p.rank, p.tokens) for p in awarding.payouts}
        assert payouts == {a: (10, 1, 7), b: (10, 1, 7), c: (5, 2, 5)}
        assert awarding.total_paid == 19
        assert awarding.platform_credit == 1

    @pytest.mark.asyncio
    async def test_competition_ranking_tie(self, harness):
        activity, reviewers = await harness.run_to_awarding("three_reviewer_competition_v1")
        a, b, c = reviewers

        result = await _award_tie(harness, activity, reviewers)

        awarding = result.transitions[0].awarding
        payouts = {p.user_id: (p.points, p.rank, p.tokens) for p in awarding.payouts}
        assert payouts == {a: (10, 1, 7), b: (10, 1, 7), c: (5, 3, 4)}
        assert awarding.total_paid == 18
        assert awarding.platform_credit == 2
        assert await harness.balance(user_account(c)) == 4


class TestEscrowAccounting:
    @pytest.mark.asyncio
    async def test_payouts_plus_leftover_equal_funding(self, harness):
        activity, reviewers = await harness.run_to_awarding("three_reviewer_v1")
        result = await _award_tie(harness, activity, reviewers)
        awarding = result.transitions[0].awarding

        assert awarding.total_paid + awarding.platform_credit == activity.funding_amount == 20
        paid = sum([await harness.balance(user_account(r)) for r in reviewers])
        assert paid + await harness.balance("platform_pool") == activity.funding_amount
        assert await harness.balance(escrow_account(activity.id)) == 0

        state = await harness.state(activity.id)
        assert state.escrow_balance == 0
        assert state.current_stage == "completed"

    @pytest.mark.asyncio
    async def test_reviewers_without_awards_rank_last(self, harness):
        activity, (a, b, c) = await harness.run_to_awarding("three_reviewer_v1")
        await harness.award(activity.id, activity.creator_id, [make_allocation(a, "insight")])
        await harness.award(activity.id, a, [make_allocation(b, "minor")])
        await harness.award(activity.id, b, [])
        result = await harness.award(activity.id, c, [])

        payouts = {p.user_id: (p.rank, p.tokens) for p in result.transitions[0].awarding.payouts}
        assert payouts == {a: (1, 7), b: (2, 5), c: (3, 4)}


class TestAwardingFailure:
    @pytest.mark.asyncio
    async def test_ledger_failure_rolls_back_everything(self, harness):
        activity, reviewers = await harness.run_to_awarding("three_reviewer_v1")
        a, b, c = reviewers
        await harness.award(
            activity.id,
            activity.creator_id,
            [make_allocation(a, "insight"), make_allocation(b, "minor")],
        )
        await harness.award(activity.id, a, [])
        await harness.award(activity.id, b, [])

        with pytest.raises(InsufficientFunds):
            async with unit_of_work(harness.session_factory) as session:
                ledger = FailingLedger(session, fail_on=2)
                await harness.handlers(session, ledger=ledger).submit_award_allocation(
                    activity.id, c, []
                )

        # First payout, stage change and c's submission were all rolled back
        assert await harness.stage(activity.id) == "award_distribution"
        assert await harness.balance(user_account(a)) == 0
        assert await harness.balance(escrow_account(activity.id)) == 20
        state = await harness.state(activity.id)
        assert state.escrow_balance == 20
        assert all(p.rank is None for p in state.participants)

        # The submission can be retried once the ledger recovers
        result = await harness.award(activity.id, c, [])
        assert [t.to_stage for t in result.transitions] == ["completed"]


class TestShippedTemplateTies:
    """Dense ties on the shipped rank tables can ask for more than the pool."""

    async def _quick_to_awarding(self, harness):
        activity = await harness.create_activity("quick_review_v1")
        reviewers = await harness.join_team(activity.id, 3)
        for reviewer in reviewers:
            await harness.review(activity.id, reviewer)
        for reviewer in reviewers:
            await harness.finalize(activity.id, reviewer)
        return activity, reviewers

    async def _thorough_to_awarding(self, harness):
        activity = await harness.create_activity("thorough_review_v1")
        reviewers = await harness.join_team(activity.id, 4)
        for reviewer in reviewers:
            await harness.review(activity.id, reviewer)
        await harness.respond(activity.id, activity.creator_id)
        for reviewer in reviewers:
            await harness.review(activity.id, reviewer)
        for reviewer in reviewers:
            await harness.finalize(activity.id, reviewer)
        return activity, reviewers

    @pytest.mark.asyncio
    async def test_nobody_awarded_still_completes(self, harness):
        # Three-way tie at rank 1 asks for 4 + 4 + 4 from a pool of 10
        activity, reviewers = await self._quick_to_awarding(harness)
        await harness.award(activity.id, activity.creator_id, [])
        for reviewer in reviewers[:2]:
            await harness.award(activity.id, reviewer, [])
        result = await harness.award(activity.id, reviewers[2], [])

        assert [t.to_stage for t in result.transitions] == ["completed"]
        awarding = result.transitions[0].awarding
        first, second, last = sorted(reviewers, key=str)
        payouts = {p.user_id: (p.rank, p.tokens, p.skipped) for p in awarding.payouts}
        assert payouts == {
            first: (1, 4, False),
            second: (1, 4, False),
            last: (1, 0, True),
        }
        assert awarding.total_paid == 8
        assert awarding.platform_credit == 2

        assert await harness.balance(user_account(first)) == 4
        assert await harness.balance(user_account(last)) == 0
        assert await harness.balance("platform_pool") == 2
        assert await harness.balance(escrow_account(activity.id)) == 0
        state = await harness.state(activity.id)
        assert state.escrow_balance == 0
        assert state.completed_at is not None

    @pytest.mark.asyncio
    async def test_quick_review_top_tie(self, harness):
        activity, (a, b, c) = await self._quick_to_awarding(harness)
        await harness.award(
            activity.id,
            activity.creator_id,
            [make_allocation(a, "helpfulness"), make_allocation(b, "helpfulness")],
        )
        await harness.award(activity.id, a, [])
        await harness.award(activity.id, b, [])
        result = await harness.award(activity.id, c, [])

        awarding = result.transitions[0].awarding
        payouts = {p.user_id: (p.rank, p.tokens, p.skipped) for p in awarding.payouts}
        # Rank 2 is owed 3 but only 2 remain
        assert payouts == {a: (1, 4, False), b: (1, 4, False), c: (2, 0, True)}
        assert awarding.total_paid + awarding.platform_credit == activity.funding_amount == 10
        assert await harness.stage(activity.id) == "completed"

    @pytest.mark.asyncio
    async def test_thorough_review_top_tie(self, harness):
        activity, (a, b, c, d) = await self._thorough_to_awarding(harness)
        await harness.award(
            activity.id,
            activity.creator_id,
            [make_allocation(a, "challenger"), make_allocation(b, "challenger")],
        )
        await harness.award(activity.id, a, [make_allocation(c, "helpfulness")])
        await harness.award(activity.id, b, [])
        await harness.award(activity.id, c, [])
        result = await harness.award(activity.id, d, [])

        awarding = result.transitions[0].awarding
        payouts = {p.user_id: (p.points, p.rank, p.tokens) for p in awarding.payouts}
        assert payouts == {a: (75, 1, 7), b: (75, 1, 7), c: (50, 2, 5), d: (0, 3, 0)}
        assert awarding.total_paid == 19
        assert awarding.platform_credit == 1
        assert await harness.balance(escrow_account(activity.id)) == 0
        assert await harness.stage(activity.id) == "completed"


class TestAllocationRules:
    @pytest.mark.asyncio
    async def test_cannot_award_self(self, harness):
        activity, (a, _, _) = await harness.run_to_awarding()
        with pytest.raises(NotEligible, match="themselves"):
            await harness.award(activity.id, a, [make_allocation(a)])

    @pytest.mark.asyncio
    async def test_author_cannot_receive_awards(self, harness):
        activity, (a, _, _) = await harness.run_to_awarding()
        with pytest.raises(NotEligible, match="only be given to reviewers"):
            await harness.award(activity.id, a, [make_allocation(activity.creator_id)])

    @pytest.mark.asyncio
    async def test_unknown_category(self, harness):
        activity, (a, b, _) = await harness.run_to_awarding()
        with pytest.raises(NotEligible, match="Unknown award category"):
            await harness.award(activity.id, a, [make_allocation(b, "charisma")])

    @pytest.mark.asyncio
    async def test_same_category_twice_to_same_reviewer(self, harness):
        activity, (a, b, _) = await harness.run_to_awarding()
        with pytest.raises(NotEligible, match="twice"):
            await harness.award(activity.id, a, [make_allocation(b), make_allocation(b)])

    @pytest.mark.asyncio
    async def test_outsider_cannot_award(self, harness):
        activity, (a, _, _) = await harness.run_to_awarding()
        with pytest.raises(NotEligible):
            await harness.award(activity.id, uuid4(), [make_allocation(a)])

    @pytest.mark.asyncio
    async def test_rejected_allocation_records_nothing(self, harness):
        activity, (a, b, _) = await harness.run_to_awarding()
        with pytest.raises(NotEligible):
            await harness.award(activity.id, a, [make_allocation(b), make_allocation(a)])
        # a's submission was rolled back, so a can still submit
        result = await harness.award(activity.id, a, [make_allocation(b)])
        assert result.progress.completed == 1
