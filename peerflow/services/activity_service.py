"""Activity lifecycle: creation, cancellation, manual advancement, membership and queries."""

from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.conditions import evaluate
from peerflow.datetime_utils import utcnow
from peerflow.exceptions import (
    ActivityNotFound,
    InsufficientFunds,
    InvalidTransition,
    LedgerError,
    NotEligible,
    StageClosed,
    StaleState,
)
from peerflow.logging_config import bind_activity_context, clear_activity_context, get_logger
from peerflow.models import Activity, ParticipantRole, Stage, SubmittedAction, TransitionLog
from peerflow.registry import TemplateRegistry, get_registry
from peerflow.schemas import (
    ActivityState,
    MembershipResult,
    ParticipantResponse,
    ProgressReport,
    TransitionLogEntry,
    TransitionResult,
)
from peerflow.services.documents import DocumentVersions, SqlDocumentVersions
from peerflow.services.ledger import (
    LedgerService,
    LedgerStatus,
    SqlLedger,
    escrow_account,
    user_account,
)
from peerflow.services.progression import build_strategy
from peerflow.services.snapshot import SnapshotBuilder, describe_progress
from peerflow.services.team import TeamManager
from peerflow.services.transitions import TransitionExecutor, lock_activity

logger = get_logger(__name__)


class ActivityService:
    """Service for activity lifecycle operations."""

    def __init__(
        self,
        session: AsyncSession,
        registry: TemplateRegistry | None = None,
        ledger: LedgerService | None = None,
        documents: DocumentVersions | None = None,
    ):
        self.session = session
        self.registry = registry or get_registry()
        self.ledger = ledger or SqlLedger(session)
        self.documents = documents or SqlDocumentVersions(session)
        self.team = TeamManager(session)
        self.snapshots = SnapshotBuilder(session, self.documents)
        self.executor = TransitionExecutor(session, self.registry, ledger=self.ledger)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_activity(
        self,
        creator_id: UUID,
        template_id: str,
        paper_id: UUID,
    ) -> Activity:
        """Fund a new activity from the creator's balance and open its first stage.

        Raises:
            UnknownTemplate: the template id is not registered.
            NotEligible: the paper has no current version.
            InsufficientFunds: the creator cannot cover the token pool.
        """
        template = await self.registry.fetch(self.session, template_id)
        version = await self.documents.current_version(paper_id)
        if version is None:
            raise NotEligible(f"Paper '{paper_id}' has no current version")

        activity_id = uuid4()
        pool = template.total_token_pool
        if pool > 0:
            status = await self.ledger.debit(
                user_account(creator_id), pool, "activity_funding", activity_id
            )
            if status != LedgerStatus.ok:
                raise InsufficientFunds(user_account(creator_id), pool)
            await self.ledger.credit(escrow_account(activity_id), pool, "activity_funding", activity_id)

        now = utcnow()
        initial = template.stage(template.initial_stage)
        activity = Activity(
            id=activity_id,
            template_id=template.id,
            creator_id=creator_id,
            paper_id=paper_id,
            paper_version=version,
            current_stage=initial.stage.value,
            stage_entered_at=now,
            stage_deadline=now + timedelta(days=initial.deadline_days) if initial.deadline_days else None,
            funding_amount=pool,
            escrow_balance=pool,
            moderation_state="none",
            created_at=now,
            updated_at=now,
        )
        self.session.add(activity)
        await self.session.flush()

        await self.team.add_author(activity)
        self.session.add(
            TransitionLog(
                activity_id=activity.id,
                old_stage=None,
                new_stage=initial.stage.value,
                actor=creator_id,
                reason="activity_created",
                created_at=now,
            )
        )
        await self.session.flush()

        logger.info(
            "activity_created",
            activity_id=str(activity.id),
            template_id=template.id,
            creator_id=str(creator_id),
            funding_amount=pool,
        )
        return activity

    async def cancel_activity(self, activity_id: UUID, actor: UUID) -> TransitionResult:
        """Cancel an activity that has not started: creator only, initial stage, no actions.

        The escrow is refunded to the creator in the same transaction.
        """
        bind_activity_context(activity_id, actor=actor, action="cancel")
        try:
            activity = await lock_activity(self.session, activity_id)
            template = await self.registry.fetch(self.session, activity.template_id)

            if actor != activity.creator_id:
                raise NotEligible("Only the activity creator can cancel it")
            if activity.current_stage != template.initial_stage.value:
                raise StageClosed("cancel", activity.current_stage)

            recorded = await self.session.scalar(
                select(func.count()).select_from(SubmittedAction).where(
                    SubmittedAction.activity_id == activity.id,
                    SubmittedAction.stage == activity.current_stage,
                )
            )
            if recorded:
                raise NotEligible(
                    f"Cannot cancel after {recorded} action(s) have been recorded"
                )

            if template.edge(activity.current_stage, Stage.cancelled) is None:
                logger.error("cancel_edge_missing", template_id=template.id)
                raise InvalidTransition(template.id, activity.current_stage, Stage.cancelled.value)

            refund = activity.escrow_balance
            if refund > 0:
                status = await self.ledger.debit(
                    escrow_account(activity.id), refund, "activity_cancelled", activity.id
                )
                if status != LedgerStatus.ok:
                    raise LedgerError(f"Escrow for activity '{activity.id}' is out of sync")
                await self.ledger.credit(
                    user_account(activity.creator_id), refund, "activity_cancelled", activity.id
                )
                activity.escrow_balance = 0

            result = await self.executor.apply(
                activity, template, activity.current_stage, Stage.cancelled, actor,
                reason="cancelled_by_creator",
            )
            logger.info("activity_cancelled", refund=refund)
            return result
        finally:
            clear_activity_context()

    async def advance_manually(
        self,
        activity_id: UUID,
        expected_from_stage: Stage | str,
        to_stage: Stage | str,
        actor: UUID,
    ) -> TransitionResult:
        """Creator-triggered transition for manually progressed activities.

        The edge's condition must still hold.
        """
        bind_activity_context(activity_id, actor=actor, action="advance")
        try:
            activity = await lock_activity(self.session, activity_id)
            template = await self.registry.fetch(self.session, activity.template_id)

            if template.automatic:
                raise NotEligible("This activity advances automatically")
            if actor != activity.creator_id:
                raise NotEligible("Only the activity creator can advance it")

            from_stage = Stage(expected_from_stage)
            if activity.current_stage != from_stage.value:
                logger.info("transition_stale", actual_stage=activity.current_stage)
                raise StaleState(activity.id, from_stage.value, activity.current_stage)

            edge = template.edge(from_stage, to_stage)
            if edge is None:
                logger.error("invalid_transition", from_stage=from_stage.value, to_stage=str(to_stage))
                raise InvalidTransition(template.id, from_stage.value, Stage(to_stage).value)

            snapshot = await self.snapshots.build(activity, template)
            if not evaluate(edge.condition, snapshot):
                raise NotEligible(
                    f"Condition for '{edge.from_stage.value}' -> '{edge.to_stage.value}' is not met"
                )

            return await self.executor.apply(
                activity, template, from_stage, edge.to_stage, actor, reason="manual_advance"
            )
        finally:
            clear_activity_context()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def invite(
        self,
        activity_id: UUID,
        inviter_id: UUID,
        user_id: UUID,
        role: ParticipantRole | str = ParticipantRole.reviewer,
    ) -> MembershipResult:
        activity = await lock_activity(self.session, activity_id)
        template = await self.registry.fetch(self.session, activity.template_id)
        participant = await self.team.invite(activity, template, inviter_id, user_id, role)
        await self.session.flush()
        return MembershipResult(
            activity_id=activity.id,
            user_id=participant.user_id,
            role=participant.role,
            status=participant.status,
        )

    async def join(self, activity_id: UUID, user_id: UUID) -> MembershipResult:
        """Join as a reviewer; a full team moves the activity on in the same transaction."""
        bind_activity_context(activity_id, actor=user_id, action="join")
        try:
            activity = await lock_activity(self.session, activity_id)
            template = await self.registry.fetch(self.session, activity.template_id)
            participant = await self.team.join(activity, template, user_id)
            await self.session.flush()

            strategy = build_strategy(template, self.session, self.executor, self.snapshots)
            transitions = await strategy.advance(activity, template, user_id)
            return MembershipResult(
                activity_id=activity.id,
                user_id=participant.user_id,
                role=participant.role,
                status=participant.status,
                transitions=transitions,
            )
        finally:
            clear_activity_context()

    async def withdraw(self, activity_id: UUID, user_id: UUID) -> MembershipResult:
        bind_activity_context(activity_id, actor=user_id, action="withdraw")
        try:
            activity = await lock_activity(self.session, activity_id)
            template = await self.registry.fetch(self.session, activity.template_id)
            participant = await self.team.withdraw(activity, template, user_id)
            await self.session.flush()

            strategy = build_strategy(template, self.session, self.executor, self.snapshots)
            transitions = await strategy.advance(activity, template, user_id)
            return MembershipResult(
                activity_id=activity.id,
                user_id=participant.user_id,
                role=participant.role,
                status=participant.status,
                transitions=transitions,
            )
        finally:
            clear_activity_context()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _get(self, activity_id: UUID) -> Activity:
        activity = await self.session.get(Activity, activity_id)
        if activity is None:
            raise ActivityNotFound(activity_id)
        return activity

    async def get_activity_state(self, activity_id: UUID) -> ActivityState:
        activity = await self._get(activity_id)
        participants = await self.team.list_participants(activity_id)
        return ActivityState(
            id=activity.id,
            template_id=activity.template_id,
            creator_id=activity.creator_id,
            paper_id=activity.paper_id,
            paper_version=activity.paper_version,
            current_stage=activity.current_stage,
            stage_entered_at=activity.stage_entered_at,
            stage_deadline=activity.stage_deadline,
            funding_amount=activity.funding_amount,
            escrow_balance=activity.escrow_balance,
            moderation_state=activity.moderation_state,
            completed_at=activity.completed_at,
            participants=[ParticipantResponse.model_validate(p) for p in participants],
        )

    async def get_progress(self, activity_id: UUID) -> ProgressReport:
        activity = await self._get(activity_id)
        template = await self.registry.fetch(self.session, activity.template_id)
        snapshot = await self.snapshots.build(activity, template)
        return describe_progress(snapshot, template)

    async def get_transition_log(self, activity_id: UUID) -> list[TransitionLogEntry]:
        """Transition log for one activity in commit order."""
        await self._get(activity_id)
        result = await self.session.execute(
            select(TransitionLog)
            .where(TransitionLog.activity_id == activity_id)
            .order_by(TransitionLog.id)
        )
        return [TransitionLogEntry.model_validate(row) for row in result.scalars().all()]
