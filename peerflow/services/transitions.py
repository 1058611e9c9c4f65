"""Atomic stage transitions.

The activity row lock taken by ``lock_activity`` is the only concurrency
boundary in the engine. Everything that reads counts and then moves an
activity between stages happens while that lock is held, inside the
caller's transaction.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.exceptions import ActivityNotFound, InvalidTransition, StaleState
from peerflow.logging_config import get_logger
from peerflow.datetime_utils import utcnow
from peerflow.models import Activity, Stage, TransitionLog
from peerflow.registry import Template, TemplateRegistry, get_registry
from peerflow.schemas import TransitionResult
from peerflow.services.awarding import AwardingEngine
from peerflow.services.ledger import LedgerService

logger = get_logger(__name__)


async def lock_activity(session: AsyncSession, activity_id: UUID) -> Activity:
    """Load an activity with an exclusive row lock held until commit."""
    result = await session.execute(
        select(Activity)
        .where(Activity.id == activity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    activity = result.scalar_one_or_none()
    if activity is None:
        raise ActivityNotFound(activity_id)
    return activity


class TransitionExecutor:
    """Moves an activity along one declared edge of its template."""

    def __init__(
        self,
        session: AsyncSession,
        registry: TemplateRegistry | None = None,
        ledger: LedgerService | None = None,
        awarding: AwardingEngine | None = None,
    ):
        self.session = session
        self.registry = registry or get_registry()
        self.awarding = awarding or AwardingEngine(session, ledger=ledger)

    async def transition(
        self,
        activity_id: UUID,
        expected_from_stage: Stage | str,
        to_stage: Stage | str,
        actor: UUID | None,
        reason: str = "manual",
    ) -> TransitionResult:
        """Lock the activity and apply one transition.

        Raises:
            ActivityNotFound: unknown activity.
            StaleState: the activity is no longer in ``expected_from_stage``.
            InvalidTransition: the edge is not declared by the template.
            InsufficientFunds, LedgerError: awarding failed; nothing is applied.
        """
        activity = await lock_activity(self.session, activity_id)
        template = await self.registry.fetch(self.session, activity.template_id)
        return await self.apply(activity, template, expected_from_stage, to_stage, actor, reason)

    async def apply(
        self,
        activity: Activity,
        template: Template,
        expected_from_stage: Stage | str,
        to_stage: Stage | str,
        actor: UUID | None,
        reason: str,
    ) -> TransitionResult:
        """Apply a transition to an activity the caller has already locked."""
        from_stage = Stage(expected_from_stage)
        to_stage = Stage(to_stage)

        if activity.current_stage != from_stage.value:
            logger.info(
                "transition_stale",
                activity_id=str(activity.id),
                expected_stage=from_stage.value,
                actual_stage=activity.current_stage,
            )
            raise StaleState(activity.id, from_stage.value, activity.current_stage)

        if template.edge(from_stage, to_stage) is None:
            logger.error(
                "invalid_transition",
                activity_id=str(activity.id),
                template_id=template.id,
                from_stage=from_stage.value,
                to_stage=to_stage.value,
            )
            raise InvalidTransition(template.id, from_stage.value, to_stage.value)

        target = template.stage(to_stage)
        now = utcnow()
        activity.current_stage = to_stage.value
        activity.stage_entered_at = now
        activity.stage_deadline = (
            now + timedelta(days=target.deadline_days) if target.deadline_days else None
        )
        activity.updated_at = now

        entry = TransitionLog(
            activity_id=activity.id,
            old_stage=from_stage.value,
            new_stage=to_stage.value,
            actor=actor,
            reason=reason,
            created_at=now,
        )
        self.session.add(entry)

        awarding = None
        if target.awards_on_entry:
            awarding = await self.awarding.distribute(activity, template)
        if target.is_terminal:
            activity.completed_at = now

        await self.session.flush()

        logger.info(
            "stage_transitioned",
            activity_id=str(activity.id),
            from_stage=from_stage.value,
            to_stage=to_stage.value,
            reason=reason,
        )
        return TransitionResult(
            activity_id=activity.id,
            from_stage=from_stage.value,
            to_stage=to_stage.value,
            actor=actor,
            reason=reason,
            log_id=entry.id,
            transitioned_at=now,
            stage_deadline=activity.stage_deadline,
            awarding=awarding,
        )
