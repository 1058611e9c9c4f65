"""Action-and-progress handlers.

Each handler runs inside the caller's unit of work and, while holding the
activity lock: checks eligibility, records the action, re-reads the counts
(seeing its own write), and takes any transition those counts now allow.
Recording and progressing therefore commit together.
"""

from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.exceptions import AlreadySubmitted, NotEligible, StageClosed
from peerflow.logging_config import bind_activity_context, clear_activity_context, get_logger
from peerflow.models import (
    ActionKind,
    Activity,
    AwardAllocation,
    Participant,
    ParticipantRole,
    SubmittedAction,
)
from peerflow.registry import Template, TemplateRegistry, get_registry
from peerflow.schemas import ActionResult
from peerflow.services.documents import DocumentVersions, SqlDocumentVersions
from peerflow.services.ledger import LedgerService
from peerflow.services.progression import build_strategy
from peerflow.services.snapshot import SnapshotBuilder, describe_progress
from peerflow.services.team import ACTIVE, TeamManager
from peerflow.services.transitions import TransitionExecutor, lock_activity
from peerflow.stages import accepted_action

logger = get_logger(__name__)


class ActionHandlers:
    """Entry points for reviews, author responses, finalization votes and awards."""

    def __init__(
        self,
        session: AsyncSession,
        registry: TemplateRegistry | None = None,
        ledger: LedgerService | None = None,
        documents: DocumentVersions | None = None,
    ):
        self.session = session
        self.registry = registry or get_registry()
        self.team = TeamManager(session)
        self.snapshots = SnapshotBuilder(session, documents or SqlDocumentVersions(session))
        self.executor = TransitionExecutor(session, self.registry, ledger=ledger)

    async def submit_review(self, activity_id: UUID, reviewer_id: UUID, content: str) -> ActionResult:
        return await self._submit(activity_id, reviewer_id, ActionKind.review, content=content)

    async def submit_author_response(
        self, activity_id: UUID, author_id: UUID, content: str
    ) -> ActionResult:
        return await self._submit(activity_id, author_id, ActionKind.author_response, content=content)

    async def cast_finalization_vote(self, activity_id: UUID, participant_id: UUID) -> ActionResult:
        return await self._submit(activity_id, participant_id, ActionKind.finalization_vote)

    async def submit_award_allocation(
        self,
        activity_id: UUID,
        giver_id: UUID,
        allocations: Sequence[dict[str, Any]],
    ) -> ActionResult:
        """Record one giver's awards. Each item has ``receiver_id`` and ``category``."""
        return await self._submit(
            activity_id,
            giver_id,
            ActionKind.award_allocation,
            payload={
                "allocations": [
                    {"receiver_id": str(item["receiver_id"]), "category": item["category"]}
                    for item in allocations
                ]
            },
        )

    async def _submit(
        self,
        activity_id: UUID,
        actor: UUID,
        action_kind: ActionKind,
        content: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> ActionResult:
        bind_activity_context(activity_id, actor=actor, action=action_kind.value)
        try:
            activity = await lock_activity(self.session, activity_id)
            template = await self.registry.fetch(self.session, activity.template_id)

            accepted = accepted_action(activity.current_stage)
            if accepted is None or accepted[0] != action_kind:
                raise StageClosed(f"submit {action_kind.value}", activity.current_stage)
            round_number = accepted[1]

            participant = await self.team.require_actor(activity, actor, action_kind)
            await self._reject_duplicate(activity.id, actor, round_number, action_kind)

            action = SubmittedAction(
                activity_id=activity.id,
                participant_id=actor,
                round_number=round_number,
                action_kind=action_kind.value,
                stage=activity.current_stage,
                content=content,
                payload=payload or {},
            )
            self.session.add(action)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                raise AlreadySubmitted(action_kind.value, round_number) from exc

            if action_kind == ActionKind.award_allocation:
                await self._record_allocations(activity, template, participant, action)

            self.team.lock_in(participant)
            logger.info("action_recorded", action_id=str(action.id), round_number=round_number)

            strategy = build_strategy(template, self.session, self.executor, self.snapshots)
            transitions = await strategy.advance(activity, template, actor)

            snapshot = await self.snapshots.build(activity, template)
            return ActionResult(
                action_id=action.id,
                action_kind=action_kind,
                round_number=round_number,
                transitions=transitions,
                progress=describe_progress(snapshot, template),
            )
        finally:
            clear_activity_context()

    async def _reject_duplicate(
        self,
        activity_id: UUID,
        actor: UUID,
        round_number: int,
        action_kind: ActionKind,
    ) -> None:
        existing = await self.session.scalar(
            select(SubmittedAction.id).where(
                SubmittedAction.activity_id == activity_id,
                SubmittedAction.participant_id == actor,
                SubmittedAction.round_number == round_number,
                SubmittedAction.action_kind == action_kind.value,
            )
        )
        if existing is not None:
            logger.info("duplicate_submission", round_number=round_number)
            raise AlreadySubmitted(action_kind.value, round_number)

    async def _record_allocations(
        self,
        activity: Activity,
        template: Template,
        giver: Participant,
        action: SubmittedAction,
    ) -> None:
        result = await self.session.execute(
            select(Participant.user_id).where(
                Participant.activity_id == activity.id,
                Participant.role == ParticipantRole.reviewer.value,
                Participant.status.in_(ACTIVE),
            )
        )
        reviewers = set(result.scalars().all())
        giver_is_author = giver.role == ParticipantRole.author.value

        seen: set[tuple[UUID, str]] = set()
        for item in action.payload.get("allocations", []):
            receiver_id = UUID(item["receiver_id"])
            category = item["category"]

            if receiver_id == giver.user_id:
                raise NotEligible("Participants cannot award themselves")
            if receiver_id not in reviewers:
                raise NotEligible("Awards can only be given to reviewers of this activity")
            points = template.award_points(category, giver_is_author)
            if points is None:
                raise NotEligible(f"Unknown award category '{category}'")
            if (receiver_id, category) in seen:
                raise NotEligible(f"Award '{category}' given to the same reviewer twice")
            seen.add((receiver_id, category))

            self.session.add(
                AwardAllocation(
                    activity_id=activity.id,
                    action_id=action.id,
                    giver_id=giver.user_id,
                    receiver_id=receiver_id,
                    category=category,
                    points=points,
                )
            )
        await self.session.flush()
