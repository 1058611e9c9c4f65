"""Team membership and lock-in.

Status lifecycle per participant::

    invited -> joined -> locked_in
    invited -> removed
    joined  -> removed

``locked_in`` is a one-way ratchet: it is entered on the participant's
first accepted action and no non-admin operation leaves it.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.datetime_utils import utcnow
from peerflow.exceptions import NotEligible, StageClosed
from peerflow.logging_config import get_logger
from peerflow.models import (
    ActionKind,
    Activity,
    ActivityKind,
    Participant,
    ParticipantRole,
    ParticipantStatus,
)
from peerflow.registry import Template

logger = get_logger(__name__)


VALID_TRANSITIONS: dict[str, list[str]] = {
    "invited": ["joined", "removed"],
    "joined": ["locked_in", "removed"],
    "locked_in": [],    # ratchet
    "removed": [],      # terminal
}

ACTIVE = (ParticipantStatus.joined.value, ParticipantStatus.locked_in.value)

# Roles allowed to submit each action kind
ACTION_ROLES: dict[ActionKind, tuple[str, ...]] = {
    ActionKind.review: (ParticipantRole.reviewer.value,),
    ActionKind.author_response: (ParticipantRole.author.value,),
    ActionKind.finalization_vote: (ParticipantRole.reviewer.value,),
    ActionKind.award_allocation: (
        ParticipantRole.author.value,
        ParticipantRole.reviewer.value,
    ),
}


def can_transition(current: str, target: str) -> bool:
    """Check if a participant status transition is valid."""
    return target in VALID_TRANSITIONS.get(current, [])


def validate_transition(current: str, target: str) -> None:
    """Validate a participant status transition, raising NotEligible if invalid."""
    if not can_transition(current, target):
        raise NotEligible(
            f"Cannot move participant from '{current}' to '{target}'. "
            f"Allowed from '{current}': {VALID_TRANSITIONS.get(current, [])}"
        )


class TeamManager:
    """Membership checks and status changes for one activity at a time.

    Callers hold the activity row lock, so capacity checks and status
    changes cannot interleave with another request for the same activity.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_participant(self, activity_id: UUID, user_id: UUID) -> Participant | None:
        result = await self.session.execute(
            select(Participant).where(
                Participant.activity_id == activity_id,
                Participant.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def active_reviewer_count(self, activity_id: UUID) -> int:
        count = await self.session.scalar(
            select(func.count()).select_from(Participant).where(
                Participant.activity_id == activity_id,
                Participant.role == ParticipantRole.reviewer.value,
                Participant.status.in_(ACTIVE),
            )
        )
        return count or 0

    async def list_participants(self, activity_id: UUID) -> list[Participant]:
        result = await self.session.execute(
            select(Participant)
            .where(Participant.activity_id == activity_id)
            .order_by(Participant.created_at, Participant.user_id)
        )
        return list(result.scalars().all())

    async def add_author(self, activity: Activity) -> Participant:
        now = utcnow()
        participant = Participant(
            activity_id=activity.id,
            user_id=activity.creator_id,
            role=ParticipantRole.author.value,
            status=ParticipantStatus.joined.value,
            joined_at=now,
            created_at=now,
        )
        self.session.add(participant)
        return participant

    def _require_open(self, activity: Activity, template: Template, action: str) -> None:
        if activity.current_stage != template.initial_stage.value:
            raise StageClosed(action, activity.current_stage)

    async def invite(
        self,
        activity: Activity,
        template: Template,
        inviter_id: UUID,
        user_id: UUID,
        role: ParticipantRole | str = ParticipantRole.reviewer,
    ) -> Participant:
        """Invite a reviewer. Only the creator invites, only while the team is forming."""
        self._require_open(activity, template, "invite")
        if ParticipantRole(role) != ParticipantRole.reviewer:
            raise NotEligible("An activity has exactly one author; only reviewers can be invited")
        if inviter_id != activity.creator_id:
            raise NotEligible("Only the activity creator can invite participants")
        if user_id == activity.creator_id:
            raise NotEligible("The author cannot review their own paper")
        if await self.get_participant(activity.id, user_id) is not None:
            raise NotEligible("User is already part of this activity")

        participant = Participant(
            activity_id=activity.id,
            user_id=user_id,
            role=ParticipantRole.reviewer.value,
            status=ParticipantStatus.invited.value,
            invited_by=inviter_id,
            created_at=utcnow(),
        )
        self.session.add(participant)
        logger.info("participant_invited", activity_id=str(activity.id), user_id=str(user_id))
        return participant

    async def join(self, activity: Activity, template: Template, user_id: UUID) -> Participant:
        """Join as a reviewer.

        Peer-review activities accept anyone from the feed; journal clubs
        only accept invited users.
        """
        self._require_open(activity, template, "join")
        if user_id == activity.creator_id:
            raise NotEligible("The author cannot review their own paper")

        participant = await self.get_participant(activity.id, user_id)
        if participant is not None and participant.status != ParticipantStatus.invited.value:
            raise NotEligible(f"User is already {participant.status} in this activity")
        if participant is None and template.activity_kind == ActivityKind.journal_club:
            raise NotEligible("Journal clubs are invitation only")

        if await self.active_reviewer_count(activity.id) >= template.participant_count:
            raise NotEligible("The review team is full")

        now = utcnow()
        if participant is None:
            participant = Participant(
                activity_id=activity.id,
                user_id=user_id,
                role=ParticipantRole.reviewer.value,
                status=ParticipantStatus.joined.value,
                created_at=now,
            )
            self.session.add(participant)
        else:
            validate_transition(participant.status, ParticipantStatus.joined.value)
            participant.status = ParticipantStatus.joined.value
        participant.joined_at = now

        logger.info("participant_joined", activity_id=str(activity.id), user_id=str(user_id))
        return participant

    async def withdraw(self, activity: Activity, template: Template, user_id: UUID) -> Participant:
        """Leave an activity. Only in the initial stage, and only before locking in."""
        self._require_open(activity, template, "withdraw")

        participant = await self.get_participant(activity.id, user_id)
        if participant is None or participant.role != ParticipantRole.reviewer.value:
            raise NotEligible("Only reviewers can withdraw from an activity")
        if participant.status == ParticipantStatus.locked_in.value:
            raise NotEligible("Locked-in participants cannot withdraw")

        validate_transition(participant.status, ParticipantStatus.removed.value)
        participant.status = ParticipantStatus.removed.value
        participant.removed_at = utcnow()
        logger.info("participant_withdrew", activity_id=str(activity.id), user_id=str(user_id))
        return participant

    async def require_actor(
        self,
        activity: Activity,
        user_id: UUID,
        action_kind: ActionKind,
    ) -> Participant:
        """Return the active participant allowed to submit ``action_kind``."""
        participant = await self.get_participant(activity.id, user_id)
        if participant is None or participant.status not in ACTIVE:
            raise NotEligible("User is not an active participant of this activity")
        if participant.role not in ACTION_ROLES[action_kind]:
            raise NotEligible(
                f"A participant with role '{participant.role}' cannot submit {action_kind.value}"
            )
        return participant

    def lock_in(self, participant: Participant) -> bool:
        """Lock a participant in on their first accepted action.

        Returns True if the status changed.
        """
        if participant.status == ParticipantStatus.locked_in.value:
            return False
        validate_transition(participant.status, ParticipantStatus.locked_in.value)
        participant.status = ParticipantStatus.locked_in.value
        participant.locked_in_at = utcnow()
        logger.info(
            "participant_locked_in",
            activity_id=str(participant.activity_id),
            user_id=str(participant.user_id),
        )
        return True
