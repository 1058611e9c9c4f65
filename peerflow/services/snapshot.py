"""Build condition snapshots and progress tallies for an activity."""

from datetime import datetime

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.conditions import ActivitySnapshot
from peerflow.datetime_utils import ensure_utc, utcnow
from peerflow.models import (
    ActionKind,
    Activity,
    Participant,
    ParticipantRole,
    ParticipantStatus,
    Stage,
    SubmittedAction,
)
from peerflow.registry import Template
from peerflow.schemas import ProgressReport
from peerflow.services.documents import DocumentVersions
from peerflow.services.team import ACTIVE
from peerflow.stages import accepted_action


class SnapshotBuilder:
    """Reads live counts inside the caller's transaction."""

    def __init__(self, session: AsyncSession, documents: DocumentVersions | None = None):
        self.session = session
        self.documents = documents

    async def build(
        self,
        activity: Activity,
        template: Template,
        now: datetime | None = None,
    ) -> ActivitySnapshot:
        # Pending inserts must be visible to the counts below
        await self.session.flush()

        membership = await self.session.execute(
            select(Participant.role, Participant.status, func.count())
            .where(Participant.activity_id == activity.id)
            .group_by(Participant.role, Participant.status)
        )
        reviewers_joined = reviewers_locked_in = active_participants = 0
        for role, status, count in membership.all():
            if status not in ACTIVE:
                continue
            active_participants += count
            if role == ParticipantRole.reviewer.value:
                reviewers_joined += count
                if status == ParticipantStatus.locked_in.value:
                    reviewers_locked_in += count

        actions = await self.session.execute(
            select(
                SubmittedAction.action_kind,
                SubmittedAction.round_number,
                func.count(distinct(SubmittedAction.participant_id)),
            )
            .where(SubmittedAction.activity_id == activity.id)
            .group_by(SubmittedAction.action_kind, SubmittedAction.round_number)
        )
        reviews: dict[int, int] = {}
        responses: dict[int, int] = {}
        finalization_votes = award_submissions = 0
        for kind, round_number, count in actions.all():
            if kind == ActionKind.review.value:
                reviews[round_number] = count
            elif kind == ActionKind.author_response.value:
                responses[round_number] = count
            elif kind == ActionKind.finalization_vote.value:
                finalization_votes += count
            elif kind == ActionKind.award_allocation.value:
                award_submissions += count

        current_version = None
        if self.documents is not None:
            current_version = await self.documents.current_version(activity.paper_id)

        return ActivitySnapshot(
            activity_id=activity.id,
            current_stage=activity.current_stage,
            required_reviewers=template.participant_count,
            now=now or utcnow(),
            reviewers_joined=reviewers_joined,
            reviewers_locked_in=reviewers_locked_in,
            active_participants=active_participants,
            reviews_by_round=reviews,
            responses_by_round=responses,
            finalization_votes=finalization_votes,
            award_submissions=award_submissions,
            stage_deadline=ensure_utc(activity.stage_deadline),
            paper_version=activity.paper_version,
            current_paper_version=current_version,
        )


def describe_progress(snapshot: ActivitySnapshot, template: Template) -> ProgressReport:
    """Summarize how far the current stage is from completion."""
    stage = Stage(snapshot.current_stage)
    base = {"activity_id": snapshot.activity_id, "stage": stage.value}

    if stage == template.initial_stage:
        required = template.participant_count
        completed = min(snapshot.reviewers_joined, required)
        return ProgressReport(
            **base,
            completed=completed,
            required=required,
            summary=f"{completed} of {required} reviewers joined",
        )

    accepted = accepted_action(stage)
    if accepted is None:
        return ProgressReport(**base, summary=template.stage(stage).display_name)

    kind, round_number = accepted
    base.update(action_kind=kind.value, round_number=round_number)
    if kind == ActionKind.review:
        required = template.participant_count if template.automatic else snapshot.reviewers_joined
        completed = snapshot.reviews_by_round.get(round_number, 0)
        noun = "reviewers submitted"
    elif kind == ActionKind.author_response:
        required = 1
        completed = snapshot.responses_by_round.get(round_number, 0)
        noun = "author responses submitted"
    elif kind == ActionKind.finalization_vote:
        required = snapshot.reviewers_joined
        completed = snapshot.finalization_votes
        noun = "reviewers finalized"
    else:
        required = snapshot.active_participants
        completed = snapshot.award_submissions
        noun = "participants distributed awards"

    return ProgressReport(
        **base,
        completed=completed,
        required=required,
        summary=f"{completed} of {required} {noun}",
    )
