"""Pydantic v2 schemas: the template document format and engine/API results."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from peerflow.config import DEFAULT_AWARD_CATEGORIES
from peerflow.models import ActivityKind, ActionKind, ParticipantRole, RankMethod, Stage


# ---------------------------------------------------------------------------
# Template documents
# ---------------------------------------------------------------------------


class AwardCategoryDocument(BaseModel):
    author_points: int = Field(..., ge=0)
    reviewer_points: int = Field(..., ge=0)


class StageDocument(BaseModel):
    stage: Stage
    display_name: str = Field(..., min_length=1)
    order: int = Field(..., ge=1)
    deadline_days: int | None = Field(default=None, ge=1)
    is_initial: bool = False
    is_terminal: bool = False
    awards_on_entry: bool = False


class EdgeDocument(BaseModel):
    from_stage: Stage
    to_stage: Stage
    condition: dict[str, Any]
    tie_break_order: int = Field(default=1, ge=1)
    is_automatic: bool = True


class TemplateDocument(BaseModel):
    """One template as stored in a ``templates/*.json`` file."""

    id: str = Field(..., min_length=1, max_length=100)
    activity_kind: ActivityKind
    display_name: str = Field(..., min_length=1)
    description: str | None = None
    participant_count: int = Field(..., ge=1)
    round_count: int = Field(default=1, ge=1)
    total_token_pool: int = Field(default=0, ge=0)
    insurance_tokens: int = Field(default=0, ge=0)
    rank_method: RankMethod = RankMethod.dense
    rank_to_tokens: list[int] = Field(default_factory=list)
    award_categories: dict[str, AwardCategoryDocument] = Field(
        default_factory=lambda: {
            name: AwardCategoryDocument(**points)
            for name, points in DEFAULT_AWARD_CATEGORIES.items()
        }
    )
    stages: list[StageDocument] = Field(..., min_length=1)
    edges: list[EdgeDocument] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


class PayoutResponse(BaseModel):
    user_id: UUID
    points: int
    rank: int
    tokens: int
    skipped: bool = False


class AwardingResult(BaseModel):
    activity_id: UUID
    payouts: list[PayoutResponse] = Field(default_factory=list)
    total_paid: int = 0
    platform_credit: int = 0


class TransitionResult(BaseModel):
    activity_id: UUID
    from_stage: str
    to_stage: str
    actor: UUID | None = None
    reason: str
    log_id: int
    transitioned_at: datetime
    stage_deadline: datetime | None = None
    awarding: AwardingResult | None = None


class ProgressReport(BaseModel):
    activity_id: UUID
    stage: str
    action_kind: str | None = None
    round_number: int | None = None
    completed: int = 0
    required: int = 0
    summary: str


class ActionResult(BaseModel):
    action_id: UUID
    action_kind: ActionKind
    round_number: int
    transitions: list[TransitionResult] = Field(default_factory=list)
    progress: ProgressReport


class MembershipResult(BaseModel):
    activity_id: UUID
    user_id: UUID
    role: str
    status: str
    transitions: list[TransitionResult] = Field(default_factory=list)


class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    role: str
    status: str
    rank: int | None
    locked_in_at: datetime | None


class ActivityState(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: str
    creator_id: UUID
    paper_id: UUID
    paper_version: int
    current_stage: str
    stage_entered_at: datetime
    stage_deadline: datetime | None
    funding_amount: int
    escrow_balance: int
    moderation_state: str
    completed_at: datetime | None
    participants: list[ParticipantResponse] = Field(default_factory=list)


class TransitionLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    activity_id: UUID
    old_stage: str | None
    new_stage: str
    actor: UUID | None
    reason: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreateActivityRequest(BaseModel):
    creator_id: UUID
    template_id: str = Field(..., min_length=1)
    paper_id: UUID


class ActorRequest(BaseModel):
    actor_id: UUID


class InviteRequest(BaseModel):
    inviter_id: UUID
    user_id: UUID
    role: ParticipantRole = ParticipantRole.reviewer


class ReviewRequest(BaseModel):
    reviewer_id: UUID
    content: str = Field(..., min_length=1)


class AuthorResponseRequest(BaseModel):
    author_id: UUID
    content: str = Field(..., min_length=1)


class AllocationItem(BaseModel):
    receiver_id: UUID
    category: str = Field(..., min_length=1, max_length=50)


class AwardAllocationRequest(BaseModel):
    giver_id: UUID
    allocations: list[AllocationItem] = Field(default_factory=list)


class AdvanceRequest(BaseModel):
    actor_id: UUID
    expected_from_stage: Stage
    to_stage: Stage
