"""SQLAlchemy ORM models for templates, activities, participants and the audit trail."""

import enum
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import Boolean, DateTime, Integer

from peerflow.datetime_utils import utcnow


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Stage(str, enum.Enum):
    posted = "posted"
    review_round_1 = "review_round_1"
    review_round_2 = "review_round_2"
    review_round_3 = "review_round_3"
    author_response_round_1 = "author_response_round_1"
    author_response_round_2 = "author_response_round_2"
    collaborative_assessment = "collaborative_assessment"
    award_distribution = "award_distribution"
    completed = "completed"
    cancelled = "cancelled"
    jc_created = "jc_created"
    jc_review = "jc_review"
    jc_assessment = "jc_assessment"
    jc_awarding = "jc_awarding"
    jc_completed = "jc_completed"


class ActivityKind(str, enum.Enum):
    peer_review = "peer_review"
    journal_club = "journal_club"


class ParticipantRole(str, enum.Enum):
    author = "author"
    reviewer = "reviewer"


class ParticipantStatus(str, enum.Enum):
    invited = "invited"
    joined = "joined"
    locked_in = "locked_in"
    removed = "removed"


class ActionKind(str, enum.Enum):
    review = "review"
    author_response = "author_response"
    finalization_vote = "finalization_vote"
    award_allocation = "award_allocation"


class ModerationState(str, enum.Enum):
    none = "none"
    pending = "pending"
    resolved = "resolved"


class RankMethod(str, enum.Enum):
    dense = "dense"
    competition = "competition"


# ---------------------------------------------------------------------------
# Templates (immutable reference data)
# ---------------------------------------------------------------------------


class ActivityTemplate(Base):
    __tablename__ = "activity_templates"
    __table_args__ = (
        CheckConstraint(
            "activity_kind IN ('peer_review','journal_club')",
            name="ck_template_activity_kind",
        ),
        CheckConstraint("participant_count >= 1", name="ck_template_participants"),
        CheckConstraint("insurance_tokens >= 0", name="ck_template_insurance"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    activity_kind: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    participant_count: Mapped[int] = mapped_column(Integer, nullable=False)
    round_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_token_pool: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insurance_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rank_method: Mapped[str] = mapped_column(Text, nullable=False, default="dense")
    award_categories: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    definition_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    stages: Mapped[list["TemplateStage"]] = relationship(
        back_populates="template", order_by="TemplateStage.stage_order"
    )
    edges: Mapped[list["TemplateEdge"]] = relationship(
        back_populates="template", order_by="TemplateEdge.tie_break_order"
    )
    ranks: Mapped[list["TemplateRank"]] = relationship(
        back_populates="template", order_by="TemplateRank.rank_position"
    )


class TemplateStage(Base):
    __tablename__ = "template_stages"
    __table_args__ = (
        UniqueConstraint("template_id", "stage", name="uq_template_stage"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[str] = mapped_column(
        Text, ForeignKey("activity_templates.id", ondelete="CASCADE"), nullable=False
    )
    stage: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    deadline_days: Mapped[int | None] = mapped_column(Integer)
    is_initial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    awards_on_entry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    template: Mapped["ActivityTemplate"] = relationship(back_populates="stages")


class TemplateEdge(Base):
    __tablename__ = "template_edges"
    __table_args__ = (
        UniqueConstraint("template_id", "from_stage", "to_stage", name="uq_template_edge"),
        ForeignKeyConstraint(
            ["template_id", "from_stage"],
            ["template_stages.template_id", "template_stages.stage"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["template_id", "to_stage"],
            ["template_stages.template_id", "template_stages.stage"],
            ondelete="CASCADE",
        ),
        Index("idx_template_edges_from", "template_id", "from_stage"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[str] = mapped_column(
        Text, ForeignKey("activity_templates.id", ondelete="CASCADE"), nullable=False
    )
    from_stage: Mapped[str] = mapped_column(Text, nullable=False)
    to_stage: Mapped[str] = mapped_column(Text, nullable=False)
    condition: Mapped[dict] = mapped_column(JSON, nullable=False)
    tie_break_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    template: Mapped["ActivityTemplate"] = relationship(back_populates="edges")


class TemplateRank(Base):
    __tablename__ = "template_ranks"
    __table_args__ = (
        CheckConstraint("rank_position >= 1", name="ck_rank_position"),
        CheckConstraint("tokens >= 0", name="ck_rank_tokens"),
    )

    template_id: Mapped[str] = mapped_column(
        Text, ForeignKey("activity_templates.id", ondelete="CASCADE"), primary_key=True
    )
    rank_position: Mapped[int] = mapped_column(Integer, primary_key=True)
    tokens: Mapped[int] = mapped_column(Integer, nullable=False)

    template: Mapped["ActivityTemplate"] = relationship(back_populates="ranks")


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


class Activity(Base):
    __tablename__ = "activities"
    __table_args__ = (
        Index("idx_activities_stage", "current_stage"),
        Index("idx_activities_creator", "creator_id"),
        CheckConstraint(
            "escrow_balance >= 0 AND escrow_balance <= funding_amount",
            name="ck_activity_escrow",
        ),
        CheckConstraint(
            "moderation_state IN ('none','pending','resolved')",
            name="ck_activity_moderation",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    template_id: Mapped[str] = mapped_column(
        Text, ForeignKey("activity_templates.id"), nullable=False
    )
    creator_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    paper_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    paper_version: Mapped[int] = mapped_column(Integer, nullable=False)
    current_stage: Mapped[str] = mapped_column(Text, nullable=False)
    stage_entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    stage_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    funding_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escrow_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    moderation_state: Mapped[str] = mapped_column(Text, nullable=False, default="none")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    participants: Mapped[list["Participant"]] = relationship(back_populates="activity")


class Participant(Base):
    """Team membership of one user in one activity."""

    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("activity_id", "user_id", name="uq_participant"),
        Index("idx_participants_activity_status", "activity_id", "status"),
        CheckConstraint("role IN ('author','reviewer')", name="ck_participant_role"),
        CheckConstraint(
            "status IN ('invited','joined','locked_in','removed')",
            name="ck_participant_status",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    activity_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("activities.id"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer)
    invited_by: Mapped[UUID | None] = mapped_column(Uuid)
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    locked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    activity: Mapped["Activity"] = relationship(back_populates="participants")


class SubmittedAction(Base):
    """Append-only record of one review, response, finalization vote or award allocation."""

    __tablename__ = "submitted_actions"
    __table_args__ = (
        UniqueConstraint(
            "activity_id", "participant_id", "round_number", "action_kind",
            name="uq_submitted_action",
        ),
        Index("idx_actions_activity_kind", "activity_id", "action_kind", "round_number"),
        CheckConstraint(
            "action_kind IN ('review','author_response','finalization_vote','award_allocation')",
            name="ck_action_kind",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    activity_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("activities.id"), nullable=False
    )
    participant_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    action_kind: Mapped[str] = mapped_column(Text, nullable=False)
    stage: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class AwardAllocation(Base):
    __tablename__ = "award_allocations"
    __table_args__ = (
        UniqueConstraint(
            "activity_id", "giver_id", "receiver_id", "category",
            name="uq_award_allocation",
        ),
        CheckConstraint("giver_id <> receiver_id", name="ck_award_not_self"),
        CheckConstraint("points >= 0", name="ck_award_points"),
        Index("idx_awards_receiver", "activity_id", "receiver_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    activity_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("activities.id"), nullable=False
    )
    action_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("submitted_actions.id"), nullable=False
    )
    giver_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    receiver_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class TransitionLog(Base):
    """Append-only audit trail. Ordered per activity by ``id`` (commit order)."""

    __tablename__ = "transition_log"
    __table_args__ = (
        Index("idx_transition_log_activity", "activity_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("activities.id"), nullable=False
    )
    old_stage: Mapped[str | None] = mapped_column(Text)
    new_stage: Mapped[str] = mapped_column(Text, nullable=False)
    actor: Mapped[UUID | None] = mapped_column(Uuid)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_ledger_balance"),
    )

    account: Mapped[str] = mapped_column(Text, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("idx_ledger_entries_account", "account"),
        Index("idx_ledger_entries_activity", "activity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account: Mapped[str] = mapped_column(
        Text, ForeignKey("ledger_accounts.account"), nullable=False
    )
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    activity_id: Mapped[UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Documents (owned by the document store, read-only here)
# ---------------------------------------------------------------------------


class PaperVersion(Base):
    __tablename__ = "paper_versions"

    paper_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
