"""Progression strategies.

Peer-review activities advance automatically: after every accepted action
the current stage's automatic edges are evaluated in tie-break order and
the first satisfied one is taken. Journal clubs advance only through an
explicit manual call, so their strategy records nothing and returns.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.conditions import ActivitySnapshot, evaluate
from peerflow.config import get_settings
from peerflow.logging_config import get_logger
from peerflow.models import Activity
from peerflow.registry import EdgeDefinition, Template
from peerflow.schemas import TransitionResult
from peerflow.services.snapshot import SnapshotBuilder
from peerflow.services.transitions import TransitionExecutor

logger = get_logger(__name__)


def select_edge(template: Template, snapshot: ActivitySnapshot) -> EdgeDefinition | None:
    """First satisfied automatic edge out of the snapshot's stage, or None."""
    satisfied = [
        edge
        for edge in template.outgoing(snapshot.current_stage, automatic_only=True)
        if evaluate(edge.condition, snapshot)
    ]
    if not satisfied:
        return None
    if len(satisfied) > 1:
        logger.warning(
            "multiple_edges_satisfied",
            activity_id=str(snapshot.activity_id),
            from_stage=snapshot.current_stage,
            to_stages=[edge.to_stage.value for edge in satisfied],
        )
    return satisfied[0]


class ProgressionStrategy:
    """Decides what happens after an action is recorded."""

    automatic = False

    async def advance(
        self,
        activity: Activity,
        template: Template,
        actor: UUID | None,
    ) -> list[TransitionResult]:
        return []


class ManualProgression(ProgressionStrategy):
    """Record only. Stages move through ``ActivityService.advance_manually``."""


class AutomaticProgression(ProgressionStrategy):
    automatic = True

    def __init__(
        self,
        executor: TransitionExecutor,
        snapshots: SnapshotBuilder,
        max_steps: int | None = None,
    ):
        self.executor = executor
        self.snapshots = snapshots
        self.max_steps = max_steps or get_settings().max_cascade_steps

    async def advance(
        self,
        activity: Activity,
        template: Template,
        actor: UUID | None,
    ) -> list[TransitionResult]:
        """Take satisfied edges until none is, chaining through stages
        whose condition already holds on entry."""
        results: list[TransitionResult] = []
        for _ in range(self.max_steps):
            snapshot = await self.snapshots.build(activity, template)
            edge = select_edge(template, snapshot)
            if edge is None:
                return results
            results.append(
                await self.executor.apply(
                    activity, template, edge.from_stage, edge.to_stage, actor,
                    reason="condition_met",
                )
            )

        logger.warning(
            "progression_cascade_limit",
            activity_id=str(activity.id),
            max_steps=self.max_steps,
            stage=activity.current_stage,
        )
        return results


def build_strategy(
    template: Template,
    session: AsyncSession,
    executor: TransitionExecutor,
    snapshots: SnapshotBuilder | None = None,
) -> ProgressionStrategy:
    """Pick the progression strategy for a template's activity kind."""
    if not template.automatic:
        return ManualProgression()
    return AutomaticProgression(executor, snapshots or SnapshotBuilder(session))
