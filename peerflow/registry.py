"""Template registry: immutable, in-memory views of template rows.

Templates are read-mostly reference data. A changed template is a new id;
nothing here updates a template in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from peerflow.conditions import Condition, parse_condition
from peerflow.exceptions import UnknownTemplate
from peerflow.logging_config import get_logger
from peerflow.models import ActivityKind, ActivityTemplate, RankMethod, Stage

logger = get_logger(__name__)


@dataclass(frozen=True)
class StageDefinition:
    stage: Stage
    display_name: str
    order: int
    deadline_days: int | None = None
    is_initial: bool = False
    is_terminal: bool = False
    awards_on_entry: bool = False


@dataclass(frozen=True)
class EdgeDefinition:
    from_stage: Stage
    to_stage: Stage
    condition: Condition
    tie_break_order: int = 1
    is_automatic: bool = True


@dataclass(frozen=True)
class Template:
    id: str
    activity_kind: ActivityKind
    display_name: str
    participant_count: int
    round_count: int
    total_token_pool: int
    insurance_tokens: int
    rank_method: str
    rank_to_tokens: tuple[int, ...]
    award_categories: Mapping[str, Mapping[str, int]]
    stages: Mapping[Stage, StageDefinition]
    edges: tuple[EdgeDefinition, ...]
    description: str | None = None
    _outgoing: dict[Stage, tuple[EdgeDefinition, ...]] = field(
        default_factory=dict, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        outgoing: dict[Stage, list[EdgeDefinition]] = {}
        for edge in self.edges:
            outgoing.setdefault(edge.from_stage, []).append(edge)
        for stage, edges in outgoing.items():
            self._outgoing[stage] = tuple(sorted(edges, key=lambda e: e.tie_break_order))

    @property
    def initial_stage(self) -> Stage:
        for definition in self.stages.values():
            if definition.is_initial:
                return definition.stage
        raise LookupError(f"Template '{self.id}' has no initial stage")

    @property
    def automatic(self) -> bool:
        return self.activity_kind == ActivityKind.peer_review

    def stage(self, stage: Stage | str) -> StageDefinition:
        return self.stages[Stage(stage)]

    def outgoing(self, stage: Stage | str, automatic_only: bool = False) -> tuple[EdgeDefinition, ...]:
        """Edges leaving ``stage`` in tie-break order."""
        edges = self._outgoing.get(Stage(stage), ())
        if automatic_only:
            return tuple(edge for edge in edges if edge.is_automatic)
        return edges

    def edge(self, from_stage: Stage | str, to_stage: Stage | str) -> EdgeDefinition | None:
        target = Stage(to_stage)
        for edge in self.outgoing(from_stage):
            if edge.to_stage == target:
                return edge
        return None

    def award_points(self, category: str, giver_is_author: bool) -> int | None:
        points = self.award_categories.get(category)
        if points is None:
            return None
        return points["author_points"] if giver_is_author else points["reviewer_points"]


def template_from_row(row: ActivityTemplate) -> Template:
    """Build the in-memory template from its ORM row and children."""
    stages = {
        Stage(s.stage): StageDefinition(
            stage=Stage(s.stage),
            display_name=s.display_name,
            order=s.stage_order,
            deadline_days=s.deadline_days,
            is_initial=s.is_initial,
            is_terminal=s.is_terminal,
            awards_on_entry=s.awards_on_entry,
        )
        for s in row.stages
    }
    edges = tuple(
        EdgeDefinition(
            from_stage=Stage(e.from_stage),
            to_stage=Stage(e.to_stage),
            condition=parse_condition(e.condition),
            tie_break_order=e.tie_break_order,
            is_automatic=e.is_automatic,
        )
        for e in row.edges
    )
    return Template(
        id=row.id,
        activity_kind=ActivityKind(row.activity_kind),
        display_name=row.display_name,
        description=row.description,
        participant_count=row.participant_count,
        round_count=row.round_count,
        total_token_pool=row.total_token_pool,
        insurance_tokens=row.insurance_tokens,
        rank_method=row.rank_method,
        rank_to_tokens=tuple(r.tokens for r in sorted(row.ranks, key=lambda r: r.rank_position)),
        award_categories={k: dict(v) for k, v in (row.award_categories or {}).items()},
        stages=stages,
        edges=edges,
    )


def _template_query():
    return select(ActivityTemplate).options(
        selectinload(ActivityTemplate.stages),
        selectinload(ActivityTemplate.edges),
        selectinload(ActivityTemplate.ranks),
    )


class TemplateRegistry:
    """Cache of templates keyed by id, backed by the template tables."""

    def __init__(self) -> None:
        self._templates: dict[str, Template] = {}

    def ids(self) -> list[str]:
        return sorted(self._templates)

    def register(self, template: Template) -> None:
        self._templates[template.id] = template

    def get(self, template_id: str) -> Template:
        """Return a cached template. Raises UnknownTemplate if not loaded."""
        template = self._templates.get(template_id)
        if template is None:
            logger.error("unknown_template", template_id=template_id)
            raise UnknownTemplate(template_id)
        return template

    async def fetch(self, session: AsyncSession, template_id: str) -> Template:
        """Return a template, reading it from the database on a cache miss."""
        template = self._templates.get(template_id)
        if template is not None:
            return template

        result = await session.execute(
            _template_query().where(ActivityTemplate.id == template_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            logger.error("unknown_template", template_id=template_id)
            raise UnknownTemplate(template_id)

        template = template_from_row(row)
        self.register(template)
        return template

    async def load(self, session: AsyncSession) -> int:
        """Load every template in the database into the cache."""
        result = await session.execute(_template_query())
        rows = result.scalars().all()
        for row in rows:
            self.register(template_from_row(row))
        logger.info("templates_loaded", count=len(rows))
        return len(rows)


@lru_cache
def get_registry() -> TemplateRegistry:
    """Process-wide template registry."""
    return TemplateRegistry()


def as_dict(template: Template) -> dict[str, Any]:
    """Plain-data view of a template for the read API."""
    return {
        "id": template.id,
        "activity_kind": template.activity_kind.value,
        "display_name": template.display_name,
        "description": template.description,
        "participant_count": template.participant_count,
        "round_count": template.round_count,
        "total_token_pool": template.total_token_pool,
        "insurance_tokens": template.insurance_tokens,
        "rank_method": template.rank_method,
        "rank_to_tokens": list(template.rank_to_tokens),
        "award_categories": {k: dict(v) for k, v in template.award_categories.items()},
        "stages": [
            {
                "stage": s.stage.value,
                "display_name": s.display_name,
                "order": s.order,
                "deadline_days": s.deadline_days,
                "is_initial": s.is_initial,
                "is_terminal": s.is_terminal,
                "awards_on_entry": s.awards_on_entry,
            }
            for s in sorted(template.stages.values(), key=lambda s: s.order)
        ],
        "edges": [
            {
                "from_stage": e.from_stage.value,
                "to_stage": e.to_stage.value,
                "tie_break_order": e.tie_break_order,
                "is_automatic": e.is_automatic,
            }
            for e in template.edges
        ],
    }


def template_from_document(doc) -> Template:
    """Build the in-memory template straight from a validated ``TemplateDocument``."""
    return Template(
        id=doc.id,
        activity_kind=ActivityKind(doc.activity_kind),
        display_name=doc.display_name,
        description=doc.description,
        participant_count=doc.participant_count,
        round_count=doc.round_count,
        total_token_pool=doc.total_token_pool,
        insurance_tokens=doc.insurance_tokens,
        rank_method=RankMethod(doc.rank_method).value,
        rank_to_tokens=tuple(doc.rank_to_tokens),
        award_categories={
            name: points.model_dump() for name, points in doc.award_categories.items()
        },
        stages={
            s.stage: StageDefinition(
                stage=s.stage,
                display_name=s.display_name,
                order=s.order,
                deadline_days=s.deadline_days,
                is_initial=s.is_initial,
                is_terminal=s.is_terminal,
                awards_on_entry=s.awards_on_entry,
            )
            for s in doc.stages
        },
        edges=tuple(
            EdgeDefinition(
                from_stage=e.from_stage,
                to_stage=e.to_stage,
                condition=parse_condition(e.condition),
                tie_break_order=e.tie_break_order,
                is_automatic=e.is_automatic,
            )
            for e in doc.edges
        ),
    )
