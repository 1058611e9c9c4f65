"""Load template JSON documents into the template tables.

Load-time invariants are checked here, once, so the engine never has to
re-validate a rank table or a stage graph per operation.
"""

import hashlib
import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerflow.conditions import ConditionSyntaxError, is_registered, parse_condition, predicate_names
from peerflow.exceptions import TemplateValidationError
from peerflow.logging_config import get_logger
from peerflow.models import ActivityTemplate, TemplateEdge, TemplateRank, TemplateStage
from peerflow.schemas import TemplateDocument

logger = get_logger(__name__)


def parse_template(data: dict[str, Any]) -> TemplateDocument:
    """Validate the shape of a template document."""
    try:
        return TemplateDocument.model_validate(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise TemplateValidationError(str(data.get("id", "<unknown>")), errors) from exc


def validate_template(doc: TemplateDocument) -> list[str]:
    """Check the invariants a template must satisfy before it is stored.

    Returns a list of human-readable problems (empty when valid).
    """
    errors: list[str] = []

    # Rank table
    ranks = doc.rank_to_tokens
    if any(tokens < 0 for tokens in ranks):
        errors.append("rank_to_tokens must not contain negative amounts")
    for position in range(1, len(ranks)):
        if ranks[position] > ranks[position - 1]:
            errors.append(
                f"rank_to_tokens must be non-increasing: rank {position + 1} "
                f"({ranks[position]}) exceeds rank {position} ({ranks[position - 1]})"
            )
    if sum(ranks) + doc.insurance_tokens != doc.total_token_pool:
        errors.append(
            f"rank_to_tokens sum ({sum(ranks)}) plus insurance_tokens "
            f"({doc.insurance_tokens}) must equal total_token_pool ({doc.total_token_pool})"
        )

    # Stages
    stage_names = [s.stage for s in doc.stages]
    duplicates = {s.value for s in stage_names if stage_names.count(s) > 1}
    if duplicates:
        errors.append(f"duplicate stages: {sorted(duplicates)}")

    initial = [s for s in doc.stages if s.is_initial]
    if len(initial) != 1:
        errors.append(f"exactly one initial stage required, found {len(initial)}")
    if not any(s.is_terminal for s in doc.stages):
        errors.append("at least one terminal stage required")

    awarding = [s for s in doc.stages if s.awards_on_entry]
    if len(awarding) > 1:
        errors.append("at most one stage may trigger awarding on entry")
    for s in awarding:
        if not s.is_terminal:
            errors.append(f"awarding stage '{s.stage.value}' must be terminal")
    for s in initial:
        if s.is_terminal:
            errors.append(f"initial stage '{s.stage.value}' cannot be terminal")

    # Edges
    declared = set(stage_names)
    terminal = {s.stage for s in doc.stages if s.is_terminal}
    seen_edges: set[tuple[str, str]] = set()
    for edge in doc.edges:
        label = f"{edge.from_stage.value} -> {edge.to_stage.value}"
        if edge.from_stage not in declared:
            errors.append(f"edge {label}: from_stage is not a declared stage")
        if edge.to_stage not in declared:
            errors.append(f"edge {label}: to_stage is not a declared stage")
        if edge.from_stage in terminal:
            errors.append(f"edge {label}: terminal stages have no outgoing edges")
        if edge.from_stage == edge.to_stage:
            errors.append(f"edge {label}: self-loops are not allowed")
        key = (edge.from_stage.value, edge.to_stage.value)
        if key in seen_edges:
            errors.append(f"edge {label}: declared more than once")
        seen_edges.add(key)

        try:
            expression = parse_condition(edge.condition)
        except ConditionSyntaxError as exc:
            errors.append(f"edge {label}: {exc}")
            continue
        for name in sorted(predicate_names(expression)):
            if not is_registered(name):
                errors.append(f"edge {label}: unknown predicate '{name}'")

    return errors


def definition_hash(doc: TemplateDocument) -> str:
    canonical = json.dumps(doc.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


async def load_template(session: AsyncSession, data: dict[str, Any] | TemplateDocument) -> bool:
    """Validate a template document and insert it.

    Returns True when rows were inserted, False when an identical template
    with the same id already exists.

    Raises:
        TemplateValidationError: when the document is invalid or a different
            definition is already stored under the same id.
    """
    doc = data if isinstance(data, TemplateDocument) else parse_template(data)
    errors = validate_template(doc)
    if errors:
        logger.error("template_invalid", template_id=doc.id, errors=errors)
        raise TemplateValidationError(doc.id, errors)

    digest = definition_hash(doc)
    existing = await session.scalar(
        select(ActivityTemplate.definition_hash).where(ActivityTemplate.id == doc.id)
    )
    if existing is not None:
        if existing != digest:
            raise TemplateValidationError(
                doc.id, ["templates are immutable; publish changes under a new id"]
            )
        logger.debug("template_already_loaded", template_id=doc.id)
        return False

    session.add(
        ActivityTemplate(
            id=doc.id,
            activity_kind=doc.activity_kind.value,
            display_name=doc.display_name,
            description=doc.description,
            participant_count=doc.participant_count,
            round_count=doc.round_count,
            total_token_pool=doc.total_token_pool,
            insurance_tokens=doc.insurance_tokens,
            rank_method=doc.rank_method.value,
            award_categories={
                name: points.model_dump() for name, points in doc.award_categories.items()
            },
            definition_hash=digest,
        )
    )
    await session.flush()

    for s in doc.stages:
        session.add(
            TemplateStage(
                template_id=doc.id,
                stage=s.stage.value,
                display_name=s.display_name,
                stage_order=s.order,
                deadline_days=s.deadline_days,
                is_initial=s.is_initial,
                is_terminal=s.is_terminal,
                awards_on_entry=s.awards_on_entry,
            )
        )
    await session.flush()

    for edge in doc.edges:
        session.add(
            TemplateEdge(
                template_id=doc.id,
                from_stage=edge.from_stage.value,
                to_stage=edge.to_stage.value,
                condition=edge.condition,
                tie_break_order=edge.tie_break_order,
                is_automatic=edge.is_automatic,
            )
        )
    for position, tokens in enumerate(doc.rank_to_tokens, start=1):
        session.add(TemplateRank(template_id=doc.id, rank_position=position, tokens=tokens))
    await session.flush()

    logger.info(
        "template_loaded",
        template_id=doc.id,
        stages=len(doc.stages),
        edges=len(doc.edges),
    )
    return True


def read_template_files(directory: Path) -> list[dict[str, Any]]:
    """Read every ``*.json`` template document in a directory, sorted by name."""
    documents = []
    for path in sorted(Path(directory).glob("*.json")):
        with path.open(encoding="utf-8") as fh:
            documents.append(json.load(fh))
    return documents


async def load_template_dir(session: AsyncSession, directory: Path) -> list[str]:
    """Load all template files in ``directory``. Returns the ids inserted."""
    inserted = []
    for data in read_template_files(directory):
        if await load_template(session, data):
            inserted.append(data["id"])
    logger.info("template_dir_loaded", directory=str(directory), inserted=len(inserted))
    return inserted
