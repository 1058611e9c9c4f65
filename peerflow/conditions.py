"""Condition expressions gating stage transitions.

An expression is a tree of ``And``, ``Or``, ``Not`` and ``Predicate`` nodes.
Templates store it as JSON::

    {"type": "all_reviews_submitted", "config": {"round_number": 1}}
    {"op": "AND", "conditions": [<expr>, <expr>, ...]}
    {"op": "OR", "conditions": [<expr>, ...]}
    {"op": "NOT", "condition": <expr>}

Predicates are pure functions of an ``ActivitySnapshot``. Evaluating the same
expression against the same snapshot always gives the same answer, so it is
safe to do inside the transaction whose write it gates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Union
from uuid import UUID

from peerflow.exceptions import UnknownPredicate
from peerflow.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ActivitySnapshot:
    """Live counts for one activity, read inside the current transaction."""

    activity_id: UUID
    current_stage: str
    required_reviewers: int
    now: datetime
    reviewers_joined: int = 0
    reviewers_locked_in: int = 0
    active_participants: int = 0
    reviews_by_round: Mapping[int, int] = field(default_factory=dict)
    responses_by_round: Mapping[int, int] = field(default_factory=dict)
    finalization_votes: int = 0
    award_submissions: int = 0
    stage_deadline: datetime | None = None
    paper_version: int | None = None
    current_paper_version: int | None = None


# ---------------------------------------------------------------------------
# Expression nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Predicate:
    name: str
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class And:
    children: tuple["Condition", ...]


@dataclass(frozen=True)
class Or:
    children: tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
    child: "Condition"


Condition = Union[Predicate, And, Or, Not]


class ConditionSyntaxError(ValueError):
    """Raised when a condition document is malformed."""


def parse_condition(data: Mapping[str, Any]) -> Condition:
    """Parse the JSON form of a condition into expression nodes."""
    if not isinstance(data, Mapping):
        raise ConditionSyntaxError(f"Condition must be an object, got {type(data).__name__}")

    if "op" in data:
        op = str(data["op"]).upper()
        if op in ("AND", "OR"):
            children = data.get("conditions")
            if not isinstance(children, list) or not children:
                raise ConditionSyntaxError(f"{op} requires a non-empty 'conditions' list")
            parsed = tuple(parse_condition(child) for child in children)
            return And(parsed) if op == "AND" else Or(parsed)
        if op == "NOT":
            if "condition" not in data:
                raise ConditionSyntaxError("NOT requires a 'condition'")
            return Not(parse_condition(data["condition"]))
        raise ConditionSyntaxError(f"Unknown operator: '{data['op']}'")

    if "type" in data:
        config = data.get("config") or {}
        if not isinstance(config, Mapping):
            raise ConditionSyntaxError("Predicate 'config' must be an object")
        return Predicate(name=str(data["type"]), params=dict(config))

    raise ConditionSyntaxError("Condition needs either 'op' or 'type'")


def predicate_names(expression: Condition) -> set[str]:
    """All predicate names referenced by an expression."""
    if isinstance(expression, Predicate):
        return {expression.name}
    if isinstance(expression, Not):
        return predicate_names(expression.child)
    names: set[str] = set()
    for child in expression.children:
        names |= predicate_names(child)
    return names


# ---------------------------------------------------------------------------
# Predicate registry
# ---------------------------------------------------------------------------

PredicateFn = Callable[[ActivitySnapshot, Mapping[str, Any]], bool]

PREDICATES: dict[str, PredicateFn] = {}


def predicate(name: str) -> Callable[[PredicateFn], PredicateFn]:
    """Register a predicate function under ``name``."""

    def register(fn: PredicateFn) -> PredicateFn:
        PREDICATES[name] = fn
        return fn

    return register


def is_registered(name: str) -> bool:
    return name in PREDICATES


@predicate("first_review_submitted")
def _first_review_submitted(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    round_number = int(params.get("round_number", 1))
    return snapshot.reviews_by_round.get(round_number, 0) >= 1


@predicate("min_reviewers_joined")
def _min_reviewers_joined(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    min_count = int(params.get("min_count", snapshot.required_reviewers))
    return snapshot.reviewers_joined >= min_count


@predicate("min_reviewers_locked_in")
def _min_reviewers_locked_in(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    min_count = int(params.get("min_count", snapshot.required_reviewers))
    return snapshot.reviewers_locked_in >= min_count


@predicate("all_reviews_submitted")
def _all_reviews_submitted(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    round_number = int(params.get("round_number", 1))
    return snapshot.reviews_by_round.get(round_number, 0) >= snapshot.required_reviewers


@predicate("author_response_submitted")
def _author_response_submitted(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    round_number = int(params.get("round_number", 1))
    return snapshot.responses_by_round.get(round_number, 0) >= 1


@predicate("all_finalized")
def _all_finalized(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    # Counts the reviewers actually on the team, not the template requirement
    return (
        snapshot.reviewers_joined > 0
        and snapshot.finalization_votes >= snapshot.reviewers_joined
    )


@predicate("all_awards_distributed")
def _all_awards_distributed(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    return (
        snapshot.active_participants > 0
        and snapshot.award_submissions >= snapshot.active_participants
    )


@predicate("deadline_reached")
def _deadline_reached(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    return snapshot.stage_deadline is not None and snapshot.now >= snapshot.stage_deadline


@predicate("new_version_available")
def _new_version_available(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    if snapshot.current_paper_version is None or snapshot.paper_version is None:
        return False
    return snapshot.current_paper_version > snapshot.paper_version


@predicate("manual")
def _manual(snapshot: ActivitySnapshot, params: Mapping[str, Any]) -> bool:
    return True


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate(
    expression: Condition | Mapping[str, Any],
    snapshot: ActivitySnapshot,
    registry: Mapping[str, PredicateFn] | None = None,
) -> bool:
    """Evaluate an expression tree against a snapshot.

    Raises:
        UnknownPredicate: if a leaf names a predicate that is not registered.
    """
    if not isinstance(expression, (Predicate, And, Or, Not)):
        expression = parse_condition(expression)
    predicates = PREDICATES if registry is None else registry
    # Checked up front so short-circuiting never hides a bad name
    for name in sorted(predicate_names(expression)):
        if name not in predicates:
            logger.error("unknown_predicate", predicate=name)
            raise UnknownPredicate(name)
    return _evaluate(expression, snapshot, predicates)


def _evaluate(
    expression: Condition,
    snapshot: ActivitySnapshot,
    predicates: Mapping[str, PredicateFn],
) -> bool:
    if isinstance(expression, Predicate):
        fn = predicates.get(expression.name)
        if fn is None:
            raise UnknownPredicate(expression.name)
        return bool(fn(snapshot, expression.params))
    if isinstance(expression, Not):
        return not _evaluate(expression.child, snapshot, predicates)
    if isinstance(expression, And):
        return all(_evaluate(child, snapshot, predicates) for child in expression.children)
    return any(_evaluate(child, snapshot, predicates) for child in expression.children)
