"""Which action each stage accepts.

Stage identity is a closed enum; the edges between stages live in template
data. A stage that is not listed here accepts no participant actions.
"""

from peerflow.models import ActionKind, Stage

# stage -> (accepted action kind, round number)
STAGE_ACTIONS: dict[Stage, tuple[ActionKind, int]] = {
    Stage.posted: (ActionKind.review, 1),
    Stage.review_round_1: (ActionKind.review, 1),
    Stage.review_round_2: (ActionKind.review, 2),
    Stage.review_round_3: (ActionKind.review, 3),
    Stage.author_response_round_1: (ActionKind.author_response, 1),
    Stage.author_response_round_2: (ActionKind.author_response, 2),
    Stage.collaborative_assessment: (ActionKind.finalization_vote, 1),
    Stage.award_distribution: (ActionKind.award_allocation, 1),
    Stage.jc_review: (ActionKind.review, 1),
    Stage.jc_assessment: (ActionKind.finalization_vote, 1),
    Stage.jc_awarding: (ActionKind.award_allocation, 1),
}


def accepted_action(stage: Stage | str) -> tuple[ActionKind, int] | None:
    """Return (action kind, round) accepted in a stage, or None."""
    return STAGE_ACTIONS.get(Stage(stage))


def accepts(stage: Stage | str, action_kind: ActionKind) -> bool:
    accepted = accepted_action(stage)
    return accepted is not None and accepted[0] == action_kind
