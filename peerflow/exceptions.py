"""Engine exceptions.

Every error surfaces synchronously to the caller of an action handler.
Only StaleState is safe to act on by re-fetching state; none of these
should be retried blindly.
"""

from fastapi import HTTPException, status


class EngineError(Exception):
    """Base exception for progression engine errors."""

    def __init__(self, message: str, error_type: str = "engine_error"):
        self.message = message
        self.error_type = error_type
        super().__init__(message)


class ActivityNotFound(EngineError):
    """Raised when an activity id is unknown."""

    def __init__(self, activity_id):
        super().__init__(f"Activity '{activity_id}' not found", "activity_not_found")
        self.activity_id = activity_id


class UnknownTemplate(EngineError):
    """Raised when a template id is unknown. Configuration error."""

    def __init__(self, template_id: str):
        super().__init__(f"Template '{template_id}' not found", "unknown_template")
        self.template_id = template_id


class TemplateValidationError(EngineError):
    """Raised when template data violates a load-time invariant."""

    def __init__(self, template_id: str, errors: list[str]):
        super().__init__(
            f"Template '{template_id}' is invalid: " + "; ".join(errors),
            "template_validation_error",
        )
        self.template_id = template_id
        self.errors = errors


class UnknownPredicate(EngineError):
    """Raised when a condition names a predicate that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown predicate: '{name}'", "unknown_predicate")
        self.name = name


class StaleState(EngineError):
    """Raised when the activity is no longer in the expected stage.

    The caller lost a race with another completer and must re-fetch state.
    """

    def __init__(self, activity_id, expected_stage: str, actual_stage: str):
        super().__init__(
            f"Activity '{activity_id}' is in stage '{actual_stage}', "
            f"expected '{expected_stage}'",
            "stale_state",
        )
        self.activity_id = activity_id
        self.expected_stage = expected_stage
        self.actual_stage = actual_stage


class InvalidTransition(EngineError):
    """Raised when a transition is not a declared edge of the template."""

    def __init__(self, template_id: str, from_stage: str, to_stage: str):
        super().__init__(
            f"No edge '{from_stage}' → '{to_stage}' in template '{template_id}'",
            "invalid_transition",
        )
        self.template_id = template_id
        self.from_stage = from_stage
        self.to_stage = to_stage


class AlreadySubmitted(EngineError):
    """Raised on a duplicate submission. Nothing was recorded."""

    def __init__(self, action_kind: str, round_number: int):
        super().__init__(
            f"Already submitted {action_kind} for round {round_number}",
            "already_submitted",
        )
        self.action_kind = action_kind
        self.round_number = round_number


class StageClosed(EngineError):
    """Raised when an action is attempted outside the stage that accepts it."""

    def __init__(self, action: str, current_stage: str):
        super().__init__(
            f"Cannot {action} while the activity is in stage '{current_stage}'",
            "stage_closed",
        )
        self.action = action
        self.current_stage = current_stage


class NotEligible(EngineError):
    """Raised when the actor may not perform the action."""

    def __init__(self, message: str):
        super().__init__(message, "not_eligible")


class InsufficientFunds(EngineError):
    """Raised when the ledger reports insufficient balance."""

    def __init__(self, account: str, amount: int):
        super().__init__(
            f"Insufficient funds in '{account}' for {amount} tokens",
            "insufficient_funds",
        )
        self.account = account
        self.amount = amount


class LedgerError(EngineError):
    """Raised when the ledger is inconsistent with the activity escrow."""

    def __init__(self, message: str):
        super().__init__(message, "ledger_error")


def raise_http_exception(error: EngineError) -> None:
    """Convert EngineError to HTTPException."""
    status_map = {
        "activity_not_found": status.HTTP_404_NOT_FOUND,
        "unknown_template": status.HTTP_404_NOT_FOUND,
        "template_validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
        "unknown_predicate": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "stale_state": status.HTTP_409_CONFLICT,
        "invalid_transition": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "already_submitted": status.HTTP_409_CONFLICT,
        "stage_closed": status.HTTP_400_BAD_REQUEST,
        "not_eligible": status.HTTP_403_FORBIDDEN,
        "insufficient_funds": status.HTTP_402_PAYMENT_REQUIRED,
        "ledger_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
        "engine_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    code = status_map.get(error.error_type, status.HTTP_500_INTERNAL_SERVER_ERROR)

    raise HTTPException(
        status_code=code,
        detail={
            "type": error.error_type,
            "title": error.error_type.replace("_", " ").title(),
            "status": code,
            "detail": error.message,
        },
    )
