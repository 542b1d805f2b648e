"""Payment session state machine transitions enforced by the checkout client."""

CREATED = "created"
AUTHORIZED = "authorized"
COMPLETED = "completed"
FAILED = "failed"
CANCELED = "canceled"
SUPERSEDED = "superseded"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    CREATED: {AUTHORIZED, COMPLETED, FAILED, CANCELED, SUPERSEDED},
    AUTHORIZED: {COMPLETED, FAILED, SUPERSEDED},
    COMPLETED: set(),
    FAILED: set(),
    CANCELED: set(),
    SUPERSEDED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES
