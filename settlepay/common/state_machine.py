"""Payout ledger state machine transitions enforced by the orchestrator."""

from settlepay.common.errors import Conflict

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {COMPLETED, FAILED, CANCELLED},
    # Admin retry re-enters processing with the same financial snapshot.
    FAILED: {PROCESSING},
    COMPLETED: set(),
    CANCELLED: set(),
}

TERMINAL_STATES = frozenset({COMPLETED, CANCELLED})


def validate_transition(current: str, new: str) -> None:
    """Raise `Conflict` when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        code = "already_completed" if current == COMPLETED else "invalid_transition"
        raise Conflict(f"Invalid transition: {current} -> {new}", code=code)
