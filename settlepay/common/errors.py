"""Settlement error taxonomy.

Every error carries a stable machine `code` so callers can tell, for example,
"not yet eligible" (`no_revenue`) apart from "bank not verified".
"""

from enum import Enum


class SettlementError(Exception):
    """Base class for errors surfaced to settlement callers."""

    code = "settlement_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFound(SettlementError):
    code = "not_found"


class Conflict(SettlementError):
    code = "conflict"


class DuplicateLedger(Conflict):
    """A ledger already exists for the professional/week; carries it."""

    code = "duplicate_ledger"

    def __init__(self, existing) -> None:
        super().__init__(f"payout already generated for this week (ledger {existing.ledger_id})")
        self.existing = existing


class ValidationError(SettlementError):
    code = "validation_error"


class SecurityError(SettlementError):
    code = "invalid_signature"


class GatewayErrorKind(str, Enum):
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    UNAUTHORIZED = "unauthorized"


class GatewayError(SettlementError):
    """Failed payout gateway call, classified by `kind`."""

    def __init__(self, kind: GatewayErrorKind, message: str, retryable: bool | None = None) -> None:
        super().__init__(message, code=kind.value)
        self.kind = kind
        self.retryable = kind == GatewayErrorKind.TIMEOUT if retryable is None else retryable

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, message={self.message!r}, retryable={self.retryable})"
