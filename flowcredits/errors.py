"""
Error taxonomy for the credit ledger.

Every failure a ledger caller can observe is one of the named errors below.
Each carries:
- a stable error code for programmatic handling
- the HTTP status used by the API layer
- whether the caller may retry (with backoff)
- structured context (tenant, payment, reservation) for logs and Sentry
"""
from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """
    Base exception for all ledger errors.

    Attributes:
        code: Stable error code
        http_status: Status code returned by the API
        retryable: Whether the operation can be retried
        context: Structured debugging context
    """

    code: str = "ledger_error"
    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


# =============================================================================
# Expected business outcomes
# =============================================================================


class InsufficientCredits(LedgerError):
    """Not enough available credits. Reported to the caller, never retried."""

    code = "insufficient_credits"
    http_status = 402

    def __init__(self, available: int, required: int, **context: Any):
        super().__init__(
            f"Insufficient credits: {available} available, {required} required",
            available=available,
            required=required,
            **context,
        )
        self.available = available
        self.required = required


class PaymentFailed(LedgerError):
    """The linked payment failed; the purchase never became effective."""

    code = "payment_failed"
    http_status = 402


# =============================================================================
# Caller errors (rejected at the boundary)
# =============================================================================


class InvalidCurrency(LedgerError):
    code = "invalid_currency"
    http_status = 422


class InvalidQuantity(LedgerError):
    code = "invalid_quantity"
    http_status = 422


class InvalidSettings(LedgerError):
    """Alert / auto-replenish configuration rejected."""

    code = "invalid_settings"
    http_status = 422


class UnknownTenant(LedgerError):
    code = "unknown_tenant"
    http_status = 404


class TokenNotFound(LedgerError):
    code = "token_not_found"
    http_status = 404


class PaymentNotFound(LedgerError):
    code = "payment_not_found"
    http_status = 404


class InvalidState(LedgerError):
    """Operation not allowed from the current reservation or payment state."""

    code = "invalid_state"
    http_status = 409


# =============================================================================
# Transient errors (retry with backoff)
# =============================================================================


class Busy(LedgerError):
    """The tenant's critical section could not be acquired in time."""

    code = "busy"
    http_status = 503
    retryable = True
    retry_after = 1


class ConcurrentModification(LedgerError):
    """Another writer changed the tenant balance first."""

    code = "concurrent_modification"
    http_status = 409
    retryable = True
    retry_after = 1


# =============================================================================
# Fatal
# =============================================================================


class DataIntegrityViolation(LedgerError):
    """A ledger invariant would be broken. The operation is aborted."""

    code = "data_integrity_violation"
    http_status = 500
