"""Error taxonomy for the TradeGuard engine.

Engines raise these; the service facade converts them into
ServiceResult objects carrying a conventional status code. Anything not
derived from TradeGuardError is treated as an unexpected failure (500).
"""

from __future__ import annotations

from decimal import Decimal


class TradeGuardError(Exception):
    """Base class for all engine errors."""
    status_code = 500


class ValidationError(TradeGuardError):
    """Caller-correctable input or state problem. Nothing was mutated."""
    status_code = 400


class InvalidStateError(ValidationError):
    """A transition was attempted from a disallowed source status."""


class InsufficientStakeError(ValidationError):
    """Validator's free collateral does not cover the order amount."""

    def __init__(self, required: Decimal, available: Decimal) -> None:
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"Insufficient available stake. Need ${required}, "
            f"available: ${available:.2f} (short by ${self.shortfall:.2f}). "
            f"Wait for active locks to expire."
        )


class AuthorizationError(TradeGuardError):
    """Caller is not allowed to perform the action."""
    status_code = 403


class NotFoundError(TradeGuardError):
    """Referenced order, task or validator does not exist."""
    status_code = 404


class ConcurrentWriteError(TradeGuardError):
    """Conditional write lost against a newer version of the record."""
    status_code = 409


class CollaboratorError(TradeGuardError):
    """An external collaborator failed or timed out.

    Always absorbed by a fallback inside the engine; it only surfaces
    when a caller explicitly asks for the raw collaborator result.
    """
    status_code = 502


class InvariantViolation(TradeGuardError):
    """A stored record is corrupted or an internal invariant broke."""
    status_code = 500
