"""
Desk error taxonomy.

Every failure the core surfaces to a caller is a ``DeskError``. Pricing
failures block commission computation; they are never turned into a zero
commission. ``StaleOwnership`` is the only recoverable error: the caller
refetches the item and may retry.
"""

from __future__ import annotations


class DeskError(Exception):
    """Base class for all errors raised by the desk core."""

    recoverable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.message = str(self.args[0])

    @property
    def code(self) -> str:
        return self.__class__.__name__


# ── Pricing Engine ──────────────────────────────────────────────


class PricingError(DeskError):
    """Commission could not be resolved."""


class InvalidConfiguration(PricingError):
    """Commission configuration is malformed."""


class InvalidAmount(PricingError):
    """Principal amount is negative or not a number."""


class NoMatchingTier(PricingError):
    """No commission tier covers the principal amount."""


# ── Assignment Service ──────────────────────────────────────────


class StaleOwnership(DeskError):
    """Item ownership changed since it was read; refresh and retry."""

    recoverable = True


# ── Validation Service ──────────────────────────────────────────


class InvalidTransition(DeskError):
    """Transition not allowed from the item's current status."""


class NotOwner(DeskError):
    """Only the current owner may perform this action."""


class MissingReason(DeskError):
    """A non-empty reason or response is required."""


class Unauthorized(DeskError):
    """The actor's role does not permit this action."""


class ItemNotFound(DeskError):
    """No item with this id exists."""


# ── Submission ──────────────────────────────────────────────────


class OperationTypeUnavailable(DeskError):
    """The operation type cannot accept new submissions."""

    def __init__(self, message: str = "", status: str = "unknown") -> None:
        super().__init__(message)
        self.status = status


class MissingProof(DeskError):
    """This operation type requires a proof document."""


# ── Balance movements ───────────────────────────────────────────


class InsufficientCommissions(DeskError):
    """The amount exceeds the commissions currently due to the holder."""
