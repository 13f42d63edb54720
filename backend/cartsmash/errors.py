"""Exceptions raised by the checkout engine.

Per-item search failures never surface as exceptions; they degrade into
pending confirmations. Validation failures are returned as field errors.
"""

from __future__ import annotations


class CheckoutError(Exception):
    """Base class for checkout engine errors."""


class CartCreationError(CheckoutError):
    """The external cart-creation call failed or reported ``success: false``."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class ConfirmationError(CheckoutError):
    """A confirm/skip action is not valid for the current pending item."""


class DuplicateMatchError(CheckoutError):
    """A cart item already has a match in the assembler."""


class InvalidTransitionError(CheckoutError):
    """An orchestrator operation was called in a step that does not allow it."""
