"""CheckoutSession — the state of one checkout attempt for one cart snapshot.

Owned by exactly one ``CheckoutOrchestrator``. A changed cart means a new
session; nothing here is shared between attempts.
"""

from __future__ import annotations

from uuid import uuid4

from cartsmash.checkout.assembler import CartAssembler
from cartsmash.checkout.confirmation import ConfirmationQueue
from cartsmash.models.contracts import (
    CartCreationRequest,
    CartItem,
    CheckoutError,
    CheckoutState,
    CheckoutStep,
    FieldError,
    Retailer,
)


class CheckoutSession:
    def __init__(self, cart: list[CartItem]) -> None:
        self.id = uuid4().hex[:12]
        self.cart: tuple[CartItem, ...] = tuple(cart)
        self.step: CheckoutStep = "selecting_retailer"
        self.history: list[CheckoutStep] = ["selecting_retailer"]
        self.retailer_id: str | None = None
        self.zip_code: str | None = None
        self.retailers: list[Retailer] = []
        self.validation_errors: list[FieldError] = []
        self.assembler = CartAssembler()
        self.queue: ConfirmationQueue | None = None
        self.cart_request: CartCreationRequest | None = None
        self.checkout_url: str | None = None
        self.cart_id: str | None = None
        self.error: CheckoutError | None = None

    def enter(self, step: CheckoutStep) -> None:
        self.step = step
        self.history.append(step)

    def reset_matching(self) -> None:
        self.assembler = CartAssembler()
        self.queue = None
        self.cart_request = None

    @property
    def selected_retailer(self) -> Retailer | None:
        for retailer in self.retailers:
            if retailer.id == self.retailer_id:
                return retailer
        return None

    @property
    def running_total(self) -> float:
        return self.assembler.running_total()

    @property
    def skipped(self) -> list[CartItem]:
        return list(self.queue.skipped) if self.queue else []

    def accounted_items(self) -> int:
        """Matched + still pending + skipped. Equals ``len(cart)`` once matching is done."""
        remaining = len(self.queue.remaining) if self.queue else 0
        return len(self.assembler) + remaining + len(self.skipped)

    def snapshot(self) -> CheckoutState:
        queue = self.queue
        matched = self.queue is not None
        return CheckoutState(
            session_id=self.id,
            step=self.step,
            retailer_id=self.retailer_id,
            zip_code=self.zip_code,
            retailers=list(self.retailers),
            matches=self.assembler.matches,
            current_pending=queue.current if queue else None,
            pending_remaining=len(queue.remaining) if queue else 0,
            skipped=self.skipped,
            running_total=self.running_total,
            estimated_total=self.assembler.estimate_total(self.selected_retailer) if matched else None,
            checkout_url=self.checkout_url,
            cart_id=self.cart_id,
            error=self.error,
            validation_errors=list(self.validation_errors),
            history=list(self.history),
        )
