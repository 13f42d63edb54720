"""Sequential confirmation of low-confidence cart items."""

from __future__ import annotations

import structlog

from cartsmash.checkout.assembler import CartAssembler
from cartsmash.errors import ConfirmationError
from cartsmash.models.contracts import CartItem, Match, PendingConfirmation, ProductCandidate

log = structlog.get_logger("checkout.confirmation")


class ConfirmationQueue:
    """Walks pending items one at a time; each is confirmed or skipped exactly once.

    Confirmed items become user-confirmed matches in ``assembler``. Skipped
    items are recorded and left out of the cart.
    """

    def __init__(self, pending: list[PendingConfirmation], assembler: CartAssembler) -> None:
        self._pending = list(pending)
        self._assembler = assembler
        self.current_index = 0
        self.skipped: list[CartItem] = []

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> list[PendingConfirmation]:
        return list(self._pending)

    @property
    def is_drained(self) -> bool:
        return self.current_index == len(self._pending)

    @property
    def current(self) -> PendingConfirmation | None:
        if self.is_drained:
            return None
        return self._pending[self.current_index]

    @property
    def remaining(self) -> list[PendingConfirmation]:
        return self._pending[self.current_index :]

    def can_confirm(self) -> bool:
        current = self.current
        return current is not None and bool(current.candidates)

    def confirm(self, candidate: ProductCandidate) -> Match:
        current = self.current
        if current is None:
            raise ConfirmationError("No item is awaiting confirmation")
        if not current.candidates:
            raise ConfirmationError(
                f"No match found for {current.cart_item.product_name!r}; it can only be skipped"
            )
        # Price and confidence come from the offered candidate, never the caller's copy.
        offered = next(
            (c for c in current.candidates if c.id == candidate.id and c.sku == candidate.sku),
            None,
        )
        if offered is None:
            raise ConfirmationError(
                f"Product {candidate.sku!r} is not a candidate for {current.cart_item.product_name!r}"
            )

        match = Match(cart_item=current.cart_item, product=offered, provenance="user-confirmed")
        self._assembler.add_match(match)
        self.current_index += 1
        log.info(
            "confirmation_accepted",
            cart_item_id=current.cart_item.id,
            sku=offered.sku,
            position=self.current_index,
            total=len(self._pending),
        )
        return match

    def skip(self) -> CartItem:
        current = self.current
        if current is None:
            raise ConfirmationError("No item is awaiting confirmation")
        self.skipped.append(current.cart_item)
        self.current_index += 1
        log.info(
            "confirmation_skipped",
            cart_item_id=current.cart_item.id,
            had_candidates=bool(current.candidates),
            position=self.current_index,
            total=len(self._pending),
        )
        return current.cart_item
