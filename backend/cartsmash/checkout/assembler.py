"""Cart assembly: the set of resolved matches and everything derived from it."""

from __future__ import annotations

import structlog

from cartsmash.errors import DuplicateMatchError
from cartsmash.models.contracts import CartLineItem, EstimatedTotal, Match, Retailer

log = structlog.get_logger("checkout.assembler")

DEFAULT_SERVICE_FEE = 3.99
DEFAULT_DELIVERY_FEE = 5.99
ESTIMATED_TAX_RATE = 0.08


def _cents(value: float) -> float:
    return round(value, 2)


class CartAssembler:
    """Accumulates matches. Totals are always derived from the held matches."""

    def __init__(self) -> None:
        self._matches: list[Match] = []
        self._matched_ids: set[str] = set()

    def __len__(self) -> int:
        return len(self._matches)

    @property
    def matches(self) -> list[Match]:
        return list(self._matches)

    def has_match_for(self, cart_item_id: str) -> bool:
        return cart_item_id in self._matched_ids

    def add_match(self, match: Match) -> None:
        item_id = match.cart_item.id
        if item_id in self._matched_ids:
            raise DuplicateMatchError(f"Cart item {item_id!r} is already matched")
        self._matches.append(match)
        self._matched_ids.add(item_id)
        log.debug(
            "match_added",
            cart_item_id=item_id,
            sku=match.product.sku,
            provenance=match.provenance,
            extended_price=match.extended_price,
        )

    def running_total(self) -> float:
        return _cents(sum(m.extended_price for m in self._matches))

    def line_items(self) -> list[CartLineItem]:
        return [
            CartLineItem(
                retailer_sku=m.product.sku,
                quantity=m.cart_item.quantity,
                price=m.product.price,
                product_name=m.product.name,
                original_item=m.cart_item.free_text,
            )
            for m in self._matches
        ]

    def to_external_payload(self) -> list[dict]:
        """Line items in the shape of the cart-creation endpoint.

        Builds fresh dicts on every call; held matches are never touched.
        """
        return [line.model_dump() for line in self.line_items()]

    def estimate_total(self, retailer: Retailer | None = None) -> EstimatedTotal:
        """Order estimate: subtotal plus retailer fees and an 8% tax estimate."""
        subtotal = self.running_total()
        service_fee = DEFAULT_SERVICE_FEE
        delivery_fee = DEFAULT_DELIVERY_FEE
        if retailer is not None:
            if retailer.service_fee is not None:
                service_fee = retailer.service_fee
            if retailer.delivery_fee is not None:
                delivery_fee = retailer.delivery_fee
        tax = subtotal * ESTIMATED_TAX_RATE
        return EstimatedTotal(
            subtotal=subtotal,
            service_fee=_cents(service_fee),
            delivery_fee=_cents(delivery_fee),
            tax=_cents(tax),
            total=_cents(subtotal + service_fee + delivery_fee + tax),
            item_count=len(self._matches),
        )
