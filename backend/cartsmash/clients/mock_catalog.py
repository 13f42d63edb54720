"""Offline catalog stand-in for local development.

Selected with USE_MOCK_CATALOG=true. Returns deterministic retailers,
candidates and carts so the checkout flow can be exercised end to end
without the catalog service.
"""

from __future__ import annotations

import zlib
from uuid import uuid4

from cartsmash.clients.retailer import fallback_checkout_url
from cartsmash.errors import CartCreationError
from cartsmash.models.contracts import (
    CartCreationRequest,
    CartCreationResult,
    CartItem,
    ProductCandidate,
    Retailer,
)

MOCK_RETAILERS: list[Retailer] = [
    Retailer(
        id="safeway",
        name="Safeway",
        logo="🏪",
        estimated_delivery="2 hours",
        service_fee=3.99,
        delivery_fee=5.99,
    ),
    Retailer(
        id="kroger",
        name="Kroger",
        logo="🛒",
        estimated_delivery="2-3 hours",
        service_fee=2.99,
        delivery_fee=4.99,
    ),
    Retailer(
        id="whole_foods",
        name="Whole Foods Market",
        logo="🥬",
        estimated_delivery="1-2 hours",
        service_fee=3.99,
        delivery_fee=7.99,
    ),
]

# (name template, confidence offset from the best candidate, price multiplier)
_VARIANTS = [
    ("{name}", 0.0, 1.0),
    ("Organic {name}", 0.15, 1.4),
    ("Store Brand {name}", 0.25, 0.8),
]


def _base_confidence(query: str) -> float:
    # Longer, more specific list entries match more reliably.
    if len(query) > 10:
        return 0.92
    if len(query) > 5:
        return 0.75
    return 0.45


def _base_price(query: str) -> float:
    return round(1.99 + (zlib.crc32(query.lower().encode()) % 800) / 100, 2)


class MockRetailerSearchClient:
    """Same interface as ``RetailerSearchClient`` with canned data."""

    signed_in = False

    async def __aenter__(self) -> MockRetailerSearchClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        return None

    async def list_retailers(self, zip_code: str) -> list[Retailer]:
        return list(MOCK_RETAILERS)

    async def search(
        self,
        cart_item: CartItem,
        retailer_id: str,
        zip_code: str,
    ) -> list[ProductCandidate]:
        query = cart_item.product_name.strip()
        base_conf = _base_confidence(query)
        base_price = _base_price(query)
        slug = "".join(ch if ch.isalnum() else "-" for ch in query.lower()).strip("-")
        candidates = []
        for rank, (template, offset, multiplier) in enumerate(_VARIANTS):
            candidates.append(
                ProductCandidate(
                    id=f"{retailer_id}-{slug}-{rank}",
                    sku=f"SKU-{zlib.crc32(f'{retailer_id}:{slug}:{rank}'.encode()):08x}",
                    name=template.format(name=query.title()),
                    price=round(base_price * multiplier, 2),
                    size=cart_item.unit if cart_item.unit != "each" else None,
                    confidence=round(max(0.0, base_conf - offset), 2),
                )
            )
        return candidates

    async def create_cart(self, request: CartCreationRequest) -> CartCreationResult:
        if not request.items:
            raise CartCreationError("RetailerId and items are required", retryable=False, status_code=400)
        return CartCreationResult(
            success=True,
            cart_id=f"mock_cart_{uuid4().hex[:12]}",
            checkout_url=fallback_checkout_url(request.retailer_id),
            items_added=len(request.items),
        )
