"""Guards for leaving retailer selection.

Failures are returned as field-level messages for inline display; nothing
here raises.
"""

from __future__ import annotations

import re

import structlog

from cartsmash.models.contracts import CartItem, FieldError, Retailer

logger = structlog.get_logger("checkout.validation")

_ZIP_RE = re.compile(r"^[0-9]{5}$")


def is_valid_zip(zip_code: str | None) -> bool:
    if not zip_code:
        return False
    return _ZIP_RE.match(zip_code.strip()) is not None


def validate_selection(
    cart: list[CartItem],
    retailer_id: str | None,
    zip_code: str | None,
    available_retailers: list[Retailer] | None = None,
) -> list[FieldError]:
    """Check the cart, retailer and ZIP before matching starts.

    ``available_retailers`` is the list shown to the user, if one was
    loaded; the selected retailer must then be one of them.
    """
    errors: list[FieldError] = []

    if not cart:
        errors.append(FieldError(field="cart", message="Your cart is empty. Add items before checkout."))
    else:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for item in cart:
            if item.id in seen:
                duplicates.add(item.id)
            seen.add(item.id)
        if duplicates:
            errors.append(
                FieldError(
                    field="cart",
                    message=f"Cart has duplicate item ids: {', '.join(sorted(duplicates))}",
                )
            )

    if not retailer_id or not retailer_id.strip():
        errors.append(FieldError(field="retailer", message="Choose a store to shop from."))
    elif available_retailers and retailer_id not in {r.id for r in available_retailers}:
        errors.append(
            FieldError(field="retailer", message="That store does not deliver to this ZIP code.")
        )

    if not is_valid_zip(zip_code):
        errors.append(FieldError(field="zip_code", message="Enter a 5-digit ZIP code."))

    if errors:
        logger.info(
            "checkout_selection_invalid",
            fields=[e.field for e in errors],
            cart_items=len(cart),
        )
    return errors
