"""CartSmash checkout contract models.

Shared by the search client, matching engine, checkout session and the UI
layer that polls ``CheckoutState``. Only additive (new optional field)
changes are safe once a UI build depends on these shapes.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

# === Shared Types ===

CheckoutStep = Literal[
    "selecting_retailer",
    "matching",
    "confirming",
    "creating_cart",
    "complete",
    "error",
    "cancelled",
]

Provenance = Literal["auto", "user-confirmed"]


class CartItem(BaseModel):
    """One free-text grocery entry produced by the upstream list parser."""

    model_config = {"frozen": True}

    id: str
    product_name: str = Field(min_length=1)
    quantity: float = Field(gt=0, default=1)
    unit: str = "each"
    category: str | None = None
    original_text: str | None = None  # raw list line, e.g. "2 lbs chicken breast"

    @property
    def free_text(self) -> str:
        if self.original_text:
            return self.original_text
        return f"{self.quantity:g} {self.unit} {self.product_name}"


class ProductCandidate(BaseModel):
    model_config = {"frozen": True}

    id: str
    sku: str
    name: str
    price: float = Field(ge=0)
    image: str | None = None
    size: str | None = None
    brand: str | None = None
    confidence: float = Field(ge=0, le=1)


class Match(BaseModel):
    model_config = {"frozen": True}

    cart_item: CartItem
    product: ProductCandidate
    provenance: Provenance

    @property
    def extended_price(self) -> float:
        return self.product.price * self.cart_item.quantity


class PendingConfirmation(BaseModel):
    model_config = {"frozen": True}

    cart_item: CartItem
    candidates: list[ProductCandidate] = []  # top N, best first


class Retailer(BaseModel):
    id: str
    name: str
    logo: str | None = None
    estimated_delivery: str | None = None
    service_fee: float | None = Field(ge=0, default=None)
    delivery_fee: float | None = Field(ge=0, default=None)


class CheckoutPreferences(BaseModel):
    """Remembered retailer/ZIP for a signed-in user. Passed in, never read mid-flow."""

    model_config = {"frozen": True}

    retailer_id: str | None = None
    zip_code: str | None = None


class FieldError(BaseModel):
    field: str
    message: str


class CheckoutError(BaseModel):
    message: str
    retryable: bool
    failed_step: CheckoutStep


class EstimatedTotal(BaseModel):
    subtotal: float = Field(ge=0)
    service_fee: float = Field(ge=0)
    delivery_fee: float = Field(ge=0)
    tax: float = Field(ge=0)
    total: float = Field(ge=0)
    item_count: int = Field(ge=0)


# === Matching Output ===


class MatchingResult(BaseModel):
    matches: list[Match] = []
    pending: list[PendingConfirmation] = []


# === External Cart API ===


class CartLineItem(BaseModel):
    retailer_sku: str
    quantity: float
    price: float
    product_name: str
    original_item: str


class CartCreationRequest(BaseModel):
    retailer_id: str
    zip_code: str
    items: list[CartLineItem]
    user_id: str = "anonymous"
    metadata: dict = {}

    def to_wire(self) -> dict:
        """Request body in the camelCase shape the cart endpoint expects."""
        return {
            "retailerId": self.retailer_id,
            "zipCode": self.zip_code,
            "items": [item.model_dump() for item in self.items],
            "userId": self.user_id,
            "metadata": dict(self.metadata),
        }


class CartCreationResult(BaseModel):
    success: bool
    checkout_url: str | None = None
    cart_id: str | None = None
    error: str | None = None
    items_added: int | None = None


# === Session State (returned to the UI) ===


class CheckoutState(BaseModel):
    step: CheckoutStep
    session_id: str | None = None
    retailer_id: str | None = None
    zip_code: str | None = None
    retailers: list[Retailer] = []
    matches: list[Match] = []
    current_pending: PendingConfirmation | None = None
    pending_remaining: int = 0
    skipped: list[CartItem] = []
    running_total: float = 0.0
    estimated_total: EstimatedTotal | None = None
    checkout_url: str | None = None
    cart_id: str | None = None
    error: CheckoutError | None = None
    validation_errors: list[FieldError] = []
    history: list[CheckoutStep] = []
