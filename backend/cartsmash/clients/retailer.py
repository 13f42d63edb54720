"""HTTP client for the catalog/cart collaborator.

Three calls: retailer listing, per-item product search and cart creation.
Search and listing never raise for transport problems; they log and return
an empty list so callers treat "search failed" and "no candidates" alike.
Cart creation raises ``CartCreationError`` because it is the only call that
can fail a checkout.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from cartsmash.config import settings
from cartsmash.errors import CartCreationError
from cartsmash.models.contracts import (
    CartCreationRequest,
    CartCreationResult,
    CartItem,
    ProductCandidate,
    Retailer,
)
from cartsmash.utils.http import (
    RetryPolicy,
    TransportError,
    is_retryable_status,
    send_with_retry,
)

log = structlog.get_logger("checkout.retailer_client")

_STOREFRONT_URLS: dict[str, str] = {
    "safeway": "https://www.instacart.com/store/safeway",
    "kroger": "https://www.instacart.com/store/kroger",
    "costco": "https://www.instacart.com/store/costco-wholesale",
    "whole_foods": "https://www.instacart.com/store/whole-foods-market",
    "target": "https://www.instacart.com/store/target",
    "albertsons": "https://www.instacart.com/store/albertsons",
}
_DEFAULT_STOREFRONT_URL = "https://www.instacart.com/store/storefront"


def fallback_checkout_url(retailer_id: str) -> str:
    """Storefront URL used when a created cart comes back without a checkout link."""
    return _STOREFRONT_URLS.get(retailer_id, _DEFAULT_STOREFRONT_URL)


def _first(row: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


def _parse_candidates(rows: list[Any]) -> list[ProductCandidate]:
    """Validate raw product rows, dropping malformed entries.

    Result is sorted by confidence descending. The sort is stable, so equal
    confidences keep the order the endpoint returned them in.
    """
    candidates: list[ProductCandidate] = []
    for row in rows:
        if not isinstance(row, dict):
            log.warning("search_product_dropped", reason="not an object")
            continue
        product_id = _first(row, "id", "product_id")
        if product_id is None:
            log.warning("search_product_dropped", reason="missing id")
            continue
        try:
            candidates.append(
                ProductCandidate(
                    id=str(product_id),
                    sku=str(_first(row, "sku", "retailer_sku") or product_id),
                    name=_first(row, "name", "display_name") or "",
                    price=_first(row, "price") or 0,
                    image=_first(row, "image", "image_url"),
                    size=_first(row, "size"),
                    brand=_first(row, "brand"),
                    confidence=_first(row, "confidence") or 0,
                )
            )
        except ValidationError as exc:
            log.warning(
                "search_product_dropped",
                reason="invalid fields",
                product_id=row.get("id"),
                errors=exc.error_count(),
            )
    candidates.sort(key=lambda c: c.confidence, reverse=True)
    return candidates


def _parse_retailers(rows: list[Any]) -> list[Retailer]:
    retailers: list[Retailer] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        retailer_id = _first(row, "id", "retailer_key", "retailer_id")
        name = _first(row, "name", "retailer_name", "display_name")
        if retailer_id is None or name is None:
            log.warning("retailer_dropped", reason="missing id or name")
            continue
        try:
            retailers.append(
                Retailer(
                    id=str(retailer_id),
                    name=str(name),
                    logo=_first(row, "logo", "logo_url", "retailer_logo_url"),
                    estimated_delivery=_first(row, "estimatedDelivery", "estimated_delivery"),
                    service_fee=_first(row, "service_fee", "serviceFee"),
                    delivery_fee=_first(row, "delivery_fee", "deliveryFee"),
                )
            )
        except ValidationError:
            log.warning("retailer_dropped", reason="invalid fields", retailer_id=retailer_id)
    return retailers


class RetailerSearchClient:
    """Async client for ``/retailers``, ``/search`` and ``/cart/create``.

    Pass ``auth_token`` for a signed-in user; anonymous sessions send no
    Authorization header. The underlying ``httpx.AsyncClient`` is closed by
    ``aclose()`` only if this instance created it.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        auth_token: str | None = None,
        timeout_s: float | None = None,
        retailer_cache_ttl_s: float | None = None,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.catalog_api_url).rstrip("/")
        self.auth_token = auth_token
        self.timeout_s = timeout_s if timeout_s is not None else settings.request_timeout_s
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.retailer_cache_ttl_s = (
            retailer_cache_ttl_s if retailer_cache_ttl_s is not None else settings.retailer_cache_ttl_s
        )
        # zip -> (monotonic fetch time, retailers)
        self._retailer_cache: dict[str, tuple[float, list[Retailer]]] = {}
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()

    async def __aenter__(self) -> RetailerSearchClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def signed_in(self) -> bool:
        return bool(self.auth_token)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def list_retailers(self, zip_code: str) -> list[Retailer]:
        """Retailers delivering to ``zip_code``; empty on any failure.

        Non-empty results are cached per ZIP for ``retailer_cache_ttl_s``.
        """
        cached = self._retailer_cache.get(zip_code)
        if cached is not None and time.monotonic() - cached[0] < self.retailer_cache_ttl_s:
            log.debug("retailers_cache_hit", zip_code=zip_code, count=len(cached[1]))
            return list(cached[1])

        try:
            resp = await send_with_retry(
                lambda: self._http.get(
                    self._url("/retailers"),
                    params={"zip": zip_code},
                    headers=self._headers(),
                    timeout=self.timeout_s,
                ),
                policy=self.retry_policy,
                operation="list_retailers",
            )
        except TransportError:
            return []

        if resp.status_code != 200:
            log.warning("list_retailers_failed", status=resp.status_code, zip_code=zip_code)
            return []
        try:
            data = resp.json()
        except ValueError:
            log.warning("list_retailers_bad_json", zip_code=zip_code)
            return []

        rows = data.get("retailers") if isinstance(data, dict) else None
        retailers = _parse_retailers(rows or [])
        log.info("retailers_listed", zip_code=zip_code, count=len(retailers))
        if retailers:
            self._retailer_cache[zip_code] = (time.monotonic(), retailers)
        return list(retailers)

    async def search(
        self,
        cart_item: CartItem,
        retailer_id: str,
        zip_code: str,
    ) -> list[ProductCandidate]:
        """Candidates for one cart item, best first. Empty on failure or no results."""
        payload = {
            "query": cart_item.product_name,
            "retailerId": retailer_id,
            "zipCode": zip_code,
            "quantity": cart_item.quantity,
            "category": cart_item.category,
            "originalItem": cart_item.free_text,
        }
        try:
            resp = await send_with_retry(
                lambda: self._http.post(
                    self._url("/search"),
                    json=payload,
                    headers=self._headers(),
                    timeout=self.timeout_s,
                ),
                policy=self.retry_policy,
                operation="search",
            )
        except TransportError:
            return []

        if resp.status_code != 200:
            log.warning(
                "search_failed",
                status=resp.status_code,
                query=cart_item.product_name[:80],
            )
            return []
        try:
            data = resp.json()
        except ValueError:
            log.warning("search_bad_json", query=cart_item.product_name[:80])
            return []

        rows = data.get("products") if isinstance(data, dict) else None
        return _parse_candidates(rows or [])

    async def create_cart(self, request: CartCreationRequest) -> CartCreationResult:
        """Submit the assembled cart. Raises ``CartCreationError`` on any failure."""
        body = request.to_wire()
        try:
            resp = await send_with_retry(
                lambda: self._http.post(
                    self._url("/cart/create"),
                    json=body,
                    headers=self._headers(),
                    timeout=self.timeout_s,
                ),
                policy=self.retry_policy,
                operation="create_cart",
            )
        except TransportError as exc:
            raise CartCreationError(str(exc), retryable=True) from exc

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code >= 400:
            detail = data.get("error") if isinstance(data, dict) else None
            raise CartCreationError(
                f"Cart creation failed ({resp.status_code}): {detail or resp.text[:200]}",
                retryable=is_retryable_status(resp.status_code),
                status_code=resp.status_code,
            )
        if not isinstance(data, dict):
            raise CartCreationError(
                "Cart creation returned an unreadable response",
                retryable=True,
                status_code=resp.status_code,
            )
        if not data.get("success"):
            raise CartCreationError(
                data.get("error") or "Cart creation failed",
                retryable=True,
                status_code=resp.status_code,
            )

        # The endpoint passes the retailer's cart id through; it may be numeric.
        cart_id = _first(data, "cartId", "cart_id")
        checkout_url = _first(data, "checkoutUrl", "checkout_url")
        try:
            return CartCreationResult(
                success=True,
                checkout_url=str(checkout_url) if checkout_url is not None else None,
                cart_id=str(cart_id) if cart_id is not None else None,
                items_added=data.get("itemsAdded"),
            )
        except ValidationError as exc:
            log.warning("create_cart_bad_response", errors=exc.error_count())
            raise CartCreationError(
                "Cart creation returned an unreadable response",
                retryable=True,
                status_code=resp.status_code,
            ) from exc
