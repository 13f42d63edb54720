"""CheckoutOrchestrator — one instance per checkout attempt.

Owns all step transitions of its ``CheckoutSession``:

    selecting_retailer -> matching -> confirming -> creating_cart -> complete

``error`` is reachable from matching and creating_cart; ``cancelled`` from
any non-terminal step. UI actions call the public coroutines; the UI polls
``get_state()`` for rendering.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, Protocol, TypeVar

import structlog

from cartsmash.checkout.confirmation import ConfirmationQueue
from cartsmash.checkout.session import CheckoutSession
from cartsmash.checkout.validation import is_valid_zip, validate_selection
from cartsmash.clients.mock_catalog import MockRetailerSearchClient
from cartsmash.clients.retailer import RetailerSearchClient, fallback_checkout_url
from cartsmash.config import settings
from cartsmash.errors import CartCreationError, InvalidTransitionError
from cartsmash.matching.engine import MatchingEngine
from cartsmash.models.contracts import (
    CartCreationRequest,
    CartCreationResult,
    CartItem,
    CheckoutError,
    CheckoutPreferences,
    CheckoutState,
    CheckoutStep,
    FieldError,
    ProductCandidate,
    Retailer,
)

log = structlog.get_logger("checkout.orchestrator")

T = TypeVar("T")

_TERMINAL_STEPS: frozenset[str] = frozenset({"complete", "cancelled"})


class CatalogClient(Protocol):
    signed_in: bool

    async def list_retailers(self, zip_code: str) -> list[Retailer]: ...

    async def search(
        self,
        cart_item: CartItem,
        retailer_id: str,
        zip_code: str,
    ) -> list[ProductCandidate]: ...

    async def create_cart(self, request: CartCreationRequest) -> CartCreationResult: ...


EngineFactory = Callable[[CatalogClient, str], MatchingEngine]


def build_catalog_client(auth_token: str | None = None) -> CatalogClient:
    """Real client, or the offline mock when USE_MOCK_CATALOG is set."""
    if settings.use_mock_catalog:
        return MockRetailerSearchClient()
    return RetailerSearchClient(auth_token=auth_token)


class _CancelledCheckout(Exception):
    pass


class CheckoutOrchestrator:
    """Drives one ``CheckoutSession`` from retailer selection to a created cart."""

    def __init__(
        self,
        cart: list[CartItem],
        *,
        client: CatalogClient,
        preferences: CheckoutPreferences | None = None,
        user_id: str | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self.session = CheckoutSession(cart)
        self.preferences = preferences or CheckoutPreferences()
        self._client = client
        self._user_id = user_id
        self._engine_factory = engine_factory or MatchingEngine.for_retailer
        self._inflight: asyncio.Future[Any] | None = None
        self._busy = False
        self._cancelled = False

    @property
    def step(self) -> CheckoutStep:
        return self.session.step

    # --- Actions ---

    async def load_retailers(self, zip_code: str) -> list[Retailer]:
        """Fetch retailers for ``zip_code`` so the UI can offer a choice."""
        self._require_step("load_retailers", "selecting_retailer")
        if not is_valid_zip(zip_code):
            self.session.validation_errors = [
                FieldError(field="zip_code", message="Enter a 5-digit ZIP code.")
            ]
            return []
        with self._exclusive("load_retailers"):
            try:
                retailers = await self._await_cancellable(self._client.list_retailers(zip_code.strip()))
            except _CancelledCheckout:
                return []
        self.session.retailers = retailers
        self.session.zip_code = zip_code.strip()
        self.session.validation_errors = []
        return list(retailers)

    async def start(
        self,
        retailer_id: str | None = None,
        zip_code: str | None = None,
    ) -> CheckoutState:
        """Leave retailer selection and match the whole cart.

        Missing values fall back to the injected preferences. Invalid input
        keeps the session in ``selecting_retailer`` with field errors set.
        """
        self._require_step("start", "selecting_retailer")
        retailer_id = retailer_id or self.preferences.retailer_id
        zip_code = zip_code or self.session.zip_code or self.preferences.zip_code

        with self._exclusive("start"):
            errors = validate_selection(
                list(self.session.cart),
                retailer_id,
                zip_code,
                self.session.retailers,
            )
            self.session.validation_errors = errors
            if errors:
                return self.get_state()

            assert retailer_id is not None and zip_code is not None  # guaranteed by validation
            self.session.retailer_id = retailer_id.strip()
            structlog.contextvars.bind_contextvars(retailer_id=self.session.retailer_id)
            self.session.zip_code = zip_code.strip()
            await self._run_matching()
        return self.get_state()

    async def confirm(self, candidate: ProductCandidate) -> CheckoutState:
        """Accept ``candidate`` for the item currently awaiting confirmation."""
        self._require_step("confirm", "confirming")
        with self._exclusive("confirm"):
            assert self.session.queue is not None
            self.session.queue.confirm(candidate)
            await self._advance_if_drained()
        return self.get_state()

    async def skip(self) -> CheckoutState:
        """Leave the current item out of the cart."""
        self._require_step("skip", "confirming")
        with self._exclusive("skip"):
            assert self.session.queue is not None
            self.session.queue.skip()
            await self._advance_if_drained()
        return self.get_state()

    async def retry(self) -> CheckoutState:
        """Re-enter the step that failed, without repeating steps that succeeded."""
        self._require_step("retry", "error")
        error = self.session.error
        assert error is not None
        if not error.retryable:
            log.warning("retry_ignored", reason="error is not retryable", failed_step=error.failed_step)
            raise InvalidTransitionError(f"Cannot retry: {error.message}")

        with self._exclusive("retry"):
            self.session.error = None
            log.info("checkout_retry", failed_step=error.failed_step)
            if error.failed_step == "matching":
                await self._run_matching()
            else:
                await self._create_cart()
        return self.get_state()

    def cancel(self) -> None:
        """Abandon the checkout. In-flight calls are cancelled and their results dropped."""
        if self.session.step in _TERMINAL_STEPS:
            log.warning("cancel_ignored", step=self.session.step)
            return
        self._cancelled = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        with self._log_context():
            log.info("checkout_cancelled", step=self.session.step)
        self.session.enter("cancelled")

    # --- Query ---

    def get_state(self) -> CheckoutState:
        return self.session.snapshot()

    def preferences_to_persist(self) -> CheckoutPreferences | None:
        """Selection to remember for a signed-in user; None when anonymous or unselected."""
        if not self._client.signed_in:
            return None
        if self.session.retailer_id is None or self.session.zip_code is None:
            return None
        return CheckoutPreferences(retailer_id=self.session.retailer_id, zip_code=self.session.zip_code)

    # --- Phases ---

    async def _run_matching(self) -> None:
        session = self.session
        assert session.retailer_id is not None and session.zip_code is not None
        session.reset_matching()
        session.enter("matching")
        try:
            engine = self._engine_factory(self._client, session.retailer_id)
            result = await self._await_cancellable(
                engine.match_cart(list(session.cart), session.retailer_id, session.zip_code)
            )
        except _CancelledCheckout:
            return
        except Exception as exc:
            log.error("matching_failed", error=str(exc)[:200], error_type=type(exc).__name__)
            self._fail("matching", "Matching your items failed. Please retry.", retryable=True)
            return

        for match in result.matches:
            session.assembler.add_match(match)
        session.queue = ConfirmationQueue(result.pending, session.assembler)
        log.info(
            "checkout_matched",
            auto_matched=len(result.matches),
            pending=len(result.pending),
            running_total=session.running_total,
        )

        if session.queue.is_drained:
            await self._create_cart()
        else:
            session.enter("confirming")

    async def _advance_if_drained(self) -> None:
        assert self.session.queue is not None
        if self.session.queue.is_drained:
            await self._create_cart()

    async def _create_cart(self) -> None:
        session = self.session
        session.enter("creating_cart")
        # Built once: a retry re-submits exactly what was attempted.
        if session.cart_request is None:
            session.cart_request = self._build_cart_request()
        request = session.cart_request

        if not request.items:
            log.warning("cart_creation_blocked", reason="no items", skipped=len(session.skipped))
            self._fail(
                "creating_cart",
                "Nothing to add to your cart: every item was skipped.",
                retryable=False,
            )
            return

        try:
            result = await self._await_cancellable(self._client.create_cart(request))
        except _CancelledCheckout:
            return
        except CartCreationError as exc:
            log.error(
                "cart_creation_failed",
                error=str(exc)[:200],
                status=exc.status_code,
                retryable=exc.retryable,
            )
            self._fail("creating_cart", str(exc), retryable=exc.retryable)
            return
        except Exception as exc:
            log.error("cart_creation_crashed", error=str(exc)[:200], error_type=type(exc).__name__)
            self._fail("creating_cart", "Creating your cart failed. Please retry.", retryable=True)
            return

        assert session.retailer_id is not None
        session.checkout_url = result.checkout_url or fallback_checkout_url(session.retailer_id)
        session.cart_id = result.cart_id
        session.enter("complete")
        log.info(
            "checkout_complete",
            cart_id=result.cart_id,
            items=len(request.items),
            running_total=session.running_total,
        )

    def _build_cart_request(self) -> CartCreationRequest:
        session = self.session
        assert session.retailer_id is not None and session.zip_code is not None
        items = session.assembler.line_items()
        return CartCreationRequest(
            retailer_id=session.retailer_id,
            zip_code=session.zip_code,
            items=items,
            user_id=self._user_id or "anonymous",
            metadata={
                "source": "CartSmash",
                "itemCount": len(items),
                "retailer": session.retailer_id,
                "skippedCount": len(session.skipped),
            },
        )

    # --- Helpers ---

    def _fail(self, failed_step: CheckoutStep, message: str, *, retryable: bool) -> None:
        self.session.error = CheckoutError(message=message, retryable=retryable, failed_step=failed_step)
        self.session.enter("error")

    def _require_step(self, operation: str, expected: CheckoutStep) -> None:
        if self.session.step != expected:
            log.warning(
                "operation_rejected",
                operation=operation,
                step=self.session.step,
                expected=expected,
            )
            raise InvalidTransitionError(
                f"{operation} is not allowed in step '{self.session.step}' (expected '{expected}')"
            )

    def _log_context(self) -> contextlib.AbstractContextManager[None]:
        """Tag every event logged during an operation with this checkout's ids."""
        return structlog.contextvars.bound_contextvars(
            checkout_session_id=self.session.id,
            retailer_id=self.session.retailer_id,
        )

    @contextlib.contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        if self._busy:
            log.warning("operation_rejected", operation=operation, reason="another operation in progress")
            raise InvalidTransitionError(f"{operation} rejected: another operation is in progress")
        self._busy = True
        try:
            with self._log_context():
                yield
        finally:
            self._busy = False

    async def _await_cancellable(self, aw: Awaitable[T]) -> T:
        """Await an outbound call as a task that ``cancel()`` can interrupt.

        Raises ``_CancelledCheckout`` if the session was cancelled before or
        while the call ran; its result is then discarded.
        """
        if self._cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise _CancelledCheckout()
        task = asyncio.ensure_future(aw)
        self._inflight = task
        try:
            result = await task
        except (asyncio.CancelledError, Exception):
            # A failure that lands after cancel() must not touch the session.
            if self._cancelled:
                raise _CancelledCheckout() from None
            raise
        finally:
            self._inflight = None
        if self._cancelled:
            raise _CancelledCheckout()
        return result
