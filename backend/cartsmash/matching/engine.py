"""Matching engine — resolves cart items to retailer candidates.

For each cart item:
1. Search the retailer catalog (bounded concurrency)
2. Auto-match when the best candidate meets the confidence threshold
3. Otherwise queue the item for confirmation with its top candidates

Stateless: all inputs passed in, result returned. Results follow cart
order regardless of which search finishes first.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from cartsmash.config import settings
from cartsmash.models.contracts import (
    CartItem,
    Match,
    MatchingResult,
    PendingConfirmation,
    ProductCandidate,
)

log = structlog.get_logger("checkout.matching")

DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_MAX_CANDIDATES = 3
DEFAULT_CONCURRENCY = 5


class CandidateSource(Protocol):
    async def search(
        self,
        cart_item: CartItem,
        retailer_id: str,
        zip_code: str,
    ) -> list[ProductCandidate]: ...


def threshold_for_retailer(retailer_id: str) -> float:
    """Confidence threshold for ``retailer_id``, honoring per-retailer overrides."""
    return settings.retailer_confidence_thresholds.get(retailer_id, settings.confidence_threshold)


def classify(
    cart_item: CartItem,
    candidates: list[ProductCandidate],
    *,
    threshold: float,
    max_candidates: int = DEFAULT_MAX_CANDIDATES,
) -> Match | PendingConfirmation:
    """Auto-match on the top candidate or defer to the user.

    ``candidates`` must already be ranked best first. Ties at the top keep
    their incoming order; no secondary sort is applied.
    """
    if candidates and candidates[0].confidence >= threshold:
        return Match(cart_item=cart_item, product=candidates[0], provenance="auto")
    return PendingConfirmation(cart_item=cart_item, candidates=candidates[:max_candidates])


class MatchingEngine:
    def __init__(
        self,
        source: CandidateSource,
        *,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if not 0 <= threshold <= 1:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")
        self.source = source
        self.threshold = threshold
        self.max_candidates = max(0, max_candidates)
        self.concurrency = max(1, concurrency)

    @classmethod
    def for_retailer(cls, source: CandidateSource, retailer_id: str) -> MatchingEngine:
        return cls(
            source,
            threshold=threshold_for_retailer(retailer_id),
            max_candidates=settings.max_candidates,
            concurrency=settings.search_concurrency,
        )

    async def _search_one(
        self,
        cart_item: CartItem,
        retailer_id: str,
        zip_code: str,
    ) -> list[ProductCandidate]:
        try:
            return await self.source.search(cart_item, retailer_id, zip_code)
        except Exception as exc:
            # A search that blows up is treated like one that found nothing.
            log.warning(
                "matching_search_failed",
                cart_item_id=cart_item.id,
                error=str(exc)[:200],
                error_type=type(exc).__name__,
            )
            return []

    async def match_cart(
        self,
        cart: list[CartItem],
        retailer_id: str,
        zip_code: str,
    ) -> MatchingResult:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _search_limited(item: CartItem) -> list[ProductCandidate]:
            async with semaphore:
                return await self._search_one(item, retailer_id, zip_code)

        log.info(
            "matching_start",
            items=len(cart),
            retailer_id=retailer_id,
            threshold=self.threshold,
            concurrency=self.concurrency,
        )

        # gather() returns results in argument order, not completion order.
        candidate_sets = await asyncio.gather(*(_search_limited(item) for item in cart))

        matches: list[Match] = []
        pending: list[PendingConfirmation] = []
        for item, candidates in zip(cart, candidate_sets, strict=True):
            outcome = classify(
                item,
                candidates,
                threshold=self.threshold,
                max_candidates=self.max_candidates,
            )
            if isinstance(outcome, Match):
                matches.append(outcome)
            else:
                pending.append(outcome)

        log.info(
            "matching_complete",
            auto_matched=len(matches),
            pending=len(pending),
            no_candidates=sum(1 for p in pending if not p.candidates),
        )
        return MatchingResult(matches=matches, pending=pending)
