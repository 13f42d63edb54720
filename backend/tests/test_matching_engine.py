"""Tests for the matching engine: thresholds, ordering and failure handling."""

from __future__ import annotations

import asyncio

import pytest

from cartsmash.matching.engine import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    MatchingEngine,
    classify,
    threshold_for_retailer,
)
from cartsmash.models.contracts import CartItem, Match, PendingConfirmation, ProductCandidate


def _candidate(sku: str, confidence: float, price: float = 2.0) -> ProductCandidate:
    return ProductCandidate(id=sku.lower(), sku=sku, name=f"Product {sku}", price=price, confidence=confidence)


def _item(item_id: str, name: str | None = None) -> CartItem:
    return CartItem(id=item_id, product_name=name or f"item {item_id}")


class FakeSource:
    """Returns canned candidates per cart item id; optional per-item delay or error."""

    def __init__(self, results=None, delays=None, errors=None):
        self.results = results or {}
        self.delays = delays or {}
        self.errors = errors or {}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, cart_item, retailer_id, zip_code):
        self.calls.append(cart_item.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(cart_item.id, 0))
            if cart_item.id in self.errors:
                raise self.errors[cart_item.id]
            return list(self.results.get(cart_item.id, []))
        finally:
            self.in_flight -= 1


# === classify ===


class TestClassify:
    def test_auto_match_at_threshold(self):
        """Confidence equal to the threshold auto-matches."""
        outcome = classify(_item("1"), [_candidate("A", 0.7)], threshold=0.7)
        assert isinstance(outcome, Match)
        assert outcome.provenance == "auto"
        assert outcome.product.sku == "A"

    def test_below_threshold_pending(self):
        outcome = classify(_item("1"), [_candidate("A", 0.69), _candidate("B", 0.5)], threshold=0.7)
        assert isinstance(outcome, PendingConfirmation)
        assert [c.sku for c in outcome.candidates] == ["A", "B"]

    def test_no_candidates_pending_with_empty_list(self):
        outcome = classify(_item("1"), [], threshold=0.7)
        assert isinstance(outcome, PendingConfirmation)
        assert outcome.candidates == []

    def test_pending_candidates_truncated(self):
        candidates = [_candidate(str(i), 0.5 - i * 0.01) for i in range(5)]
        outcome = classify(_item("1"), candidates, threshold=0.7, max_candidates=3)
        assert isinstance(outcome, PendingConfirmation)
        assert [c.sku for c in outcome.candidates] == ["0", "1", "2"]

    def test_tie_takes_first_returned(self):
        """Equal top confidences: the first one the source returned wins."""
        outcome = classify(_item("1"), [_candidate("FIRST", 0.9), _candidate("SECOND", 0.9)], threshold=0.7)
        assert isinstance(outcome, Match)
        assert outcome.product.sku == "FIRST"

    def test_threshold_zero_matches_anything_found(self):
        outcome = classify(_item("1"), [_candidate("A", 0.0)], threshold=0.0)
        assert isinstance(outcome, Match)

    def test_threshold_one_requires_certainty(self):
        assert isinstance(classify(_item("1"), [_candidate("A", 0.99)], threshold=1.0), PendingConfirmation)
        assert isinstance(classify(_item("1"), [_candidate("A", 1.0)], threshold=1.0), Match)


class TestThresholdForRetailer:
    def test_default(self, monkeypatch):
        monkeypatch.setattr("cartsmash.matching.engine.settings.confidence_threshold", 0.7)
        monkeypatch.setattr("cartsmash.matching.engine.settings.retailer_confidence_thresholds", {})
        assert threshold_for_retailer("safeway") == 0.7

    def test_override(self, monkeypatch):
        monkeypatch.setattr(
            "cartsmash.matching.engine.settings.retailer_confidence_thresholds",
            {"costco": 0.85},
        )
        assert threshold_for_retailer("costco") == 0.85


# === MatchingEngine ===


class TestMatchingEngine:
    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            MatchingEngine(FakeSource(), threshold=1.2)

    def test_default_threshold(self):
        assert MatchingEngine(FakeSource()).threshold == DEFAULT_CONFIDENCE_THRESHOLD

    def test_for_retailer_uses_settings(self, monkeypatch):
        monkeypatch.setattr(
            "cartsmash.matching.engine.settings.retailer_confidence_thresholds",
            {"kroger": 0.8},
        )
        monkeypatch.setattr("cartsmash.matching.engine.settings.search_concurrency", 2)
        engine = MatchingEngine.for_retailer(FakeSource(), "kroger")
        assert engine.threshold == 0.8
        assert engine.concurrency == 2

    def test_partition_covers_every_item_once(self):
        cart = [_item("1"), _item("2"), _item("3")]
        source = FakeSource(
            results={
                "1": [_candidate("A", 0.95)],
                "2": [_candidate("B", 0.4)],
            }
        )
        result = asyncio.run(MatchingEngine(source).match_cart(cart, "safeway", "94110"))
        assert [m.cart_item.id for m in result.matches] == ["1"]
        assert [p.cart_item.id for p in result.pending] == ["2", "3"]
        assert result.pending[1].candidates == []
        ids = [m.cart_item.id for m in result.matches] + [p.cart_item.id for p in result.pending]
        assert sorted(ids) == ["1", "2", "3"]

    def test_cart_order_kept_when_searches_finish_out_of_order(self):
        cart = [_item(str(i)) for i in range(5)]
        source = FakeSource(
            results={str(i): [_candidate(f"S{i}", 0.9)] for i in range(5)},
            delays={"0": 0.05, "1": 0.04, "2": 0.03, "3": 0.02, "4": 0.0},
        )
        result = asyncio.run(MatchingEngine(source, concurrency=5).match_cart(cart, "safeway", "94110"))
        assert [m.cart_item.id for m in result.matches] == ["0", "1", "2", "3", "4"]

    def test_pending_order_follows_cart(self):
        cart = [_item("a"), _item("b"), _item("c")]
        source = FakeSource(delays={"a": 0.03, "b": 0.0, "c": 0.01})
        result = asyncio.run(MatchingEngine(source).match_cart(cart, "safeway", "94110"))
        assert [p.cart_item.id for p in result.pending] == ["a", "b", "c"]

    def test_concurrency_bounded(self):
        cart = [_item(str(i)) for i in range(10)]
        source = FakeSource(delays={str(i): 0.01 for i in range(10)})
        asyncio.run(MatchingEngine(source, concurrency=3).match_cart(cart, "safeway", "94110"))
        assert source.max_in_flight <= 3
        assert len(source.calls) == 10

    def test_search_exception_becomes_pending(self):
        """A failing search is treated as no candidates; the rest of the cart still matches."""
        cart = [_item("1"), _item("2")]
        source = FakeSource(
            results={"2": [_candidate("B", 0.9)]},
            errors={"1": RuntimeError("catalog down")},
        )
        result = asyncio.run(MatchingEngine(source).match_cart(cart, "safeway", "94110"))
        assert [p.cart_item.id for p in result.pending] == ["1"]
        assert result.pending[0].candidates == []
        assert [m.cart_item.id for m in result.matches] == ["2"]

    def test_empty_cart(self):
        source = FakeSource()
        result = asyncio.run(MatchingEngine(source).match_cart([], "safeway", "94110"))
        assert result.matches == []
        assert result.pending == []
        assert source.calls == []

    def test_max_candidates_applied(self):
        cart = [_item("1")]
        source = FakeSource(results={"1": [_candidate(str(i), 0.5) for i in range(6)]})
        result = asyncio.run(MatchingEngine(source, max_candidates=2).match_cart(cart, "safeway", "94110"))
        assert len(result.pending[0].candidates) == 2

    @pytest.mark.asyncio
    async def test_passes_retailer_and_zip(self):
        seen = []

        class RecordingSource:
            async def search(self, cart_item, retailer_id, zip_code):
                seen.append((cart_item.id, retailer_id, zip_code))
                return []

        await MatchingEngine(RecordingSource()).match_cart([_item("1")], "kroger", "10001")
        assert seen == [("1", "kroger", "10001")]
