"""Tests for the sequential confirmation queue."""

from __future__ import annotations

import pytest

from cartsmash.checkout.assembler import CartAssembler
from cartsmash.checkout.confirmation import ConfirmationQueue
from cartsmash.errors import ConfirmationError
from cartsmash.models.contracts import CartItem, PendingConfirmation, ProductCandidate


def _candidate(sku: str, price: float = 2.0, confidence: float = 0.5) -> ProductCandidate:
    return ProductCandidate(id=sku.lower(), sku=sku, name=f"Product {sku}", price=price, confidence=confidence)


def _pending(item_id: str, *skus: str) -> PendingConfirmation:
    return PendingConfirmation(
        cart_item=CartItem(id=item_id, product_name=f"item {item_id}"),
        candidates=[_candidate(s) for s in skus],
    )


class TestConfirmationQueue:
    def test_walks_items_in_order(self):
        queue = ConfirmationQueue([_pending("1", "A"), _pending("2", "B")], CartAssembler())
        assert queue.current.cart_item.id == "1"
        queue.skip()
        assert queue.current.cart_item.id == "2"
        assert queue.current_index == 1

    def test_confirm_adds_user_confirmed_match(self):
        assembler = CartAssembler()
        queue = ConfirmationQueue([_pending("1", "A", "B")], assembler)
        match = queue.confirm(_candidate("B", price=4.0))
        assert match.provenance == "user-confirmed"
        assert match.product.sku == "B"
        assert assembler.has_match_for("1")
        assert assembler.running_total() == 4.0
        assert queue.is_drained

    def test_confirm_can_pick_non_top_candidate(self):
        queue = ConfirmationQueue([_pending("1", "A", "B", "C")], CartAssembler())
        assert queue.confirm(_candidate("C")).product.sku == "C"

    def test_confirm_rejects_foreign_candidate(self):
        queue = ConfirmationQueue([_pending("1", "A")], CartAssembler())
        with pytest.raises(ConfirmationError):
            queue.confirm(_candidate("Z"))
        assert queue.current_index == 0

    def test_zero_candidates_can_only_be_skipped(self):
        assembler = CartAssembler()
        queue = ConfirmationQueue([_pending("1")], assembler)
        assert not queue.can_confirm()
        with pytest.raises(ConfirmationError):
            queue.confirm(_candidate("A"))
        skipped = queue.skip()
        assert skipped.id == "1"
        assert queue.skipped == [skipped]
        assert len(assembler) == 0

    def test_skip_does_not_touch_total(self):
        assembler = CartAssembler()
        queue = ConfirmationQueue([_pending("1", "A")], assembler)
        queue.skip()
        assert assembler.running_total() == 0

    def test_actions_after_drained_raise(self):
        queue = ConfirmationQueue([_pending("1", "A")], CartAssembler())
        queue.skip()
        assert queue.is_drained
        assert queue.current is None
        with pytest.raises(ConfirmationError):
            queue.skip()
        with pytest.raises(ConfirmationError):
            queue.confirm(_candidate("A"))

    def test_empty_queue_is_drained(self):
        queue = ConfirmationQueue([], CartAssembler())
        assert queue.is_drained
        assert queue.remaining == []

    def test_remaining_shrinks(self):
        queue = ConfirmationQueue([_pending("1", "A"), _pending("2", "B"), _pending("3")], CartAssembler())
        assert len(queue.remaining) == 3
        queue.confirm(_candidate("A"))
        assert [p.cart_item.id for p in queue.remaining] == ["2", "3"]
        assert len(queue) == 3

    def test_index_never_exceeds_length(self):
        queue = ConfirmationQueue([_pending("1", "A"), _pending("2")], CartAssembler())
        queue.confirm(_candidate("A"))
        queue.skip()
        with pytest.raises(ConfirmationError):
            queue.skip()
        assert queue.current_index == len(queue)


class TestConfirmUsesOfferedCandidate:
    def test_caller_price_ignored(self):
        """The match is built from the queued candidate, not the object passed in."""
        assembler = CartAssembler()
        queue = ConfirmationQueue([_pending("1", "A")], assembler)
        tampered = _candidate("A", price=0.01, confidence=1.0)

        match = queue.confirm(tampered)

        assert match.product.price == 2.0
        assert match.product.confidence == 0.5
        assert assembler.running_total() == 2.0
        assert assembler.to_external_payload()[0]["price"] == 2.0
