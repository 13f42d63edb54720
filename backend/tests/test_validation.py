"""Tests for retailer/ZIP/cart selection validation."""

from __future__ import annotations

from cartsmash.checkout.validation import is_valid_zip, validate_selection
from cartsmash.models.contracts import CartItem, Retailer

CART = [CartItem(id="1", product_name="milk"), CartItem(id="2", product_name="eggs")]


def _fields(errors) -> list[str]:
    return [e.field for e in errors]


class TestIsValidZip:
    def test_five_digits(self):
        assert is_valid_zip("94110")

    def test_whitespace_trimmed(self):
        assert is_valid_zip(" 94110 ")

    def test_rejects_bad_values(self):
        for value in ["", None, "9411", "941100", "9411a", "94110-1234"]:
            assert not is_valid_zip(value), value

    def test_rejects_non_ascii_digits(self):
        assert not is_valid_zip("\u0661\u0662\u0663\u0664\u0665")  # Arabic-Indic
        assert not is_valid_zip("\uff19\uff14\uff11\uff11\uff10")  # fullwidth


class TestValidateSelection:
    def test_valid(self):
        assert validate_selection(CART, "safeway", "94110") == []

    def test_missing_retailer(self):
        errors = validate_selection(CART, None, "94110")
        assert _fields(errors) == ["retailer"]
        assert errors[0].message == "Choose a store to shop from."

    def test_blank_retailer(self):
        assert _fields(validate_selection(CART, "   ", "94110")) == ["retailer"]

    def test_bad_zip(self):
        errors = validate_selection(CART, "safeway", "123")
        assert _fields(errors) == ["zip_code"]

    def test_all_errors_reported_together(self):
        errors = validate_selection([], None, None)
        assert _fields(errors) == ["cart", "retailer", "zip_code"]

    def test_empty_cart(self):
        errors = validate_selection([], "safeway", "94110")
        assert _fields(errors) == ["cart"]

    def test_duplicate_item_ids(self):
        cart = [CartItem(id="1", product_name="milk"), CartItem(id="1", product_name="eggs")]
        errors = validate_selection(cart, "safeway", "94110")
        assert _fields(errors) == ["cart"]
        assert "1" in errors[0].message

    def test_retailer_must_be_in_loaded_list(self):
        retailers = [Retailer(id="kroger", name="Kroger")]
        errors = validate_selection(CART, "safeway", "94110", retailers)
        assert _fields(errors) == ["retailer"]

    def test_retailer_in_loaded_list(self):
        retailers = [Retailer(id="safeway", name="Safeway")]
        assert validate_selection(CART, "safeway", "94110", retailers) == []

    def test_no_loaded_list_skips_membership_check(self):
        assert validate_selection(CART, "anything", "94110", []) == []
