"""
Tests for integer quote pricing.
"""

import pytest

from app.features.quotes.domain import QuoteItem
from app.features.quotes.domain.pricing import (
    compute_pricing,
    format_amount,
    price_items,
    pricing_matches,
    round_half_up_div,
)

ITEMS = [QuoteItem("Kitchen", 2, 10000), QuoteItem("Windows", 1, 5000)]


def test_pricing_with_tax_and_no_discount():
    pricing = compute_pricing(ITEMS, tax_rate_basis_points=2000)

    assert [item.line_total for item in pricing.items] == [20000, 5000]
    assert pricing.subtotal == 25000
    assert pricing.discount_amount == 0
    assert pricing.tax_amount == 5000
    assert pricing.total_amount == 30000


def test_discount_is_applied_before_tax():
    pricing = compute_pricing(ITEMS, discount_amount=1500, tax_rate_basis_points=2000)

    assert pricing.subtotal == 25000
    assert pricing.tax_amount == 4700
    assert pricing.total_amount == 28200


def test_percent_discount_used_only_without_absolute_discount():
    by_percent = compute_pricing(ITEMS, discount_percent=10)
    by_amount = compute_pricing(ITEMS, discount_amount=500, discount_percent=10)

    assert by_percent.discount_amount == 2500
    assert by_amount.discount_amount == 500


def test_tax_rounds_half_up():
    # 333 * 15% = 49.95 -> 50
    pricing = compute_pricing([QuoteItem("Bolt", 1, 333)], tax_rate_basis_points=1500)
    assert pricing.tax_amount == 50

    assert round_half_up_div(5, 2) == 3
    assert round_half_up_div(4, 2) == 2
    assert round_half_up_div(1, 3) == 0


def test_input_items_are_not_mutated():
    items = [QuoteItem("Kitchen", 2, 10000)]
    price_items(items)
    assert items[0].line_total == 0


@pytest.mark.parametrize(
    "item",
    [
        QuoteItem("zero", 0, 100),
        QuoteItem("negative", -1, 100),
        QuoteItem("fraction", 1.5, 100),
        QuoteItem("price", 1, -1),
        QuoteItem("bool", True, 100),
    ],
)
def test_invalid_items_are_rejected(item):
    with pytest.raises(ValueError):
        price_items([item])


def test_discount_larger_than_subtotal_is_rejected():
    with pytest.raises(ValueError):
        compute_pricing(ITEMS, discount_amount=25001)


def test_negative_tax_rate_is_rejected():
    with pytest.raises(ValueError):
        compute_pricing(ITEMS, tax_rate_basis_points=-1)


def test_pricing_matches_detects_tampered_total(quote_store):
    request = quote_store.add_request()
    response = quote_store.add_response(request)
    assert pricing_matches(response) is True

    response.total_amount += 1
    assert pricing_matches(response) is False


def test_format_amount():
    assert format_amount(30000, "TRY") == "300.00 TRY"
    assert format_amount(5, "EUR") == "0.05 EUR"
