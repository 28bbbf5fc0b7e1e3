"""
Integer pricing for quote items.

All amounts are minor currency units. The only rounding step is the tax
computation, which rounds half up.
"""

from collections.abc import Iterable

from app.features.quotes.domain.models import QuoteItem, QuotePricing, QuoteResponse

BASIS_POINTS = 10_000


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounding .5 upwards, for non-negative operands."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    if numerator < 0:
        raise ValueError("numerator must be non-negative")
    return (numerator * 2 + denominator) // (denominator * 2)


def price_items(items: Iterable[QuoteItem]) -> list[QuoteItem]:
    """Return copies of the items with line totals filled in."""
    priced = []
    for item in items:
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            raise ValueError(f"quantity must be a positive integer: {item.quantity!r}")
        if isinstance(item.unit_price, bool) or not isinstance(item.unit_price, int) or item.unit_price < 0:
            raise ValueError(f"unit_price must be a non-negative integer: {item.unit_price!r}")
        priced.append(
            QuoteItem(
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.quantity * item.unit_price,
            )
        )
    return priced


def compute_pricing(
    items: Iterable[QuoteItem],
    *,
    discount_amount: int = 0,
    discount_percent: int = 0,
    tax_rate_basis_points: int = 0,
) -> QuotePricing:
    """
    Price an ordered item list.

    `discount_percent` is only used when no absolute discount is given.

    Raises:
        ValueError: on negative inputs or a discount larger than the subtotal.
    """
    if discount_amount < 0 or discount_percent < 0 or tax_rate_basis_points < 0:
        raise ValueError("discount and tax rate must be non-negative")
    if discount_percent > 100:
        raise ValueError("discount_percent cannot exceed 100")

    priced = price_items(items)
    subtotal = sum(item.line_total for item in priced)

    if not discount_amount and discount_percent:
        discount_amount = round_half_up_div(subtotal * discount_percent, 100)

    if discount_amount > subtotal:
        raise ValueError("discount cannot exceed subtotal")

    taxable = max(subtotal - discount_amount, 0)
    tax_amount = round_half_up_div(taxable * tax_rate_basis_points, BASIS_POINTS)

    return QuotePricing(
        items=priced,
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        total_amount=subtotal - discount_amount + tax_amount,
    )


def pricing_matches(response: QuoteResponse) -> bool:
    """Recompute a stored quote and compare every derived amount."""
    try:
        expected = compute_pricing(
            response.items,
            discount_amount=response.discount_amount,
            tax_rate_basis_points=response.tax_rate_basis_points,
        )
    except ValueError:
        return False

    return (
        [item.line_total for item in expected.items] == [item.line_total for item in response.items]
        and expected.subtotal == response.subtotal
        and expected.tax_amount == response.tax_amount
        and expected.total_amount == response.total_amount
    )


def format_amount(amount: int, currency: str) -> str:
    """Human readable amount for notification bodies, e.g. `300.00 TRY`."""
    return f"{amount // 100}.{amount % 100:02d} {currency}"
