from decimal import Decimal
from types import SimpleNamespace

import pytest

from clinic_billing.models.billing import AmountType
from clinic_billing.services.billing_calc import (
    compute_invoice_totals,
    compute_item_total,
    item_amounts,
)
from clinic_billing.services.billing_errors import ValidationError


def line(qty=1, price="0", discount="0", discount_type=AmountType.FIXED,
         tax="0", tax_type=AmountType.PERCENTAGE):
    return SimpleNamespace(quantity=qty,
                           unit_price=Decimal(price),
                           discount=Decimal(discount),
                           discount_type=discount_type,
                           tax=Decimal(tax),
                           tax_type=tax_type,
                           total=None)


def test_percentage_discount_then_percentage_tax():
    it = line(qty=2, price="1000", discount="10",
              discount_type=AmountType.PERCENTAGE, tax="18")
    amt = item_amounts(it)
    assert amt.subtotal == Decimal("2000.00")
    assert amt.discount == Decimal("200.00")
    # tax is charged on the discounted amount
    assert amt.tax == Decimal("324.00")
    assert amt.total == Decimal("2124.00")


def test_fixed_discount_and_fixed_tax():
    it = line(qty=3, price="500", discount="250", tax="100",
              tax_type=AmountType.FIXED)
    assert compute_item_total(it) == Decimal("1350.00")
    assert it.total == Decimal("1350.00")


def test_recalculation_is_idempotent():
    it = line(qty=3, price="33.33", tax="7.5")
    first = compute_item_total(it)
    second = compute_item_total(it)
    assert first == second == Decimal("107.49")

    items = [it, line(qty=1, price="0.10", discount="3.33",
                      discount_type=AmountType.PERCENTAGE)]
    assert compute_invoice_totals(items) == compute_invoice_totals(items)


def test_invoice_totals_sum_pre_discount_subtotals():
    items = [
        line(qty=1, price="10000"),
        line(qty=2, price="5000", discount="1000", tax="10"),
    ]
    totals = compute_invoice_totals(items)
    assert totals.subtotal == Decimal("20000.00")
    assert totals.total_discount == Decimal("1000.00")
    assert totals.total_tax == Decimal("900.00")
    assert totals.total_amount == Decimal("19900.00")


def test_invoice_totals_do_not_touch_items():
    it = line(qty=1, price="100")
    compute_invoice_totals([it])
    assert it.total is None


def test_empty_invoice_totals_are_zero():
    totals = compute_invoice_totals([])
    assert totals.total_amount == Decimal("0")


@pytest.mark.parametrize("kwargs", [
    {"qty": 0, "price": "100"},
    {"qty": 1, "price": "-1"},
    {"qty": 1, "price": "100", "discount": "150"},
    {"qty": 1, "price": "100", "discount": "101",
     "discount_type": AmountType.PERCENTAGE},
])
def test_malformed_items_are_rejected(kwargs):
    with pytest.raises(ValidationError):
        item_amounts(line(**kwargs))
