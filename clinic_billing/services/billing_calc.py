# FILE: clinic_billing/services/billing_calc.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from clinic_billing.models.billing import AmountType
from clinic_billing.services.billing_errors import ValidationError

Q2 = Decimal("0.01")
HUNDRED = Decimal("100")


def D(x: Any) -> Decimal:
    if x is None or x == "":
        return Decimal("0")
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def money2(x: Any) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def _kind(v, default: AmountType) -> str:
    if v is None:
        return default.value
    return getattr(v, "value", v)


@dataclass(frozen=True)
class ItemAmounts:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    total_discount: Decimal
    total_tax: Decimal
    total_amount: Decimal


def item_amounts(item) -> ItemAmounts:
    """
    subtotal = qty * unit_price
    discount = subtotal * pct / 100   | fixed
    tax      = (subtotal - discount) * pct / 100 | fixed
    total    = subtotal - discount + tax
    """
    qty = int(item.quantity or 0)
    unit = D(item.unit_price)
    if qty < 1:
        raise ValidationError("Item quantity must be at least 1")
    if unit < 0:
        raise ValidationError("Item unit price cannot be negative")

    subtotal = money2(qty * unit)

    disc_val = D(item.discount)
    if disc_val < 0:
        raise ValidationError("Item discount cannot be negative")
    if _kind(item.discount_type, AmountType.FIXED) == AmountType.PERCENTAGE.value:
        if disc_val > HUNDRED:
            raise ValidationError("Discount percentage cannot exceed 100")
        discount = money2(subtotal * disc_val / HUNDRED)
    else:
        if disc_val > subtotal:
            raise ValidationError("Discount cannot exceed item subtotal")
        discount = money2(disc_val)

    after = subtotal - discount

    tax_val = D(item.tax)
    if tax_val < 0:
        raise ValidationError("Item tax cannot be negative")
    if _kind(item.tax_type, AmountType.PERCENTAGE) == AmountType.PERCENTAGE.value:
        tax = money2(after * tax_val / HUNDRED)
    else:
        tax = money2(tax_val)

    return ItemAmounts(subtotal=subtotal,
                       discount=discount,
                       tax=tax,
                       total=money2(after + tax))


def compute_item_total(item) -> Decimal:
    amt = item_amounts(item)
    item.total = amt.total
    return amt.total


def compute_invoice_totals(items: Iterable) -> InvoiceTotals:
    # side-effect free: works from quantity/price/discount/tax, not item.total
    subtotal = Decimal("0")
    disc = Decimal("0")
    tax = Decimal("0")
    for it in items:
        amt = item_amounts(it)
        subtotal += amt.subtotal
        disc += amt.discount
        tax += amt.tax

    return InvoiceTotals(
        subtotal=money2(subtotal),
        total_discount=money2(disc),
        total_tax=money2(tax),
        total_amount=money2(subtotal - disc + tax),
    )
