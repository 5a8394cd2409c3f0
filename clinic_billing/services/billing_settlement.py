# FILE: clinic_billing/services/billing_settlement.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from clinic_billing.models.billing import Invoice, InvoiceStatus
from clinic_billing.services.billing_calc import (
    D,
    compute_invoice_totals,
    compute_item_total,
    money2,
)
from clinic_billing.utils.timez import utcnow_naive

ZERO = Decimal("0")


def _status(v) -> InvoiceStatus:
    if v is None:
        return InvoiceStatus.PENDING
    return v if isinstance(v, InvoiceStatus) else InvoiceStatus(v)


def derive_status(
    amount_paid: Decimal,
    balance_due: Decimal,
    due_date: Optional[datetime],
    prior_status,
    *,
    now: Optional[datetime] = None,
) -> InvoiceStatus:
    """
    Pure status derivation, evaluated top to bottom:

      cancelled                                  -> cancelled (terminal)
      balance <= 0 and paid > 0                  -> paid
      paid > 0 and balance > 0                   -> partial
      prior pending, past due, balance > 0       -> overdue
      paid <= 0 and prior paid/partial           -> pending (full refund)
      otherwise                                  -> prior

    overdue is never cleared here; only payment (paid/partial) or an
    explicit cancel moves an invoice out of it.
    """
    prior = _status(prior_status)
    now = now or utcnow_naive()
    paid = D(amount_paid)
    bal = D(balance_due)

    if prior == InvoiceStatus.CANCELLED:
        return prior
    if bal <= ZERO and paid > ZERO:
        return InvoiceStatus.PAID
    if paid > ZERO and bal > ZERO:
        return InvoiceStatus.PARTIAL
    if (prior == InvoiceStatus.PENDING and due_date is not None
            and due_date < now and bal > ZERO):
        return InvoiceStatus.OVERDUE
    if paid <= ZERO and prior in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
        return InvoiceStatus.PENDING
    return prior


def settle(inv: Invoice, *, now: Optional[datetime] = None) -> List[int]:
    """
    Re-derive totals, amount_paid, balance_due and status from the current
    in-memory items/payments. Re-entrant: never reads the cached totals.

    Returns the item indices force-marked paid by the paid reconciliation
    (empty when nothing changed at item level).
    """
    now = now or utcnow_naive()
    items = list(inv.items or [])

    for it in items:
        compute_item_total(it)
    totals = compute_invoice_totals(items)

    inv.subtotal = totals.subtotal
    inv.total_discount = totals.total_discount
    inv.total_tax = totals.total_tax
    inv.total_amount = totals.total_amount

    paid = money2(sum((D(p.amount) for p in (inv.payments or [])), ZERO))
    inv.amount_paid = paid
    # negative when overpaid: kept so the overpayment stays refundable
    inv.balance_due = money2(totals.total_amount - paid)

    coverage = ZERO
    if inv.insurance_coverage is not None:
        coverage = D(inv.insurance_coverage.coverage_amount)
    inv.patient_responsibility = money2(max(ZERO, totals.total_amount - coverage))

    status = derive_status(paid,
                           inv.balance_due,
                           inv.due_date,
                           inv.status,
                           now=now)
    inv.status = status

    forced: List[int] = []
    if status == InvoiceStatus.PAID:
        if inv.paid_date is None:
            inv.paid_date = now
        for it in items:
            if not it.paid:
                it.paid = True
                it.paid_at = now
                forced.append(it.idx)
    elif status in (InvoiceStatus.PENDING, InvoiceStatus.PARTIAL):
        inv.paid_date = None

    return forced
