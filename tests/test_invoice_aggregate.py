from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from clinic_billing.models.billing import (
    CoverageStatus,
    InvoiceStatus,
    PaymentMethod,
    PaymentTerms,
)
from clinic_billing.services import invoice_aggregate as agg
from clinic_billing.services.billing_errors import (
    InvalidStateError,
    OverpaymentError,
    ValidationError,
)
from conftest import item

NOW = datetime(2024, 3, 1, 9, 30, 0)
CASH = agg.PaymentInfo(method=PaymentMethod.CASH, paid_by=7)


def _invoice(*lines, terms=PaymentTerms.IMMEDIATE):
    return agg.new_invoice(invoice_number="INV-202403-00001",
                           patient_id=1,
                           items=list(lines),
                           payment_terms=terms,
                           now=NOW)


def _three():
    return _invoice(item("consultation", 10000),
                    item("lab_test", 20000),
                    item("medication", 5000))


@pytest.mark.parametrize("terms,days", [
    (PaymentTerms.IMMEDIATE, 0),
    (PaymentTerms.NET_15, 15),
    (PaymentTerms.NET_30, 30),
    (PaymentTerms.NET_45, 45),
    (PaymentTerms.NET_60, 60),
    ("installment", 0),
])
def test_due_date_follows_payment_terms(terms, days):
    assert agg.due_date_for(terms, NOW) == NOW + timedelta(days=days)


def test_new_invoice_is_pending_with_derived_totals():
    inv = _three()
    assert inv.status == InvoiceStatus.PENDING
    assert [it.idx for it in inv.items] == [0, 1, 2]
    assert inv.total_amount == Decimal("35000.00")
    assert inv.balance_due == Decimal("35000.00")
    assert inv.amount_paid == Decimal("0.00")
    assert inv.payments == []


def test_new_invoice_rejects_unknown_item_type():
    with pytest.raises(ValidationError):
        _invoice(item("massage", 100))


def test_new_invoice_rejects_blank_description():
    with pytest.raises(ValidationError):
        _invoice(item("other", 100, description="   "))


def test_pay_items_writes_one_entry_with_shared_uid():
    inv = _three()
    applied = agg.pay_items(inv, [0, 2], CASH, now=NOW)

    assert applied.amount == Decimal("15000.00")
    assert applied.item_indices == [0, 2]
    assert len(inv.payments) == 1
    entry = inv.payments[0]
    assert entry.amount == Decimal("15000.00")
    assert entry.item_indices == [0, 2]
    assert inv.items[0].payment_uid == inv.items[2].payment_uid == entry.payment_uid
    assert inv.items[1].paid is False
    assert inv.status == InvoiceStatus.PARTIAL
    assert inv.balance_due == Decimal("20000.00")


def test_overlapping_pay_items_only_charges_unpaid_items():
    inv = _three()
    agg.pay_items(inv, [0], CASH, now=NOW)
    applied = agg.pay_items(inv, [0, 1, 1], CASH, now=NOW)

    assert applied.amount == Decimal("20000.00")
    assert applied.item_indices == [1]
    assert len(inv.payments) == 2
    assert inv.amount_paid == Decimal("30000.00")


def test_pay_items_on_already_paid_items_is_a_noop():
    inv = _three()
    agg.pay_items(inv, [1], CASH, now=NOW)
    applied = agg.pay_items(inv, [1], CASH, now=NOW)

    assert applied.amount == Decimal("0")
    assert applied.entry is None
    assert len(inv.payments) == 1


def test_paying_every_item_marks_invoice_paid():
    inv = _three()
    applied = agg.pay_items(inv, [0, 1, 2], CASH, now=NOW)
    assert inv.status == InvoiceStatus.PAID
    assert inv.paid_date == NOW
    assert applied.newly_paid == [0, 1, 2]


@pytest.mark.parametrize("indices", [[], [3], [0, 9]])
def test_pay_items_rejects_bad_indices(indices):
    inv = _three()
    with pytest.raises(ValidationError):
        agg.pay_items(inv, indices, CASH, now=NOW)
    assert inv.payments == []
    assert not any(it.paid for it in inv.items)


def test_add_payment_walks_items_greedily_and_stops_at_first_gap():
    inv = _three()
    # covers consultation only; the lab test (20000) stops the walk
    applied = agg.add_payment(inv, "12000", CASH, now=NOW)

    assert applied.item_indices == [0]
    assert [it.paid for it in inv.items] == [True, False, False]
    assert inv.amount_paid == Decimal("12000.00")
    assert inv.status == InvoiceStatus.PARTIAL


def test_add_payment_for_full_balance_pays_everything():
    inv = _three()
    agg.add_payment(inv, Decimal("35000"), CASH, now=NOW)
    assert inv.status == InvoiceStatus.PAID
    assert all(it.paid for it in inv.items)


def test_add_payment_rejects_overpayment_and_non_positive_amounts():
    inv = _three()
    with pytest.raises(OverpaymentError):
        agg.add_payment(inv, "35000.01", CASH, now=NOW)
    with pytest.raises(ValidationError):
        agg.add_payment(inv, "0", CASH, now=NOW)
    assert inv.payments == []


def test_refund_keeps_items_paid_and_reopens_balance():
    inv = _invoice(item("procedure", 50000))
    applied = agg.pay_items(inv, [0], CASH, now=NOW)
    assert inv.status == InvoiceStatus.PAID

    entry = agg.refund(inv, "5000", "Overcharge", refund_of=applied.entry,
                       now=NOW)

    assert entry.amount == Decimal("-5000.00")
    assert entry.method == PaymentMethod.CASH
    assert inv.amount_paid == Decimal("45000.00")
    assert inv.balance_due == Decimal("5000.00")
    assert inv.status == InvoiceStatus.PARTIAL
    assert inv.items[0].paid is True
    assert agg.refundable_amount(inv, applied.entry) == Decimal("45000.00")


def test_refund_cannot_exceed_what_was_paid():
    inv = _invoice(item("procedure", 50000))
    applied = agg.pay_items(inv, [0], CASH, now=NOW)
    agg.refund(inv, "40000", "first", refund_of=applied.entry, now=NOW)
    with pytest.raises(ValidationError):
        agg.refund(inv, "10000.01", "second", refund_of=applied.entry,
                   now=NOW)


def test_full_refund_returns_invoice_to_pending():
    inv = _invoice(item("procedure", 100))
    applied = agg.pay_items(inv, [0], CASH, now=NOW)
    agg.refund(inv, "100", "void", refund_of=applied.entry, now=NOW)
    assert inv.status == InvoiceStatus.PENDING
    assert inv.paid_date is None


def test_cancelled_invoice_rejects_every_mutation():
    inv = _three()
    agg.cancel(inv, "duplicate", now=NOW)
    assert inv.status == InvoiceStatus.CANCELLED
    assert inv.cancel_reason == "duplicate"

    with pytest.raises(InvalidStateError):
        agg.pay_items(inv, [0], CASH, now=NOW)
    with pytest.raises(InvalidStateError):
        agg.add_payment(inv, "100", CASH, now=NOW)
    with pytest.raises(InvalidStateError):
        agg.add_items(inv, [item("other", 10)], now=NOW)
    with pytest.raises(InvalidStateError):
        agg.cancel(inv, now=NOW)


def test_add_items_continues_indices_and_reopens_paid_invoice():
    inv = _invoice(item("consultation", 10000))
    agg.pay_items(inv, [0], CASH, now=NOW)
    assert inv.status == InvoiceStatus.PAID

    newly = agg.add_items(inv, [item("lab_test", 20000),
                                item("imaging", 30000)], now=NOW)

    assert newly == []
    assert [it.idx for it in inv.items] == [0, 1, 2]
    assert inv.balance_due == Decimal("50000.00")
    assert inv.status == InvoiceStatus.PARTIAL


def test_add_items_requires_at_least_one_item():
    inv = _three()
    with pytest.raises(ValidationError):
        agg.add_items(inv, [], now=NOW)


def test_full_coverage_settles_new_items_through_one_insurance_entry():
    inv = _invoice(item("consultation", 10000))
    policy = agg.CoveragePolicy(provider_id=3, default_percent=Decimal("100"))
    agg.apply_insurance_auto_coverage(inv, policy, now=NOW)

    newly = agg.add_items(inv, [item("lab_test", 20000),
                                item("medication", 5000)],
                          coverage=policy, now=NOW)

    assert newly == [1, 2]
    ins = [p for p in inv.payments if p.method == PaymentMethod.INSURANCE]
    assert len(ins) == 2
    assert ins[-1].amount == Decimal("25000.00")
    assert ins[-1].item_indices == [1, 2]
    assert inv.status == InvoiceStatus.PAID
    assert inv.insurance_coverage.coverage_amount == Decimal("35000.00")
    assert inv.insurance_coverage.status == CoverageStatus.APPROVED


def test_partial_coverage_leaves_patient_share_unpaid():
    inv = _invoice(item("lab_test", 20000))
    policy = agg.CoveragePolicy(provider_id=3, default_percent=Decimal("50"))
    newly = agg.apply_insurance_auto_coverage(inv, policy, now=NOW)

    assert newly == []
    it = inv.items[0]
    assert it.insurance_approved is True
    assert it.paid is False
    assert it.insurance_amount == Decimal("10000.00")
    assert it.patient_due == Decimal("10000.00")
    assert inv.status == InvoiceStatus.PARTIAL
    assert inv.insurance_coverage.status == CoverageStatus.PARTIAL
    assert inv.patient_responsibility == Decimal("10000.00")

    # the patient pays only their share and the invoice closes
    applied = agg.pay_items(inv, [0], CASH, now=NOW)
    assert applied.amount == Decimal("10000.00")
    assert inv.status == InvoiceStatus.PAID


def test_auto_coverage_of_fifty_thousand_lands_paid():
    inv = _invoice(item("consultation", 20000), item("procedure", 30000))
    policy = agg.CoveragePolicy(provider_id=3)
    newly = agg.apply_insurance_auto_coverage(inv, policy, now=NOW)

    assert newly == [0, 1]
    assert len(inv.payments) == 1
    entry = inv.payments[0]
    assert entry.method == PaymentMethod.INSURANCE
    assert entry.amount == Decimal("50000.00")
    assert inv.amount_paid == Decimal("50000.00")
    assert inv.balance_due == Decimal("0.00")
    assert inv.status == InvoiceStatus.PAID
    assert inv.insurance_coverage.approval_code.startswith("AUTO-")


def test_policy_percent_prefers_type_rule_then_default():
    policy = agg.CoveragePolicy(provider_id=1,
                                default_percent=Decimal("80"),
                                percent_by_type={"medication": Decimal("40")})
    assert policy.percent_for("medication") == Decimal("40")
    assert policy.percent_for("lab_test") == Decimal("80")


def test_payment_summary_reports_unpaid_items():
    inv = _three()
    agg.pay_items(inv, [0], CASH, now=NOW)
    summary = agg.payment_summary(inv)
    assert summary["status"] == "partial"
    assert summary["payments_count"] == 1
    assert summary["unpaid_items_count"] == 2
    assert summary["unpaid_amount"] == Decimal("25000.00")
