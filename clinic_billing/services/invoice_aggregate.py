# FILE: clinic_billing/services/invoice_aggregate.py
"""
Invoice aggregate operations.

Everything here works on an in-memory Invoice (items, payments, coverage)
and finishes with billing_settlement.settle(). Nothing in this module
commits; persistence, retries and side effects belong to billing_service.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from clinic_billing.core.config import settings
from clinic_billing.models.billing import (
    AmountType,
    CoverageStatus,
    InsuranceCoverage,
    Invoice,
    InvoiceItem,
    InvoicePayment,
    InvoiceStatus,
    ItemType,
    PaymentMethod,
    PaymentTerms,
)
from clinic_billing.services.billing_calc import D, compute_item_total, money2
from clinic_billing.services.billing_errors import (
    InvalidStateError,
    OverpaymentError,
    ValidationError,
)
from clinic_billing.services.billing_numbers import new_approval_code
from clinic_billing.services.billing_settlement import ZERO, settle
from clinic_billing.utils.timez import utcnow_naive

HUNDRED = Decimal("100")

_TERM_DAYS = {
    PaymentTerms.IMMEDIATE: 0,
    PaymentTerms.NET_15: 15,
    PaymentTerms.NET_30: 30,
    PaymentTerms.NET_45: 45,
    PaymentTerms.NET_60: 60,
    PaymentTerms.INSTALLMENT: 0,
}


# ============================================================
# Value objects
# ============================================================
@dataclass
class PaymentInfo:
    method: PaymentMethod = PaymentMethod.CASH
    paid_by: Optional[int] = None
    reference: Optional[str] = None
    notes: Optional[str] = None
    gateway: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class AppliedPayment:
    """Outcome of pay_items / add_payment."""
    amount: Decimal
    item_indices: List[int] = field(default_factory=list)
    forced_indices: List[int] = field(default_factory=list)
    entry: Optional[InvoicePayment] = None

    @property
    def newly_paid(self) -> List[int]:
        return sorted(set(self.item_indices) | set(self.forced_indices))


@dataclass
class CoveragePolicy:
    """
    Coverage percentages for one insured patient: plan rules per item type,
    then the provider's auto-coverage percent, then the configured default.
    """
    provider_id: Optional[int]
    policy_number: Optional[str] = None
    plan_code: Optional[str] = None
    default_percent: Decimal = Decimal("100")
    percent_by_type: Dict[str, Decimal] = field(default_factory=dict)

    def percent_for(self, item_type) -> Decimal:
        kind = getattr(item_type, "value", item_type)
        pct = self.percent_by_type.get(kind, self.default_percent)
        return max(ZERO, min(HUNDRED, D(pct)))

    @classmethod
    def for_patient(cls, patient, provider) -> "CoveragePolicy":
        default = settings.BILLING_INSURANCE_COVERAGE_PERCENT
        if provider is not None and provider.auto_coverage_percent is not None:
            default = D(provider.auto_coverage_percent)

        by_type: Dict[str, Decimal] = {}
        plan = getattr(patient, "insurance_plan_code", None)
        if provider is not None:
            for kind in ItemType:
                rule = provider.coverage_rule(plan, kind)
                if rule is not None:
                    by_type[kind.value] = D(rule.coverage_percent)

        return cls(
            provider_id=provider.id if provider is not None else None,
            policy_number=getattr(patient, "membership_number", None),
            plan_code=plan,
            default_percent=D(default),
            percent_by_type=by_type,
        )


# ============================================================
# Helpers
# ============================================================
def _get(data: Any, key: str, default=None):
    if isinstance(data, dict):
        v = data.get(key, default)
    else:
        v = getattr(data, key, default)
    return default if v is None else v


def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def _ensure_mutable(inv: Invoice) -> None:
    if inv.status == InvoiceStatus.CANCELLED:
        raise InvalidStateError(
            f"Invoice {inv.invoice_number} is cancelled and cannot be changed")


def _touch(inv: Invoice, now: datetime) -> None:
    # header row must change on every mutation so the version bumps
    inv.updated_at = now


def _current_balance(inv: Invoice) -> Decimal:
    total = sum((D(compute_item_total(it)) for it in inv.items or []), ZERO)
    paid = sum((D(p.amount) for p in inv.payments or []), ZERO)
    return money2(total - paid)


def due_date_for(terms, issue: datetime) -> datetime:
    terms = PaymentTerms(getattr(terms, "value", terms) or PaymentTerms.IMMEDIATE)
    return issue + timedelta(days=_TERM_DAYS[terms])


def build_item(data: Any, idx: int) -> InvoiceItem:
    """dict / pydantic object -> InvoiceItem (total computed)."""
    raw_type = _get(data, "item_type") or _get(data, "type")
    try:
        item_type = ItemType(_enum_value(raw_type))
    except ValueError:
        raise ValidationError(f"Invalid item type: {raw_type!r}")

    description = (_get(data, "description", "") or "").strip()
    if not description:
        raise ValidationError("Item description is required")

    try:
        discount_type = AmountType(
            _enum_value(_get(data, "discount_type", AmountType.FIXED)))
        tax_type = AmountType(
            _enum_value(_get(data, "tax_type", AmountType.PERCENTAGE)))
        quantity = int(_get(data, "quantity", 1))
    except (TypeError, ValueError):
        raise ValidationError(
            "Invalid quantity, discount_type or tax_type on item")

    it = InvoiceItem(
        idx=idx,
        item_type=item_type,
        code=_get(data, "code"),
        description=description,
        quantity=quantity,
        unit_price=money2(_get(data, "unit_price", 0)),
        discount=money2(_get(data, "discount", 0)),
        discount_type=discount_type,
        tax=money2(_get(data, "tax", 0)),
        tax_type=tax_type,
        covered_by_insurance=bool(_get(data, "covered_by_insurance", False)),
        insurance_approved=False,
        insurance_amount=ZERO,
        paid=False,
        notes=_get(data, "notes"),
    )
    compute_item_total(it)
    return it


def items_at(inv: Invoice, indices: Iterable[int]) -> List[InvoiceItem]:
    wanted = set(indices)
    return [it for it in inv.items or [] if it.idx in wanted]


def _append_entry(inv: Invoice, *, amount: Decimal, info: PaymentInfo,
                  indices: Sequence[int], uid: Optional[str],
                  now: datetime) -> InvoicePayment:
    entry = InvoicePayment(
        amount=money2(amount),
        method=info.method,
        paid_by=info.paid_by,
        paid_at=now,
        reference=info.reference,
        notes=info.notes,
        item_indices=list(indices),
        payment_uid=uid,
        gateway=info.gateway,
        transaction_id=info.transaction_id,
    )
    inv.payments.append(entry)
    return entry


# ============================================================
# Create
# ============================================================
def new_invoice(
    *,
    invoice_number: str,
    patient_id: int,
    items: Sequence[Any],
    visit_id: Optional[int] = None,
    appointment_id: Optional[int] = None,
    payment_terms=PaymentTerms.IMMEDIATE,
    generated_by: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Invoice:
    now = now or utcnow_naive()
    terms = PaymentTerms(getattr(payment_terms, "value", payment_terms)
                         or PaymentTerms.IMMEDIATE)

    inv = Invoice(
        invoice_number=invoice_number,
        patient_id=patient_id,
        visit_id=visit_id,
        appointment_id=appointment_id,
        generated_by=generated_by,
        status=InvoiceStatus.PENDING,
        payment_terms=terms,
        issue_date=now,
        due_date=due_date_for(terms, now),
        notes=notes,
        items=[build_item(d, i) for i, d in enumerate(items or [])],
        payments=[],
    )
    settle(inv, now=now)
    return inv


# ============================================================
# Insurance coverage
# ============================================================
def _cover_items(inv: Invoice, items: Sequence[InvoiceItem],
                 policy: CoveragePolicy, *, paid_by: Optional[int],
                 now: datetime) -> List[int]:
    """
    Apply the policy to `items`; returns indices now fully settled by the
    insurer. Covered money goes into one insurance ledger entry.
    """
    covered_sum = ZERO
    covered_idx: List[int] = []
    fully_paid: List[int] = []

    for it in items:
        if it.paid or it.insurance_approved:
            continue
        pct = policy.percent_for(it.item_type)
        if pct <= ZERO:
            continue
        total = D(compute_item_total(it))
        amount = total if pct >= HUNDRED else money2(total * pct / HUNDRED)

        it.covered_by_insurance = True
        it.insurance_approved = True
        it.insurance_amount = amount
        covered_sum += amount
        covered_idx.append(it.idx)
        if pct >= HUNDRED:
            it.paid = True
            it.paid_at = now
            fully_paid.append(it.idx)

    cov = inv.insurance_coverage
    if cov is None:
        cov = InsuranceCoverage(
            provider_id=policy.provider_id,
            policy_number=policy.policy_number,
            plan_code=policy.plan_code,
            coverage_amount=ZERO,
            status=CoverageStatus.PENDING,
        )
        inv.insurance_coverage = cov

    if covered_idx:
        uid = str(uuid.uuid4())
        for it in items_at(inv, fully_paid):
            it.payment_uid = uid
        _append_entry(
            inv,
            amount=covered_sum,
            info=PaymentInfo(method=PaymentMethod.INSURANCE,
                             paid_by=paid_by,
                             notes="Insurance auto-coverage"),
            indices=covered_idx,
            uid=uid,
            now=now,
        )
        cov.coverage_amount = money2(D(cov.coverage_amount) + covered_sum)
        if not cov.approval_code:
            cov.approval_code = new_approval_code()

    if D(cov.coverage_amount) > ZERO:
        everything = all(it.paid for it in inv.items or [])
        cov.status = (CoverageStatus.APPROVED
                      if everything else CoverageStatus.PARTIAL)
    return fully_paid


def apply_insurance_auto_coverage(
    inv: Invoice,
    policy: CoveragePolicy,
    *,
    paid_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[int]:
    """
    Insured fast path at creation: every item is settled by the insurer (per
    the policy percentages) through a single method=insurance ledger entry.
    With 100% coverage the invoice lands directly in `paid`.
    """
    _ensure_mutable(inv)
    now = now or utcnow_naive()
    newly = _cover_items(inv, list(inv.items or []), policy,
                         paid_by=paid_by, now=now)
    forced = settle(inv, now=now)
    _touch(inv, now)
    return sorted(set(newly) | set(forced))


# ============================================================
# Items
# ============================================================
def add_items(
    inv: Invoice,
    new_items: Sequence[Any],
    *,
    coverage: Optional[CoveragePolicy] = None,
    paid_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[int]:
    """
    Append items (indices continue after the last one). With a coverage
    policy the new items are covered immediately, same as at creation.
    Returns the indices that became paid.
    """
    _ensure_mutable(inv)
    if not new_items:
        raise ValidationError("At least one item is required")
    now = now or utcnow_naive()

    start = max((it.idx for it in inv.items or []), default=-1) + 1
    appended = [build_item(d, start + i) for i, d in enumerate(new_items)]
    for it in appended:
        inv.items.append(it)

    newly: List[int] = []
    if coverage is not None:
        newly = _cover_items(inv, appended, coverage, paid_by=paid_by, now=now)

    forced = settle(inv, now=now)
    _touch(inv, now)
    return sorted(set(newly) | set(forced))


# ============================================================
# Payments
# ============================================================
def pay_items(
    inv: Invoice,
    indices: Iterable[int],
    info: PaymentInfo,
    *,
    now: Optional[datetime] = None,
) -> AppliedPayment:
    """
    Item-level payment. Already-paid indices are skipped, so a repeated or
    overlapping call only charges what is still unpaid; if nothing is left
    this is a no-op returning amount 0.
    """
    _ensure_mutable(inv)
    wanted = list(dict.fromkeys(int(i) for i in (indices or [])))
    if not wanted:
        raise ValidationError("No item indices given")

    by_idx = {it.idx: it for it in inv.items or []}
    bad = [i for i in wanted if i not in by_idx]
    if bad:
        raise ValidationError(f"Invalid item index: {bad[0]}")

    to_pay = [by_idx[i] for i in wanted if not by_idx[i].paid]
    if not to_pay:
        return AppliedPayment(amount=ZERO)

    now = now or utcnow_naive()
    amount = money2(sum((it.patient_due for it in to_pay), ZERO))
    balance = _current_balance(inv)
    if amount > balance:
        raise OverpaymentError(
            f"Payment amount {amount} exceeds balance due {balance}")

    uid = str(uuid.uuid4())
    for it in to_pay:
        it.paid = True
        it.paid_at = now
        it.payment_uid = uid

    paid_idx = [it.idx for it in to_pay]
    entry = _append_entry(inv, amount=amount, info=info, indices=paid_idx,
                          uid=uid, now=now)
    forced = settle(inv, now=now)
    _touch(inv, now)
    return AppliedPayment(amount=amount,
                          item_indices=paid_idx,
                          forced_indices=forced,
                          entry=entry)


def add_payment(
    inv: Invoice,
    amount: Any,
    info: PaymentInfo,
    *,
    now: Optional[datetime] = None,
) -> AppliedPayment:
    """
    Unattributed payment: items are marked paid greedily in index order
    while the amount covers them whole; the first item it cannot fully
    cover stops the walk (no partial item payment).
    """
    _ensure_mutable(inv)
    amount = money2(amount)
    if amount <= ZERO:
        raise ValidationError("Payment amount must be greater than zero")
    balance = _current_balance(inv)
    if amount > balance:
        raise OverpaymentError(
            f"Payment amount {amount} exceeds balance due {balance}")

    now = now or utcnow_naive()
    uid = str(uuid.uuid4())
    remaining = amount
    paid_idx: List[int] = []
    for it in inv.items or []:
        if it.paid:
            continue
        due = it.patient_due
        if due > remaining:
            break
        it.paid = True
        it.paid_at = now
        it.payment_uid = uid
        remaining -= due
        paid_idx.append(it.idx)

    entry = _append_entry(inv, amount=amount, info=info, indices=paid_idx,
                          uid=uid, now=now)
    forced = settle(inv, now=now)
    _touch(inv, now)
    return AppliedPayment(amount=amount,
                          item_indices=paid_idx,
                          forced_indices=forced,
                          entry=entry)


def refundable_amount(inv: Invoice, entry: InvoicePayment) -> Decimal:
    refunded = sum((-D(p.amount) for p in inv.payments or []
                    if D(p.amount) < ZERO and (
                        p.refund_of is entry or
                        (p.refund_of_id is not None and p.refund_of_id == entry.id))),
                   ZERO)
    return money2(D(entry.amount) - refunded)


def refund(
    inv: Invoice,
    amount: Any,
    reason: str,
    *,
    refund_of: Optional[InvoicePayment] = None,
    info: Optional[PaymentInfo] = None,
    now: Optional[datetime] = None,
) -> InvoicePayment:
    """
    Negative ledger entry. Items stay paid: a refund adjusts money only.
    """
    _ensure_mutable(inv)
    amount = money2(amount)
    if amount <= ZERO:
        raise ValidationError("Refund amount must be greater than zero")

    paid_total = money2(sum((D(p.amount) for p in inv.payments or []), ZERO))
    if amount > paid_total:
        raise ValidationError(
            f"Refund amount {amount} exceeds amount paid {paid_total}")

    if refund_of is not None:
        if refund_of.invoice_id not in (None, inv.id) or D(refund_of.amount) <= ZERO:
            raise ValidationError("Payment cannot be refunded")
        left = refundable_amount(inv, refund_of)
        if amount > left:
            raise ValidationError(
                f"Refund amount {amount} exceeds refundable {left}")

    now = now or utcnow_naive()
    info = info or PaymentInfo()
    method = refund_of.method if refund_of is not None else info.method
    entry = InvoicePayment(
        amount=-amount,
        method=method,
        paid_by=info.paid_by,
        paid_at=now,
        reference=info.reference,
        notes=reason,
        item_indices=[],
        gateway=info.gateway,
        transaction_id=info.transaction_id,
        refund_of=refund_of,
    )
    inv.payments.append(entry)
    settle(inv, now=now)
    _touch(inv, now)
    return entry


# ============================================================
# Lifecycle / read helpers
# ============================================================
def cancel(inv: Invoice, reason: Optional[str] = None, *,
           now: Optional[datetime] = None) -> Invoice:
    _ensure_mutable(inv)
    now = now or utcnow_naive()
    inv.status = InvoiceStatus.CANCELLED
    inv.cancelled_at = now
    inv.cancel_reason = (reason or "")[:255] or None
    _touch(inv, now)
    return inv


def record_claim(
    inv: Invoice,
    provider,
    *,
    claim_number: str,
    plan_code: Optional[str] = None,
    policy_number: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Decimal:
    """
    Manual insurance claim over the insurance-covered items the insurer has
    not settled yet, priced by the provider's (plan, item type) table. Items
    without a matching rule are not claimed. No ledger entry: the claim is
    `processing` until the insurer pays. Returns the claimed amount.
    """
    _ensure_mutable(inv)
    now = now or utcnow_naive()

    claimed = ZERO
    for it in inv.items or []:
        if not it.covered_by_insurance or D(it.insurance_amount) > ZERO:
            continue
        rule = provider.coverage_rule(plan_code, it.item_type)
        if rule is None:
            continue
        claimed += money2(D(compute_item_total(it)) * D(rule.coverage_percent)
                          / HUNDRED)
        it.insurance_approved = True

    cov = inv.insurance_coverage
    if cov is None:
        cov = InsuranceCoverage(coverage_amount=ZERO)
        inv.insurance_coverage = cov
    settled = sum((D(it.insurance_amount) for it in inv.items or []), ZERO)

    cov.provider_id = provider.id
    cov.policy_number = policy_number or cov.policy_number
    cov.plan_code = plan_code
    cov.coverage_amount = money2(settled + claimed)
    cov.claim_number = claim_number
    cov.status = CoverageStatus.PROCESSING
    if notes:
        cov.notes = notes[:255]

    settle(inv, now=now)
    _touch(inv, now)
    return claimed


def refresh_status(inv: Invoice, *, now: Optional[datetime] = None) -> bool:
    """Re-run settlement against `now` (time-based overdue). True if changed."""
    if inv.status == InvoiceStatus.CANCELLED:
        return False
    now = now or utcnow_naive()
    before = inv.status
    settle(inv, now=now)
    if inv.status != before:
        _touch(inv, now)
        return True
    return False


def payment_summary(inv: Invoice) -> Dict[str, Any]:
    unpaid = inv.unpaid_items
    return {
        "invoice_id": inv.id,
        "invoice_number": inv.invoice_number,
        "total_amount": money2(inv.total_amount),
        "amount_paid": money2(inv.amount_paid),
        "balance_due": money2(inv.balance_due),
        "status": getattr(inv.status, "value", inv.status),
        "payments_count": len(inv.payments or []),
        "unpaid_items_count": len(unpaid),
        "unpaid_amount": money2(inv.unpaid_amount),
        "is_overdue": inv.is_overdue,
    }
