# File: clinic_billing/services/billing_service.py
"""
Billing service: the only module that persists invoice mutations.

Every invoice write is read-modify-write under the invoice's version column
(_mutate_invoice). Secondary effects run after the commit and never unwind
it: the payment-record mirror, the visit projection and notifications.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from clinic_billing.core.config import settings
from clinic_billing.models.audit import BillingAuditLog
from clinic_billing.models.billing import (
    Invoice,
    InvoicePayment,
    InvoiceStatus,
    PaymentMethod,
    PaymentRecord,
)
from clinic_billing.models.patient import InsuranceProvider, Patient
from clinic_billing.models.visit import Visit
from clinic_billing.schemas.billing import (
    InsuranceClaimIn,
    InvoiceCreate,
    PaymentCreate,
    RefundCreate,
)
from clinic_billing.services import billing_ledger
from clinic_billing.services import invoice_aggregate as agg
from clinic_billing.services import visit_projector
from clinic_billing.services.billing_calc import D, money2
from clinic_billing.services.billing_errors import (
    ConcurrencyError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    OverpaymentError,
    ProviderNotFoundError,
    ValidationError,
)
from clinic_billing.services.billing_numbers import (
    new_claim_number,
    next_invoice_number,
)
from clinic_billing.services.billing_ports import (
    ClaimSubmitter,
    DbNotifier,
    Notifier,
    PaymentGateway,
    currency,
    default_claim_submitter,
    default_gateway,
)
from clinic_billing.services.invoice_aggregate import (
    AppliedPayment,
    CoveragePolicy,
    PaymentInfo,
)
from clinic_billing.services.visit_projector import ItemsPaid, ProjectionResult
from clinic_billing.utils.timez import utcnow_naive

logger = logging.getLogger(__name__)

T = TypeVar("T")

GATEWAY_METHODS = {
    PaymentMethod.CREDIT_CARD,
    PaymentMethod.DEBIT_CARD,
    PaymentMethod.ONLINE,
}


# ============================================================
# Small helpers
# ============================================================
def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def _dec_s(x: Any) -> str:
    return format(money2(x), "f")


def _audit(db: Session, *, user_id: Optional[int], action: str,
           entity_id: str, description: str,
           meta: Optional[Dict[str, Any]] = None,
           entity_type: str = "invoice") -> None:
    db.add(
        BillingAuditLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            description=description[:500],
            meta=meta or None,
        ))


def _load_invoice(db: Session, invoice_id: int, *,
                  refresh: bool = False) -> Invoice:
    q = (db.query(Invoice).options(
        selectinload(Invoice.items),
        selectinload(Invoice.payments),
        selectinload(Invoice.insurance_coverage),
        selectinload(Invoice.patient),
    ).filter(Invoice.id == invoice_id))
    if refresh:
        q = q.populate_existing()
    inv = q.first()
    if not inv:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return inv


def get_invoice(db: Session, invoice_id: int) -> Invoice:
    return _load_invoice(db, invoice_id)


def find_invoice_by_visit(db: Session, visit_id: int) -> Optional[Invoice]:
    return db.query(Invoice).filter(Invoice.visit_id == visit_id).first()


def _mutate_invoice(db: Session, invoice_id: int,
                    fn: Callable[[Invoice], T]) -> Tuple[Invoice, T]:
    """
    Re-fetch, apply `fn`, commit. A concurrent writer bumps the version and
    our flush raises StaleDataError: roll back and start over from a fresh
    read, up to BILLING_OPTIMISTIC_RETRIES attempts.
    """
    attempts = max(1, int(settings.BILLING_OPTIMISTIC_RETRIES or 1))
    for attempt in range(1, attempts + 1):
        inv = _load_invoice(db, invoice_id, refresh=True)
        try:
            out = fn(inv)
            db.commit()
            return inv, out
        except StaleDataError:
            db.rollback()
            logger.warning(
                "Invoice %s modified concurrently (attempt %s/%s), retrying",
                invoice_id, attempt, attempts)
        except Exception:
            db.rollback()
            raise
    raise ConcurrencyError(
        f"Invoice {invoice_id} is being updated by another request, try again")


# ============================================================
# Post-commit side effects (best-effort)
# ============================================================
def _mirror_payments(db: Session, invoice_id: int) -> None:
    try:
        inv = _load_invoice(db, invoice_id)
        billing_ledger.replay_payment_records(db, inv)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Payment record mirror failed for invoice %s",
                         invoice_id)


def _notify(db: Session, notifier: Optional[Notifier], **kw) -> None:
    try:
        (notifier or DbNotifier.bound_to(db)).emit(**kw)
    except Exception:
        logger.exception("Notification '%s' failed", kw.get("title"))


def _sync_visit(
    db: Session,
    visit_id: Optional[int],
    apply: Callable[[Visit], ProjectionResult],
    *,
    suppress: bool = True,
) -> Optional[ProjectionResult]:
    """
    Visit update after the invoice commit, under the visit's own version.
    With suppress=True failures are logged only: reconcile_visit() can
    re-derive the visit from the invoice at any time.
    """
    if visit_id is None:
        return None
    attempts = max(1, int(settings.BILLING_OPTIMISTIC_RETRIES or 1))
    for attempt in range(1, attempts + 1):
        try:
            visit = (db.query(Visit).options(
                selectinload(Visit.lab_orders),
                selectinload(Visit.radiology_orders),
                selectinload(Visit.prescriptions),
            ).populate_existing().filter(Visit.id == visit_id).first())
            if not visit:
                if suppress:
                    logger.warning("Visit %s not found for projection",
                                   visit_id)
                    return None
                raise NotFoundError(f"Visit {visit_id} not found")
            result = apply(visit)
            if result is not None and result.changed:
                # order-only changes must still bump the visit version
                visit.updated_at = utcnow_naive()
            db.commit()
            return result
        except StaleDataError:
            db.rollback()
            logger.warning(
                "Visit %s modified concurrently (attempt %s/%s), retrying",
                visit_id, attempt, attempts)
        except Exception:
            db.rollback()
            if not suppress:
                raise
            logger.exception(
                "Visit %s projection failed; left for reconciliation",
                visit_id)
            return None
    if not suppress:
        raise ConcurrencyError(f"Visit {visit_id} is busy, try again")
    logger.error("Visit %s projection gave up after %s attempts", visit_id,
                 attempts)
    return None


def _project_paid(db: Session, inv: Invoice,
                  indices: Sequence[int]) -> Optional[ProjectionResult]:
    if inv.visit_id is None or not indices:
        return None
    event = ItemsPaid.from_invoice(inv, indices)
    insured = bool(inv.patient and inv.patient.has_insurance)
    return _sync_visit(
        db, inv.visit_id, lambda v: visit_projector.project_items_paid(
            v, event, patient_insured=insured))


# ============================================================
# Insurance resolution
# ============================================================
def _resolve_insurance_provider(db: Session,
                                patient: Patient) -> Optional[InsuranceProvider]:
    """
    provider_id wins. A legacy provider name is matched case-insensitively
    and migrated onto the patient (flushed with the caller's transaction).
    """
    if patient.insurance_provider_id:
        provider = db.get(InsuranceProvider, patient.insurance_provider_id)
        if provider is not None:
            return provider

    name = (patient.insurance_provider_name or "").strip()
    if not name:
        return None

    provider = (db.query(InsuranceProvider).filter(
        func.lower(InsuranceProvider.name) == name.lower()).first())
    if provider is None:
        known = [
            p.name for p in db.query(InsuranceProvider).filter(
                InsuranceProvider.is_active.is_(True)).order_by(
                    InsuranceProvider.name).limit(10).all()
        ]
        raise ProviderNotFoundError(name, known)

    patient.insurance_provider_id = provider.id
    logger.info("Patient %s insurance provider '%s' migrated to provider_id=%s",
                patient.id, name, provider.id)
    return provider


def _coverage_policy(db: Session, patient: Patient) -> Optional[CoveragePolicy]:
    if not patient.has_insurance:
        return None
    provider = _resolve_insurance_provider(db, patient)
    return CoveragePolicy.for_patient(patient, provider)


# ============================================================
# Create
# ============================================================
def create_invoice(
    db: Session,
    *,
    data: InvoiceCreate,
    user_id: Optional[int] = None,
    notifier: Optional[Notifier] = None,
) -> Invoice:
    """
    Idempotent by visit: if the visit already has an invoice, that invoice
    is returned. Insured patients are auto-covered in the same transaction.
    """
    visit_id = data.visit_id
    if visit_id is not None:
        existing = find_invoice_by_visit(db, visit_id)
        if existing is not None:
            logger.warning(
                "Duplicate invoice prevented for visit %s, returning %s",
                visit_id, existing.invoice_number)
            return existing

    now = utcnow_naive()
    try:
        patient = db.get(Patient, data.patient_id)
        if not patient:
            raise NotFoundError(f"Patient {data.patient_id} not found")

        if visit_id is not None:
            visit = db.get(Visit, visit_id)
            if not visit:
                raise NotFoundError(f"Visit {visit_id} not found")
            if visit.patient_id != patient.id:
                raise ValidationError("Visit belongs to a different patient")

        policy = _coverage_policy(db, patient)
        insured = policy is not None

        inv = agg.new_invoice(
            invoice_number=next_invoice_number(db),
            patient_id=patient.id,
            visit_id=visit_id,
            appointment_id=data.appointment_id,
            items=data.items,
            payment_terms=data.payment_terms,
            generated_by=user_id,
            notes=data.notes,
            now=now,
        )
        db.add(inv)

        newly: List[int] = []
        if insured:
            newly = agg.apply_insurance_auto_coverage(inv,
                                                      policy,
                                                      paid_by=user_id,
                                                      now=now)
            logger.info(
                "Insurance auto-coverage invoice=%s provider=%s covered=%s",
                inv.invoice_number, policy.provider_id,
                _dec_s(inv.insurance_coverage.coverage_amount))

        _audit(
            db,
            user_id=user_id,
            action="CREATE",
            entity_id=inv.invoice_number,
            description=f"Created invoice {inv.invoice_number}",
            meta={
                "patient_id": patient.id,
                "visit_id": visit_id,
                "total_amount": _dec_s(inv.total_amount),
                "insured": insured,
            },
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if visit_id is not None:
            winner = find_invoice_by_visit(db, visit_id)
            if winner is not None:
                logger.warning(
                    "Concurrent invoice creation for visit %s, returning %s",
                    visit_id, winner.invoice_number)
                return winner
        logger.warning("Invoice creation for patient %s collided: %s",
                       data.patient_id, exc.orig)
        raise ConcurrencyError(
            "Invoice could not be created due to a concurrent request, "
            "try again") from exc
    except Exception:
        db.rollback()
        raise

    invoice_id = inv.id
    logger.info("Invoice created %s patient=%s total=%s status=%s",
                inv.invoice_number, inv.patient_id, _dec_s(inv.total_amount),
                _enum_value(inv.status))

    _mirror_payments(db, invoice_id)
    inv = _load_invoice(db, invoice_id)

    if inv.visit_id is not None:
        event = ItemsPaid.from_invoice(inv, newly)

        def _apply(visit: Visit) -> ProjectionResult:
            res = visit_projector.project_invoice_created(
                visit, inv, patient_insured=insured)
            visit_projector.project_items_paid(visit,
                                               event,
                                               patient_insured=insured)
            return res

        _sync_visit(db, inv.visit_id, _apply)

    _notify(
        db,
        notifier,
        patient_id=inv.patient_id,
        kind="invoice_created",
        title="New Invoice",
        message=(f"Invoice {inv.invoice_number} for "
                 f"{currency(inv.total_amount)} has been generated."),
        entity_type="invoice",
        entity_id=inv.id,
    )
    return _load_invoice(db, invoice_id)


# ============================================================
# Items
# ============================================================
def add_items_to_invoice(
    db: Session,
    *,
    invoice_id: int,
    items: Sequence[Any],
    has_insurance: Optional[bool] = None,
    user_id: Optional[int] = None,
) -> Invoice:

    def _apply(inv: Invoice) -> List[int]:
        policy = None
        insured = (inv.patient.has_insurance
                   if has_insurance is None else has_insurance)
        if insured:
            policy = _coverage_policy(db, inv.patient) or CoveragePolicy(
                provider_id=None,
                default_percent=D(settings.BILLING_INSURANCE_COVERAGE_PERCENT))
        newly = agg.add_items(inv, items, coverage=policy, paid_by=user_id)
        _audit(
            db,
            user_id=user_id,
            action="UPDATE",
            entity_id=inv.invoice_number,
            description=f"Added {len(items)} item(s) to invoice {inv.invoice_number}",
            meta={
                "count": len(items),
                "insured": bool(insured),
                "total_amount": _dec_s(inv.total_amount),
            },
        )
        return newly

    inv, newly = _mutate_invoice(db, invoice_id, _apply)
    logger.info("Items added invoice=%s count=%s auto_paid=%s",
                inv.invoice_number, len(items), newly)

    if newly:
        _mirror_payments(db, invoice_id)
        inv = _load_invoice(db, invoice_id)
        _project_paid(db, inv, newly)
    return _load_invoice(db, invoice_id)


# ============================================================
# Payments
# ============================================================
def pay_items(
    db: Session,
    *,
    invoice_id: int,
    indices: Sequence[int],
    method: PaymentMethod = PaymentMethod.CASH,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Tuple[Invoice, AppliedPayment]:
    """Cashier marks specific items paid. Repeated indices are not recharged."""
    info = PaymentInfo(method=PaymentMethod(_enum_value(method)),
                       paid_by=user_id,
                       reference=reference,
                       notes=notes)

    def _apply(inv: Invoice) -> AppliedPayment:
        applied = agg.pay_items(inv, indices, info)
        if applied.amount > 0 or applied.item_indices:
            _audit(
                db,
                user_id=user_id,
                action="UPDATE",
                entity_id=inv.invoice_number,
                description=(f"Paid items {applied.item_indices} on invoice "
                             f"{inv.invoice_number}"),
                meta={
                    "amount": _dec_s(applied.amount),
                    "method": info.method.value,
                    "item_indices": applied.item_indices,
                },
            )
        return applied

    inv, applied = _mutate_invoice(db, invoice_id, _apply)
    if not applied.item_indices:
        logger.info("Pay items no-op invoice=%s indices=%s (already paid)",
                    inv.invoice_number, list(indices))
        return inv, applied

    logger.info("Items paid invoice=%s indices=%s amount=%s status=%s",
                inv.invoice_number, applied.item_indices,
                _dec_s(applied.amount), _enum_value(inv.status))
    _mirror_payments(db, invoice_id)
    inv = _load_invoice(db, invoice_id)
    _project_paid(db, inv, applied.newly_paid)
    return _load_invoice(db, invoice_id), applied


def pay_item(db: Session, *, invoice_id: int, index: int,
             **kw) -> Tuple[Invoice, AppliedPayment]:
    return pay_items(db, invoice_id=invoice_id, indices=[index], **kw)


def _charge(gateway: PaymentGateway, method: PaymentMethod, amount: Decimal,
            reference: str, details: Dict[str, Any]):
    try:
        if method == PaymentMethod.ONLINE:
            res = gateway.charge_online(amount=amount,
                                        reference=reference,
                                        details=details)
        else:
            res = gateway.charge_card(amount=amount,
                                      reference=reference,
                                      details=details)
    except GatewayError:
        raise
    except Exception as e:
        raise GatewayError(f"Payment gateway error: {e}") from e
    if not res.success:
        raise GatewayError(res.message or "Payment was declined by gateway")
    return res


def process_payment(
    db: Session,
    *,
    data: PaymentCreate,
    user_id: Optional[int] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
) -> InvoicePayment:
    """
    Unattributed cashier payment. Card/online money is captured through the
    gateway first; a failed charge leaves the invoice untouched. If the
    ledger write fails after a successful charge the charge is refunded.
    """
    method = PaymentMethod(_enum_value(data.method))
    amount = money2(data.amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")

    inv = _load_invoice(db, data.invoice_id, refresh=True)
    if inv.status == InvoiceStatus.CANCELLED:
        raise InvalidStateError(
            f"Invoice {inv.invoice_number} is cancelled and cannot be paid")
    if amount > D(inv.balance_due):
        raise OverpaymentError(
            f"Payment amount {amount} exceeds balance due {_dec_s(inv.balance_due)}")

    info = PaymentInfo(method=method,
                       paid_by=user_id,
                       reference=data.reference,
                       notes=data.notes)
    gw = None
    if method in GATEWAY_METHODS:
        gw = gateway or default_gateway()
        res = _charge(gw, method, amount, inv.invoice_number, data.details)
        info.gateway = gw.name
        info.transaction_id = res.transaction_id
        logger.info("Gateway charge ok invoice=%s gateway=%s txn=%s",
                    inv.invoice_number, gw.name, res.transaction_id)

    def _apply(inv: Invoice) -> AppliedPayment:
        applied = agg.add_payment(inv, amount, info)
        _audit(
            db,
            user_id=user_id,
            action="UPDATE",
            entity_id=inv.invoice_number,
            description=(f"Payment {_dec_s(amount)} ({method.value}) on "
                         f"invoice {inv.invoice_number}"),
            meta={
                "amount": _dec_s(amount),
                "method": method.value,
                "item_indices": applied.item_indices,
                "transaction_id": info.transaction_id,
            },
        )
        return applied

    try:
        inv, applied = _mutate_invoice(db, data.invoice_id, _apply)
    except Exception:
        if gw is not None and info.transaction_id:
            try:
                gw.refund(gateway=gw.name,
                          transaction_id=info.transaction_id,
                          amount=amount)
                logger.warning("Charge %s reversed: payment not applied",
                               info.transaction_id)
            except Exception:
                logger.exception(
                    "Reversal of charge %s failed, manual refund needed",
                    info.transaction_id)
        raise

    entry_id = applied.entry.id
    logger.info("Payment processed invoice=%s amount=%s method=%s status=%s",
                inv.invoice_number, _dec_s(amount), method.value,
                _enum_value(inv.status))

    invoice_id = inv.id
    _mirror_payments(db, invoice_id)
    inv = _load_invoice(db, invoice_id)
    _project_paid(db, inv, applied.newly_paid)
    _notify(
        db,
        notifier,
        patient_id=inv.patient_id,
        kind="payment_received",
        title="Payment Received",
        message=(f"Payment of {currency(amount)} received for invoice "
                 f"{inv.invoice_number}. Balance: {currency(inv.balance_due)}."),
        entity_type="invoice",
        entity_id=invoice_id,
    )
    return db.get(InvoicePayment, entry_id)


# ============================================================
# Insurance claim
# ============================================================
def process_insurance_claim(
    db: Session,
    *,
    invoice_id: int,
    claim: InsuranceClaimIn,
    user_id: Optional[int] = None,
    claim_submitter: Optional[ClaimSubmitter] = None,
) -> Invoice:
    """
    Claim the insurance-covered items that the insurer has not settled yet:
    each is priced through the provider's coverage table for (plan, type).
    The claim is recorded as `processing`; money arrives later.
    """

    def _apply(inv: Invoice) -> Tuple[InsuranceProvider, Decimal]:
        provider = None
        if claim.provider_id is not None:
            provider = db.get(InsuranceProvider, claim.provider_id)
        elif inv.insurance_coverage is not None and inv.insurance_coverage.provider_id:
            provider = db.get(InsuranceProvider,
                              inv.insurance_coverage.provider_id)
        else:
            provider = _resolve_insurance_provider(db, inv.patient)
        if provider is None:
            raise NotFoundError("Insurance provider not found")

        claimed = agg.record_claim(
            inv,
            provider,
            claim_number=new_claim_number(),
            plan_code=claim.plan_code or inv.patient.insurance_plan_code,
            policy_number=claim.policy_number or inv.patient.membership_number,
            notes=claim.notes,
        )
        cov = inv.insurance_coverage
        _audit(
            db,
            user_id=user_id,
            action="UPDATE",
            entity_id=inv.invoice_number,
            description=(f"Submitted insurance claim for invoice "
                         f"{inv.invoice_number}"),
            meta={
                "claim_number": cov.claim_number,
                "coverage_amount": _dec_s(cov.coverage_amount),
                "claimed": _dec_s(claimed),
            },
        )
        return provider, claimed

    inv, (provider, claimed) = _mutate_invoice(db, invoice_id, _apply)
    logger.info("Insurance claim %s invoice=%s provider=%s claimed=%s",
                inv.insurance_coverage.claim_number, inv.invoice_number,
                provider.name, _dec_s(claimed))

    if provider.api_enabled:
        try:
            (claim_submitter or default_claim_submitter()
             ).submit_electronic_claim(inv, provider)
        except Exception:
            logger.exception("Electronic claim submission failed for %s",
                             inv.invoice_number)
    return inv


# ============================================================
# Refund
# ============================================================
def process_refund(
    db: Session,
    *,
    payment_id: int,
    data: RefundCreate,
    user_id: Optional[int] = None,
    gateway: Optional[PaymentGateway] = None,
) -> InvoicePayment:
    """
    Refund against one ledger entry. Gateway-captured money is returned
    through the gateway first; its failure aborts the refund.
    """
    original = db.get(InvoicePayment, payment_id)
    if original is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    if D(original.amount) <= 0:
        raise ValidationError("A refund entry cannot be refunded")

    amount = money2(data.amount)
    inv = _load_invoice(db, original.invoice_id, refresh=True)
    if inv.status == InvoiceStatus.CANCELLED:
        raise InvalidStateError(
            f"Invoice {inv.invoice_number} is cancelled and cannot be changed")
    left = agg.refundable_amount(inv, original)
    if amount > left:
        raise ValidationError(
            f"Refund amount {amount} exceeds refundable {_dec_s(left)}")

    info = PaymentInfo(method=original.method, paid_by=user_id)
    if original.gateway and original.transaction_id:
        gw = gateway or default_gateway()
        try:
            res = gw.refund(gateway=original.gateway,
                            transaction_id=original.transaction_id,
                            amount=amount)
        except Exception as e:
            raise GatewayError(f"Gateway refund failed: {e}") from e
        if not res.success:
            raise GatewayError(res.message or "Gateway refund failed")
        info.gateway = original.gateway
        info.transaction_id = res.transaction_id

    def _apply(inv: Invoice) -> InvoicePayment:
        src = next((p for p in inv.payments if p.id == payment_id), None)
        if src is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        entry = agg.refund(inv, amount, data.reason, refund_of=src, info=info)
        _audit(
            db,
            user_id=user_id,
            action="UPDATE",
            entity_id=inv.invoice_number,
            description=(f"Refund {_dec_s(amount)} on invoice "
                         f"{inv.invoice_number}: {data.reason}"),
            meta={
                "amount": _dec_s(amount),
                "refund_of": payment_id,
                "transaction_id": info.transaction_id,
            },
        )
        return entry

    inv, entry = _mutate_invoice(db, original.invoice_id, _apply)
    entry_id = entry.id
    logger.info("Refund processed invoice=%s amount=%s of_payment=%s status=%s",
                inv.invoice_number, _dec_s(amount), payment_id,
                _enum_value(inv.status))
    _mirror_payments(db, inv.id)
    return db.get(InvoicePayment, entry_id)


# ============================================================
# Lifecycle / sweeps
# ============================================================
def cancel_invoice(db: Session, *, invoice_id: int,
                   reason: Optional[str] = None,
                   user_id: Optional[int] = None) -> Invoice:

    def _apply(inv: Invoice) -> None:
        agg.cancel(inv, reason)
        _audit(db,
               user_id=user_id,
               action="CANCEL",
               entity_id=inv.invoice_number,
               description=f"Cancelled invoice {inv.invoice_number}",
               meta={"reason": reason})

    inv, _ = _mutate_invoice(db, invoice_id, _apply)
    logger.info("Invoice cancelled %s reason=%s", inv.invoice_number, reason)
    return inv


def check_overdue_invoices(
    db: Session,
    *,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> int:
    """Scheduled sweep: pending + past due + still owing -> overdue."""
    now = now or utcnow_naive()
    ids = [
        r[0] for r in db.query(Invoice.id).filter(
            Invoice.status == InvoiceStatus.PENDING,
            Invoice.due_date < now,
            Invoice.balance_due > 0,
        ).order_by(Invoice.id).all()
    ]

    flagged = 0
    for invoice_id in ids:
        try:
            inv, changed = _mutate_invoice(
                db, invoice_id, lambda i: agg.refresh_status(i, now=now))
        except ConcurrencyError:
            logger.warning("Overdue sweep skipped busy invoice %s", invoice_id)
            continue
        if not changed or inv.status != InvoiceStatus.OVERDUE:
            continue
        flagged += 1
        _notify(
            db,
            notifier,
            patient_id=inv.patient_id,
            kind="invoice_overdue",
            priority="high",
            title="Invoice Overdue",
            message=(f"Invoice {inv.invoice_number} is overdue. "
                     f"Please make payment as soon as possible."),
            entity_type="invoice",
            entity_id=inv.id,
        )

    logger.info("Overdue sweep: %s of %s candidate invoice(s) flagged",
                flagged, len(ids))
    return flagged


# ============================================================
# Reads / reports
# ============================================================
def get_payment_summary(db: Session, *, invoice_id: int) -> Dict[str, Any]:
    return agg.payment_summary(_load_invoice(db, invoice_id))


def _window(start: Optional[datetime],
            end: Optional[datetime]) -> Tuple[datetime, datetime]:
    end = end or utcnow_naive()
    start = start or (end - timedelta(days=settings.BILLING_STATEMENT_DEFAULT_DAYS))
    if start > end:
        raise ValidationError("Start date must be before end date")
    return start, end


def generate_statement(
    db: Session,
    *,
    patient_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    patient = db.get(Patient, patient_id)
    if not patient:
        raise NotFoundError(f"Patient {patient_id} not found")
    start, end = _window(start, end)

    invoices = (db.query(Invoice).options(selectinload(Invoice.items)).filter(
        Invoice.patient_id == patient_id,
        Invoice.issue_date >= start,
        Invoice.issue_date <= end,
    ).order_by(Invoice.issue_date, Invoice.id).all())

    entries = (db.query(InvoicePayment).join(
        Invoice, InvoicePayment.invoice_id == Invoice.id).filter(
            Invoice.patient_id == patient_id,
            InvoicePayment.paid_at >= start,
            InvoicePayment.paid_at <= end,
        ).order_by(InvoicePayment.paid_at, InvoicePayment.id).all())

    live = [i for i in invoices if i.status != InvoiceStatus.CANCELLED]
    zero = Decimal("0")
    return {
        "patient_id": patient_id,
        "patient_name": patient.full_name,
        "period": {"start": start, "end": end},
        "invoices": invoices,
        "payments": entries,
        "summary": {
            "total_charges": money2(sum((D(i.total_amount) for i in live), zero)),
            "total_payments": money2(sum((D(p.amount) for p in entries), zero)),
            "total_balance": money2(sum((D(i.balance_due) for i in live), zero)),
            "overdue_amount": money2(
                sum((D(i.balance_due) for i in live if i.is_overdue), zero)),
        },
    }


def billing_statistics(
    db: Session,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    start, end = _window(start, end)
    base = db.query(Invoice).filter(
        Invoice.issue_date >= start,
        Invoice.issue_date <= end,
        Invoice.status != InvoiceStatus.CANCELLED,
    )
    count, total, paid, due = base.with_entities(
        func.count(Invoice.id),
        func.coalesce(func.sum(Invoice.total_amount), 0),
        func.coalesce(func.sum(Invoice.amount_paid), 0),
        func.coalesce(func.sum(Invoice.balance_due), 0),
    ).one()

    by_method = {}
    rows = (db.query(
        InvoicePayment.method,
        func.count(InvoicePayment.id),
        func.coalesce(func.sum(InvoicePayment.amount), 0),
    ).filter(
        InvoicePayment.paid_at >= start,
        InvoicePayment.paid_at <= end,
    ).group_by(InvoicePayment.method).all())
    for method, n, amt in rows:
        by_method[_enum_value(method)] = {"count": n, "amount": money2(amt)}

    overdue = base.filter(Invoice.status == InvoiceStatus.OVERDUE).count()
    count = int(count or 0)
    return {
        "period": {"start": start, "end": end},
        "invoice_count": count,
        "total_amount": money2(total),
        "total_paid": money2(paid),
        "total_due": money2(due),
        "average_invoice": money2(D(total) / count) if count else Decimal("0.00"),
        "payments_by_method": by_method,
        "overdue_count": overdue,
    }


# ============================================================
# Reconciliation
# ============================================================
def replay_payment_records(db: Session, *,
                           invoice_id: int) -> List[PaymentRecord]:
    inv = _load_invoice(db, invoice_id)
    try:
        created = billing_ledger.replay_payment_records(db, inv)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return created


def reconcile_visit(db: Session, *, visit_id: int) -> ProjectionResult:
    """Re-derive visit/order payment states from the visit's invoice."""
    visit = db.get(Visit, visit_id)
    if not visit:
        raise NotFoundError(f"Visit {visit_id} not found")
    inv = find_invoice_by_visit(db, visit_id)
    if inv is None and visit.invoice_id:
        inv = db.get(Invoice, visit.invoice_id)
    if inv is None:
        return ProjectionResult()

    inv = _load_invoice(db, inv.id)
    insured = bool(inv.patient and inv.patient.has_insurance)
    return _sync_visit(
        db,
        visit_id,
        lambda v: visit_projector.reconcile(v, inv, patient_insured=insured),
        suppress=False,
    )
