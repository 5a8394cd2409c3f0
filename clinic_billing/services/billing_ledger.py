# FILE: clinic_billing/services/billing_ledger.py
"""
Global payment projection (billing_payment_records).

The invoice's own ledger (billing_invoice_payments) is authoritative; the
records here are a read model for statements and gateway reconciliation,
rebuilt from the ledger by replay. Replay is idempotent.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List

from sqlalchemy.orm import Session

from clinic_billing.models.billing import (
    Invoice,
    PaymentRecord,
    PaymentRecordStatus,
)
from clinic_billing.services.billing_calc import D, money2
from clinic_billing.services.billing_numbers import next_payment_number

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _record_status(amount: Decimal, refunded: Decimal) -> PaymentRecordStatus:
    if amount < ZERO:
        return PaymentRecordStatus.REVERSAL
    if refunded <= ZERO:
        return PaymentRecordStatus.COMPLETED
    if refunded >= amount:
        return PaymentRecordStatus.REFUNDED
    return PaymentRecordStatus.PARTIALLY_REFUNDED


def replay_payment_records(db: Session, inv: Invoice) -> List[PaymentRecord]:
    """
    Create the missing PaymentRecord for every ledger entry of `inv` and
    refresh refunded_amount/status on the originals. Flushes, does not
    commit. Returns the records created by this call.
    """
    existing: Dict[int, PaymentRecord] = {
        r.ledger_entry_id: r
        for r in db.query(PaymentRecord).filter(
            PaymentRecord.invoice_id == inv.id).all()
    }

    created: List[PaymentRecord] = []
    for entry in inv.payments or []:
        if entry.id is None:
            db.flush()
        if entry.id in existing:
            continue
        rec = PaymentRecord(
            payment_number=next_payment_number(db),
            ledger_entry_id=entry.id,
            invoice_id=inv.id,
            patient_id=inv.patient_id,
            amount=money2(entry.amount),
            method=getattr(entry.method, "value", entry.method),
            status=_record_status(D(entry.amount), ZERO),
            gateway=entry.gateway,
            transaction_id=entry.transaction_id,
            processed_by=entry.paid_by,
            paid_at=entry.paid_at,
        )
        db.add(rec)
        existing[entry.id] = rec
        created.append(rec)

    refunded: Dict[int, Decimal] = {}
    for entry in inv.payments or []:
        if entry.refund_of_id is not None:
            refunded[entry.refund_of_id] = (refunded.get(entry.refund_of_id, ZERO)
                                            - D(entry.amount))

    for entry_id, rec in existing.items():
        amt = D(rec.amount)
        if amt < ZERO:
            continue
        back = money2(refunded.get(entry_id, ZERO))
        rec.refunded_amount = back
        rec.status = _record_status(amt, back)

    db.flush()
    if created:
        logger.info("Payment records replayed invoice=%s created=%s",
                    inv.invoice_number, len(created))
    return created
