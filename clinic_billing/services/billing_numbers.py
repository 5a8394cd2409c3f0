# FILE: clinic_billing/services/billing_numbers.py
from __future__ import annotations

import secrets
import time
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from clinic_billing.models.billing import BillingNumberSeries
from clinic_billing.utils.timez import now_local

INVOICE_PREFIX = "INV"
PAYMENT_PREFIX = "PAY"
VISIT_PREFIX = "VIS"
PADDING = 5


def _period_key(dt: datetime) -> str:
    return dt.strftime("%Y%m")


def next_number(
    db: Session,
    *,
    doc_type: str,
    at: Optional[datetime] = None,
    padding: int = PADDING,
) -> str:
    """
    {doc_type}-YYYYMM-NNNNN, counter resets every month (hospital timezone).
    The series row is locked for the rest of the caller's transaction.
    """
    at = at or now_local()
    pk = _period_key(at)

    row = (db.query(BillingNumberSeries).filter(
        BillingNumberSeries.doc_type == doc_type,
        BillingNumberSeries.period_key == pk,
        BillingNumberSeries.is_active.is_(True),
    ).with_for_update().first())

    if not row:
        row = BillingNumberSeries(doc_type=doc_type,
                                  period_key=pk,
                                  next_number=1,
                                  is_active=True)
        db.add(row)
        db.flush()

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    return f"{doc_type}-{pk}-{str(n).zfill(padding)}"


def next_invoice_number(db: Session, at: Optional[datetime] = None) -> str:
    return next_number(db, doc_type=INVOICE_PREFIX, at=at)


def next_payment_number(db: Session, at: Optional[datetime] = None) -> str:
    return next_number(db, doc_type=PAYMENT_PREFIX, at=at)


def next_visit_number(db: Session, at: Optional[datetime] = None) -> str:
    return next_number(db, doc_type=VISIT_PREFIX, at=at)


def new_claim_number() -> str:
    # CLM-<epoch ms>-<3 random digits>
    return f"CLM-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"


def new_approval_code() -> str:
    return f"AUTO-{secrets.token_hex(4).upper()}"
