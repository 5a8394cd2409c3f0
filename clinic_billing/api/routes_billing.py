from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinic_billing.api.deps import current_user_id, get_db
from clinic_billing.schemas.billing import (
    AddItemsIn,
    CancelInvoiceIn,
    InsuranceClaimIn,
    InvoiceCreate,
    InvoiceOut,
    InvoicePaymentOut,
    PayItemsIn,
    PayItemsOut,
    PaymentCreate,
    RefundCreate,
)
from clinic_billing.services import billing_service
from clinic_billing.utils.resp import ok

router = APIRouter(prefix="/billing", tags=["Billing"])


def _invoice_out(inv) -> dict:
    return InvoiceOut.model_validate(inv).model_dump()


@router.post("/invoices")
def create_invoice(
        payload: InvoiceCreate,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    inv = billing_service.create_invoice(db, data=payload, user_id=user_id)
    return ok(_invoice_out(inv), 201)


@router.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: int, db: Session = Depends(get_db)):
    return ok(_invoice_out(billing_service.get_invoice(db, invoice_id)))


@router.get("/invoices/{invoice_id}/summary")
def payment_summary(invoice_id: int, db: Session = Depends(get_db)):
    return ok(billing_service.get_payment_summary(db, invoice_id=invoice_id))


@router.post("/invoices/{invoice_id}/items")
def add_items(
        invoice_id: int,
        payload: AddItemsIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    inv = billing_service.add_items_to_invoice(
        db,
        invoice_id=invoice_id,
        items=payload.items,
        has_insurance=payload.has_insurance,
        user_id=user_id,
    )
    return ok(_invoice_out(inv))


@router.post("/invoices/{invoice_id}/pay-items")
def pay_items(
        invoice_id: int,
        payload: PayItemsIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    inv, applied = billing_service.pay_items(
        db,
        invoice_id=invoice_id,
        indices=payload.item_indices,
        method=payload.method,
        reference=payload.reference,
        notes=payload.notes,
        user_id=user_id,
    )
    return ok(PayItemsOut(
        amount_applied=applied.amount,
        item_indices=applied.item_indices,
        invoice=InvoiceOut.model_validate(inv),
    ).model_dump())


@router.post("/invoices/{invoice_id}/insurance-claim")
def insurance_claim(
        invoice_id: int,
        payload: InsuranceClaimIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    inv = billing_service.process_insurance_claim(db,
                                                  invoice_id=invoice_id,
                                                  claim=payload,
                                                  user_id=user_id)
    return ok(_invoice_out(inv))


@router.post("/invoices/{invoice_id}/cancel")
def cancel_invoice(
        invoice_id: int,
        payload: CancelInvoiceIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    inv = billing_service.cancel_invoice(db,
                                         invoice_id=invoice_id,
                                         reason=payload.reason,
                                         user_id=user_id)
    return ok(_invoice_out(inv))


@router.post("/invoices/{invoice_id}/replay-payments")
def replay_payments(invoice_id: int, db: Session = Depends(get_db)):
    created = billing_service.replay_payment_records(db, invoice_id=invoice_id)
    return ok({"created": len(created)})


@router.post("/payments")
def process_payment(
        payload: PaymentCreate,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    entry = billing_service.process_payment(db, data=payload, user_id=user_id)
    return ok(InvoicePaymentOut.model_validate(entry).model_dump(), 201)


@router.post("/payments/{payment_id}/refund")
def refund_payment(
        payment_id: int,
        payload: RefundCreate,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    entry = billing_service.process_refund(db,
                                           payment_id=payment_id,
                                           data=payload,
                                           user_id=user_id)
    return ok(InvoicePaymentOut.model_validate(entry).model_dump(), 201)


@router.get("/patients/{patient_id}/statement")
def statement(
        patient_id: int,
        start: Optional[datetime] = Query(None),
        end: Optional[datetime] = Query(None),
        db: Session = Depends(get_db),
):
    st = billing_service.generate_statement(db,
                                            patient_id=patient_id,
                                            start=start,
                                            end=end)
    st["invoices"] = [_invoice_out(i) for i in st["invoices"]]
    st["payments"] = [
        InvoicePaymentOut.model_validate(p).model_dump() for p in st["payments"]
    ]
    return ok(st)


@router.get("/statistics")
def statistics(
        start: Optional[datetime] = Query(None),
        end: Optional[datetime] = Query(None),
        db: Session = Depends(get_db),
):
    return ok(billing_service.billing_statistics(db, start=start, end=end))


@router.post("/overdue/check")
def check_overdue(db: Session = Depends(get_db)):
    n = billing_service.check_overdue_invoices(db)
    return ok({"flagged": n})
