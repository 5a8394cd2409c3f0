# FILE: clinic_billing/services/visit_service.py
"""
Visit workflow. Orders start behind the payment gate (Pending Payment) for
uninsured patients; their invoice items are billed through billing_service,
whose projection later opens the gate.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from clinic_billing.models.billing import ItemType
from clinic_billing.models.patient import Patient
from clinic_billing.models.visit import (
    OrderStatus,
    Visit,
    VisitLabOrder,
    VisitPrescription,
    VisitRadiologyOrder,
    VisitStatus,
)
from clinic_billing.schemas.billing import InvoiceCreate, InvoiceItemIn
from clinic_billing.schemas.visit import (
    LabOrderIn,
    OrderResultIn,
    PrescriptionIn,
    RadiologyOrderIn,
    VisitCreate,
)
from clinic_billing.services import billing_service
from clinic_billing.services.billing_calc import money2
from clinic_billing.services.billing_errors import (
    BillingError,
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
)
from clinic_billing.services.billing_numbers import next_visit_number
from clinic_billing.services.billing_ports import Notifier
from clinic_billing.utils.timez import utcnow_naive

logger = logging.getLogger(__name__)


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrencyError(f"{what} was changed by another request, try again")
    except Exception:
        db.rollback()
        raise


def get_visit(db: Session, visit_id: int) -> Visit:
    v = (db.query(Visit).options(
        selectinload(Visit.lab_orders),
        selectinload(Visit.radiology_orders),
        selectinload(Visit.prescriptions),
    ).filter(Visit.id == visit_id).first())
    if not v:
        raise NotFoundError(f"Visit {visit_id} not found")
    return v


def _ensure_open(visit: Visit) -> None:
    if not visit.is_active or visit.status == VisitStatus.COMPLETED:
        raise InvalidStateError(f"Visit {visit.visit_number} is closed")


# ============================================================
# Visit lifecycle
# ============================================================
def create_visit(
    db: Session,
    *,
    data: VisitCreate,
    user_id: Optional[int] = None,
    notifier: Optional[Notifier] = None,
) -> Visit:
    patient = db.get(Patient, data.patient_id)
    if not patient:
        raise NotFoundError(f"Patient {data.patient_id} not found")

    active = (db.query(Visit).filter(
        Visit.patient_id == patient.id,
        Visit.is_active.is_(True),
        Visit.status != VisitStatus.COMPLETED,
    ).first())
    if active:
        raise InvalidStateError(
            f"Patient already has an active visit ({active.visit_number})")

    insured = patient.has_insurance
    fee = money2(data.consultation_fee)
    # nothing to collect -> nothing to wait for
    gated = not insured and fee > 0

    visit = Visit(
        visit_number=next_visit_number(db),
        patient_id=patient.id,
        doctor_id=data.doctor_id,
        visit_type=data.visit_type,
        reason=data.reason,
        notes=data.notes,
        status=VisitStatus.PENDING_PAYMENT if gated else VisitStatus.IN_QUEUE,
        consultation_fee_paid=not gated,
        consultation_fee_amount=fee,
        is_active=True,
    )
    db.add(visit)

    if fee > 0:
        db.flush()
        # commits the visit together with its consultation invoice
        billing_service.create_invoice(
            db,
            data=InvoiceCreate(
                patient_id=patient.id,
                visit_id=visit.id,
                items=[
                    InvoiceItemIn(item_type=ItemType.CONSULTATION,
                                  description="Consultation fee",
                                  unit_price=fee)
                ],
            ),
            user_id=user_id,
            notifier=notifier,
        )
    else:
        _commit(db, "Visit")

    logger.info("Visit created %s patient=%s status=%s insured=%s",
                visit.visit_number, patient.id, visit.status.value, insured)
    return get_visit(db, visit.id)


def start_visit(db: Session, *, visit_id: int,
                user_id: Optional[int] = None) -> Visit:
    visit = get_visit(db, visit_id)
    if visit.status != VisitStatus.IN_QUEUE:
        raise InvalidStateError(
            f"Visit cannot be started from status '{visit.status.value}'")
    visit.status = VisitStatus.IN_PROGRESS
    visit.started_by = user_id
    _commit(db, "Visit")
    logger.info("Visit %s started by %s", visit.visit_number, user_id)
    return visit


def complete_visit(db: Session, *, visit_id: int,
                   user_id: Optional[int] = None) -> Visit:
    """Doctor-initiated In-Progress -> completed; the only manual exit."""
    visit = get_visit(db, visit_id)
    if visit.status != VisitStatus.IN_PROGRESS:
        raise InvalidStateError("Only an in-progress visit can be completed")
    visit.status = VisitStatus.COMPLETED
    visit.completed_at = utcnow_naive()
    visit.ended_by = user_id
    _commit(db, "Visit")
    logger.info("Visit %s completed", visit.visit_number)
    return visit


def end_visit(db: Session, *, visit_id: int,
              user_id: Optional[int] = None) -> Visit:
    visit = get_visit(db, visit_id)
    if not visit.is_active:
        raise InvalidStateError(f"Visit {visit.visit_number} already ended")
    visit.is_active = False
    visit.ended_by = user_id
    if visit.completed_at is None:
        visit.completed_at = utcnow_naive()
    _commit(db, "Visit")
    logger.info("Visit %s ended", visit.visit_number)
    return visit


# ============================================================
# Orders
# ============================================================
def _bill_order(db: Session, visit: Visit, *, item: InvoiceItemIn,
                user_id: Optional[int], insured: bool) -> None:
    inv = billing_service.find_invoice_by_visit(db, visit.id)
    if inv is None:
        billing_service.create_invoice(db,
                                       data=InvoiceCreate(
                                           patient_id=visit.patient_id,
                                           visit_id=visit.id,
                                           items=[item]),
                                       user_id=user_id)
    else:
        billing_service.add_items_to_invoice(db,
                                             invoice_id=inv.id,
                                             items=[item],
                                             has_insurance=insured,
                                             user_id=user_id)


def _place(db: Session, visit_id: int, *, build, item_type: ItemType,
           description: str, price: Decimal, quantity: int = 1,
           user_id: Optional[int] = None):
    visit = get_visit(db, visit_id)
    _ensure_open(visit)
    insured = visit.patient.has_insurance
    if not insured and not visit.consultation_fee_paid:
        raise InvalidStateError(
            "Consultation fee must be paid before placing orders")

    price = money2(price)
    gated = not insured and price > 0
    order = build(OrderStatus.PENDING_PAYMENT if gated else OrderStatus.PENDING)
    order.price = money2(price * quantity)
    order.visit_id = visit.id
    db.add(order)
    visit.updated_at = utcnow_naive()
    _commit(db, "Visit")
    logger.info("%s order %s placed on visit %s status=%s", item_type.value,
                order.id, visit.visit_number, order.status.value)

    if price > 0:
        try:
            _bill_order(db,
                        visit,
                        item=InvoiceItemIn(item_type=item_type,
                                           description=description,
                                           quantity=quantity,
                                           unit_price=price),
                        user_id=user_id,
                        insured=insured)
        except BillingError:
            db.rollback()
            order = db.get(type(order), order.id)
            order.status = OrderStatus.CANCELLED
            _commit(db, "Order")
            logger.warning("Order %s cancelled: billing failed", order.id)
            raise
    db.refresh(order)
    return order


def place_lab_order(db: Session, *, visit_id: int, data: LabOrderIn,
                    user_id: Optional[int] = None) -> VisitLabOrder:
    return _place(
        db,
        visit_id,
        build=lambda status: VisitLabOrder(test_name=data.test_name,
                                           notes=data.notes,
                                           ordered_by=user_id,
                                           status=status),
        item_type=ItemType.LAB_TEST,
        description=f"Lab test: {data.test_name}",
        price=data.price,
        user_id=user_id,
    )


def place_radiology_order(db: Session, *, visit_id: int,
                          data: RadiologyOrderIn,
                          user_id: Optional[int] = None) -> VisitRadiologyOrder:
    return _place(
        db,
        visit_id,
        build=lambda status: VisitRadiologyOrder(scan_type=data.scan_type,
                                                 body_part=data.body_part,
                                                 reason=data.reason,
                                                 notes=data.notes,
                                                 ordered_by=user_id,
                                                 status=status),
        item_type=ItemType.IMAGING,
        description=f"Imaging: {data.scan_type} ({data.body_part})",
        price=data.price,
        user_id=user_id,
    )


def prescribe(db: Session, *, visit_id: int, data: PrescriptionIn,
              user_id: Optional[int] = None) -> VisitPrescription:
    return _place(
        db,
        visit_id,
        build=lambda status: VisitPrescription(medication=data.medication,
                                               dosage=data.dosage,
                                               frequency=data.frequency,
                                               duration=data.duration,
                                               notes=data.notes,
                                               prescribed_by=user_id,
                                               status=status),
        item_type=ItemType.MEDICATION,
        description=f"Medication: {data.medication} {data.dosage}",
        price=data.price,
        quantity=data.quantity,
        user_id=user_id,
    )


# ============================================================
# Fulfilment
# ============================================================
def _ensure_actionable(order, label: str, done: OrderStatus) -> None:
    if order.status == OrderStatus.PENDING_PAYMENT:
        raise InvalidStateError(f"{label} is awaiting payment")
    if order.status == done:
        raise InvalidStateError(f"{label} is already {done.value.lower()}")
    if order.status == OrderStatus.CANCELLED:
        raise InvalidStateError(f"{label} was cancelled")


def dispense_prescription(db: Session, *, prescription_id: int,
                          user_id: Optional[int] = None) -> VisitPrescription:
    rx = db.get(VisitPrescription, prescription_id)
    if not rx:
        raise NotFoundError(f"Prescription {prescription_id} not found")
    _ensure_actionable(rx, "Prescription", OrderStatus.DISPENSED)
    rx.status = OrderStatus.DISPENSED
    rx.dispensed_at = utcnow_naive()
    rx.dispensed_by = user_id
    _commit(db, "Prescription")
    logger.info("Prescription %s dispensed by %s", rx.id, user_id)
    return rx


def complete_lab_order(db: Session, *, order_id: int, data: OrderResultIn,
                       user_id: Optional[int] = None) -> VisitLabOrder:
    order = db.get(VisitLabOrder, order_id)
    if not order:
        raise NotFoundError(f"Lab order {order_id} not found")
    _ensure_actionable(order, "Lab order", OrderStatus.COMPLETED)
    order.status = OrderStatus.COMPLETED
    order.results = data.results
    if data.notes:
        order.notes = data.notes
    order.completed_at = utcnow_naive()
    order.completed_by = user_id
    _commit(db, "Lab order")
    return order


def complete_radiology_order(db: Session, *, order_id: int,
                             data: OrderResultIn,
                             user_id: Optional[int] = None
                             ) -> VisitRadiologyOrder:
    order = db.get(VisitRadiologyOrder, order_id)
    if not order:
        raise NotFoundError(f"Radiology order {order_id} not found")
    _ensure_actionable(order, "Radiology order", OrderStatus.COMPLETED)
    order.status = OrderStatus.COMPLETED
    order.findings = data.results
    if data.notes:
        order.notes = data.notes
    order.completed_at = utcnow_naive()
    order.completed_by = user_id
    _commit(db, "Radiology order")
    return order
