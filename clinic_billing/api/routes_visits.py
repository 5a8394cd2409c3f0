from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinic_billing.api.deps import current_user_id, get_db
from clinic_billing.schemas.visit import (
    LabOrderIn,
    LabOrderOut,
    OrderResultIn,
    PrescriptionIn,
    PrescriptionOut,
    RadiologyOrderIn,
    RadiologyOrderOut,
    VisitCreate,
    VisitOut,
)
from clinic_billing.services import billing_service, visit_service
from clinic_billing.utils.resp import ok

router = APIRouter(prefix="/visits", tags=["Visits"])


def _visit_out(db: Session, visit_id: int) -> dict:
    return VisitOut.model_validate(visit_service.get_visit(db, visit_id)).model_dump()


@router.post("")
def create_visit(
        payload: VisitCreate,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    visit = visit_service.create_visit(db, data=payload, user_id=user_id)
    return ok(_visit_out(db, visit.id), 201)


@router.get("/{visit_id}")
def get_visit(visit_id: int, db: Session = Depends(get_db)):
    return ok(_visit_out(db, visit_id))


@router.post("/{visit_id}/start")
def start_visit(
        visit_id: int,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    visit_service.start_visit(db, visit_id=visit_id, user_id=user_id)
    return ok(_visit_out(db, visit_id))


@router.post("/{visit_id}/complete")
def complete_visit(
        visit_id: int,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    visit_service.complete_visit(db, visit_id=visit_id, user_id=user_id)
    return ok(_visit_out(db, visit_id))


@router.post("/{visit_id}/end")
def end_visit(
        visit_id: int,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    visit_service.end_visit(db, visit_id=visit_id, user_id=user_id)
    return ok(_visit_out(db, visit_id))


@router.post("/{visit_id}/reconcile")
def reconcile_visit(visit_id: int, db: Session = Depends(get_db)):
    res = billing_service.reconcile_visit(db, visit_id=visit_id)
    return ok({
        "status_changed_to": res.visit_status_to,
        "advanced": res.advanced,
        "visit": _visit_out(db, visit_id),
    })


@router.post("/{visit_id}/lab-orders")
def place_lab_order(
        visit_id: int,
        payload: LabOrderIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    order = visit_service.place_lab_order(db,
                                          visit_id=visit_id,
                                          data=payload,
                                          user_id=user_id)
    return ok(LabOrderOut.model_validate(order).model_dump(), 201)


@router.post("/{visit_id}/radiology-orders")
def place_radiology_order(
        visit_id: int,
        payload: RadiologyOrderIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    order = visit_service.place_radiology_order(db,
                                                visit_id=visit_id,
                                                data=payload,
                                                user_id=user_id)
    return ok(RadiologyOrderOut.model_validate(order).model_dump(), 201)


@router.post("/{visit_id}/prescriptions")
def prescribe(
        visit_id: int,
        payload: PrescriptionIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    rx = visit_service.prescribe(db,
                                 visit_id=visit_id,
                                 data=payload,
                                 user_id=user_id)
    return ok(PrescriptionOut.model_validate(rx).model_dump(), 201)


@router.post("/prescriptions/{prescription_id}/dispense")
def dispense(
        prescription_id: int,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    rx = visit_service.dispense_prescription(db,
                                             prescription_id=prescription_id,
                                             user_id=user_id)
    return ok(PrescriptionOut.model_validate(rx).model_dump())


@router.post("/lab-orders/{order_id}/complete")
def complete_lab_order(
        order_id: int,
        payload: OrderResultIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    order = visit_service.complete_lab_order(db,
                                             order_id=order_id,
                                             data=payload,
                                             user_id=user_id)
    return ok(LabOrderOut.model_validate(order).model_dump())


@router.post("/radiology-orders/{order_id}/complete")
def complete_radiology_order(
        order_id: int,
        payload: OrderResultIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    order = visit_service.complete_radiology_order(db,
                                                   order_id=order_id,
                                                   data=payload,
                                                   user_id=user_id)
    return ok(RadiologyOrderOut.model_validate(order).model_dump())
