from decimal import Decimal

import pytest

from clinic_billing.models import (
    Invoice,
    InvoiceStatus,
    OrderStatus,
    VisitStatus,
)
from clinic_billing.schemas.visit import (
    LabOrderIn,
    OrderResultIn,
    PrescriptionIn,
    RadiologyOrderIn,
    VisitCreate,
)
from clinic_billing.services import billing_service, visit_service
from clinic_billing.services.billing_errors import (
    InvalidStateError,
    NotFoundError,
)


def _open(db, patient, fee="10000"):
    return visit_service.create_visit(
        db,
        data=VisitCreate(patient_id=patient.id,
                         consultation_fee=Decimal(fee)),
        user_id=5,
    )


def test_uninsured_visit_waits_for_consultation_fee(db, make_patient):
    visit = _open(db, make_patient())

    assert visit.visit_number.startswith("VIS-")
    assert visit.status == VisitStatus.PENDING_PAYMENT
    assert visit.consultation_fee_paid is False
    inv = billing_service.get_invoice(db, visit.invoice_id)
    assert inv.visit_id == visit.id
    assert [it.item_type.value for it in inv.items] == ["consultation"]
    assert inv.status == InvoiceStatus.PENDING

    with pytest.raises(InvalidStateError):
        visit_service.start_visit(db, visit_id=visit.id)
    with pytest.raises(InvalidStateError):
        visit_service.place_lab_order(db, visit_id=visit.id,
                                      data=LabOrderIn(test_name="CBC",
                                                      price=Decimal("20000")))

    billing_service.pay_items(db, invoice_id=inv.id, indices=[0])
    visit = visit_service.get_visit(db, visit.id)
    assert visit.status == VisitStatus.IN_QUEUE
    assert visit.consultation_fee_paid is True


def test_insured_visit_goes_straight_to_queue(db, make_provider,
                                              make_patient):
    patient = make_patient(provider=make_provider("NHIF"))
    visit = _open(db, patient)

    assert visit.status == VisitStatus.IN_QUEUE
    assert visit.consultation_fee_paid is True
    assert billing_service.get_invoice(
        db, visit.invoice_id).status == InvoiceStatus.PAID

    lab = visit_service.place_lab_order(
        db, visit_id=visit.id,
        data=LabOrderIn(test_name="Malaria RDT", price=Decimal("8000")))
    assert lab.status == OrderStatus.PENDING
    inv = billing_service.get_invoice(db, visit.invoice_id)
    assert len(inv.items) == 2
    assert inv.status == InvoiceStatus.PAID


def test_free_visit_has_no_invoice(db, make_patient):
    visit = _open(db, make_patient(), fee="0")
    assert visit.status == VisitStatus.IN_QUEUE
    assert visit.invoice_id is None
    assert db.query(Invoice).count() == 0


def test_one_active_visit_per_patient(db, make_patient):
    patient = make_patient()
    first = _open(db, patient)
    with pytest.raises(InvalidStateError):
        _open(db, patient)

    visit_service.end_visit(db, visit_id=first.id)
    assert _open(db, patient).id != first.id


def test_create_visit_for_missing_patient(db):
    with pytest.raises(NotFoundError):
        visit_service.create_visit(db, data=VisitCreate(patient_id=999))


def test_paid_orders_are_released_to_their_departments(db, make_patient):
    visit = _open(db, make_patient())
    billing_service.pay_items(db, invoice_id=visit.invoice_id, indices=[0])

    lab = visit_service.place_lab_order(
        db, visit_id=visit.id,
        data=LabOrderIn(test_name="CBC", price=Decimal("20000")))
    scan = visit_service.place_radiology_order(
        db, visit_id=visit.id,
        data=RadiologyOrderIn(scan_type="X-Ray", body_part="Chest",
                              price=Decimal("30000")))
    rx = visit_service.prescribe(
        db, visit_id=visit.id,
        data=PrescriptionIn(medication="Amoxicillin", dosage="500mg",
                            frequency="TDS", quantity=2,
                            price=Decimal("1500")))

    assert [o.status for o in (lab, scan, rx)] == [OrderStatus.PENDING_PAYMENT] * 3
    assert rx.price == Decimal("3000.00")

    inv = billing_service.get_invoice(db, visit.invoice_id)
    assert [it.item_type.value for it in inv.items] == [
        "consultation", "lab_test", "imaging", "medication"
    ]
    assert inv.items[3].total == Decimal("3000.00")
    assert inv.status == InvoiceStatus.PARTIAL

    with pytest.raises(InvalidStateError):
        visit_service.dispense_prescription(db, prescription_id=rx.id)

    billing_service.pay_items(db, invoice_id=inv.id, indices=[1, 3])
    assert lab.status == OrderStatus.PENDING
    assert rx.status == OrderStatus.PENDING
    assert scan.status == OrderStatus.PENDING_PAYMENT

    rx = visit_service.dispense_prescription(db, prescription_id=rx.id,
                                             user_id=9)
    assert rx.status == OrderStatus.DISPENSED
    assert rx.dispensed_at is not None
    with pytest.raises(InvalidStateError):
        visit_service.dispense_prescription(db, prescription_id=rx.id)

    lab = visit_service.complete_lab_order(
        db, order_id=lab.id, data=OrderResultIn(results="Hb 13.2 g/dL"))
    assert lab.status == OrderStatus.COMPLETED
    assert lab.results == "Hb 13.2 g/dL"

    with pytest.raises(InvalidStateError):
        visit_service.complete_radiology_order(
            db, order_id=scan.id, data=OrderResultIn(results="Clear"))


def test_free_order_is_not_gated(db, make_patient):
    visit = _open(db, make_patient())
    billing_service.pay_items(db, invoice_id=visit.invoice_id, indices=[0])

    lab = visit_service.place_lab_order(db, visit_id=visit.id,
                                        data=LabOrderIn(test_name="BP check"))

    assert lab.status == OrderStatus.PENDING
    assert len(billing_service.get_invoice(db, visit.invoice_id).items) == 1


def test_order_is_cancelled_when_billing_fails(db, make_patient):
    visit = _open(db, make_patient())
    billing_service.pay_items(db, invoice_id=visit.invoice_id, indices=[0])
    billing_service.cancel_invoice(db, invoice_id=visit.invoice_id)

    with pytest.raises(InvalidStateError):
        visit_service.place_lab_order(
            db, visit_id=visit.id,
            data=LabOrderIn(test_name="CBC", price=Decimal("20000")))

    visit = visit_service.get_visit(db, visit.id)
    assert [o.status for o in visit.lab_orders] == [OrderStatus.CANCELLED]


def test_visit_lifecycle(db, make_provider, make_patient):
    patient = make_patient(provider=make_provider("NHIF"))
    visit = _open(db, patient)

    with pytest.raises(InvalidStateError):
        visit_service.complete_visit(db, visit_id=visit.id)

    visit = visit_service.start_visit(db, visit_id=visit.id, user_id=3)
    assert visit.status == VisitStatus.IN_PROGRESS

    visit = visit_service.complete_visit(db, visit_id=visit.id, user_id=3)
    assert visit.status == VisitStatus.COMPLETED
    assert visit.completed_at is not None

    with pytest.raises(InvalidStateError):
        visit_service.prescribe(
            db, visit_id=visit.id,
            data=PrescriptionIn(medication="Paracetamol", dosage="1g",
                                frequency="QID"))

    visit = visit_service.end_visit(db, visit_id=visit.id)
    assert visit.is_active is False
    with pytest.raises(InvalidStateError):
        visit_service.end_visit(db, visit_id=visit.id)
