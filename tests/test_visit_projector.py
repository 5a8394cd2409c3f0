from datetime import datetime, timedelta
from decimal import Decimal

from clinic_billing.models.billing import Invoice, InvoiceItem, ItemType
from clinic_billing.models.visit import (
    OrderStatus,
    Visit,
    VisitLabOrder,
    VisitPrescription,
    VisitRadiologyOrder,
    VisitStatus,
)
from clinic_billing.services.visit_projector import (
    ItemsPaid,
    PaidItem,
    project_invoice_created,
    project_items_paid,
    reconcile,
)

T0 = datetime(2024, 1, 1, 8, 0, 0)


def _lab(minutes, status=OrderStatus.PENDING_PAYMENT, name="CBC",
         price="100"):
    return VisitLabOrder(test_name=name, status=status, price=Decimal(price),
                         created_at=T0 + timedelta(minutes=minutes))


def _visit(status=VisitStatus.PENDING_PAYMENT, **orders):
    return Visit(id=1,
                 patient_id=1,
                 status=status,
                 consultation_fee_paid=False,
                 is_active=True,
                 lab_orders=orders.get("lab", []),
                 radiology_orders=orders.get("radiology", []),
                 prescriptions=orders.get("rx", []))


def _event(*types):
    return ItemsPaid(invoice_id=10,
                     visit_id=1,
                     items=[PaidItem(index=i, item_type=t)
                            for i, t in enumerate(types)])


def test_paid_consultation_queues_uninsured_visit():
    visit = _visit()
    result = project_items_paid(visit, _event("consultation"),
                                patient_insured=False)
    assert visit.status == VisitStatus.IN_QUEUE
    assert visit.consultation_fee_paid is True
    assert result.visit_status_from == "Pending Payment"
    assert result.visit_status_to == "In Queue"


def test_consultation_payment_leaves_started_visit_alone():
    visit = _visit(status=VisitStatus.IN_PROGRESS)
    result = project_items_paid(visit, _event("consultation"),
                                patient_insured=False)
    assert visit.status == VisitStatus.IN_PROGRESS
    assert not result.changed


def test_each_paid_lab_item_unlocks_one_most_recent_order():
    older, newer, newest = _lab(0, name="CBC"), _lab(5, name="LFT"), _lab(9, name="RFT")
    visit = _visit(status=VisitStatus.IN_QUEUE, lab=[older, newer, newest])

    project_items_paid(visit, _event("lab_test", "lab_test"),
                       patient_insured=False)

    assert newest.status == OrderStatus.PENDING
    assert newer.status == OrderStatus.PENDING
    assert older.status == OrderStatus.PENDING_PAYMENT


def test_orders_outside_the_payment_gate_are_untouched():
    done = _lab(10, status=OrderStatus.COMPLETED)
    waiting = _lab(1)
    visit = _visit(status=VisitStatus.IN_QUEUE, lab=[done, waiting])

    project_items_paid(visit, _event("lab_test"), patient_insured=False)

    assert done.status == OrderStatus.COMPLETED
    assert waiting.status == OrderStatus.PENDING


def test_paid_items_only_unlock_orders_of_their_own_type():
    lab = _lab(0)
    scan = VisitRadiologyOrder(scan_type="X-Ray", body_part="Chest",
                               status=OrderStatus.PENDING_PAYMENT,
                               created_at=T0)
    rx = VisitPrescription(medication="Amoxicillin", dosage="500mg",
                           frequency="TDS",
                           status=OrderStatus.PENDING_PAYMENT, created_at=T0)
    visit = _visit(status=VisitStatus.IN_QUEUE, lab=[lab],
                   radiology=[scan], rx=[rx])

    result = project_items_paid(visit, _event("imaging", "procedure"),
                                patient_insured=False)

    assert scan.status == OrderStatus.PENDING
    assert lab.status == OrderStatus.PENDING_PAYMENT
    assert rx.status == OrderStatus.PENDING_PAYMENT
    assert list(result.advanced) == ["radiology_orders"]


def test_empty_event_changes_nothing():
    visit = _visit(lab=[_lab(0)])
    result = project_items_paid(visit, _event(), patient_insured=False)
    assert not result.changed
    assert visit.status == VisitStatus.PENDING_PAYMENT


def test_invoice_creation_links_invoice_and_queues_insured_visit():
    visit = _visit()
    inv = Invoice(id=42, invoice_number="INV-202401-00001", items=[])

    result = project_invoice_created(visit, inv, patient_insured=True)

    assert visit.invoice_id == 42
    assert visit.status == VisitStatus.IN_QUEUE
    assert visit.consultation_fee_paid is True
    assert result.changed


def test_invoice_creation_keeps_uninsured_visit_gated():
    visit = _visit()
    inv = Invoice(id=42, invoice_number="INV-202401-00001", items=[])
    project_invoice_created(visit, inv, patient_insured=False)
    assert visit.invoice_id == 42
    assert visit.status == VisitStatus.PENDING_PAYMENT


def _invoice_with(*paid_types):
    return Invoice(id=7,
                   invoice_number="INV-202401-00007",
                   items=[
                       InvoiceItem(idx=i, item_type=ItemType(t),
                                   description=t, quantity=1,
                                   unit_price=Decimal("100"), paid=True)
                       for i, t in enumerate(paid_types)
                   ])


def test_reconcile_tops_up_missed_projections_once():
    a, b, c = _lab(0), _lab(3), _lab(6)
    visit = _visit(lab=[a, b, c])
    inv = _invoice_with("consultation", "lab_test", "lab_test")

    first = reconcile(visit, inv, patient_insured=False)
    second = reconcile(visit, inv, patient_insured=False)

    assert first.changed
    assert visit.status == VisitStatus.IN_QUEUE
    assert visit.invoice_id == 7
    assert [o.status for o in (a, b, c)] == [
        OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING, OrderStatus.PENDING
    ]
    assert not second.changed


def test_reconcile_counts_orders_already_unlocked():
    a, b = _lab(0), _lab(3, status=OrderStatus.PENDING)
    visit = _visit(status=VisitStatus.IN_QUEUE, lab=[a, b])
    inv = _invoice_with("lab_test")

    result = reconcile(visit, inv, patient_insured=False)

    assert not result.changed
    assert a.status == OrderStatus.PENDING_PAYMENT


def test_reconcile_ignores_free_orders():
    free = _lab(0, status=OrderStatus.PENDING, name="BP check", price="0")
    billed = _lab(3)
    visit = _visit(status=VisitStatus.IN_QUEUE, lab=[free, billed])
    inv = _invoice_with("lab_test")

    result = reconcile(visit, inv, patient_insured=False)

    assert list(result.advanced) == ["lab_orders"]
    assert free.status == OrderStatus.PENDING
    assert billed.status == OrderStatus.PENDING
