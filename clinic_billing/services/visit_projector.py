# FILE: clinic_billing/services/visit_projector.py
"""
Billing -> clinical workflow projection.

The only place where billing events change Visit.status or the per-order
payment gate (Pending Payment -> Pending). Pure object manipulation: the
caller loads the visit, calls one of the project_* functions and commits.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from clinic_billing.models.billing import Invoice, ItemType
from clinic_billing.models.visit import OrderStatus, Visit, VisitStatus

logger = logging.getLogger(__name__)

# paid item type -> visit order collection it unlocks
ORDER_COLLECTIONS = {
    ItemType.LAB_TEST.value: "lab_orders",
    ItemType.IMAGING.value: "radiology_orders",
    ItemType.MEDICATION.value: "prescriptions",
}


def _type_value(x) -> str:
    return x.value if hasattr(x, "value") else str(x)


@dataclass(frozen=True)
class PaidItem:
    index: int
    item_type: str


@dataclass
class ItemsPaid:
    """Items of one invoice that just transitioned to paid."""
    invoice_id: int
    visit_id: Optional[int]
    items: List[PaidItem] = field(default_factory=list)

    @classmethod
    def from_invoice(cls, inv: Invoice, indices: Iterable[int]) -> "ItemsPaid":
        wanted = set(indices)
        return cls(
            invoice_id=inv.id,
            visit_id=inv.visit_id,
            items=[
                PaidItem(index=it.idx, item_type=_type_value(it.item_type))
                for it in inv.items or [] if it.idx in wanted
            ],
        )

    def count_by_type(self) -> Dict[str, int]:
        return dict(Counter(p.item_type for p in self.items))

    @property
    def has_consultation(self) -> bool:
        return any(p.item_type == ItemType.CONSULTATION.value
                   for p in self.items)

    def __bool__(self) -> bool:
        return bool(self.items)


@dataclass
class ProjectionResult:
    visit_status_from: Optional[str] = None
    visit_status_to: Optional[str] = None
    # collection name -> ids of orders moved to Pending
    advanced: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.visit_status_to is not None or any(self.advanced.values())


def _order_sort_key(o):
    return (o.created_at or datetime.min, o.id or 0)


def _billed(o) -> bool:
    # free orders never get an invoice item
    return o.price is not None and Decimal(o.price) > 0


def _advance_orders(orders, count: int) -> List:
    """
    Move `count` orders from Pending Payment to Pending, most recently
    created first. Orders in any other state are left alone.
    """
    if count <= 0:
        return []
    waiting = [o for o in orders if o.status == OrderStatus.PENDING_PAYMENT]
    waiting.sort(key=_order_sort_key, reverse=True)
    moved = waiting[:count]
    for o in moved:
        o.status = OrderStatus.PENDING
    return moved


def _queue_visit(visit: Visit, result: ProjectionResult) -> None:
    if visit.status != VisitStatus.PENDING_PAYMENT:
        return
    result.visit_status_from = VisitStatus.PENDING_PAYMENT.value
    result.visit_status_to = VisitStatus.IN_QUEUE.value
    visit.status = VisitStatus.IN_QUEUE
    visit.consultation_fee_paid = True


def project_items_paid(visit: Visit, event: ItemsPaid, *,
                       patient_insured: bool) -> ProjectionResult:
    """
    1. consultation paid + uninsured + visit Pending Payment -> In Queue
    2. for lab_test / imaging / medication: advance as many Pending Payment
       orders as there are paid items of that type.
    """
    result = ProjectionResult()
    if not event:
        return result

    if event.has_consultation and not patient_insured:
        _queue_visit(visit, result)

    counts = event.count_by_type()
    for item_type, collection in ORDER_COLLECTIONS.items():
        moved = _advance_orders(getattr(visit, collection) or [],
                                counts.get(item_type, 0))
        if moved:
            result.advanced[collection] = [o.id for o in moved]

    if result.changed:
        logger.info(
            "Visit %s projected from invoice %s: status %s -> %s, advanced=%s",
            visit.id, event.invoice_id, result.visit_status_from,
            result.visit_status_to, result.advanced)
    return result


def project_invoice_created(visit: Visit, inv: Invoice, *,
                            patient_insured: bool) -> ProjectionResult:
    """Link the invoice; insured visits skip the payment gate."""
    result = ProjectionResult()
    visit.invoice_id = inv.id
    if patient_insured:
        _queue_visit(visit, result)
        visit.consultation_fee_paid = True
    if result.changed:
        logger.info("Visit %s -> %s on invoice %s creation", visit.id,
                    result.visit_status_to, inv.invoice_number)
    return result


def reconcile(visit: Visit, inv: Invoice, *,
              patient_insured: bool) -> ProjectionResult:
    """
    Re-derive the visit from the invoice's current paid flags. For each
    order collection, the number of unlocked orders is topped up to the
    number of paid items of the matching type. Free orders are not
    counted since no item backs them. Running it twice changes
    nothing the second time.
    """
    result = ProjectionResult()
    if visit.invoice_id is None:
        visit.invoice_id = inv.id

    paid = [it for it in inv.items or [] if it.paid]
    if patient_insured:
        _queue_visit(visit, result)
    elif any(_type_value(it.item_type) == ItemType.CONSULTATION.value
             for it in paid):
        _queue_visit(visit, result)

    counts = Counter(_type_value(it.item_type) for it in paid)
    for item_type, collection in ORDER_COLLECTIONS.items():
        orders = getattr(visit, collection) or []
        unlocked = sum(1 for o in orders
                       if _billed(o)
                       and o.status not in (OrderStatus.PENDING_PAYMENT,
                                            OrderStatus.CANCELLED))
        moved = _advance_orders(orders, counts.get(item_type, 0) - unlocked)
        if moved:
            result.advanced[collection] = [o.id for o in moved]

    if result.changed:
        logger.info("Visit %s reconciled from invoice %s: %s -> %s, advanced=%s",
                    visit.id, inv.invoice_number, result.visit_status_from,
                    result.visit_status_to, result.advanced)
    return result
