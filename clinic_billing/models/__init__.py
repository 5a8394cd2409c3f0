# clinic_billing/models/__init__.py
from .patient import InsuranceProvider, InsuranceCoverageRule, Patient
from .visit import (
    OrderStatus,
    Visit,
    VisitLabOrder,
    VisitPrescription,
    VisitRadiologyOrder,
    VisitStatus,
)
from .billing import (
    BillingNumberSeries,
    CoverageStatus,
    InsuranceCoverage,
    Invoice,
    InvoiceItem,
    InvoicePayment,
    InvoiceStatus,
    ItemType,
    PaymentMethod,
    PaymentRecord,
    PaymentRecordStatus,
    PaymentTerms,
)
from .audit import BillingAuditLog, Notification

__all__ = [
    "InsuranceProvider",
    "InsuranceCoverageRule",
    "Patient",
    "OrderStatus",
    "Visit",
    "VisitLabOrder",
    "VisitPrescription",
    "VisitRadiologyOrder",
    "VisitStatus",
    "BillingNumberSeries",
    "CoverageStatus",
    "InsuranceCoverage",
    "Invoice",
    "InvoiceItem",
    "InvoicePayment",
    "InvoiceStatus",
    "ItemType",
    "PaymentMethod",
    "PaymentRecord",
    "PaymentRecordStatus",
    "PaymentTerms",
    "BillingAuditLog",
    "Notification",
]
