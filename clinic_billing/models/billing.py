# FILE: clinic_billing/models/billing.py
from __future__ import annotations

from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from clinic_billing.db.base import Base, value_enum
from clinic_billing.models.patient import COMMON_TABLE_ARGS
from clinic_billing.utils.timez import utcnow_naive


# ------------ Python Enums ------------
class InvoiceStatus(str, PyEnum):
    DRAFT = "draft"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ItemType(str, PyEnum):
    CONSULTATION = "consultation"
    PROCEDURE = "procedure"
    MEDICATION = "medication"
    LAB_TEST = "lab_test"
    IMAGING = "imaging"
    ROOM_CHARGE = "room_charge"
    EQUIPMENT = "equipment"
    OTHER = "other"


class AmountType(str, PyEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PaymentMethod(str, PyEnum):
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    ONLINE = "online"
    INSURANCE = "insurance"


class PaymentTerms(str, PyEnum):
    IMMEDIATE = "immediate"
    NET_15 = "net_15"
    NET_30 = "net_30"
    NET_45 = "net_45"
    NET_60 = "net_60"
    INSTALLMENT = "installment"


class CoverageStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    PARTIAL = "partial"
    REJECTED = "rejected"
    PROCESSING = "processing"


class PaymentRecordStatus(str, PyEnum):
    COMPLETED = "completed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    REVERSAL = "reversal"


class Invoice(Base):
    """
    One invoice per visit (at most), many per patient.

    Totals, amount_paid, balance_due and status are derived: they are
    rewritten by billing_settlement.settle() on every mutation and are never
    set on their own.
    """

    __tablename__ = "billing_invoices"
    __table_args__ = (
        Index("ix_billing_invoices_patient_status", "patient_id", "status"),
        Index("ix_billing_invoices_status_due", "status", "due_date"),
        COMMON_TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)

    # INV-YYYYMM-NNNNN
    invoice_number = Column(String(32), unique=True, index=True, nullable=False)

    patient_id = Column(Integer,
                        ForeignKey("patients.id"),
                        nullable=False,
                        index=True)
    # unique: at most one invoice per visit (NULLs allowed)
    visit_id = Column(Integer,
                      ForeignKey("visits.id"),
                      nullable=True,
                      unique=True)
    appointment_id = Column(Integer, nullable=True)
    generated_by = Column(Integer, nullable=True)

    status = Column(value_enum(InvoiceStatus, 16),
                    default=InvoiceStatus.PENDING,
                    nullable=False)

    subtotal = Column(Numeric(14, 2), default=0, nullable=False)
    total_discount = Column(Numeric(14, 2), default=0, nullable=False)
    total_tax = Column(Numeric(14, 2), default=0, nullable=False)
    total_amount = Column(Numeric(14, 2), default=0, nullable=False)

    # sum of payments[].amount (refunds are negative rows)
    amount_paid = Column(Numeric(14, 2), default=0, nullable=False)
    # total_amount - amount_paid, negative when overpaid
    balance_due = Column(Numeric(14, 2), default=0, nullable=False)
    patient_responsibility = Column(Numeric(14, 2), default=0)

    payment_terms = Column(value_enum(PaymentTerms, 16),
                           default=PaymentTerms.IMMEDIATE,
                           nullable=False)
    issue_date = Column(DateTime, default=utcnow_naive, nullable=False)
    due_date = Column(DateTime, nullable=False)
    paid_date = Column(DateTime, nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow_naive)
    updated_at = Column(
        DateTime,
        default=utcnow_naive,
        onupdate=utcnow_naive,
    )

    # optimistic lock: concurrent writers get StaleDataError on flush
    version = Column(Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    patient = relationship("Patient")
    visit = relationship("Visit", foreign_keys=[visit_id])

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.idx",
    )
    payments = relationship(
        "InvoicePayment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoicePayment.id",
        foreign_keys="InvoicePayment.invoice_id",
    )
    insurance_coverage = relationship(
        "InsuranceCoverage",
        back_populates="invoice",
        cascade="all, delete-orphan",
        uselist=False,
    )

    @property
    def unpaid_items(self):
        return [it for it in (self.items or []) if not it.paid]

    @property
    def unpaid_amount(self) -> Decimal:
        return sum((it.patient_due for it in self.unpaid_items),
                   Decimal("0"))

    @property
    def is_overdue(self) -> bool:
        if self.status == InvoiceStatus.OVERDUE:
            return True
        return (self.status == InvoiceStatus.PENDING and self.due_date
                is not None and self.due_date < utcnow_naive())


class InvoiceItem(Base):
    """
    Billable line. `idx` is the externally visible item index: assigned on
    append, never reordered or reused.
    """
    __tablename__ = "billing_invoice_items"
    __table_args__ = (
        UniqueConstraint("invoice_id", "idx", name="uq_billing_item_idx"),
        COMMON_TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    idx = Column(Integer, nullable=False)

    item_type = Column(value_enum(ItemType, 20), nullable=False)
    code = Column(String(64), nullable=True)
    description = Column(String(300), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(14, 2), nullable=False, default=0)

    discount = Column(Numeric(14, 2), nullable=False, default=0)
    discount_type = Column(value_enum(AmountType, 12),
                           nullable=False,
                           default=AmountType.FIXED)
    tax = Column(Numeric(14, 2), nullable=False, default=0)
    tax_type = Column(value_enum(AmountType, 12),
                      nullable=False,
                      default=AmountType.PERCENTAGE)

    # (qty * unit_price - discount) + tax
    total = Column(Numeric(14, 2), nullable=False, default=0)

    covered_by_insurance = Column(Boolean, default=False, nullable=False)
    insurance_approved = Column(Boolean, default=False, nullable=False)
    # portion of `total` settled by the insurer
    insurance_amount = Column(Numeric(14, 2), nullable=False, default=0)

    paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    # shared by all items settled by the same ledger entry
    payment_uid = Column(String(36), nullable=True, index=True)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow_naive)

    invoice = relationship("Invoice", back_populates="items")

    @property
    def patient_due(self) -> Decimal:
        due = Decimal(str(self.total or 0)) - Decimal(
            str(self.insurance_amount or 0))
        return due if due > 0 else Decimal("0")


class InvoicePayment(Base):
    """
    Embedded payment ledger (authoritative). Append-only.
    amount is signed: refunds are negative rows pointing at refund_of_id.
    """

    __tablename__ = "billing_invoice_payments"
    __table_args__ = (
        Index("ix_billing_inv_pay_invoice", "invoice_id"),
        Index("ix_billing_inv_pay_paid_at", "paid_at"),
        COMMON_TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount = Column(Numeric(14, 2), nullable=False)
    method = Column(value_enum(PaymentMethod, 20), nullable=False)
    paid_by = Column(Integer, nullable=True)
    paid_at = Column(DateTime, default=utcnow_naive, nullable=False)
    reference = Column(String(191), nullable=True)
    notes = Column(String(255), nullable=True)
    item_indices = Column(JSON, nullable=False, default=list)
    payment_uid = Column(String(36), nullable=True)

    gateway = Column(String(32), nullable=True)
    transaction_id = Column(String(100), nullable=True)

    refund_of_id = Column(Integer,
                          ForeignKey("billing_invoice_payments.id"),
                          nullable=True)

    invoice = relationship("Invoice",
                           back_populates="payments",
                           foreign_keys=[invoice_id])
    refund_of = relationship("InvoicePayment", remote_side=[id])


class InsuranceCoverage(Base):
    __tablename__ = "billing_insurance_coverages"
    __table_args__ = (
        UniqueConstraint("invoice_id", name="uq_billing_ins_cov_invoice"),
        Index("ix_billing_ins_cov_provider_status", "provider_id", "status"),
        COMMON_TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider_id = Column(Integer,
                         ForeignKey("insurance_providers.id"),
                         nullable=True)
    policy_number = Column(String(64), nullable=True)
    plan_code = Column(String(64), nullable=True)
    coverage_amount = Column(Numeric(14, 2), default=0, nullable=False)
    status = Column(value_enum(CoverageStatus, 16),
                    default=CoverageStatus.PENDING,
                    nullable=False)
    claim_number = Column(String(40), nullable=True, unique=True)
    approval_code = Column(String(40), nullable=True)
    notes = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow_naive)
    updated_at = Column(DateTime,
                        default=utcnow_naive,
                        onupdate=utcnow_naive)

    invoice = relationship("Invoice", back_populates="insurance_coverage")
    provider = relationship("InsuranceProvider")


class PaymentRecord(Base):
    """
    Global payment projection for statements / gateway reconciliation.
    Derived from InvoicePayment rows (one per ledger entry); rebuilt by
    billing_ledger.replay_payment_records().
    """

    __tablename__ = "billing_payment_records"
    __table_args__ = (
        UniqueConstraint("ledger_entry_id", name="uq_billing_payrec_entry"),
        Index("ix_billing_payrec_patient_paid", "patient_id", "paid_at"),
        COMMON_TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    payment_number = Column(String(32), unique=True, nullable=False)
    ledger_entry_id = Column(Integer,
                             ForeignKey("billing_invoice_payments.id"),
                             nullable=False)
    invoice_id = Column(Integer,
                        ForeignKey("billing_invoices.id"),
                        nullable=False,
                        index=True)
    patient_id = Column(Integer, nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)
    method = Column(String(20), nullable=False)
    status = Column(value_enum(PaymentRecordStatus, 20),
                    default=PaymentRecordStatus.COMPLETED,
                    nullable=False)
    gateway = Column(String(32), nullable=True)
    transaction_id = Column(String(100), nullable=True)
    refunded_amount = Column(Numeric(14, 2), default=0, nullable=False)

    processed_by = Column(Integer, nullable=True)
    paid_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow_naive)

    ledger_entry = relationship("InvoicePayment")


class BillingNumberSeries(Base):
    """Per document type, per period running counter (row-locked)."""
    __tablename__ = "billing_number_series"
    __table_args__ = (
        UniqueConstraint("doc_type",
                         "period_key",
                         name="uq_billing_series_doc_period"),
        COMMON_TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True)
    doc_type = Column(String(16), nullable=False)
    period_key = Column(String(8), nullable=False)
    next_number = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True, nullable=False)
