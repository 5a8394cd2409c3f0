# FILE: clinic_billing/models/visit.py
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from clinic_billing.db.base import Base, value_enum
from clinic_billing.models.patient import COMMON_TABLE_ARGS
from clinic_billing.utils.timez import utcnow_naive


class VisitStatus(str, PyEnum):
    PENDING_PAYMENT = "Pending Payment"
    IN_QUEUE = "In Queue"
    IN_PROGRESS = "In-Progress"
    COMPLETED = "completed"


class OrderStatus(str, PyEnum):
    """Shared by lab, radiology and prescription orders."""
    PENDING_PAYMENT = "Pending Payment"
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    DISPENSED = "Dispensed"
    CANCELLED = "Cancelled"


class Visit(Base):
    """
    Clinical encounter. Status is gated by billing events:
    Pending Payment -> In Queue happens only through the visit projector.
    """
    __tablename__ = "visits"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    visit_number = Column(String(20), unique=True, nullable=True)

    patient_id = Column(Integer,
                        ForeignKey("patients.id"),
                        nullable=False,
                        index=True)
    doctor_id = Column(Integer, nullable=True, index=True)

    visit_type = Column(String(20), default="consultation")
    reason = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    status = Column(value_enum(VisitStatus, 20),
                    default=VisitStatus.PENDING_PAYMENT,
                    nullable=False)

    # kept as a plain id to avoid the visits <-> invoices FK cycle
    invoice_id = Column(Integer, nullable=True, index=True)
    consultation_fee_paid = Column(Boolean, default=False, nullable=False)
    consultation_fee_amount = Column(Numeric(14, 2), default=0)

    is_active = Column(Boolean, default=True, nullable=False)
    started_by = Column(Integer, nullable=True)
    ended_by = Column(Integer, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow_naive)
    updated_at = Column(DateTime,
                        default=utcnow_naive,
                        onupdate=utcnow_naive)

    version = Column(Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    patient = relationship("Patient")
    lab_orders = relationship(
        "VisitLabOrder",
        back_populates="visit",
        cascade="all, delete-orphan",
        order_by="VisitLabOrder.id",
    )
    radiology_orders = relationship(
        "VisitRadiologyOrder",
        back_populates="visit",
        cascade="all, delete-orphan",
        order_by="VisitRadiologyOrder.id",
    )
    prescriptions = relationship(
        "VisitPrescription",
        back_populates="visit",
        cascade="all, delete-orphan",
        order_by="VisitPrescription.id",
    )


class VisitLabOrder(Base):
    __tablename__ = "visit_lab_orders"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer,
                      ForeignKey("visits.id", ondelete="CASCADE"),
                      nullable=False,
                      index=True)
    test_name = Column(String(191), nullable=False)
    ordered_by = Column(Integer, nullable=True)
    status = Column(value_enum(OrderStatus, 20),
                    default=OrderStatus.PENDING,
                    nullable=False)
    results = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    price = Column(Numeric(14, 2), default=0)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow_naive)

    visit = relationship("Visit", back_populates="lab_orders")


class VisitRadiologyOrder(Base):
    __tablename__ = "visit_radiology_orders"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer,
                      ForeignKey("visits.id", ondelete="CASCADE"),
                      nullable=False,
                      index=True)
    scan_type = Column(String(120), nullable=False)
    body_part = Column(String(120), nullable=False)
    reason = Column(String(255), nullable=True)
    ordered_by = Column(Integer, nullable=True)
    status = Column(value_enum(OrderStatus, 20),
                    default=OrderStatus.PENDING,
                    nullable=False)
    findings = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    price = Column(Numeric(14, 2), default=0)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow_naive)

    visit = relationship("Visit", back_populates="radiology_orders")


class VisitPrescription(Base):
    __tablename__ = "visit_prescriptions"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer,
                      ForeignKey("visits.id", ondelete="CASCADE"),
                      nullable=False,
                      index=True)
    medication = Column(String(191), nullable=False)
    dosage = Column(String(120), nullable=False)
    frequency = Column(String(120), nullable=False)
    duration = Column(String(120), nullable=True)
    notes = Column(Text, nullable=True)
    prescribed_by = Column(Integer, nullable=True)
    status = Column(value_enum(OrderStatus, 20),
                    default=OrderStatus.PENDING,
                    nullable=False)
    price = Column(Numeric(14, 2), default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    dispensed_at = Column(DateTime, nullable=True)
    dispensed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow_naive)

    visit = relationship("Visit", back_populates="prescriptions")
