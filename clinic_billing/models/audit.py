
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
)

from clinic_billing.db.base import Base
from clinic_billing.models.patient import COMMON_TABLE_ARGS
from clinic_billing.utils.timez import utcnow_naive


class BillingAuditLog(Base):
    """
    Billing audit trail.
    Written in the same transaction as the invoice mutation it describes.
    """
    __tablename__ = "billing_audit_logs"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, nullable=True)  # system jobs may be null
    action = Column(String(20), nullable=False)  # CREATE / UPDATE / CANCEL

    entity_type = Column(String(40), nullable=False)
    entity_id = Column(String(100), nullable=False)

    description = Column(String(500), nullable=True)
    meta = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow_naive, nullable=False)


class Notification(Base):
    """Patient-facing notification feed (delivery is someone else's job)."""
    __tablename__ = "notifications"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    recipient_patient_id = Column(Integer, nullable=True, index=True)

    kind = Column(String(40), nullable=False, default="system_announcement")
    priority = Column(String(10), nullable=False, default="normal")
    title = Column(String(191), nullable=False)
    message = Column(Text, nullable=False)

    entity_type = Column(String(40), nullable=True)
    entity_id = Column(String(100), nullable=True)

    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow_naive, nullable=False)
