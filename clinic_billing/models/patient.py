# FILE: clinic_billing/models/patient.py
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from clinic_billing.db.base import Base
from clinic_billing.utils.timez import utcnow_naive

COMMON_TABLE_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class InsuranceProvider(Base):
    """
    Insurance provider master.
    Referenced by Patient.insurance_provider_id and by the coverage block of
    an invoice.
    """
    __tablename__ = "insurance_providers"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(191), nullable=False, unique=True)
    code = Column(String(64), nullable=True, unique=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Electronic claim submission
    api_enabled = Column(Boolean, default=False, nullable=False)
    api_endpoint = Column(String(255), nullable=True)

    # Auto-coverage % when no plan rule matches (NULL -> settings default)
    auto_coverage_percent = Column(Numeric(5, 2), nullable=True)

    created_at = Column(DateTime, default=utcnow_naive)

    coverage_rules = relationship(
        "InsuranceCoverageRule",
        back_populates="provider",
        cascade="all, delete-orphan",
    )

    def coverage_rule(self, plan_code: Optional[str],
                      item_type) -> Optional["InsuranceCoverageRule"]:
        """
        Plan-specific rule first, then the provider-wide rule (plan_code NULL).
        """
        kind = getattr(item_type, "value", item_type)
        wildcard = None
        for rule in self.coverage_rules or []:
            if not rule.is_active or rule.item_type != kind:
                continue
            if plan_code and rule.plan_code == plan_code:
                return rule
            if rule.plan_code is None:
                wildcard = rule
        return wildcard


class InsuranceCoverageRule(Base):
    """Coverage table: (plan, item type) -> percentage covered."""
    __tablename__ = "insurance_coverage_rules"
    __table_args__ = (
        UniqueConstraint(
            "provider_id",
            "plan_code",
            "item_type",
            name="uq_ins_rule_provider_plan_type",
        ),
        COMMON_TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer,
                         ForeignKey("insurance_providers.id",
                                    ondelete="CASCADE"),
                         nullable=False,
                         index=True)
    plan_code = Column(String(64), nullable=True)  # NULL = every plan
    item_type = Column(String(32), nullable=False)
    coverage_percent = Column(Numeric(5, 2), nullable=False, default=100)
    is_active = Column(Boolean, default=True, nullable=False)

    provider = relationship("InsuranceProvider",
                            back_populates="coverage_rules")


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = COMMON_TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    patient_number = Column(String(32), index=True, nullable=True)

    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(191), nullable=True)

    # insurance: provider_id is the stable reference. Older records carry the
    # provider name as text; billing migrates them on first use.
    insurance_provider_id = Column(Integer,
                                   ForeignKey("insurance_providers.id"),
                                   nullable=True,
                                   index=True)
    insurance_provider_name = Column(String(191), nullable=True)
    membership_number = Column(String(64), nullable=True)
    insurance_plan_code = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow_naive)

    insurance_provider = relationship("InsuranceProvider")

    @property
    def has_insurance(self) -> bool:
        return bool(self.insurance_provider_id
                    or (self.insurance_provider_name or "").strip())

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()
