# FILE: clinic_billing/schemas/visit.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _StatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("status", mode="before", check_fields=False)
    @classmethod
    def _enum_to_str(cls, v):
        return v.value if hasattr(v, "value") else v


class VisitCreate(BaseModel):
    patient_id: int
    doctor_id: Optional[int] = None
    visit_type: str = "consultation"
    reason: Optional[str] = None
    notes: Optional[str] = None
    consultation_fee: Decimal = Field(Decimal("0"), ge=0)


class LabOrderIn(BaseModel):
    test_name: str = Field(..., min_length=1)
    price: Decimal = Field(Decimal("0"), ge=0)
    notes: Optional[str] = None


class RadiologyOrderIn(BaseModel):
    scan_type: str = Field(..., min_length=1)
    body_part: str = Field(..., min_length=1)
    reason: Optional[str] = None
    price: Decimal = Field(Decimal("0"), ge=0)
    notes: Optional[str] = None


class PrescriptionIn(BaseModel):
    medication: str = Field(..., min_length=1)
    dosage: str = Field(..., min_length=1)
    frequency: str = Field(..., min_length=1)
    duration: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: Decimal = Field(Decimal("0"), ge=0)
    notes: Optional[str] = None


class OrderResultIn(BaseModel):
    results: Optional[str] = None
    notes: Optional[str] = None


class LabOrderOut(_StatusOut):
    id: int
    test_name: str
    status: str
    price: Optional[Decimal] = None
    results: Optional[str] = None
    created_at: Optional[datetime] = None


class RadiologyOrderOut(_StatusOut):
    id: int
    scan_type: str
    body_part: str
    status: str
    price: Optional[Decimal] = None
    findings: Optional[str] = None
    created_at: Optional[datetime] = None


class PrescriptionOut(_StatusOut):
    id: int
    medication: str
    dosage: str
    frequency: str
    duration: Optional[str] = None
    status: str
    price: Optional[Decimal] = None
    dispensed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class VisitOut(_StatusOut):
    id: int
    visit_number: Optional[str] = None
    patient_id: int
    doctor_id: Optional[int] = None
    visit_type: Optional[str] = None
    status: str
    invoice_id: Optional[int] = None
    consultation_fee_paid: bool
    consultation_fee_amount: Optional[Decimal] = None
    is_active: bool
    completed_at: Optional[datetime] = None
    lab_orders: List[LabOrderOut] = Field(default_factory=list)
    radiology_orders: List[RadiologyOrderOut] = Field(default_factory=list)
    prescriptions: List[PrescriptionOut] = Field(default_factory=list)
