# FILE: clinic_billing/schemas/billing.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinic_billing.models.billing import (
    AmountType,
    ItemType,
    PaymentMethod,
    PaymentTerms,
)


class InvoiceItemIn(BaseModel):
    item_type: ItemType
    description: str
    code: Optional[str] = None
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(Decimal("0"), ge=0)
    discount: Decimal = Field(Decimal("0"), ge=0)
    discount_type: AmountType = AmountType.FIXED
    tax: Decimal = Field(Decimal("0"), ge=0)
    tax_type: AmountType = AmountType.PERCENTAGE
    covered_by_insurance: bool = False
    notes: Optional[str] = None

    @field_validator("description")
    @classmethod
    def _description_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("description is required")
        return v


class InvoiceCreate(BaseModel):
    patient_id: int
    visit_id: Optional[int] = None
    appointment_id: Optional[int] = None
    items: List[InvoiceItemIn] = Field(default_factory=list)
    payment_terms: PaymentTerms = PaymentTerms.IMMEDIATE
    notes: Optional[str] = None


class AddItemsIn(BaseModel):
    items: List[InvoiceItemIn] = Field(..., min_length=1)
    has_insurance: Optional[bool] = None


class PayItemsIn(BaseModel):
    item_indices: List[int] = Field(..., min_length=1)
    method: PaymentMethod = PaymentMethod.CASH
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentCreate(BaseModel):
    invoice_id: int
    amount: Decimal = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.CASH
    reference: Optional[str] = None
    notes: Optional[str] = None
    # forwarded to the gateway as-is (card token, phone number, ...)
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def _no_manual_insurance(cls, v: PaymentMethod) -> PaymentMethod:
        if v == PaymentMethod.INSURANCE:
            raise ValueError("insurance payments are posted by claims")
        return v


class RefundCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=255)


class InsuranceClaimIn(BaseModel):
    provider_id: Optional[int] = None
    policy_number: Optional[str] = None
    plan_code: Optional[str] = None
    notes: Optional[str] = None


class CancelInvoiceIn(BaseModel):
    reason: Optional[str] = None


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    idx: int
    item_type: ItemType
    code: Optional[str] = None
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal
    discount_type: AmountType
    tax: Decimal
    tax_type: AmountType
    total: Decimal
    covered_by_insurance: bool
    insurance_approved: bool
    insurance_amount: Decimal
    paid: bool
    paid_at: Optional[datetime] = None
    payment_uid: Optional[str] = None


class InvoicePaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: Decimal
    method: PaymentMethod
    paid_by: Optional[int] = None
    paid_at: datetime
    reference: Optional[str] = None
    notes: Optional[str] = None
    item_indices: List[int] = Field(default_factory=list)
    payment_uid: Optional[str] = None
    gateway: Optional[str] = None
    transaction_id: Optional[str] = None
    refund_of_id: Optional[int] = None


class InsuranceCoverageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: Optional[int] = None
    policy_number: Optional[str] = None
    plan_code: Optional[str] = None
    coverage_amount: Decimal
    status: str
    claim_number: Optional[str] = None
    approval_code: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _enum_to_str(cls, v):
        return v.value if hasattr(v, "value") else v


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    patient_id: int
    visit_id: Optional[int] = None
    appointment_id: Optional[int] = None
    status: str
    subtotal: Decimal
    total_discount: Decimal
    total_tax: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    patient_responsibility: Optional[Decimal] = None
    payment_terms: str
    issue_date: datetime
    due_date: datetime
    paid_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None
    items: List[InvoiceItemOut] = Field(default_factory=list)
    payments: List[InvoicePaymentOut] = Field(default_factory=list)
    insurance_coverage: Optional[InsuranceCoverageOut] = None

    @field_validator("status", "payment_terms", mode="before")
    @classmethod
    def _enum_to_str(cls, v):
        return v.value if hasattr(v, "value") else v


class PayItemsOut(BaseModel):
    amount_applied: Decimal
    item_indices: List[int] = Field(default_factory=list)
    invoice: InvoiceOut
