# FILE: hims_billing/schemas/billing.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hims_billing.models.billing import (
    BillingType,
    CaseStatus,
    DocStatus,
    EncounterType,
    EntryKind,
    InvoiceType,
)
from hims_billing.schemas.billing_payments import PaymentOut

Money = Decimal


# ---------- case ----------
class BillingCaseCreate(BaseModel):
    patient_id: int = Field(..., gt=0)
    encounter_type: EncounterType = EncounterType.OP
    encounter_id: Optional[int] = None
    remarks: Optional[str] = None


class BillingCaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    case_number: str
    patient_id: int
    encounter_type: EncounterType
    encounter_id: Optional[int] = None
    status: CaseStatus
    remarks: Optional[str] = None
    created_at: Optional[datetime] = None


class CaseFinancialsOut(BaseModel):
    billing_case_id: int
    case_number: str
    invoice_count: int
    net_total: Money
    amount_paid: Money
    advance_applied: Money
    balance_due: Money
    advance_received: Money
    advance_available: Money


# ---------- invoice ----------
class InvoiceCreate(BaseModel):
    billing_type: BillingType = BillingType.GENERAL
    remarks: Optional[str] = None

    @field_validator("billing_type", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.upper() if isinstance(v, str) else v


class InvoiceVoidIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    seq: int
    entry_kind: EntryKind
    service_type: str
    service_ref_id: Optional[int] = None
    service_uid: Optional[str] = None
    description: str
    quantity: Decimal
    unit_price: Money
    tax_rate: Decimal
    tax_amount: Money
    line_total: Money
    discount_percent: Optional[Decimal] = None
    remarks: Optional[str] = None
    is_covered: Optional[bool] = None
    insurer_pay_amount: Optional[Money] = None
    requires_preauth: bool = False
    is_voided: bool
    void_reason: Optional[str] = None
    voided_by: Optional[int] = None
    voided_at: Optional[datetime] = None


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    billing_case_id: int
    patient_id: int
    billing_type: BillingType
    invoice_type: InvoiceType
    status: DocStatus
    split_from_invoice_id: Optional[int] = None
    remarks: Optional[str] = None

    gross_total: Money
    tax_total: Money
    discount_total: Money
    net_total: Money
    amount_paid: Money
    advance_applied: Money
    balance_due: Money

    approved_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    voided_at: Optional[datetime] = None
    version: int

    items: List[InvoiceItemOut] = []
    payments: List[PaymentOut] = []


# ---------- adjustments ----------
class DiscountIn(BaseModel):
    percent: Decimal
    remarks: Optional[str] = None
    authorized_by: Optional[int] = None


class TaxAdjustmentIn(BaseModel):
    amount: Decimal
    reason: Optional[str] = Field(None, max_length=255)


# ---------- unbilled ----------
class UnbilledServiceOut(BaseModel):
    uid: str
    source_type: str
    source_id: int
    label: str
    quantity: Decimal
    amount: Money
    tax_rate: Decimal
    rendered_at: Optional[datetime] = None


class UnbilledBulkAddIn(BaseModel):
    # None -> import everything currently unbilled
    uids: Optional[List[str]] = None


class UnbilledImportOut(BaseModel):
    imported: List[str]
    skipped: List[str]
    items: List[InvoiceItemOut] = []


class RenderedServiceIn(BaseModel):
    source_type: str
    source_id: int = Field(..., gt=0)
    label: str
    amount: Decimal
    quantity: Decimal = Decimal("1")
    tax_rate: Decimal = Decimal("0")


class RenderedServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    billing_case_id: int
    uid: str
    source_type: str
    source_id: int
    label: str
    quantity: Decimal
    amount: Money
    tax_rate: Decimal
    rendered_at: Optional[datetime] = None
