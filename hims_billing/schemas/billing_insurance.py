# FILE: hims_billing/schemas/billing_insurance.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hims_billing.models.billing_insurance import (
    ClaimStatus,
    InsurancePayerKind,
    InsuranceStatus,
    PreauthStatus,
)

Money = Decimal


class CoverageLineIn(BaseModel):
    category: str
    coverage_percent: Decimal

    @field_validator("category")
    @classmethod
    def _cat(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v:
            raise ValueError("category required")
        return v


class CoverageLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category: str
    coverage_percent: Decimal


class InsuranceCaseUpsert(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payer_kind: InsurancePayerKind = InsurancePayerKind.INSURANCE
    payer_id: Optional[int] = None
    tpa_id: Optional[int] = None

    policy_no: Optional[str] = None
    member_id: Optional[str] = None
    plan_name: Optional[str] = None

    # optional: preauth approvals also drive approved_limit
    approved_limit: Optional[Money] = None

    # None keeps existing coverage, a list replaces it
    coverage_lines: Optional[List[CoverageLineIn]] = None


class InsuranceCaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    billing_case_id: int
    payer_kind: InsurancePayerKind
    payer_id: Optional[int] = None
    tpa_id: Optional[int] = None
    policy_no: Optional[str] = None
    member_id: Optional[str] = None
    plan_name: Optional[str] = None
    status: InsuranceStatus
    approved_limit: Money
    approved_at: Optional[datetime] = None
    coverage_lines: List[CoverageLineOut] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---- lines ----
class InsuranceLineRow(BaseModel):
    invoice_id: int
    invoice_number: str
    invoice_type: str
    invoice_status: str
    line_id: int
    entry_kind: str
    description: str
    service_type: str
    net_amount: Money
    coverage_percent: Optional[Decimal] = None
    is_covered: Optional[bool] = None
    insurer_pay_amount: Money
    patient_pay_amount: Money
    requires_preauth: bool


class InsuranceLinePatch(BaseModel):
    line_id: int = Field(..., gt=0)
    is_covered: Optional[bool] = None
    insurer_pay_amount: Optional[Money] = None
    requires_preauth: Optional[bool] = None


class SplitRequest(BaseModel):
    invoice_ids: List[int] = []


# ---- preauth ----
class PreauthCreate(BaseModel):
    requested_amount: Money
    remarks: Optional[str] = None


class PreauthDecision(BaseModel):
    approved_amount: Optional[Money] = None
    remarks: Optional[str] = None


class PreauthOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ref_no: str
    insurance_case_id: int
    billing_case_id: int
    requested_amount: Money
    approved_amount: Money
    status: PreauthStatus
    remarks: Optional[str] = None
    submitted_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ---- claim ----
class ClaimCreate(BaseModel):
    insurer_invoice_ids: List[int] = []
    claim_amount: Optional[Money] = None
    remarks: Optional[str] = None


class ClaimDecision(BaseModel):
    approved_amount: Optional[Money] = None
    settled_amount: Optional[Money] = None
    remarks: Optional[str] = None


class ClaimOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ref_no: str
    insurance_case_id: int
    billing_case_id: int
    claim_amount: Money
    approved_amount: Money
    settled_amount: Money
    status: ClaimStatus
    remarks: Optional[str] = None
    invoice_ids: List[int] = []
    submitted_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class WorkflowEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    entity_id: int
    action: str
    from_status: Optional[str] = None
    to_status: str
    amount: Optional[Money] = None
    remarks: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime
