# FILE: hims_billing/schemas/billing_advances.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AdvanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    billing_case_id: int
    receipt_number: Optional[str] = None
    amount: Decimal
    balance_remaining: Decimal
    mode: str
    reference_no: Optional[str] = None
    remarks: Optional[str] = None
    received_at: Optional[datetime] = None


class AdvanceApplyIn(BaseModel):
    invoice_id: int = Field(..., gt=0)
    amount: Decimal
    # None -> oldest advances first
    advance_id: Optional[int] = None
