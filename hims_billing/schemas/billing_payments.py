# FILE: hims_billing/schemas/billing_payments.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    billing_case_id: int
    receipt_number: Optional[str] = None
    amount: Decimal
    mode: str
    reference_no: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    paid_at: Optional[datetime] = None


class PaymentLegIn(BaseModel):
    amount: Decimal
    mode: str = "cash"
    reference_no: Optional[str] = None
    notes: Optional[str] = None


class PaymentsBulkIn(BaseModel):
    payments: List[PaymentLegIn] = Field(default_factory=list)
