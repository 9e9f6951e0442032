# FILE: hims_billing/api/routes_billing_advances.py
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from hims_billing.api.deps import current_user_id, get_db
from hims_billing.schemas.billing import InvoiceOut
from hims_billing.schemas.billing_advances import AdvanceApplyIn, AdvanceOut
from hims_billing.services.billing_advance import (
    apply_advance,
    list_advances,
    record_advance,
)
from hims_billing.utils.resp import ok

router = APIRouter(prefix="/billing", tags=["Billing Advances"])


@router.post("/cases/{case_id}/advances")
def create_advance(
    case_id: int,
    amount: Decimal = Query(...),
    mode: str = Query("cash"),
    reference_no: Optional[str] = Query(None),
    remarks: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    adv = record_advance(
        db,
        billing_case_id=case_id,
        amount=amount,
        mode=mode,
        reference_no=reference_no,
        remarks=remarks,
        user_id=user_id,
    )
    try:
        db.commit()
        db.refresh(adv)
    except Exception:
        db.rollback()
        raise
    return ok(AdvanceOut.model_validate(adv), 201)


@router.get("/cases/{case_id}/advances")
def get_advances(case_id: int, db: Session = Depends(get_db)):
    return ok([AdvanceOut.model_validate(a) for a in list_advances(db, case_id)])


@router.post("/cases/{case_id}/advances/apply")
def apply_to_invoice(
    case_id: int,
    payload: AdvanceApplyIn,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    inv = apply_advance(
        db,
        billing_case_id=case_id,
        invoice_id=payload.invoice_id,
        amount=payload.amount,
        advance_id=payload.advance_id,
        user_id=user_id,
    )
    try:
        db.commit()
        db.refresh(inv)
    except Exception:
        db.rollback()
        raise
    return ok(InvoiceOut.model_validate(inv))
