# FILE: hims_billing/api/routes_billing_payments.py
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query
from sqlalchemy.orm import Session

from hims_billing.api.deps import current_user_id, get_db
from hims_billing.core.errors import NotFoundError
from hims_billing.schemas.billing import InvoiceOut
from hims_billing.schemas.billing_payments import PaymentOut, PaymentsBulkIn
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_payment_service import (
    add_payment,
    add_payments_bulk,
    delete_payment,
)
from hims_billing.services.billing_service import get_invoice_or_404
from hims_billing.utils.resp import ok

router = APIRouter(prefix="/billing", tags=["Billing Payments"])


@router.post("/cases/{case_id}/payments")
def create_payment(
    case_id: int,
    invoice_id: int = Query(..., gt=0),
    amount: Decimal = Query(...),
    mode: str = Query("cash"),
    reference_no: Optional[str] = Query(None),
    notes: Optional[str] = Query(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    """
    Record a payment against one invoice of the case.

    Same Idempotency-Key on the same invoice -> the original payment comes
    back with 200 instead of 201 and nothing new is written.
    """
    case = get_case_or_404(db, case_id)
    inv = get_invoice_or_404(db, invoice_id)
    if int(inv.billing_case_id) != int(case.id):
        raise NotFoundError("Invoice not found in this billing case")

    pay, created = add_payment(
        db,
        invoice_id=invoice_id,
        amount=amount,
        mode=mode,
        reference_no=reference_no,
        notes=notes,
        idempotency_key=idempotency_key,
        user_id=user_id,
    )
    try:
        db.commit()
        db.refresh(pay)
        db.refresh(inv)
    except Exception:
        db.rollback()
        raise

    return ok(
        {
            "payment": PaymentOut.model_validate(pay),
            "invoice": InvoiceOut.model_validate(inv),
            "created": created,
        },
        201 if created else 200,
    )


@router.post("/invoices/{invoice_id}/payments/bulk")
def create_payments_bulk(
    invoice_id: int,
    payload: PaymentsBulkIn = Body(...),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    """Split tender: all legs are recorded or none are."""
    inv, pays = add_payments_bulk(db,
                                  invoice_id=invoice_id,
                                  legs=payload.payments,
                                  user_id=user_id)
    try:
        db.commit()
        db.refresh(inv)
        for p in pays:
            db.refresh(p)
    except Exception:
        db.rollback()
        raise
    return ok(
        {
            "invoice": InvoiceOut.model_validate(inv),
            "payments": [PaymentOut.model_validate(p) for p in pays],
        },
        201,
    )


@router.delete("/invoices/{invoice_id}/payments/{payment_id}")
def remove_payment(
    invoice_id: int,
    payment_id: int,
    reason: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    inv = delete_payment(db,
                         invoice_id=invoice_id,
                         payment_id=payment_id,
                         user_id=user_id,
                         reason=reason)
    try:
        db.commit()
        db.refresh(inv)
    except Exception:
        db.rollback()
        raise
    return ok(InvoiceOut.model_validate(inv))
