# hims_billing/services/billing_advance.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from hims_billing.core.errors import (
    InsufficientAdvanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hims_billing.models.billing import (
    Advance,
    AdvanceAdjustment,
    DocStatus,
    Invoice,
    NumberDocType,
)
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_math import D, D0, is_finite, money2
from hims_billing.services.billing_numbers import next_billing_number
from hims_billing.services.billing_payment_service import normalize_mode
from hims_billing.services.billing_service import lock_invoice, recompute_totals

logger = logging.getLogger(__name__)


def record_advance(
    db: Session,
    *,
    billing_case_id: int,
    amount: Any,
    mode: Any,
    reference_no: Optional[str] = None,
    remarks: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Advance:
    if not is_finite(amount) or money2(amount) <= 0:
        raise ValidationError("Advance amount must be greater than 0")
    mode = normalize_mode(mode)
    case = get_case_or_404(db, billing_case_id)

    adv = Advance(
        billing_case_id=int(case.id),
        receipt_number=next_billing_number(db, doc_type=NumberDocType.ADVANCE),
        amount=money2(amount),
        balance_remaining=money2(amount),
        mode=mode,
        reference_no=(reference_no or "").strip()[:100] or None,
        remarks=(remarks or "").strip()[:255] or None,
        created_by=user_id,
    )
    db.add(adv)
    db.flush()

    log_action(db, "Advance", int(adv.id), "CREATE", user_id,
               new={"amount": str(adv.amount), "mode": mode})
    return adv


def list_advances(db: Session, billing_case_id: int) -> List[Advance]:
    case = get_case_or_404(db, billing_case_id)
    return (db.query(Advance).filter(
        Advance.billing_case_id == int(case.id)).order_by(
            Advance.received_at.asc(), Advance.id.asc()).all())


def _locked_advances(db: Session, billing_case_id: int,
                     advance_id: Optional[int]) -> List[Advance]:
    q = db.query(Advance).filter(Advance.billing_case_id == int(billing_case_id))
    if advance_id is not None:
        adv = q.filter(Advance.id == int(advance_id)).with_for_update().one_or_none()
        if not adv:
            raise NotFoundError("Advance not found")
        return [adv]
    # FIFO
    return (q.filter(Advance.balance_remaining > 0).order_by(
        Advance.received_at.asc(), Advance.id.asc()).with_for_update().all())


def apply_advance(
    db: Session,
    *,
    billing_case_id: int,
    invoice_id: int,
    amount: Any,
    advance_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> Invoice:
    """
    Move `amount` from the case's advance(s) onto the invoice.

    With advance_id only that advance is used; otherwise the oldest
    advances with a balance are consumed first. balance_remaining never
    goes below zero: asking for more raises InsufficientAdvanceError and
    nothing is applied.
    """
    if not is_finite(amount) or money2(amount) <= 0:
        raise ValidationError("Amount must be greater than 0")
    amt = money2(amount)

    case = get_case_or_404(db, billing_case_id)
    inv = lock_invoice(db, invoice_id)
    if int(inv.billing_case_id) != int(case.id):
        raise NotFoundError("Invoice not found in this billing case")
    if inv.status == DocStatus.VOID:
        raise InvalidStateError("Cannot apply advance to a VOID invoice")

    advances = _locked_advances(db, int(case.id), advance_id)
    available = sum((D(a.balance_remaining) for a in advances), D0)
    if amt > available:
        raise InsufficientAdvanceError(
            f"Advance balance {money2(available)} is less than {amt}")

    remaining: Decimal = amt
    for adv in advances:
        if remaining <= 0:
            break
        bal = D(adv.balance_remaining)
        if bal <= 0:
            continue
        use = min(bal, remaining)
        adv.balance_remaining = money2(bal - use)
        db.add(
            AdvanceAdjustment(
                advance_id=int(adv.id),
                invoice_id=int(inv.id),
                amount_applied=money2(use),
                applied_by=user_id,
            ))
        remaining = money2(remaining - use)

    db.flush()
    recompute_totals(db, inv)

    log_action(db, "Invoice", int(inv.id), "APPLY_ADVANCE", user_id,
               new={"amount": str(amt), "advance_id": advance_id})
    logger.info("Applied advance %s to invoice %s", amt, inv.invoice_number)
    return inv
