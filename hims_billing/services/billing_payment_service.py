# FILE: hims_billing/services/billing_payment_service.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from hims_billing.core.config import settings
from hims_billing.core.errors import InvalidStateError, NotFoundError, ValidationError
from hims_billing.models.billing import (
    PAY_MODES,
    DocStatus,
    Invoice,
    NumberDocType,
    Payment,
)
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_math import D, is_finite, money2
from hims_billing.services.billing_numbers import next_billing_number
from hims_billing.services.billing_service import lock_invoice, recompute_totals

logger = logging.getLogger(__name__)


def normalize_mode(mode: Any) -> str:
    m = str(getattr(mode, "value", mode) or "").strip().lower()
    if m not in PAY_MODES:
        raise ValidationError(
            f"Invalid payment mode '{mode}'. Use one of: {', '.join(PAY_MODES)}")
    return m


def _validate_amount(amount: Any) -> None:
    if not is_finite(amount):
        raise ValidationError("Amount must be a number")
    if money2(amount) <= 0:
        raise ValidationError("Amount must be greater than 0")


def _find_by_key(db: Session, invoice_id: int,
                 idempotency_key: str) -> Optional[Payment]:
    return (db.query(Payment).filter(
        Payment.invoice_id == int(invoice_id),
        Payment.idempotency_key == idempotency_key,
    ).first())


def _check_payable(inv: Invoice) -> None:
    if inv.status == DocStatus.VOID:
        raise InvalidStateError("Cannot take payment on a VOID invoice")
    if inv.status == DocStatus.DRAFT and not settings.BILLING_ALLOW_DRAFT_PAYMENTS:
        raise InvalidStateError("Approve the invoice before taking payment")


def add_payment(
    db: Session,
    *,
    invoice_id: int,
    amount: Any,
    mode: Any,
    reference_no: Optional[str] = None,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    user_id: Optional[int] = None,
    meta: Optional[dict] = None,
) -> Tuple[Payment, bool]:
    """
    Returns (payment, created). A repeated idempotency_key on the same
    invoice returns the original payment with created=False.

    Overpayment is accepted; it shows up as a negative balance_due.
    """
    _validate_amount(amount)
    mode = normalize_mode(mode)
    key = (idempotency_key or "").strip()[:100] or None

    inv: Invoice = lock_invoice(db, invoice_id)

    if key:
        existing = _find_by_key(db, int(inv.id), key)
        if existing:
            logger.info("Payment replay for invoice %s key=%s",
                        inv.invoice_number, key)
            return existing, False

    _check_payable(inv)

    pay = Payment(
        invoice_id=int(inv.id),
        billing_case_id=int(inv.billing_case_id),
        receipt_number=next_billing_number(db, doc_type=NumberDocType.RECEIPT),
        amount=money2(amount),
        mode=mode,
        reference_no=(reference_no or "").strip()[:100] or None,
        notes=(notes or "").strip()[:255] or None,
        idempotency_key=key,
        meta_json=meta,
        created_by=user_id,
    )
    db.add(pay)
    db.flush()
    recompute_totals(db, inv)

    log_action(db, "Payment", int(pay.id), "CREATE", user_id,
               new={"invoice_id": int(inv.id),
                    "amount": str(pay.amount),
                    "mode": mode})
    logger.info("Payment %s of %s (%s) on invoice %s", pay.receipt_number,
                pay.amount, mode, inv.invoice_number)
    return pay, True


def delete_payment(
    db: Session,
    *,
    invoice_id: int,
    payment_id: int,
    user_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> Invoice:
    inv = lock_invoice(db, invoice_id)

    pay = db.get(Payment, int(payment_id))
    if not pay or int(pay.invoice_id) != int(inv.id):
        raise NotFoundError("Payment not found")

    old = {
        "receipt_number": pay.receipt_number,
        "amount": str(D(pay.amount)),
        "mode": pay.mode,
    }
    db.delete(pay)
    db.flush()
    recompute_totals(db, inv)

    log_action(db, "Payment", int(payment_id), "DELETE", user_id, old=old,
               reason=reason or "")
    return inv


def _parse_legs(legs: Any) -> List[Dict[str, Any]]:
    # accepts a bare list or {"payments": [...]}
    raw = legs.get("payments") if isinstance(legs, dict) else legs
    if not raw:
        raise ValidationError("No payments provided")

    parsed: List[Dict[str, Any]] = []
    details: List[Dict[str, Any]] = []
    for i, leg in enumerate(raw):
        if hasattr(leg, "model_dump"):
            leg = leg.model_dump()
        if not isinstance(leg, dict):
            details.append({"field": f"payments.{i}", "msg": "Payment must be an object"})
            continue
        try:
            _validate_amount(leg.get("amount"))
        except ValidationError as e:
            details.append({"field": f"payments.{i}.amount", "msg": e.message})
            continue
        try:
            mode = normalize_mode(leg.get("mode") or "cash")
        except ValidationError as e:
            details.append({"field": f"payments.{i}.mode", "msg": e.message})
            continue
        parsed.append({
            "amount": money2(leg["amount"]),
            "mode": mode,
            "reference_no": (leg.get("reference_no") or "").strip()[:100] or None,
            "notes": (leg.get("notes") or "").strip()[:255] or None,
        })

    if details:
        raise ValidationError(details[0]["msg"], details=details)
    return parsed


def add_payments_bulk(
    db: Session,
    *,
    invoice_id: int,
    legs: Any,
    user_id: Optional[int] = None,
) -> Tuple[Invoice, List[Payment]]:
    """
    Multi-mode capture, e.g. part cash and part UPI for one invoice.

    Every leg is checked before anything is written; one bad leg rejects
    the whole batch. Totals are recomputed once after all legs land.
    """
    parsed = _parse_legs(legs)

    inv: Invoice = lock_invoice(db, invoice_id)
    _check_payable(inv)

    pays: List[Payment] = []
    for leg in parsed:
        pay = Payment(
            invoice_id=int(inv.id),
            billing_case_id=int(inv.billing_case_id),
            receipt_number=next_billing_number(db, doc_type=NumberDocType.RECEIPT),
            created_by=user_id,
            **leg,
        )
        db.add(pay)
        pays.append(pay)
    db.flush()
    recompute_totals(db, inv)

    log_action(db, "Invoice", int(inv.id), "PAYMENTS_BULK", user_id,
               new={"payments": [{"id": int(p.id),
                                  "amount": str(p.amount),
                                  "mode": p.mode} for p in pays]})
    logger.info("Bulk payment of %d leg(s) totalling %s on invoice %s",
                len(pays), money2(sum((D(p.amount) for p in pays), D(0))),
                inv.invoice_number)
    return inv, pays
