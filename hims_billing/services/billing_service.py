# FILE: hims_billing/services/billing_service.py
"""
Invoice ledger: invoice lifecycle, line entries and totals.

Every mutation ends with recompute_totals() so the denormalized invoice
figures are always consistent with the entries, payments and advance
adjustments on record.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from hims_billing.core.errors import (
    AlreadyVoidedError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from hims_billing.models.billing import (
    AdvanceAdjustment,
    BillingType,
    CaseStatus,
    DocStatus,
    EntryKind,
    Invoice,
    InvoiceItem,
    InvoiceType,
    NumberDocType,
    Payment,
)
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_math import (
    D,
    D0,
    compute_line_amounts,
    is_finite,
    money2,
)
from hims_billing.services.billing_numbers import next_billing_number

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (DocStatus.DRAFT, DocStatus.APPROVED)


def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def _now() -> datetime:
    return datetime.utcnow()


def _dec_s(x: Decimal) -> str:
    return str(money2(x))


# ============================================================
# Loading
# ============================================================
def get_invoice_or_404(db: Session, invoice_id: int) -> Invoice:
    inv = db.get(Invoice, int(invoice_id))
    if not inv:
        raise NotFoundError("Invoice not found")
    return inv


def _parse_enum(enum_cls, value: Any, name: str):
    try:
        return enum_cls(str(getattr(value, "value", value)).strip().upper())
    except ValueError:
        raise ValidationError(
            f"Invalid {name} '{value}'. Use one of: "
            f"{', '.join(m.value for m in enum_cls)}")


def list_invoices(
    db: Session,
    billing_case_id: int,
    *,
    invoice_type: Any = None,
    status: Any = None,
) -> List[Invoice]:
    """All invoices of a case, VOID split originals included, oldest first."""
    case = get_case_or_404(db, billing_case_id)
    q = db.query(Invoice).filter(Invoice.billing_case_id == int(case.id))
    if invoice_type:
        q = q.filter(Invoice.invoice_type == _parse_enum(
            InvoiceType, invoice_type, "invoice_type"))
    if status:
        q = q.filter(Invoice.status == _parse_enum(DocStatus, status, "status"))
    return q.order_by(Invoice.id.asc()).all()


def lock_invoice(db: Session, invoice_id: int) -> Invoice:
    """Row-lock the invoice for the rest of the transaction."""
    inv = (db.query(Invoice).filter(
        Invoice.id == int(invoice_id)).with_for_update().one_or_none())
    if not inv:
        raise NotFoundError("Invoice not found")
    return inv


def require_editable(inv: Invoice) -> None:
    if inv.status not in EDITABLE_STATUSES:
        raise InvalidStateError(
            f"Invoice {inv.invoice_number} is {_enum_value(inv.status)}; "
            "lines can change only in DRAFT/APPROVED")


# ============================================================
# Totals
# ============================================================
def recompute_totals(db: Session, inv: Invoice) -> Invoice:
    """
    gross_total    = sum(line_total) of non-voided entries
    tax_total      = sum(tax_amount) of non-voided entries
    discount_total = -sum(line_total) of non-voided DISCOUNT entries
    net_total      = gross_total
    balance_due    = net_total - amount_paid - advance_applied  (not clamped)
    """
    db.flush()
    iid = int(inv.id)

    gross, tax = (db.query(
        func.coalesce(func.sum(InvoiceItem.line_total), 0),
        func.coalesce(func.sum(InvoiceItem.tax_amount), 0),
    ).filter(
        InvoiceItem.invoice_id == iid,
        InvoiceItem.is_voided.is_(False),
    ).one())

    disc = (db.query(func.coalesce(func.sum(InvoiceItem.line_total),
                                   0)).filter(
                                       InvoiceItem.invoice_id == iid,
                                       InvoiceItem.is_voided.is_(False),
                                       InvoiceItem.entry_kind ==
                                       EntryKind.DISCOUNT,
                                   ).scalar())

    paid = (db.query(func.coalesce(func.sum(Payment.amount),
                                   0)).filter(Payment.invoice_id == iid).scalar())

    adv = (db.query(func.coalesce(func.sum(AdvanceAdjustment.amount_applied),
                                  0)).filter(
                                      AdvanceAdjustment.invoice_id == iid).scalar())

    inv.gross_total = money2(gross)
    inv.tax_total = money2(tax)
    inv.discount_total = money2(D0 - D(disc))
    inv.net_total = money2(gross)
    inv.amount_paid = money2(paid)
    inv.advance_applied = money2(adv)
    inv.balance_due = money2(D(inv.net_total) - D(inv.amount_paid) -
                             D(inv.advance_applied))
    db.flush()
    return inv


def _next_seq(db: Session, invoice_id: int) -> int:
    cur = (db.query(func.max(InvoiceItem.seq)).filter(
        InvoiceItem.invoice_id == int(invoice_id)).scalar())
    return int(cur or 0) + 1


def append_entry(db: Session, inv: Invoice, **fields: Any) -> InvoiceItem:
    """Low level: add an entry at the end of the invoice (no recompute)."""
    it = InvoiceItem(seq=_next_seq(db, int(inv.id)), **fields)
    inv.items.append(it)
    db.flush()
    return it


# ============================================================
# Invoice lifecycle
# ============================================================
def create_invoice(
    db: Session,
    *,
    billing_case_id: int,
    billing_type: BillingType = BillingType.GENERAL,
    invoice_type: InvoiceType = InvoiceType.STANDARD,
    user_id: Optional[int] = None,
    remarks: Optional[str] = None,
    split_from_invoice_id: Optional[int] = None,
    number_prefix: str = "INV",
) -> Invoice:
    case = get_case_or_404(db, billing_case_id)
    if case.status != CaseStatus.OPEN:
        raise InvalidStateError("Billing case is closed")

    inv = Invoice(
        billing_case_id=int(case.id),
        patient_id=int(case.patient_id),
        invoice_number=next_billing_number(db,
                                           doc_type=NumberDocType.INVOICE,
                                           prefix=number_prefix),
        billing_type=billing_type,
        invoice_type=invoice_type,
        status=DocStatus.DRAFT,
        split_from_invoice_id=split_from_invoice_id,
        remarks=remarks,
        gross_total=D0,
        tax_total=D0,
        discount_total=D0,
        net_total=D0,
        amount_paid=D0,
        advance_applied=D0,
        balance_due=D0,
        created_by=user_id,
    )
    db.add(inv)
    db.flush()

    log_action(db, "Invoice", int(inv.id), "CREATE", user_id,
               new={"invoice_number": inv.invoice_number,
                    "billing_type": _enum_value(billing_type),
                    "invoice_type": _enum_value(invoice_type)})
    return inv


def approve_invoice(db: Session, *, invoice_id: int,
                    user_id: Optional[int]) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    if inv.status != DocStatus.DRAFT:
        raise InvalidTransitionError("Only DRAFT invoice can be approved")

    live = (db.query(func.count(InvoiceItem.id)).filter(
        InvoiceItem.invoice_id == int(inv.id),
        InvoiceItem.is_voided.is_(False),
    ).scalar())
    if int(live or 0) <= 0:
        raise InvalidStateError("Cannot approve invoice with no lines")

    recompute_totals(db, inv)
    inv.status = DocStatus.APPROVED
    inv.approved_at = _now()
    inv.approved_by = user_id
    db.flush()
    log_action(db, "Invoice", int(inv.id), "APPROVE", user_id)
    return inv


def post_invoice(db: Session, *, invoice_id: int,
                 user_id: Optional[int]) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    if inv.status != DocStatus.APPROVED:
        raise InvalidTransitionError("Only APPROVED invoice can be posted")

    inv.status = DocStatus.POSTED
    inv.posted_at = _now()
    inv.posted_by = user_id
    db.flush()
    log_action(db, "Invoice", int(inv.id), "POST", user_id)
    return inv


def void_invoice(db: Session, *, invoice_id: int, reason: str,
                 user_id: Optional[int]) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Void reason is required")
    if inv.status == DocStatus.VOID:
        raise InvalidTransitionError("Invoice is already VOID")

    mark_invoice_void(db, inv, reason=reason, user_id=user_id)
    recompute_totals(db, inv)
    log_action(db, "Invoice", int(inv.id), "VOID", user_id, reason=reason)
    logger.info("Invoice %s voided: %s", inv.invoice_number, reason)
    return inv


def mark_invoice_void(db: Session, inv: Invoice, *, reason: str,
                      user_id: Optional[int]) -> None:
    """VOID is terminal and voids every live entry with the same reason."""
    now = _now()
    for it in inv.items or []:
        if not it.is_voided:
            it.is_voided = True
            it.void_reason = f"Invoice voided: {reason}"[:255]
            it.voided_by = user_id
            it.voided_at = now
    inv.status = DocStatus.VOID
    inv.void_reason = reason[:255]
    inv.voided_by = user_id
    inv.voided_at = now
    db.flush()


# ============================================================
# Entries
# ============================================================
def add_manual_item(
    db: Session,
    *,
    invoice_id: int,
    description: str,
    qty: Any,
    unit_price: Any,
    tax_rate: Any = 0,
    user_id: Optional[int] = None,
    service_type: str = "manual",
) -> InvoiceItem:
    description = (description or "").strip()
    if not description:
        raise ValidationError("Description is required")
    if not is_finite(qty) or D(qty) <= 0:
        raise ValidationError("Quantity must be greater than 0")
    if not is_finite(unit_price):
        raise ValidationError("Unit price must be a finite number")
    if not is_finite(tax_rate) or D(tax_rate) < 0:
        raise ValidationError("Tax rate must be 0 or more")

    inv = lock_invoice(db, invoice_id)
    require_editable(inv)

    amounts = compute_line_amounts(qty, unit_price, tax_rate)
    it = append_entry(
        db,
        inv,
        entry_kind=EntryKind.CHARGE,
        service_type=(service_type or "manual").strip().lower(),
        description=description[:300],
        quantity=D(qty),
        unit_price=money2(unit_price),
        tax_rate=D(tax_rate),
        tax_amount=amounts["tax_amount"],
        line_total=amounts["line_total"],
        created_by=user_id,
    )
    recompute_totals(db, inv)

    log_action(db, "InvoiceItem", int(it.id), "CREATE_MANUAL", user_id,
               new={"invoice_id": int(inv.id),
                    "qty": str(D(qty)),
                    "unit_price": _dec_s(unit_price),
                    "line_total": _dec_s(it.line_total)})
    return it


def _item_snapshot(it: InvoiceItem) -> Dict[str, Any]:
    return {
        "entry_kind": _enum_value(it.entry_kind),
        "description": it.description,
        "quantity": str(D(it.quantity)),
        "unit_price": _dec_s(it.unit_price),
        "tax_amount": _dec_s(it.tax_amount),
        "line_total": _dec_s(it.line_total),
        "service_uid": it.service_uid,
    }


def void_item(
    db: Session,
    *,
    invoice_id: int,
    item_id: int,
    reason: str,
    user_id: Optional[int] = None,
) -> InvoiceItem:
    inv = lock_invoice(db, invoice_id)

    it = db.get(InvoiceItem, int(item_id))
    if not it or int(it.invoice_id) != int(inv.id):
        raise NotFoundError("Invoice line not found")
    if it.is_voided:
        raise AlreadyVoidedError("Invoice line is already voided")

    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Void reason is required")
    require_editable(inv)

    it.is_voided = True
    it.void_reason = reason[:255]
    it.voided_by = user_id
    it.voided_at = _now()
    recompute_totals(db, inv)

    log_action(db, "InvoiceItem", int(it.id), "VOID", user_id,
               old=_item_snapshot(it), reason=reason)
    return it


def void_item_by_id(db: Session, *, item_id: int, reason: str,
                    user_id: Optional[int] = None) -> InvoiceItem:
    it = db.get(InvoiceItem, int(item_id))
    if not it:
        raise NotFoundError("Invoice line not found")
    return void_item(db,
                     invoice_id=int(it.invoice_id),
                     item_id=int(it.id),
                     reason=reason,
                     user_id=user_id)
