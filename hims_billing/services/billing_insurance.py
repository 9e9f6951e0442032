# FILE: hims_billing/services/billing_insurance.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from hims_billing.core.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hims_billing.models.billing import (
    AdvanceAdjustment,
    DocStatus,
    EntryKind,
    Invoice,
    InvoiceItem,
    InvoiceType,
    Payment,
)
from hims_billing.models.billing_insurance import (
    BillingCoverageLine,
    BillingInsuranceCase,
    InsurancePayerKind,
    InsuranceStatus,
)
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_math import D, D0, D100, is_finite, money2
from hims_billing.services.billing_service import (
    append_entry,
    create_invoice,
    mark_invoice_void,
    recompute_totals,
)

logger = logging.getLogger(__name__)


# ----------------------------
# helpers
# ----------------------------
def _now() -> datetime:
    return datetime.utcnow()


def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def _u(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid id: {v!r}")


def get_insurance_case(db: Session,
                       billing_case_id: int) -> Optional[BillingInsuranceCase]:
    """None means insurance was never configured for the case."""
    case = get_case_or_404(db, billing_case_id)
    return (db.query(BillingInsuranceCase).filter(
        BillingInsuranceCase.billing_case_id == int(case.id)).one_or_none())


def require_insurance_case(db: Session,
                           billing_case_id: int) -> BillingInsuranceCase:
    ins = get_insurance_case(db, billing_case_id)
    if not ins:
        raise InvalidStateError("Insurance case not set for this billing case")
    return ins


def _clean_coverage(lines: List[Dict[str, Any]]) -> List[Tuple[str, Decimal]]:
    out: List[Tuple[str, Decimal]] = []
    seen = set()
    for ln in lines:
        cat = str(ln.get("category") or "").strip().lower()
        if not cat:
            raise ValidationError("Coverage line category is required")
        if cat in seen:
            raise ValidationError(f"Duplicate coverage category '{cat}'")
        seen.add(cat)
        pct = ln.get("coverage_percent")
        if not is_finite(pct) or D(pct) < 0 or D(pct) > D100:
            raise ValidationError(
                f"Coverage percent for '{cat}' must be between 0 and 100")
        out.append((cat, D(pct)))
    return out


# ----------------------------
# Insurance Case Upsert
# ----------------------------
def upsert_insurance_case(
    db: Session,
    billing_case_id: int,
    payload: Dict[str, Any],
    user_id: Optional[int],
) -> BillingInsuranceCase:
    """
    Create or update the case's insurance. `coverage_lines`, when present,
    replaces the existing coverage wholesale; when absent it is kept.
    """
    case = get_case_or_404(db, billing_case_id)
    payload = dict(payload or {})

    coverage = None
    if payload.get("coverage_lines") is not None:
        coverage = _clean_coverage(list(payload["coverage_lines"]))

    ins = (db.query(BillingInsuranceCase).filter(
        BillingInsuranceCase.billing_case_id == int(case.id)).with_for_update(
        ).one_or_none())

    created = False
    if not ins:
        ins = BillingInsuranceCase(
            billing_case_id=int(case.id),
            created_by=user_id,
            status=InsuranceStatus.INITIATED,
            payer_kind=InsurancePayerKind.INSURANCE,
            approved_limit=D0,
        )
        db.add(ins)
        created = True

    old = None if created else {
        "payer_kind": _enum_value(ins.payer_kind),
        "payer_id": ins.payer_id,
        "tpa_id": ins.tpa_id,
    }

    # update simple fields
    for k in ["policy_no", "member_id", "plan_name"]:
        if k in payload and payload[k] is not None:
            setattr(ins, k, str(payload[k]).strip() or None)

    if payload.get("payer_kind") is not None:
        try:
            ins.payer_kind = InsurancePayerKind(
                str(_enum_value(payload["payer_kind"])).upper())
        except ValueError:
            raise ValidationError(f"Invalid payer_kind {payload['payer_kind']!r}")
    if "payer_id" in payload:
        ins.payer_id = _u(payload.get("payer_id"))
    if "tpa_id" in payload:
        ins.tpa_id = _u(payload.get("tpa_id"))

    if ins.payer_kind == InsurancePayerKind.TPA:
        if not ins.tpa_id:
            raise ValidationError("Select TPA")
    elif not ins.payer_id:
        raise ValidationError("Select Insurance Company"
                              if ins.payer_kind == InsurancePayerKind.INSURANCE
                              else "Select Corporate")

    # approved_limit optional
    if payload.get("approved_limit") is not None:
        if not is_finite(payload["approved_limit"]) or D(
                payload["approved_limit"]) < 0:
            raise ValidationError("approved_limit cannot be negative")
        ins.approved_limit = money2(payload["approved_limit"])
        ins.approved_at = _now()

    db.flush()

    if coverage is not None:
        # drop old rows first so the (insurance_case_id, category) key is free
        ins.coverage_lines.clear()
        db.flush()
        for cat, pct in coverage:
            ins.coverage_lines.append(
                BillingCoverageLine(category=cat, coverage_percent=pct))
        db.flush()

    log_action(db, "BillingInsuranceCase", int(ins.id),
               "CREATE" if created else "UPDATE", user_id, old=old,
               new={"payer_kind": _enum_value(ins.payer_kind),
                    "payer_id": ins.payer_id,
                    "tpa_id": ins.tpa_id,
                    "coverage": [[c, str(p)] for c, p in coverage]
                    if coverage is not None else None})
    return ins


# ----------------------------
# Coverage math
# ----------------------------
def _coverage_map(ins: Optional[BillingInsuranceCase]) -> Dict[str, Decimal]:
    if not ins:
        return {}
    return {
        c.category: D(c.coverage_percent)
        for c in (ins.coverage_lines or [])
    }


def _charge_share(it: InvoiceItem, cov: Dict[str, Decimal]) -> Decimal:
    total = D(it.line_total)
    if total <= 0 or it.is_covered is False:
        return D0
    if it.insurer_pay_amount is not None:
        return max(D0, min(money2(it.insurer_pay_amount), total))
    pct = cov.get(it.service_type)
    if pct is None:
        pct = D100 if it.is_covered else D0
    return max(D0, min(money2(total * pct / D100), total))


def invoice_shares(inv: Invoice,
                   cov: Dict[str, Decimal]) -> List[Dict[str, Any]]:
    """
    Insurer / patient share of every live entry.

    Charges follow their override, else the category percent. Discount and
    tax-adjustment entries are split by the ratio covered on the charges, so
    shares always add up to the invoice net.
    """
    live = [it for it in (inv.items or []) if not it.is_voided]

    charge_total = D0
    charge_insurer = D0
    out: List[Dict[str, Any]] = []
    for it in live:
        if it.entry_kind == EntryKind.CHARGE:
            share = _charge_share(it, cov)
            charge_total += max(D0, D(it.line_total))
            charge_insurer += share
            out.append({"item": it, "insurer": share})

    ratio = (charge_insurer / charge_total) if charge_total > 0 else D0

    for it in live:
        if it.entry_kind != EntryKind.CHARGE:
            out.append({"item": it, "insurer": money2(D(it.line_total) * ratio)})

    for row in out:
        row["patient"] = money2(D(row["item"].line_total) - row["insurer"])
    out.sort(key=lambda r: int(r["item"].seq or 0))
    return out


# ----------------------------
# Lines view + patch
# ----------------------------
def list_insurance_lines(db: Session,
                         billing_case_id: int) -> List[Dict[str, Any]]:
    ins = get_insurance_case(db, billing_case_id)
    if not ins:
        return []
    cov = _coverage_map(ins)

    invoices = (db.query(Invoice).filter(
        Invoice.billing_case_id == int(billing_case_id),
        Invoice.status != DocStatus.VOID,
    ).order_by(Invoice.id.asc()).all())

    rows: List[Dict[str, Any]] = []
    for inv in invoices:
        for share in invoice_shares(inv, cov):
            it = share["item"]
            rows.append({
                "invoice_id": int(inv.id),
                "invoice_number": inv.invoice_number,
                "invoice_type": _enum_value(inv.invoice_type),
                "invoice_status": _enum_value(inv.status),
                "line_id": int(it.id),
                "entry_kind": _enum_value(it.entry_kind),
                "description": it.description,
                "service_type": it.service_type,
                "net_amount": money2(it.line_total),
                "coverage_percent": cov.get(it.service_type),
                "is_covered": it.is_covered,
                "insurer_pay_amount": share["insurer"],
                "patient_pay_amount": share["patient"],
                "requires_preauth": bool(it.requires_preauth),
            })
    return rows


def patch_insurance_lines(
    db: Session,
    billing_case_id: int,
    patches: List[Dict[str, Any]],
    user_id: Optional[int],
) -> int:
    """
    Per-line overrides. A patch carrying insurer_pay_amount=None clears the
    override; a missing key leaves it alone.
    """
    require_insurance_case(db, billing_case_id)

    line_ids = [int(p["line_id"]) for p in patches if p.get("line_id")]
    if not line_ids:
        return 0

    lines = (db.query(InvoiceItem).join(
        Invoice, Invoice.id == InvoiceItem.invoice_id).filter(
            Invoice.billing_case_id == int(billing_case_id),
            Invoice.status != DocStatus.VOID,
            InvoiceItem.is_voided.is_(False),
            InvoiceItem.id.in_(line_ids),
        ).all())
    by_id = {int(ln.id): ln for ln in lines}

    missing = sorted(set(line_ids) - set(by_id))
    if missing:
        raise NotFoundError(f"Invoice lines not found in this case: {missing}")

    updated = 0
    for p in patches:
        ln = by_id.get(int(p.get("line_id") or 0))
        if not ln:
            continue

        if "is_covered" in p:
            ln.is_covered = p["is_covered"]

        if p.get("requires_preauth") is not None:
            ln.requires_preauth = bool(p["requires_preauth"])

        if "insurer_pay_amount" in p:
            v = p["insurer_pay_amount"]
            if v is None:
                ln.insurer_pay_amount = None
            else:
                if not is_finite(v) or D(v) < 0:
                    raise ValidationError(
                        "insurer_pay_amount must be 0 or more")
                net = D(ln.line_total)
                ln.insurer_pay_amount = max(D0, min(money2(v), net))

        updated += 1

    db.flush()
    log_action(db, "BillingCase", int(billing_case_id), "INSURANCE_LINES_PATCH",
               user_id, reason=f"patched={updated}")
    return updated


# ----------------------------
# Split invoices
# ----------------------------
def _has_split_children(db: Session, invoice_id: int) -> bool:
    q = db.query(Invoice.id).filter(Invoice.split_from_invoice_id == int(invoice_id))
    return db.query(q.exists()).scalar() is True


def _split_entry(db: Session, target: Invoice, src: InvoiceItem,
                 amount: Decimal, bucket: str, orig: Invoice,
                 user_id: Optional[int]) -> InvoiceItem:
    meta = {
        "orig_invoice_number": orig.invoice_number,
        "orig_invoice_id": int(orig.id),
        "orig_line_id": int(src.id),
        "orig_line_total": str(money2(src.line_total)),
        "orig_tax_rate": str(D(src.tax_rate)),
        "orig_tax_amount": str(money2(src.tax_amount)),
        "bucket": bucket,
    }
    if src.entry_kind == EntryKind.TAX_ADJUSTMENT:
        unit_price, tax_amount = D0, amount
    else:
        # tax-inclusive share; original tax kept in meta
        unit_price, tax_amount = amount, D0

    return append_entry(
        db,
        target,
        entry_kind=src.entry_kind,
        service_type=src.service_type,
        service_ref_id=src.service_ref_id,
        service_uid=src.service_uid,
        description=src.description,
        quantity=D("1"),
        unit_price=unit_price,
        tax_rate=D0,
        tax_amount=tax_amount,
        line_total=amount,
        discount_percent=src.discount_percent,
        remarks=f"Split from {orig.invoice_number}"[:255],
        is_covered=src.is_covered,
        requires_preauth=bool(src.requires_preauth),
        meta_json=meta,
        created_by=user_id,
    )


def split_invoices_for_insurance(
    db: Session,
    billing_case_id: int,
    invoice_ids: List[int],
    user_id: Optional[int],
    allow_paid_split: bool = False,
) -> Dict[str, Any]:
    """
    Insurance Split:
    - VOID original invoice(s) (kept for audit, excluded from totals)
    - Create PATIENT invoice (patient share)
    - Create INSURER invoice (insurer share) if any insurer amount exists
    - Payments and advance adjustments of the original move to the
      PATIENT invoice; an overpayment shows as its negative balance

    Every invoice is validated before anything is written.
    """
    case = get_case_or_404(db, billing_case_id)
    ins = require_insurance_case(db, int(case.id))

    ids = list(dict.fromkeys(int(x) for x in (invoice_ids or [])))
    if not ids:
        raise ValidationError("invoice_ids required")

    invoices = (db.query(Invoice).filter(
        Invoice.billing_case_id == int(case.id),
        Invoice.id.in_(ids),
    ).order_by(Invoice.id.asc()).with_for_update().all())
    found = {int(i.id) for i in invoices}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"Invoices not found in this case: {missing}")

    for orig in invoices:
        if orig.status == DocStatus.VOID:
            raise InvalidStateError(f"Invoice {orig.invoice_number} is VOID")
        if orig.invoice_type != InvoiceType.STANDARD or _has_split_children(
                db, int(orig.id)):
            raise InvalidStateError(
                f"Invoice {orig.invoice_number} is already split")
        recompute_totals(db, orig)
        settled = D(orig.amount_paid) + D(orig.advance_applied)
        if (not allow_paid_split and D(orig.net_total) > 0 and settled > 0
                and D(orig.balance_due) <= 0):
            raise InvalidStateError(
                f"Invoice {orig.invoice_number} is fully paid. "
                "Use allow_paid_split=true to split it")

    cov = _coverage_map(ins)
    results: List[Dict[str, Any]] = []

    for orig in invoices:
        shares = invoice_shares(orig, cov)
        insurer_total = money2(sum((s["insurer"] for s in shares), D0))

        patient_inv = create_invoice(db,
                                     billing_case_id=int(case.id),
                                     billing_type=orig.billing_type,
                                     invoice_type=InvoiceType.PATIENT,
                                     user_id=user_id,
                                     split_from_invoice_id=int(orig.id),
                                     number_prefix="PINV")
        insurer_inv = None
        if insurer_total > 0:
            insurer_inv = create_invoice(db,
                                         billing_case_id=int(case.id),
                                         billing_type=orig.billing_type,
                                         invoice_type=InvoiceType.INSURER,
                                         user_id=user_id,
                                         split_from_invoice_id=int(orig.id),
                                         number_prefix="IINV")

        for s in shares:
            if s["patient"] != 0:
                _split_entry(db, patient_inv, s["item"], s["patient"],
                             "PATIENT", orig, user_id)
            if insurer_inv is not None and s["insurer"] != 0:
                _split_entry(db, insurer_inv, s["item"], s["insurer"],
                             "INSURER", orig, user_id)

        moved_payments = 0
        for p in db.query(Payment).filter(Payment.invoice_id == int(orig.id)).all():
            mj = dict(p.meta_json or {})
            mj["moved_from_invoice_id"] = int(orig.id)
            mj["moved_from_invoice_number"] = orig.invoice_number
            mj["moved_at"] = _now().isoformat()
            p.meta_json = mj
            p.invoice_id = int(patient_inv.id)
            moved_payments += 1

        moved_adjustments = (db.query(AdvanceAdjustment).filter(
            AdvanceAdjustment.invoice_id == int(orig.id)).update(
                {AdvanceAdjustment.invoice_id: int(patient_inv.id)},
                synchronize_session="fetch"))
        db.flush()

        reason = f"Split into PATIENT:{patient_inv.invoice_number}"
        if insurer_inv is not None:
            reason += f" + INSURER:{insurer_inv.invoice_number}"
        mark_invoice_void(db, orig, reason=reason, user_id=user_id)

        recompute_totals(db, orig)
        recompute_totals(db, patient_inv)
        if insurer_inv is not None:
            recompute_totals(db, insurer_inv)

        log_action(db, "Invoice", int(orig.id), "VOID_SPLIT", user_id,
                   reason=reason,
                   new={"moved_payments": moved_payments,
                        "moved_advance_adjustments": int(moved_adjustments or 0)})
        logger.info("Split %s -> %s", orig.invoice_number, reason)

        results.append({
            "from_invoice_id": int(orig.id),
            "from": orig.invoice_number,
            "patient_invoice_id": int(patient_inv.id),
            "patient_invoice_number": patient_inv.invoice_number,
            "patient_total": money2(patient_inv.net_total),
            "patient_balance_due": money2(patient_inv.balance_due),
            "insurer_invoice_id": int(insurer_inv.id) if insurer_inv else None,
            "insurer_invoice_number": insurer_inv.invoice_number if insurer_inv else None,
            "insurer_total": money2(insurer_inv.net_total) if insurer_inv else D0,
            "moved_payments": moved_payments,
            "overpaid": D(patient_inv.balance_due) < 0,
        })

    return {"split": results}
