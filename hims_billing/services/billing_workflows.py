# FILE: hims_billing/services/billing_workflows.py
"""
Preauthorization and claim state machines.

  Preauth: DRAFT -submit-> SUBMITTED -approve|partial|reject-> APPROVED|PARTIAL|REJECTED
  Claim:   DRAFT -submit-> SUBMITTED -query-> QUERIED -resubmit-> SUBMITTED
           SUBMITTED|QUERIED -approve|deny-> APPROVED|DENIED
           APPROVED -settle-> SETTLED

Every transition appends a BillingWorkflowEvent.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from hims_billing.core.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from hims_billing.models.billing import DocStatus, Invoice, InvoiceType
from hims_billing.models.billing_insurance import (
    BillingClaim,
    BillingClaimInvoice,
    BillingInsuranceCase,
    BillingPreauthRequest,
    BillingWorkflowEvent,
    ClaimStatus,
    InsuranceStatus,
    PreauthStatus,
)
from hims_billing.services.billing_audit import list_transitions, record_transition
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_insurance import require_insurance_case
from hims_billing.services.billing_math import D, D0, is_finite, money2
from hims_billing.services.billing_payment_service import add_payment

logger = logging.getLogger(__name__)

PREAUTH = "PREAUTH"
CLAIM = "CLAIM"

PREAUTH_TRANSITIONS: Dict[str, Tuple[FrozenSet[PreauthStatus], PreauthStatus]] = {
    "submit": (frozenset({PreauthStatus.DRAFT}), PreauthStatus.SUBMITTED),
    "approve": (frozenset({PreauthStatus.SUBMITTED}), PreauthStatus.APPROVED),
    "partial": (frozenset({PreauthStatus.SUBMITTED}), PreauthStatus.PARTIAL),
    "reject": (frozenset({PreauthStatus.SUBMITTED}), PreauthStatus.REJECTED),
}

CLAIM_TRANSITIONS: Dict[str, Tuple[FrozenSet[ClaimStatus], ClaimStatus]] = {
    "submit": (frozenset({ClaimStatus.DRAFT}), ClaimStatus.SUBMITTED),
    "query": (frozenset({ClaimStatus.SUBMITTED}), ClaimStatus.QUERIED),
    "resubmit": (frozenset({ClaimStatus.QUERIED}), ClaimStatus.SUBMITTED),
    "approve": (frozenset({ClaimStatus.SUBMITTED, ClaimStatus.QUERIED}),
                ClaimStatus.APPROVED),
    "deny": (frozenset({ClaimStatus.SUBMITTED, ClaimStatus.QUERIED}),
             ClaimStatus.DENIED),
    "settle": (frozenset({ClaimStatus.APPROVED}), ClaimStatus.SETTLED),
}

# claims that hold on to their invoices
ACTIVE_CLAIM_STATUSES = (
    ClaimStatus.SUBMITTED,
    ClaimStatus.QUERIED,
    ClaimStatus.APPROVED,
    ClaimStatus.SETTLED,
)


def _now() -> datetime:
    return datetime.utcnow()


def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def _ref(prefix: str, idv: int) -> str:
    return f"{prefix}{idv:08d}"


def _target_status(table: Dict[str, Tuple[FrozenSet[Any], Any]], action: str,
                   current: Any, label: str):
    allowed, target = table[action]
    if current not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} {label} in {_enum_value(current)} status")
    return target


def _positive_amount(v: Any, name: str) -> Decimal:
    if v is None or not is_finite(v):
        raise ValidationError(f"{name} must be a number")
    amt = money2(v)
    if amt <= 0:
        raise ValidationError(f"{name} must be > 0")
    return amt


def _insurance_of(db: Session, insurance_case_id: int) -> BillingInsuranceCase:
    return db.get(BillingInsuranceCase, int(insurance_case_id))


# ============================================================
# Preauth
# ============================================================
def preauth_ref(pr: BillingPreauthRequest) -> str:
    return _ref("PA", int(pr.id))


def get_preauth_or_404(db: Session, preauth_id: int,
                       billing_case_id: Optional[int] = None) -> BillingPreauthRequest:
    pr = db.get(BillingPreauthRequest, int(preauth_id))
    if not pr or (billing_case_id is not None
                  and int(pr.billing_case_id) != int(billing_case_id)):
        raise NotFoundError("Preauth not found")
    return pr


def list_preauths(db: Session, billing_case_id: int) -> List[BillingPreauthRequest]:
    case = get_case_or_404(db, billing_case_id)
    return (db.query(BillingPreauthRequest).filter(
        BillingPreauthRequest.billing_case_id == int(case.id)).order_by(
            BillingPreauthRequest.id.desc()).all())


def create_preauth(
    db: Session,
    billing_case_id: int,
    *,
    requested_amount: Any,
    remarks: Optional[str] = None,
    user_id: Optional[int] = None,
) -> BillingPreauthRequest:
    ins = require_insurance_case(db, billing_case_id)
    req = _positive_amount(requested_amount, "requested_amount")

    pr = BillingPreauthRequest(
        insurance_case_id=int(ins.id),
        billing_case_id=int(ins.billing_case_id),
        requested_amount=req,
        approved_amount=D0,
        remarks=remarks,
        status=PreauthStatus.DRAFT,
        created_by=user_id,
    )
    db.add(pr)
    db.flush()

    record_transition(db,
                      entity_type=PREAUTH,
                      entity_id=int(pr.id),
                      billing_case_id=int(pr.billing_case_id),
                      action="create",
                      from_status=None,
                      to_status=PreauthStatus.DRAFT,
                      amount=req,
                      remarks=remarks,
                      user_id=user_id)
    return pr


def preauth_submit(db: Session, preauth_id: int, user_id: Optional[int],
                   billing_case_id: Optional[int] = None) -> BillingPreauthRequest:
    pr = get_preauth_or_404(db, preauth_id, billing_case_id)
    old = pr.status
    pr.status = _target_status(PREAUTH_TRANSITIONS, "submit", old, "preauth")
    pr.submitted_at = _now()

    ins = _insurance_of(db, pr.insurance_case_id)
    ins.status = InsuranceStatus.PREAUTH_SUBMITTED
    db.flush()

    record_transition(db,
                      entity_type=PREAUTH,
                      entity_id=int(pr.id),
                      billing_case_id=int(pr.billing_case_id),
                      action="submit",
                      from_status=old,
                      to_status=pr.status,
                      user_id=user_id)
    return pr


def preauth_decide(
    db: Session,
    preauth_id: int,
    *,
    action: str,
    approved_amount: Any = None,
    remarks: Optional[str] = None,
    user_id: Optional[int] = None,
) -> BillingPreauthRequest:
    """
    approve: approved_amount > 0 and <= requested (defaults to requested)
    partial: 0 < approved_amount < requested
    reject:  approved_amount forced to 0
    """
    if action not in ("approve", "partial", "reject"):
        raise ValidationError(f"Unknown preauth decision '{action}'")

    pr = get_preauth_or_404(db, preauth_id)
    old = pr.status
    target = _target_status(PREAUTH_TRANSITIONS, action, old, "preauth")
    requested = D(pr.requested_amount)

    if action == "reject":
        aa = D0
    elif action == "approve":
        aa = requested if approved_amount is None else _positive_amount(
            approved_amount, "approved_amount")
        if aa > requested:
            raise ValidationError(
                "approved_amount cannot exceed the requested amount")
    else:
        aa = _positive_amount(approved_amount, "approved_amount")
        if aa >= requested:
            raise ValidationError(
                "Partial approval must be less than the requested amount")

    pr.status = target
    pr.approved_amount = money2(aa)
    pr.remarks = (remarks or "").strip() or pr.remarks
    pr.decided_at = _now()

    ins = _insurance_of(db, pr.insurance_case_id)
    ins.approved_limit = money2(aa)
    ins.approved_at = _now()
    ins.status = {
        PreauthStatus.APPROVED: InsuranceStatus.PREAUTH_APPROVED,
        PreauthStatus.PARTIAL: InsuranceStatus.PREAUTH_PARTIAL,
        PreauthStatus.REJECTED: InsuranceStatus.PREAUTH_REJECTED,
    }[target]
    db.flush()

    record_transition(db,
                      entity_type=PREAUTH,
                      entity_id=int(pr.id),
                      billing_case_id=int(pr.billing_case_id),
                      action=action,
                      from_status=old,
                      to_status=target,
                      amount=aa,
                      remarks=remarks,
                      user_id=user_id)
    logger.info("Preauth %s %s (%s)", preauth_ref(pr), _enum_value(target), aa)
    return pr


def preauth_history(db: Session, preauth_id: int) -> List[BillingWorkflowEvent]:
    pr = get_preauth_or_404(db, preauth_id)
    return list_transitions(db, PREAUTH, int(pr.id))


# ============================================================
# Claims
# ============================================================
def claim_ref(cl: BillingClaim) -> str:
    return _ref("CL", int(cl.id))


def get_claim_or_404(db: Session, claim_id: int) -> BillingClaim:
    cl = db.get(BillingClaim, int(claim_id))
    if not cl:
        raise NotFoundError("Claim not found")
    return cl


def list_claims(db: Session, billing_case_id: int) -> List[BillingClaim]:
    case = get_case_or_404(db, billing_case_id)
    return (db.query(BillingClaim).filter(
        BillingClaim.billing_case_id == int(case.id)).order_by(
            BillingClaim.id.desc()).all())


def _insurer_invoices(db: Session, billing_case_id: int,
                      invoice_ids: List[int]) -> List[Invoice]:
    invoices = (db.query(Invoice).filter(
        Invoice.billing_case_id == int(billing_case_id),
        Invoice.id.in_(invoice_ids),
        Invoice.status != DocStatus.VOID,
        Invoice.invoice_type == InvoiceType.INSURER,
    ).order_by(Invoice.id.asc()).all())
    found = {int(i.id) for i in invoices}
    missing = [i for i in invoice_ids if i not in found]
    if missing:
        raise ValidationError(
            f"Invalid insurer_invoice_ids (missing/void/not insurer): {missing}")
    return invoices


def create_claim(
    db: Session,
    billing_case_id: int,
    *,
    insurer_invoice_ids: Optional[List[int]] = None,
    claim_amount: Any = None,
    remarks: Optional[str] = None,
    user_id: Optional[int] = None,
) -> BillingClaim:
    """Claim amount is the sum of the linked insurer invoices, else given."""
    ins = require_insurance_case(db, billing_case_id)
    ids = list(dict.fromkeys(int(x) for x in (insurer_invoice_ids or [])))

    invoices: List[Invoice] = []
    if ids:
        invoices = _insurer_invoices(db, int(ins.billing_case_id), ids)
        amount = money2(sum((D(i.net_total) for i in invoices), D0))
        if amount <= 0:
            raise ValidationError("Selected insurer invoices total 0")
    else:
        amount = _positive_amount(claim_amount, "claim_amount")

    cl = BillingClaim(
        insurance_case_id=int(ins.id),
        billing_case_id=int(ins.billing_case_id),
        claim_amount=amount,
        approved_amount=D0,
        settled_amount=D0,
        remarks=remarks,
        status=ClaimStatus.DRAFT,
        created_by=user_id,
    )
    for inv in invoices:
        cl.invoice_links.append(BillingClaimInvoice(invoice_id=int(inv.id)))
    db.add(cl)
    db.flush()

    record_transition(db,
                      entity_type=CLAIM,
                      entity_id=int(cl.id),
                      billing_case_id=int(cl.billing_case_id),
                      action="create",
                      from_status=None,
                      to_status=ClaimStatus.DRAFT,
                      amount=amount,
                      remarks=remarks,
                      user_id=user_id)
    return cl


def _ensure_no_overlap(db: Session, cl: BillingClaim) -> None:
    ids = cl.invoice_ids
    if not ids:
        return
    clash = (db.query(BillingClaimInvoice.invoice_id, BillingClaim.id).join(
        BillingClaim, BillingClaim.id == BillingClaimInvoice.claim_id).filter(
            BillingClaimInvoice.invoice_id.in_(ids),
            BillingClaim.id != int(cl.id),
            BillingClaim.status.in_(ACTIVE_CLAIM_STATUSES),
        ).first())
    if clash:
        raise InvalidStateError(
            f"Invoice {clash[0]} is already under claim {_ref('CL', int(clash[1]))}")


def _move_claim(db: Session, cl: BillingClaim, action: str,
                user_id: Optional[int], *, amount: Any = None,
                remarks: Optional[str] = None) -> BillingClaim:
    old = cl.status
    cl.status = _target_status(CLAIM_TRANSITIONS, action, old, "claim")
    if remarks:
        cl.remarks = remarks.strip()
    db.flush()
    record_transition(db,
                      entity_type=CLAIM,
                      entity_id=int(cl.id),
                      billing_case_id=int(cl.billing_case_id),
                      action=action,
                      from_status=old,
                      to_status=cl.status,
                      amount=amount,
                      remarks=remarks,
                      user_id=user_id)
    logger.info("Claim %s %s -> %s", claim_ref(cl), _enum_value(old),
                _enum_value(cl.status))
    return cl


def claim_submit(db: Session, claim_id: int,
                 user_id: Optional[int]) -> BillingClaim:
    cl = get_claim_or_404(db, claim_id)
    _target_status(CLAIM_TRANSITIONS, "submit", cl.status, "claim")
    _ensure_no_overlap(db, cl)
    cl.submitted_at = _now()
    _insurance_of(db, cl.insurance_case_id).status = InsuranceStatus.CLAIM_SUBMITTED
    return _move_claim(db, cl, "submit", user_id, amount=cl.claim_amount)


def claim_query(db: Session, claim_id: int, user_id: Optional[int],
                remarks: Optional[str] = None) -> BillingClaim:
    cl = get_claim_or_404(db, claim_id)
    return _move_claim(db, cl, "query", user_id, remarks=remarks)


def claim_resubmit(db: Session, claim_id: int, user_id: Optional[int],
                   remarks: Optional[str] = None) -> BillingClaim:
    cl = get_claim_or_404(db, claim_id)
    _target_status(CLAIM_TRANSITIONS, "resubmit", cl.status, "claim")
    _ensure_no_overlap(db, cl)
    cl.submitted_at = _now()
    return _move_claim(db, cl, "resubmit", user_id, remarks=remarks)


def claim_approve(db: Session, claim_id: int, user_id: Optional[int],
                  approved_amount: Any = None,
                  remarks: Optional[str] = None) -> BillingClaim:
    cl = get_claim_or_404(db, claim_id)
    _target_status(CLAIM_TRANSITIONS, "approve", cl.status, "claim")

    requested = D(cl.claim_amount)
    aa = requested if approved_amount is None else _positive_amount(
        approved_amount, "approved_amount")
    if aa > requested:
        raise ValidationError("approved_amount cannot exceed the claim amount")

    cl.approved_amount = money2(aa)
    cl.decided_at = _now()
    _insurance_of(db, cl.insurance_case_id).status = InsuranceStatus.CLAIM_APPROVED
    return _move_claim(db, cl, "approve", user_id, amount=aa, remarks=remarks)


def claim_deny(db: Session, claim_id: int, user_id: Optional[int],
               remarks: Optional[str] = None) -> BillingClaim:
    cl = get_claim_or_404(db, claim_id)
    _target_status(CLAIM_TRANSITIONS, "deny", cl.status, "claim")
    cl.approved_amount = D0
    cl.decided_at = _now()
    _insurance_of(db, cl.insurance_case_id).status = InsuranceStatus.CLAIM_DENIED
    return _move_claim(db, cl, "deny", user_id, amount=D0, remarks=remarks)


def claim_settle(db: Session, claim_id: int, user_id: Optional[int],
                 settled_amount: Any = None,
                 remarks: Optional[str] = None) -> Dict[str, Any]:
    """
    Settle an APPROVED claim and credit the settlement to its insurer
    invoices (oldest first) as NEFT payments in the same transaction.
    """
    cl = get_claim_or_404(db, claim_id)
    _target_status(CLAIM_TRANSITIONS, "settle", cl.status, "claim")

    approved = D(cl.approved_amount)
    amt = approved if settled_amount is None else _positive_amount(
        settled_amount, "settled_amount")
    if amt <= 0:
        raise ValidationError("settled_amount must be > 0")
    if amt > approved:
        raise ValidationError(
            f"settled_amount {amt} exceeds approved amount {money2(approved)}")

    invoices = (db.query(Invoice).filter(
        Invoice.id.in_(cl.invoice_ids)).order_by(Invoice.id.asc()).with_for_update().all()
                if cl.invoice_ids else [])
    outstanding = sum((max(D0, D(i.balance_due))
                       for i in invoices if i.status != DocStatus.VOID), D0)
    if invoices and amt > outstanding:
        raise ValidationError(
            f"settled_amount {amt} exceeds outstanding {money2(outstanding)} "
            "on the claimed invoices")

    allocations: List[Dict[str, Any]] = []
    remaining = amt
    for inv in invoices:
        if remaining <= 0:
            break
        if inv.status == DocStatus.VOID:
            continue
        due = max(D0, D(inv.balance_due))
        if due <= 0:
            continue
        use = min(due, remaining)
        pay, _created = add_payment(
            db,
            invoice_id=int(inv.id),
            amount=use,
            mode="neft",
            reference_no=claim_ref(cl),
            notes="Insurance claim settlement",
            idempotency_key=f"claim-settlement:{int(cl.id)}",
            user_id=user_id,
            meta={"claim_id": int(cl.id)},
        )
        allocations.append({
            "invoice_id": int(inv.id),
            "invoice_number": inv.invoice_number,
            "payment_id": int(pay.id),
            "allocated": money2(use),
            "outstanding_before": money2(due),
        })
        remaining = money2(remaining - use)

    cl.settled_amount = money2(amt)
    cl.settled_at = _now()
    _insurance_of(db, cl.insurance_case_id).status = InsuranceStatus.SETTLED
    _move_claim(db, cl, "settle", user_id, amount=amt, remarks=remarks)
    return {"claim": cl, "allocations": allocations}


def claim_history(db: Session, claim_id: int) -> List[BillingWorkflowEvent]:
    cl = get_claim_or_404(db, claim_id)
    return list_transitions(db, CLAIM, int(cl.id))
