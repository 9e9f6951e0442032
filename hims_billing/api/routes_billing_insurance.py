# FILE: hims_billing/api/routes_billing_insurance.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from hims_billing.api.deps import current_user_id, get_db
from hims_billing.core.errors import NotConfiguredError
from hims_billing.models.billing_insurance import (
    BillingClaim,
    BillingInsuranceCase,
    BillingPreauthRequest,
)
from hims_billing.schemas.billing_insurance import (
    ClaimCreate,
    ClaimDecision,
    ClaimOut,
    InsuranceCaseOut,
    InsuranceCaseUpsert,
    InsuranceLinePatch,
    InsuranceLineRow,
    PreauthCreate,
    PreauthDecision,
    PreauthOut,
    SplitRequest,
    WorkflowEventOut,
)
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_insurance import (
    get_insurance_case,
    list_insurance_lines,
    patch_insurance_lines,
    split_invoices_for_insurance,
    upsert_insurance_case,
)
from hims_billing.services.billing_workflows import (
    claim_approve,
    claim_deny,
    claim_history,
    claim_query,
    claim_ref,
    claim_resubmit,
    claim_settle,
    claim_submit,
    create_claim,
    create_preauth,
    get_claim_or_404,
    list_claims,
    list_preauths,
    preauth_decide,
    preauth_history,
    preauth_ref,
    preauth_submit,
)
from hims_billing.utils.resp import ok

router = APIRouter(prefix="/billing", tags=["Billing Insurance"])


def _preauth_out(pr: BillingPreauthRequest) -> PreauthOut:
    data: Dict[str, Any] = {
        k: getattr(pr, k)
        for k in PreauthOut.model_fields if k != "ref_no"
    }
    return PreauthOut(ref_no=preauth_ref(pr), **data)


def _claim_out(cl: BillingClaim) -> ClaimOut:
    data: Dict[str, Any] = {
        k: getattr(cl, k)
        for k in ClaimOut.model_fields if k != "ref_no"
    }
    return ClaimOut(ref_no=claim_ref(cl), **data)


def _insurance_out(ins: BillingInsuranceCase) -> InsuranceCaseOut:
    return InsuranceCaseOut.model_validate(ins)


def _commit_refresh_out(db: Session, obj: Any, out_fn):
    try:
        db.commit()
        db.refresh(obj)
        return out_fn(obj)
    except Exception:
        db.rollback()
        raise


# ---------------- Insurance case ----------------
@router.get("/cases/{case_id}/insurance")
def get_insurance(case_id: int, db: Session = Depends(get_db)):
    case = get_case_or_404(db, case_id)
    ins = get_insurance_case(db, int(case.id))
    if not ins:
        raise NotConfiguredError("Insurance is not configured for this case")
    return ok(_insurance_out(ins))


@router.put("/cases/{case_id}/insurance")
def put_insurance(
    case_id: int,
    payload: InsuranceCaseUpsert,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    ins = upsert_insurance_case(db, case_id, payload.model_dump(exclude_unset=True),
                                user_id)
    return ok(_commit_refresh_out(db, ins, _insurance_out))


@router.get("/cases/{case_id}/insurance/lines")
def get_insurance_lines(case_id: int, db: Session = Depends(get_db)):
    get_case_or_404(db, case_id)
    rows = list_insurance_lines(db, case_id)
    return ok([InsuranceLineRow(**r) for r in rows])


@router.patch("/cases/{case_id}/insurance/lines")
def patch_lines(
    case_id: int,
    payload: List[InsuranceLinePatch],
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    get_case_or_404(db, case_id)
    patches = [p.model_dump(exclude_unset=True) for p in payload]
    updated = patch_insurance_lines(db, case_id, patches, user_id)
    db.commit()
    return ok({"updated": updated})


@router.post("/cases/{case_id}/insurance/split")
def split_for_insurance(
    case_id: int,
    payload: SplitRequest,
    allow_paid_split: bool = Query(False),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    res = split_invoices_for_insurance(db,
                                       case_id,
                                       payload.invoice_ids,
                                       user_id,
                                       allow_paid_split=allow_paid_split)
    db.commit()
    return ok(res)


# ---------------- Preauth ----------------
@router.get("/cases/{case_id}/preauths")
def get_preauths(case_id: int, db: Session = Depends(get_db)):
    return ok([_preauth_out(p) for p in list_preauths(db, case_id)])


@router.post("/cases/{case_id}/preauths")
def new_preauth(
    case_id: int,
    payload: PreauthCreate,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    get_case_or_404(db, case_id)
    pr = create_preauth(db,
                        case_id,
                        requested_amount=payload.requested_amount,
                        remarks=payload.remarks,
                        user_id=user_id)
    return ok(_commit_refresh_out(db, pr, _preauth_out), 201)


@router.post("/cases/{case_id}/preauths/{preauth_id}/submit")
def submit_preauth(
    case_id: int,
    preauth_id: int,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    pr = preauth_submit(db, preauth_id, user_id, billing_case_id=case_id)
    return ok(_commit_refresh_out(db, pr, _preauth_out))


def _decide(db: Session, preauth_id: int, action: str,
            payload: Optional[PreauthDecision], user_id: Optional[int]):
    payload = payload or PreauthDecision()
    pr = preauth_decide(db,
                        preauth_id,
                        action=action,
                        approved_amount=payload.approved_amount,
                        remarks=payload.remarks,
                        user_id=user_id)
    return ok(_commit_refresh_out(db, pr, _preauth_out))


@router.post("/preauths/{preauth_id}/approve")
def approve_preauth(
    preauth_id: int,
    payload: Optional[PreauthDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    return _decide(db, preauth_id, "approve", payload, user_id)


@router.post("/preauths/{preauth_id}/partial")
def partial_preauth(
    preauth_id: int,
    payload: Optional[PreauthDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    return _decide(db, preauth_id, "partial", payload, user_id)


@router.post("/preauths/{preauth_id}/reject")
def reject_preauth(
    preauth_id: int,
    payload: Optional[PreauthDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    return _decide(db, preauth_id, "reject", payload, user_id)


@router.get("/preauths/{preauth_id}/history")
def get_preauth_history(preauth_id: int, db: Session = Depends(get_db)):
    return ok([
        WorkflowEventOut.model_validate(e)
        for e in preauth_history(db, preauth_id)
    ])


# ---------------- Claims ----------------
@router.get("/cases/{case_id}/claims")
def get_claims(case_id: int, db: Session = Depends(get_db)):
    return ok([_claim_out(c) for c in list_claims(db, case_id)])


@router.post("/cases/{case_id}/claims")
def new_claim(
    case_id: int,
    payload: Optional[ClaimCreate] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or ClaimCreate()
    get_case_or_404(db, case_id)
    cl = create_claim(db,
                      case_id,
                      insurer_invoice_ids=payload.insurer_invoice_ids or None,
                      claim_amount=payload.claim_amount,
                      remarks=payload.remarks,
                      user_id=user_id)
    return ok(_commit_refresh_out(db, cl, _claim_out), 201)


@router.post("/claims/{claim_id}/submit")
def submit_claim(
    claim_id: int,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    cl = claim_submit(db, claim_id, user_id)
    return ok(_commit_refresh_out(db, cl, _claim_out))


@router.post("/claims/{claim_id}/query")
def query_claim(
    claim_id: int,
    payload: Optional[ClaimDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or ClaimDecision()
    cl = claim_query(db, claim_id, user_id, remarks=payload.remarks)
    return ok(_commit_refresh_out(db, cl, _claim_out))


@router.post("/claims/{claim_id}/resubmit")
def resubmit_claim(
    claim_id: int,
    payload: Optional[ClaimDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or ClaimDecision()
    cl = claim_resubmit(db, claim_id, user_id, remarks=payload.remarks)
    return ok(_commit_refresh_out(db, cl, _claim_out))


@router.post("/claims/{claim_id}/approve")
def approve_claim(
    claim_id: int,
    payload: Optional[ClaimDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or ClaimDecision()
    cl = claim_approve(db,
                       claim_id,
                       user_id,
                       approved_amount=payload.approved_amount,
                       remarks=payload.remarks)
    return ok(_commit_refresh_out(db, cl, _claim_out))


@router.post("/claims/{claim_id}/deny")
def deny_claim(
    claim_id: int,
    payload: Optional[ClaimDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or ClaimDecision()
    cl = claim_deny(db, claim_id, user_id, remarks=payload.remarks)
    return ok(_commit_refresh_out(db, cl, _claim_out))


@router.post("/claims/{claim_id}/settle")
def settle_claim(
    claim_id: int,
    payload: Optional[ClaimDecision] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or ClaimDecision()
    res = claim_settle(db,
                       claim_id,
                       user_id,
                       settled_amount=payload.settled_amount,
                       remarks=payload.remarks)
    cl = res["claim"]
    out = _commit_refresh_out(db, cl, _claim_out)
    return ok({"claim": out, "allocations": res["allocations"]})


@router.get("/claims/{claim_id}/history")
def get_claim_history(claim_id: int, db: Session = Depends(get_db)):
    get_claim_or_404(db, claim_id)
    return ok([
        WorkflowEventOut.model_validate(e) for e in claim_history(db, claim_id)
    ])
