# FILE: hims_billing/services/billing_case_service.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from hims_billing.core.errors import NotFoundError, ValidationError
from hims_billing.models.billing import (
    Advance,
    BillingCase,
    CaseStatus,
    DocStatus,
    EncounterType,
    Invoice,
    NumberDocType,
)
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_math import D0, money2
from hims_billing.services.billing_numbers import next_billing_number

logger = logging.getLogger(__name__)


def get_case_or_404(db: Session, billing_case_id: int) -> BillingCase:
    case = db.get(BillingCase, int(billing_case_id))
    if not case:
        raise NotFoundError("Billing case not found")
    return case


def _find_for_encounter(db: Session, encounter_type: EncounterType,
                        encounter_id: int) -> Optional[BillingCase]:
    return (db.query(BillingCase).filter(
        BillingCase.encounter_type == encounter_type,
        BillingCase.encounter_id == int(encounter_id),
    ).first())


def get_or_create_billing_case(
    db: Session,
    *,
    patient_id: int,
    encounter_type: EncounterType = EncounterType.OP,
    encounter_id: Optional[int] = None,
    user_id: Optional[int] = None,
    remarks: Optional[str] = None,
) -> BillingCase:
    if not patient_id or int(patient_id) <= 0:
        raise ValidationError("patient_id is required")

    # idempotent per encounter
    if encounter_id is not None:
        existing = _find_for_encounter(db, encounter_type, encounter_id)
        if existing:
            return existing

    case_no = next_billing_number(
        db,
        doc_type=NumberDocType.CASE,
        prefix=f"BC{encounter_type.value}",
    )
    case = BillingCase(
        patient_id=int(patient_id),
        encounter_type=encounter_type,
        encounter_id=encounter_id,
        case_number=case_no,
        status=CaseStatus.OPEN,
        remarks=remarks,
        created_by=user_id,
    )
    db.add(case)

    try:
        db.flush()
    except IntegrityError:
        # If two requests raced, one may have created it.
        db.rollback()
        if encounter_id is not None:
            existing = _find_for_encounter(db, encounter_type, encounter_id)
            if existing:
                return existing
        raise

    log_action(db, "BillingCase", int(case.id), "CREATE", user_id,
               new={"case_number": case_no, "patient_id": int(patient_id)})
    logger.info("Billing case %s opened for patient %s", case_no, patient_id)
    return case


def case_financials(db: Session, billing_case_id: int) -> Dict[str, Any]:
    """Roll-up over the case's live (non-void) invoices and its advances."""
    case = get_case_or_404(db, billing_case_id)

    inv_totals = (db.query(
        func.coalesce(func.sum(Invoice.net_total), 0),
        func.coalesce(func.sum(Invoice.amount_paid), 0),
        func.coalesce(func.sum(Invoice.advance_applied), 0),
        func.coalesce(func.sum(Invoice.balance_due), 0),
        func.count(Invoice.id),
    ).filter(
        Invoice.billing_case_id == int(case.id),
        Invoice.status != DocStatus.VOID,
    ).one())

    adv_totals = (db.query(
        func.coalesce(func.sum(Advance.amount), 0),
        func.coalesce(func.sum(Advance.balance_remaining), 0),
    ).filter(Advance.billing_case_id == int(case.id)).one())

    return {
        "billing_case_id": int(case.id),
        "case_number": case.case_number,
        "invoice_count": int(inv_totals[4] or 0),
        "net_total": money2(inv_totals[0] or D0),
        "amount_paid": money2(inv_totals[1] or D0),
        "advance_applied": money2(inv_totals[2] or D0),
        "balance_due": money2(inv_totals[3] or D0),
        "advance_received": money2(adv_totals[0] or D0),
        "advance_available": money2(adv_totals[1] or D0),
    }
