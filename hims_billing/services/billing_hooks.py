# FILE: hims_billing/services/billing_hooks.py
"""
Entry point for clinical modules (LIS, RIS, pharmacy, OPD, IPD) to tell
billing that a billable service was rendered for a case. Rows land in the
rendered-service feed and surface as unbilled services until imported.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from hims_billing.core.errors import ValidationError
from hims_billing.models.billing import SERVICE_SOURCES, RenderedService
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_math import D, is_finite, money2

logger = logging.getLogger(__name__)


def record_rendered_service(
    db: Session,
    *,
    billing_case_id: int,
    source_type: str,
    source_id: int,
    label: str,
    amount: Any,
    quantity: Any = 1,
    tax_rate: Any = 0,
    user_id: Optional[int] = None,
) -> RenderedService:
    """Idempotent per (source_type, source_id): a repeat call returns the existing row."""
    source_type = (source_type or "").strip().lower()
    if source_type not in SERVICE_SOURCES:
        raise ValidationError(f"Unknown service source '{source_type}'")
    if source_id is None or int(source_id) <= 0:
        raise ValidationError("source_id must be a positive id")

    case = get_case_or_404(db, billing_case_id)

    existing = (db.query(RenderedService).filter(
        RenderedService.source_type == source_type,
        RenderedService.source_id == int(source_id),
    ).first())
    if existing:
        if int(existing.billing_case_id) != int(case.id):
            raise ValidationError(
                f"{existing.uid} is already recorded on another billing case")
        return existing

    label = (label or "").strip()
    if not label:
        raise ValidationError("label is required")
    for name, v in (("amount", amount), ("quantity", quantity),
                    ("tax_rate", tax_rate)):
        if not is_finite(v):
            raise ValidationError(f"{name} must be a number")
    if D(amount) < 0:
        raise ValidationError("amount cannot be negative")
    if D(quantity) <= 0:
        raise ValidationError("quantity must be greater than 0")
    if D(tax_rate) < 0:
        raise ValidationError("tax_rate cannot be negative")

    row = RenderedService(
        billing_case_id=int(case.id),
        source_type=source_type,
        source_id=int(source_id),
        label=label[:300],
        quantity=D(quantity),
        amount=money2(amount),
        tax_rate=D(tax_rate),
        created_by=user_id,
    )
    db.add(row)
    db.flush()

    log_action(db, "RenderedService", int(row.id), "RECORD", user_id,
               new={"uid": row.uid, "amount": str(row.amount)})
    logger.info("Rendered service %s recorded on case %s", row.uid,
                case.case_number)
    return row
