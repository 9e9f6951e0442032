# hims_billing/services/billing_audit.py
from __future__ import annotations

from typing import Any, List, Optional

from sqlalchemy.orm import Session

from hims_billing.models.billing import BillingAuditLog
from hims_billing.models.billing_insurance import BillingWorkflowEvent
from hims_billing.services.billing_math import D


def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def log_action(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    user_id: Optional[int],
    old: Any = None,
    new: Any = None,
    reason: str = "",
) -> None:
    db.add(
        BillingAuditLog(
            entity_type=entity_type,
            entity_id=int(entity_id),
            action=action,
            user_id=user_id,
            old_json=old,
            new_json=new,
            reason=(reason or "")[:255] or None,
        ))
    db.flush()


def record_transition(
    db: Session,
    *,
    entity_type: str,
    entity_id: int,
    billing_case_id: int,
    action: str,
    from_status: Any,
    to_status: Any,
    user_id: Optional[int],
    amount: Any = None,
    remarks: Optional[str] = None,
) -> BillingWorkflowEvent:
    ev = BillingWorkflowEvent(
        entity_type=entity_type,
        entity_id=int(entity_id),
        billing_case_id=int(billing_case_id),
        action=action,
        from_status=_enum_value(from_status),
        to_status=_enum_value(to_status),
        amount=D(amount) if amount is not None else None,
        remarks=remarks,
        user_id=user_id,
    )
    db.add(ev)
    db.flush()
    log_action(
        db,
        entity_type,
        entity_id,
        action,
        user_id,
        old={"status": _enum_value(from_status)},
        new={"status": _enum_value(to_status)},
        reason=remarks or "",
    )
    return ev


def list_transitions(db: Session, entity_type: str,
                     entity_id: int) -> List[BillingWorkflowEvent]:
    return (db.query(BillingWorkflowEvent).filter(
        BillingWorkflowEvent.entity_type == entity_type,
        BillingWorkflowEvent.entity_id == int(entity_id),
    ).order_by(BillingWorkflowEvent.id.asc()).all())
