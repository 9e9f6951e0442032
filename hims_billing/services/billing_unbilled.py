# FILE: hims_billing/services/billing_unbilled.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy.orm import Session

from hims_billing.core.errors import PartialImportError
from hims_billing.models.billing import (
    SERVICE_SOURCES,
    DocStatus,
    EntryKind,
    Invoice,
    InvoiceItem,
    RenderedService,
)
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_case_service import get_case_or_404
from hims_billing.services.billing_math import D, compute_line_amounts, is_finite, money2
from hims_billing.services.billing_service import (
    append_entry,
    get_invoice_or_404,
    lock_invoice,
    recompute_totals,
    require_editable,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnbilledServiceRecord:
    source_type: str
    source_id: int
    label: str
    amount: Decimal
    quantity: Decimal = Decimal("1")
    tax_rate: Decimal = Decimal("0")
    rendered_at: Optional[datetime] = None

    @property
    def uid(self) -> str:
        return make_uid(self.source_type, self.source_id)

    def as_dict(self) -> Dict[str, object]:
        return {
            "uid": self.uid,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "label": self.label,
            "quantity": self.quantity,
            "amount": self.amount,
            "tax_rate": self.tax_rate,
            "rendered_at": self.rendered_at,
        }


def make_uid(source_type: str, source_id) -> str:
    return f"{source_type}:{source_id}"


# ----------------------------
# source registry
# ----------------------------
UnbilledSource = Callable[[Session, int], List[UnbilledServiceRecord]]

_SOURCES: Dict[str, UnbilledSource] = {}


def register_unbilled_source(source_type: str, fn: UnbilledSource) -> None:
    source_type = (source_type or "").strip().lower()
    if source_type not in SERVICE_SOURCES:
        raise ValueError(f"Unknown service source '{source_type}'")
    _SOURCES[source_type] = fn


def registered_sources() -> Dict[str, UnbilledSource]:
    return dict(_SOURCES)


def _feed_source(source_type: str, db: Session,
                 billing_case_id: int) -> List[UnbilledServiceRecord]:
    rows = (db.query(RenderedService).filter(
        RenderedService.billing_case_id == int(billing_case_id),
        RenderedService.source_type == source_type,
    ).order_by(RenderedService.id.asc()).all())
    return [
        UnbilledServiceRecord(
            source_type=r.source_type,
            source_id=int(r.source_id),
            label=r.label,
            amount=D(r.amount),
            quantity=D(r.quantity),
            tax_rate=D(r.tax_rate),
            rendered_at=r.rendered_at,
        ) for r in rows
    ]


for _st in SERVICE_SOURCES:
    register_unbilled_source(_st, partial(_feed_source, _st))


# ----------------------------
# queries
# ----------------------------
def billed_uids(db: Session, billing_case_id: int) -> Set[str]:
    """uids present on a live entry of a live invoice of the case."""
    rows = (db.query(InvoiceItem.service_uid).join(
        Invoice, Invoice.id == InvoiceItem.invoice_id).filter(
            Invoice.billing_case_id == int(billing_case_id),
            Invoice.status != DocStatus.VOID,
            InvoiceItem.is_voided.is_(False),
            InvoiceItem.service_uid.isnot(None),
        ).all())
    return {r[0] for r in rows}


def _candidates(db: Session,
                billing_case_id: int) -> Dict[str, UnbilledServiceRecord]:
    out: Dict[str, UnbilledServiceRecord] = {}
    for source_type in SERVICE_SOURCES:
        fn = _SOURCES.get(source_type)
        if fn is None:
            continue
        for rec in fn(db, int(billing_case_id)) or []:
            out.setdefault(rec.uid, rec)
    return out


def list_unbilled(db: Session,
                  billing_case_id: int) -> List[UnbilledServiceRecord]:
    case = get_case_or_404(db, billing_case_id)
    billed = billed_uids(db, int(case.id))
    return [
        rec for uid, rec in _candidates(db, int(case.id)).items()
        if uid not in billed
    ]


def list_unbilled_for_invoice(db: Session,
                              invoice_id: int) -> List[UnbilledServiceRecord]:
    inv = get_invoice_or_404(db, invoice_id)
    return list_unbilled(db, int(inv.billing_case_id))


# ----------------------------
# import
# ----------------------------
def _record_problem(rec: UnbilledServiceRecord) -> Optional[str]:
    if not (rec.label or "").strip():
        return "Service has no label"
    if not is_finite(rec.amount) or D(rec.amount) < 0:
        return "Service amount is invalid"
    if not is_finite(rec.quantity) or D(rec.quantity) <= 0:
        return "Service quantity is invalid"
    if not is_finite(rec.tax_rate) or D(rec.tax_rate) < 0:
        return "Service tax rate is invalid"
    return None


def import_selected(
    db: Session,
    *,
    invoice_id: int,
    uids: Optional[Sequence[str]] = None,
    user_id: Optional[int] = None,
) -> Dict[str, object]:
    """
    Import unbilled services as CHARGE entries. uids=None imports all.

    Already billed uids are skipped, so retries are harmless. Unknown uids
    and invalid records are collected; when any exist PartialImportError is
    raised after the good ones were added (caller commits them).
    """
    inv = lock_invoice(db, invoice_id)
    require_editable(inv)
    case_id = int(inv.billing_case_id)

    candidates = _candidates(db, case_id)
    billed = billed_uids(db, case_id)

    if uids is None:
        wanted = [u for u in candidates if u not in billed]
    else:
        wanted = list(dict.fromkeys((u or "").strip() for u in uids))

    imported: List[str] = []
    skipped: List[str] = []
    failed: Dict[str, str] = {}
    items: List[InvoiceItem] = []

    for uid in wanted:
        if uid in billed:
            skipped.append(uid)
            continue
        rec = candidates.get(uid)
        if rec is None:
            failed[uid] = "Unknown or unavailable service"
            continue
        problem = _record_problem(rec)
        if problem:
            failed[uid] = problem
            continue

        amounts = compute_line_amounts(rec.quantity, rec.amount, rec.tax_rate)
        it = append_entry(
            db,
            inv,
            entry_kind=EntryKind.CHARGE,
            service_type=rec.source_type,
            service_ref_id=int(rec.source_id),
            service_uid=uid,
            description=rec.label.strip()[:300],
            quantity=D(rec.quantity),
            unit_price=money2(rec.amount),
            tax_rate=D(rec.tax_rate),
            tax_amount=amounts["tax_amount"],
            line_total=amounts["line_total"],
            created_by=user_id,
        )
        billed.add(uid)
        imported.append(uid)
        items.append(it)

    recompute_totals(db, inv)

    if imported:
        log_action(db, "Invoice", int(inv.id), "IMPORT_UNBILLED", user_id,
                   new={"uids": imported})
        logger.info("Imported %d unbilled service(s) into %s", len(imported),
                    inv.invoice_number)

    if failed:
        logger.warning("Unbilled import into %s failed for %s",
                       inv.invoice_number, sorted(failed))
        raise PartialImportError(imported=imported,
                                 skipped=skipped,
                                 failed=failed)

    return {"imported": imported, "skipped": skipped, "items": items}
