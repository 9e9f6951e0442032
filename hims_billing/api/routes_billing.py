# FILE: hims_billing/api/routes_billing.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from hims_billing.api.deps import current_user_id, get_db
from hims_billing.core.errors import PartialImportError
from hims_billing.models.billing import BillingCase, Invoice, InvoiceType
from hims_billing.schemas.billing import (
    BillingCaseCreate,
    BillingCaseOut,
    CaseFinancialsOut,
    DiscountIn,
    InvoiceCreate,
    InvoiceItemOut,
    InvoiceOut,
    InvoiceVoidIn,
    RenderedServiceIn,
    RenderedServiceOut,
    TaxAdjustmentIn,
    UnbilledBulkAddIn,
    UnbilledImportOut,
    UnbilledServiceOut,
)
from hims_billing.services.billing_case_service import (
    case_financials,
    get_case_or_404,
    get_or_create_billing_case,
)
from hims_billing.services.billing_discount import (
    add_tax_adjustment,
    apply_percent_discount,
)
from hims_billing.services.billing_hooks import record_rendered_service
from hims_billing.services.billing_service import (
    add_manual_item,
    approve_invoice,
    create_invoice,
    get_invoice_or_404,
    list_invoices,
    post_invoice,
    void_invoice,
    void_item,
    void_item_by_id,
)
from hims_billing.services.billing_unbilled import (
    import_selected,
    list_unbilled,
    list_unbilled_for_invoice,
)
from hims_billing.utils.resp import ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def _case_out(case: BillingCase) -> BillingCaseOut:
    return BillingCaseOut.model_validate(case)


def _invoice_out(inv: Invoice) -> InvoiceOut:
    return InvoiceOut.model_validate(inv)


def _commit_refresh_out(db: Session, obj: Any, out_fn):
    try:
        db.commit()
        db.refresh(obj)
        return out_fn(obj)
    except Exception:
        db.rollback()
        raise


def _invoice_response(db: Session, invoice_id: int):
    inv = get_invoice_or_404(db, invoice_id)
    return ok(_commit_refresh_out(db, inv, _invoice_out))


# ---------------------------------------------------------------------------
# Cases
# ---------------------------------------------------------------------------
@router.post("/cases")
def open_case(
    payload: BillingCaseCreate,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    case = get_or_create_billing_case(
        db,
        patient_id=payload.patient_id,
        encounter_type=payload.encounter_type,
        encounter_id=payload.encounter_id,
        user_id=user_id,
        remarks=payload.remarks,
    )
    return ok(_commit_refresh_out(db, case, _case_out), 201)


@router.get("/cases/{case_id}")
def get_case(case_id: int, db: Session = Depends(get_db)):
    return ok(_case_out(get_case_or_404(db, case_id)))


@router.get("/cases/{case_id}/financials")
def get_case_financials(case_id: int, db: Session = Depends(get_db)):
    return ok(CaseFinancialsOut(**case_financials(db, case_id)))


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------
@router.post("/cases/{case_id}/invoices")
def new_invoice(
    case_id: int,
    payload: Optional[InvoiceCreate] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or InvoiceCreate()
    inv = create_invoice(
        db,
        billing_case_id=case_id,
        billing_type=payload.billing_type,
        invoice_type=InvoiceType.STANDARD,
        user_id=user_id,
        remarks=payload.remarks,
    )
    return ok(_commit_refresh_out(db, inv, _invoice_out), 201)


@router.get("/cases/{case_id}/invoices")
def case_invoices(
    case_id: int,
    invoice_type: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    rows = list_invoices(db, case_id, invoice_type=invoice_type, status=status)
    return ok([_invoice_out(inv) for inv in rows])


@router.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: int, db: Session = Depends(get_db)):
    return ok(_invoice_out(get_invoice_or_404(db, invoice_id)))


@router.post("/invoices/{invoice_id}/approve")
def approve(
    invoice_id: int,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    inv = approve_invoice(db, invoice_id=invoice_id, user_id=user_id)
    return ok(_commit_refresh_out(db, inv, _invoice_out))


@router.post("/invoices/{invoice_id}/post")
def post(
    invoice_id: int,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    inv = post_invoice(db, invoice_id=invoice_id, user_id=user_id)
    return ok(_commit_refresh_out(db, inv, _invoice_out))


@router.post("/invoices/{invoice_id}/void")
def void(
    invoice_id: int,
    payload: Optional[InvoiceVoidIn] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or InvoiceVoidIn()
    inv = void_invoice(db,
                       invoice_id=invoice_id,
                       reason=payload.reason or "",
                       user_id=user_id)
    return ok(_commit_refresh_out(db, inv, _invoice_out))


# ---------------------------------------------------------------------------
# Lines / adjustments
# ---------------------------------------------------------------------------
@router.post("/invoices/{invoice_id}/lines/manual")
def add_manual_line(
    invoice_id: int,
    description: str = Query(...),
    qty: Decimal = Query(Decimal("1")),
    unit_price: Decimal = Query(...),
    tax_rate: Decimal = Query(Decimal("0")),
    service_type: str = Query("manual"),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    it = add_manual_item(
        db,
        invoice_id=invoice_id,
        description=description,
        qty=qty,
        unit_price=unit_price,
        tax_rate=tax_rate,
        user_id=user_id,
        service_type=service_type,
    )
    return ok(_commit_refresh_out(db, it, InvoiceItemOut.model_validate), 201)


@router.delete("/invoices/{invoice_id}/lines/{line_id}")
def delete_line(
    invoice_id: int,
    line_id: int,
    reason: str = Query(""),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    void_item(db,
              invoice_id=invoice_id,
              item_id=line_id,
              reason=reason,
              user_id=user_id)
    return _invoice_response(db, invoice_id)


@router.delete("/lines/{line_id}")
def delete_line_flat(
    line_id: int,
    reason: str = Query(""),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    it = void_item_by_id(db, item_id=line_id, reason=reason, user_id=user_id)
    return _invoice_response(db, int(it.invoice_id))


@router.post("/invoices/{invoice_id}/discount")
def discount(
    invoice_id: int,
    payload: DiscountIn,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    apply_percent_discount(
        db,
        invoice_id=invoice_id,
        percent=payload.percent,
        remarks=payload.remarks,
        authorized_by=payload.authorized_by,
        user_id=user_id,
    )
    return _invoice_response(db, invoice_id)


@router.post("/invoices/{invoice_id}/lines/tax-adjustment")
def tax_adjustment(
    invoice_id: int,
    payload: TaxAdjustmentIn,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    add_tax_adjustment(db,
                       invoice_id=invoice_id,
                       amount=payload.amount,
                       reason=payload.reason or "",
                       user_id=user_id)
    return _invoice_response(db, invoice_id)


# ---------------------------------------------------------------------------
# Unbilled services
# ---------------------------------------------------------------------------
@router.get("/invoices/{invoice_id}/unbilled")
def unbilled_for_invoice(invoice_id: int, db: Session = Depends(get_db)):
    rows = list_unbilled_for_invoice(db, invoice_id)
    return ok([UnbilledServiceOut(**r.as_dict()) for r in rows])


@router.get("/cases/{case_id}/unbilled")
def unbilled_for_case(case_id: int, db: Session = Depends(get_db)):
    rows = list_unbilled(db, case_id)
    return ok([UnbilledServiceOut(**r.as_dict()) for r in rows])


@router.post("/invoices/{invoice_id}/unbilled/bulk-add")
def unbilled_bulk_add(
    invoice_id: int,
    payload: Optional[UnbilledBulkAddIn] = Body(None),
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    payload = payload or UnbilledBulkAddIn()
    try:
        res = import_selected(db,
                              invoice_id=invoice_id,
                              uids=payload.uids,
                              user_id=user_id)
    except PartialImportError:
        # keep what did import; the handler reports the rest
        db.commit()
        raise
    db.commit()
    return ok(
        UnbilledImportOut(
            imported=res["imported"],
            skipped=res["skipped"],
            items=[InvoiceItemOut.model_validate(it) for it in res["items"]],
        ))


@router.post("/cases/{case_id}/rendered-services")
def rendered_service(
    case_id: int,
    payload: RenderedServiceIn,
    db: Session = Depends(get_db),
    user_id: Optional[int] = Depends(current_user_id),
):
    row = record_rendered_service(
        db,
        billing_case_id=case_id,
        source_type=payload.source_type,
        source_id=payload.source_id,
        label=payload.label,
        amount=payload.amount,
        quantity=payload.quantity,
        tax_rate=payload.tax_rate,
        user_id=user_id,
    )
    return ok(_commit_refresh_out(db, row, RenderedServiceOut.model_validate), 201)
