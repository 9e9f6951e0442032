# FILE: hims_billing/services/billing_discount.py
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from hims_billing.core.errors import ValidationError, ZeroAmountError
from hims_billing.models.billing import EntryKind, InvoiceItem
from hims_billing.services.billing_audit import log_action
from hims_billing.services.billing_math import D, D0, D100, is_finite, money2, percent_of
from hims_billing.services.billing_service import (
    append_entry,
    lock_invoice,
    recompute_totals,
    require_editable,
)

logger = logging.getLogger(__name__)


def apply_percent_discount(
    db: Session,
    *,
    invoice_id: int,
    percent: Any,
    remarks: Optional[str] = None,
    authorized_by: Optional[int] = None,
    user_id: Optional[int] = None,
) -> InvoiceItem:
    """
    Header discount as its own negative DISCOUNT entry.

    The amount is taken on the invoice's current gross, so a second
    discount compounds on what the first one left (10% then 10% = 19%).
    """
    if not is_finite(percent):
        raise ValidationError("Discount percent must be a number")
    pct = D(percent)
    if pct <= 0 or pct > D100:
        raise ValidationError("Discount percent must be > 0 and <= 100")

    inv = lock_invoice(db, invoice_id)
    require_editable(inv)
    recompute_totals(db, inv)

    gross = D(inv.gross_total)
    if gross <= 0:
        raise ZeroAmountError("Invoice total is 0; nothing to discount")

    amount = percent_of(gross, pct)
    if amount > gross:
        amount = gross

    it = append_entry(
        db,
        inv,
        entry_kind=EntryKind.DISCOUNT,
        service_type="manual",
        description=f"Discount @ {money2(pct)}%",
        quantity=D("1"),
        unit_price=money2(D0 - amount),
        tax_rate=D0,
        tax_amount=D0,
        line_total=money2(D0 - amount),
        discount_percent=pct,
        remarks=(remarks or "").strip()[:255] or None,
        authorized_by=authorized_by,
        created_by=user_id,
    )
    recompute_totals(db, inv)

    log_action(db, "Invoice", int(inv.id), "DISCOUNT", user_id,
               new={"percent": str(pct), "amount": str(amount),
                    "authorized_by": authorized_by},
               reason=remarks or "")
    logger.info("Discount %s%% (%s) applied on invoice %s", pct, amount,
                inv.invoice_number)
    return it


def add_tax_adjustment(
    db: Session,
    *,
    invoice_id: int,
    amount: Any,
    reason: str,
    user_id: Optional[int] = None,
) -> InvoiceItem:
    """Signed tax-only correction (rounding, GST slab changes ...)."""
    if not is_finite(amount):
        raise ValidationError("Tax adjustment must be a number")
    amt = money2(amount)
    if amt == 0:
        raise ZeroAmountError("Tax adjustment cannot be 0")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Reason is required for a tax adjustment")

    inv = lock_invoice(db, invoice_id)
    require_editable(inv)

    it = append_entry(
        db,
        inv,
        entry_kind=EntryKind.TAX_ADJUSTMENT,
        service_type="manual",
        description=f"Tax adjustment: {reason}"[:300],
        quantity=D("1"),
        unit_price=D0,
        tax_rate=D0,
        tax_amount=amt,
        line_total=amt,
        remarks=reason[:255],
        created_by=user_id,
    )
    recompute_totals(db, inv)

    log_action(db, "Invoice", int(inv.id), "TAX_ADJUSTMENT", user_id,
               new={"amount": str(amt)}, reason=reason)
    return it
