# hims_billing/services/billing_numbers.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from hims_billing.core.errors import InvalidStateError
from hims_billing.models.billing import BillingNumberSeries, NumberDocType, NumberResetPeriod

logger = logging.getLogger(__name__)

# doc_type -> (default prefix, reset period, padding)
SERIES_DEFAULTS: Dict[NumberDocType, Tuple[str, NumberResetPeriod, int]] = {
    NumberDocType.CASE: ("BC", NumberResetPeriod.YEAR, 6),
    NumberDocType.INVOICE: ("INV", NumberResetPeriod.YEAR, 6),
    NumberDocType.RECEIPT: ("RCPT", NumberResetPeriod.MONTH, 5),
    NumberDocType.ADVANCE: ("ADV", NumberResetPeriod.MONTH, 5),
}


def period_key(when: datetime, reset: NumberResetPeriod) -> str:
    if reset == NumberResetPeriod.YEAR:
        return when.strftime("%Y")
    if reset == NumberResetPeriod.MONTH:
        return when.strftime("%Y%m")
    return ""


def _locked_series(db: Session, doc_type: NumberDocType, prefix: str,
                   reset: NumberResetPeriod, padding: int) -> BillingNumberSeries:
    row = (db.query(BillingNumberSeries).filter(
        BillingNumberSeries.doc_type == doc_type,
        BillingNumberSeries.prefix == prefix,
        BillingNumberSeries.reset_period == reset,
    ).with_for_update().one_or_none())
    if row is None:
        row = BillingNumberSeries(doc_type=doc_type,
                                  prefix=prefix,
                                  reset_period=reset,
                                  padding=padding,
                                  next_number=1,
                                  is_active=True)
        db.add(row)
        db.flush()
        logger.info("Started number series %s/%s", doc_type.value, prefix)
    return row


def next_billing_number(
    db: Session,
    *,
    doc_type: NumberDocType,
    prefix: Optional[str] = None,
) -> str:
    """
    Next document number, e.g. INV2026000042 or RCPT20261000007.

    The series row stays locked until the caller commits, so two desks
    never draw the same number. The counter restarts when the period
    (year or month) rolls over.
    """
    default_prefix, reset, padding = SERIES_DEFAULTS[doc_type]
    prefix = prefix or default_prefix
    row = _locked_series(db, doc_type, prefix, reset, padding)
    if not row.is_active:
        raise InvalidStateError(f"Number series {prefix} is disabled")

    pk = period_key(datetime.utcnow(), reset)
    if (row.last_period_key or "") != pk:
        row.last_period_key = pk or None
        row.next_number = 1

    seq = int(row.next_number or 1)
    row.next_number = seq + 1
    db.flush()
    return f"{prefix}{pk}{seq:0{int(row.padding or padding)}d}"
