# hims_billing/core/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class BillingError(RuntimeError):
    """
    Base for every domain failure raised by the billing services.

    Each subclass carries the HTTP status and a stable machine `code`
    so the API layer and the gateway client agree on the taxonomy.
    """

    status_code: int = 400
    code: str = "BILLING_ERROR"

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        self.details = details or []


class ValidationError(BillingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(BillingError):
    status_code = 404
    code = "NOT_FOUND"


class AlreadyVoidedError(BillingError):
    status_code = 409
    code = "ALREADY_VOIDED"


class InvalidTransitionError(BillingError):
    status_code = 409
    code = "INVALID_TRANSITION"


class InvalidStateError(BillingError):
    status_code = 409
    code = "INVALID_STATE"


class InsufficientAdvanceError(BillingError):
    status_code = 409
    code = "INSUFFICIENT_ADVANCE"


class ZeroAmountError(BillingError):
    status_code = 400
    code = "ZERO_AMOUNT"


class NotConfiguredError(BillingError):
    """Insurance (or another optional facet) was never set up for the case."""

    status_code = 404
    code = "NOT_CONFIGURED"


class ConflictError(BillingError):
    status_code = 409
    code = "CONFLICT"


class PartialImportError(BillingError):
    """Some unbilled records imported, others failed. Successes are kept."""

    status_code = 207
    code = "PARTIAL_IMPORT"

    def __init__(
        self,
        message: str = "",
        *,
        imported: Optional[List[str]] = None,
        skipped: Optional[List[str]] = None,
        failed: Optional[Dict[str, str]] = None,
    ):
        failed = failed or {}
        details = [{"uid": uid, "msg": msg} for uid, msg in failed.items()]
        super().__init__(
            message or f"{len(failed)} record(s) could not be imported",
            details=details,
        )
        self.imported = list(imported or [])
        self.skipped = list(skipped or [])
        self.failed = dict(failed)


# ---------- client side ----------
class CanceledError(BillingError):
    """Caller aborted the request. Never shown to the user as a failure."""

    status_code = 499
    code = "CANCELED"


class TransportError(BillingError):
    """Network failure or 5xx from the billing service; safe to retry."""

    status_code = 503
    code = "TRANSPORT_ERROR"


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        NotFoundError,
        AlreadyVoidedError,
        InvalidTransitionError,
        InvalidStateError,
        InsufficientAdvanceError,
        ZeroAmountError,
        NotConfiguredError,
        ConflictError,
        PartialImportError,
    )
}
