# FILE: hims_billing/client/gateway.py
"""
BillingGateway
--------------

Thin `requests` client for the billing API, used by other services
(OPD/IPD desks, pharmacy, the claim desk) and by tests.

    gw = BillingGateway("https://hims.example.com/api", user_id=7)
    case = gw.open_case(patient_id=1001, encounter_type="IP", encounter_id=55)
    inv = gw.create_invoice(case["id"], billing_type="IP")

Every call returns the unwrapped `data` of the {status, data} envelope or
raises a typed error from hims_billing.core.errors.
"""
from __future__ import annotations

import logging
import mimetypes
import re
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import requests

from hims_billing.core.config import settings
from hims_billing.core.errors import (
    ERRORS_BY_CODE,
    BillingError,
    CanceledError,
    ConflictError,
    NotConfiguredError,
    NotFoundError,
    PartialImportError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_FILENAME_STAR_RE = re.compile(r"filename\*\s*=\s*([^']*)'[^']*'([^;]+)", re.I)
_FILENAME_RE = re.compile(r'filename\s*=\s*"?([^";]+)"?', re.I)


def is_canceled_error(exc: BaseException) -> bool:
    """Callers use this to stay quiet when the user aborted the request."""
    return isinstance(exc, CanceledError)


def error_message(body: Any, fallback: str = "Request failed") -> str:
    if not isinstance(body, dict):
        return fallback
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    details = error.get("details") if isinstance(error.get("details"), list) else []
    first = details[0] if details and isinstance(details[0], dict) else {}
    return (body.get("msg") or error.get("msg") or first.get("msg") or fallback)


def filename_from_disposition(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    m = _FILENAME_STAR_RE.search(header)
    if m:
        charset = (m.group(1) or "utf-8").strip() or "utf-8"
        try:
            return unquote(m.group(2).strip().strip('"'), encoding=charset)
        except LookupError:
            return unquote(m.group(2).strip().strip('"'))
    m = _FILENAME_RE.search(header)
    if m:
        return m.group(1).strip()
    return None


def _fallback_filename(stem: str, content_type: Optional[str]) -> str:
    ctype = (content_type or "").split(";")[0].strip()
    ext = mimetypes.guess_extension(ctype) if ctype else None
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"{stem}-{stamp}{ext or '.bin'}"


def _error_from_response(status: int, body: Any) -> BillingError:
    msg = error_message(body)
    error = body.get("error") if isinstance(body, dict) and isinstance(body.get("error"), dict) else {}
    code = error.get("code")
    details = error.get("details") if isinstance(error.get("details"), list) else []

    if code == PartialImportError.code:
        data = body.get("data") or {}
        exc: BillingError = PartialImportError(
            msg,
            imported=data.get("imported") or [],
            skipped=data.get("skipped") or [],
            failed={str(d.get("uid")): str(d.get("msg")) for d in details if isinstance(d, dict)},
        )
    elif code in ERRORS_BY_CODE:
        exc = ERRORS_BY_CODE[code](msg, details=details)
    elif status >= 500:
        exc = TransportError(msg)
    elif status == 404:
        exc = NotFoundError(msg, details=details)
    elif status == 409:
        exc = ConflictError(msg, details=details)
    elif status in (400, 422):
        exc = ValidationError(msg, details=details)
    else:
        exc = BillingError(msg, details=details)
    exc.http_status = status
    exc.domain_code = code
    return exc


class BillingGateway:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        user_id: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: float = 0.3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.timeout = settings.GATEWAY_TIMEOUT if timeout is None else timeout
        self.max_retries = settings.GATEWAY_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = retry_backoff
        self.session = session or requests.Session()
        if user_id is not None:
            self.session.headers["X-User-Id"] = str(user_id)

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------
    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        retry: bool = False,
        cancel_event: Optional[threading.Event] = None,
        stream: bool = False,
    ) -> requests.Response:
        """
        One HTTP call. Network failures and 5xx become TransportError and are
        retried only when `retry` is set (calls guarded by an idempotency key).
        """
        attempts = 1 + (max(0, int(self.max_retries)) if retry else 0)
        clean = {k: v for k, v in (params or {}).items() if v is not None}

        last: Optional[TransportError] = None
        for attempt in range(attempts):
            if cancel_event is not None and cancel_event.is_set():
                raise CanceledError("Request canceled")
            try:
                resp = self.session.request(
                    method,
                    self._url(path),
                    params=clean or None,
                    json=json,
                    headers=headers,
                    timeout=self.timeout,
                    stream=stream,
                )
            except requests.RequestException as e:
                last = TransportError(f"Billing service unreachable: {e}")
            else:
                if resp.status_code < 500:
                    return resp
                last = _error_from_response(resp.status_code, self._json(resp))
                if not isinstance(last, TransportError):
                    raise last

            if attempt + 1 < attempts:
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning("%s %s failed (%s); retry %d/%d in %.1fs", method, path,
                               last.message, attempt + 1, attempts - 1, delay)
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise CanceledError("Request canceled")
                else:
                    time.sleep(delay)

        raise last

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    def _unwrap(self, resp: requests.Response) -> Any:
        body = self._json(resp)
        if isinstance(body, dict) and "status" in body and "data" in body:
            if body.get("status") is False:
                raise _error_from_response(resp.status_code, body)
            return body.get("data")
        if resp.status_code >= 400:
            raise _error_from_response(resp.status_code, body)
        return body

    def _call(self, method: str, path: str, **kw) -> Any:
        return self._unwrap(self._send(method, path, **kw))

    # ------------------------------------------------------------------
    # cases / invoices
    # ------------------------------------------------------------------
    def open_case(self, *, patient_id: int, encounter_type: str = "OP",
                  encounter_id: Optional[int] = None, remarks: Optional[str] = None, **kw):
        payload = {"patient_id": patient_id, "encounter_type": encounter_type,
                   "encounter_id": encounter_id, "remarks": remarks}
        return self._call("POST", "/billing/cases", json=payload, **kw)

    def get_case(self, case_id: int, **kw):
        return self._call("GET", f"/billing/cases/{case_id}", **kw)

    def case_financials(self, case_id: int, **kw):
        return self._call("GET", f"/billing/cases/{case_id}/financials", **kw)

    def create_invoice(self, case_id: int, *, billing_type: str = "GENERAL",
                       remarks: Optional[str] = None, **kw):
        return self._call("POST", f"/billing/cases/{case_id}/invoices",
                          json={"billing_type": billing_type, "remarks": remarks}, **kw)

    def list_invoices(self, case_id: int, *, invoice_type: Optional[str] = None,
                      status: Optional[str] = None, **kw) -> List[Dict[str, Any]]:
        params = {"invoice_type": invoice_type, "status": status}
        return self._call("GET", f"/billing/cases/{case_id}/invoices",
                          params=params, **kw) or []

    def get_invoice(self, invoice_id: int, **kw):
        return self._call("GET", f"/billing/invoices/{invoice_id}", **kw)

    def approve_invoice(self, invoice_id: int, **kw):
        return self._call("POST", f"/billing/invoices/{invoice_id}/approve", **kw)

    def post_invoice(self, invoice_id: int, **kw):
        return self._call("POST", f"/billing/invoices/{invoice_id}/post", **kw)

    def void_invoice(self, invoice_id: int, reason: str, **kw):
        return self._call("POST", f"/billing/invoices/{invoice_id}/void",
                          json={"reason": reason}, **kw)

    # ------------------------------------------------------------------
    # lines
    # ------------------------------------------------------------------
    def add_manual_line(self, invoice_id: int, *, description: str, qty: Any,
                        unit_price: Any, tax_rate: Any = 0, **kw):
        params = {"description": description, "qty": str(qty),
                  "unit_price": str(unit_price), "tax_rate": str(tax_rate)}
        return self._call("POST", f"/billing/invoices/{invoice_id}/lines/manual",
                          params=params, **kw)

    def void_line(self, invoice_id: int, line_id: int, reason: str, **kw):
        """
        Nested route first. Older deployments only expose DELETE
        /billing/lines/{id}; a 405 or a routing 404 (no domain code)
        falls back to it.
        """
        params = {"reason": reason}
        resp = self._send("DELETE", f"/billing/invoices/{invoice_id}/lines/{line_id}",
                          params=params, **kw)
        if resp.status_code == 405 or (resp.status_code == 404 and not self._domain_code(resp)):
            logger.info("Nested line route unavailable (%s); using flat route", resp.status_code)
            resp = self._send("DELETE", f"/billing/lines/{line_id}", params=params, **kw)
        return self._unwrap(resp)

    def _domain_code(self, resp: requests.Response) -> Optional[str]:
        body = self._json(resp)
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"].get("code")
        return None

    def apply_discount(self, invoice_id: int, percent: Any, *, remarks: Optional[str] = None,
                       authorized_by: Optional[int] = None, **kw):
        payload = {"percent": str(percent), "remarks": remarks, "authorized_by": authorized_by}
        return self._call("POST", f"/billing/invoices/{invoice_id}/discount", json=payload, **kw)

    def add_tax_adjustment(self, invoice_id: int, amount: Any, reason: str, **kw):
        return self._call("POST", f"/billing/invoices/{invoice_id}/lines/tax-adjustment",
                          json={"amount": str(amount), "reason": reason}, **kw)

    # ------------------------------------------------------------------
    # unbilled
    # ------------------------------------------------------------------
    def list_unbilled(self, invoice_id: int, **kw) -> List[Dict[str, Any]]:
        return self._call("GET", f"/billing/invoices/{invoice_id}/unbilled", **kw) or []

    def import_selected(self, invoice_id: int, uids: Optional[List[str]] = None, **kw):
        # already billed uids are skipped server side, so a retry is safe
        kw.setdefault("retry", True)
        return self._call("POST", f"/billing/invoices/{invoice_id}/unbilled/bulk-add",
                          json={"uids": uids}, **kw)

    def record_rendered_service(self, case_id: int, *, source_type: str, source_id: int,
                                label: str, amount: Any, quantity: Any = 1,
                                tax_rate: Any = 0, **kw):
        payload = {"source_type": source_type, "source_id": source_id, "label": label,
                   "amount": str(amount), "quantity": str(quantity), "tax_rate": str(tax_rate)}
        return self._call("POST", f"/billing/cases/{case_id}/rendered-services",
                          json=payload, **kw)

    # ------------------------------------------------------------------
    # payments / advances
    # ------------------------------------------------------------------
    def add_payment(self, case_id: int, *, invoice_id: int, amount: Any, mode: str = "cash",
                    reference_no: Optional[str] = None, notes: Optional[str] = None,
                    idempotency_key: Optional[str] = None, **kw):
        params = {"invoice_id": invoice_id, "amount": str(amount), "mode": mode,
                  "reference_no": reference_no, "notes": notes}
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        kw.setdefault("retry", bool(idempotency_key))
        return self._call("POST", f"/billing/cases/{case_id}/payments",
                          params=params, headers=headers, **kw)

    def add_payments_bulk(self, invoice_id: int, legs: List[Dict[str, Any]], **kw):
        """legs: [{amount, mode, reference_no?, notes?}, ...], all or nothing."""
        payments = [dict(leg, amount=str(leg["amount"])) for leg in legs]
        return self._call("POST", f"/billing/invoices/{invoice_id}/payments/bulk",
                          json={"payments": payments}, **kw)

    def delete_payment(self, invoice_id: int, payment_id: int, reason: Optional[str] = None, **kw):
        return self._call("DELETE", f"/billing/invoices/{invoice_id}/payments/{payment_id}",
                          params={"reason": reason}, **kw)

    def record_advance(self, case_id: int, *, amount: Any, mode: str = "cash",
                       reference_no: Optional[str] = None, remarks: Optional[str] = None, **kw):
        params = {"amount": str(amount), "mode": mode,
                  "reference_no": reference_no, "remarks": remarks}
        return self._call("POST", f"/billing/cases/{case_id}/advances", params=params, **kw)

    def list_advances(self, case_id: int, **kw):
        return self._call("GET", f"/billing/cases/{case_id}/advances", **kw) or []

    def apply_advance(self, case_id: int, *, invoice_id: int, amount: Any,
                      advance_id: Optional[int] = None, **kw):
        payload = {"invoice_id": invoice_id, "amount": str(amount), "advance_id": advance_id}
        return self._call("POST", f"/billing/cases/{case_id}/advances/apply", json=payload, **kw)

    # ------------------------------------------------------------------
    # insurance (reads soft-fail when not configured)
    # ------------------------------------------------------------------
    def _soft(self, fn, empty):
        try:
            return fn()
        except NotConfiguredError:
            return empty
        except BillingError as e:
            if getattr(e, "http_status", None) == 409:
                return empty
            raise

    def get_insurance(self, case_id: int, **kw) -> Optional[Dict[str, Any]]:
        return self._soft(lambda: self._call("GET", f"/billing/cases/{case_id}/insurance", **kw), None)

    def upsert_insurance(self, case_id: int, payload: Dict[str, Any], **kw):
        return self._call("PUT", f"/billing/cases/{case_id}/insurance", json=payload, **kw)

    def insurance_lines(self, case_id: int, **kw) -> List[Dict[str, Any]]:
        return self._soft(
            lambda: self._call("GET", f"/billing/cases/{case_id}/insurance/lines", **kw) or [], [])

    def patch_insurance_lines(self, case_id: int, patches: List[Dict[str, Any]], **kw):
        return self._call("PATCH", f"/billing/cases/{case_id}/insurance/lines", json=patches, **kw)

    def split_invoices(self, case_id: int, invoice_ids: List[int], *,
                       allow_paid_split: bool = False, **kw):
        return self._call("POST", f"/billing/cases/{case_id}/insurance/split",
                          params={"allow_paid_split": str(bool(allow_paid_split)).lower()},
                          json={"invoice_ids": list(invoice_ids)}, **kw)

    def list_preauths(self, case_id: int, **kw):
        return self._soft(lambda: self._call("GET", f"/billing/cases/{case_id}/preauths", **kw) or [], [])

    def create_preauth(self, case_id: int, requested_amount: Any, remarks: Optional[str] = None, **kw):
        return self._call("POST", f"/billing/cases/{case_id}/preauths",
                          json={"requested_amount": str(requested_amount), "remarks": remarks}, **kw)

    def submit_preauth(self, case_id: int, preauth_id: int, **kw):
        return self._call("POST", f"/billing/cases/{case_id}/preauths/{preauth_id}/submit", **kw)

    def decide_preauth(self, preauth_id: int, action: str, *, approved_amount: Any = None,
                       remarks: Optional[str] = None, **kw):
        if action not in ("approve", "partial", "reject"):
            raise ValidationError(f"Unknown preauth action '{action}'")
        payload = {"approved_amount": None if approved_amount is None else str(approved_amount),
                   "remarks": remarks}
        return self._call("POST", f"/billing/preauths/{preauth_id}/{action}", json=payload, **kw)

    def preauth_history(self, preauth_id: int, **kw):
        return self._call("GET", f"/billing/preauths/{preauth_id}/history", **kw) or []

    def list_claims(self, case_id: int, **kw):
        return self._soft(lambda: self._call("GET", f"/billing/cases/{case_id}/claims", **kw) or [], [])

    def create_claim(self, case_id: int, *, insurer_invoice_ids: Optional[List[int]] = None,
                     claim_amount: Any = None, remarks: Optional[str] = None, **kw):
        payload = {"insurer_invoice_ids": list(insurer_invoice_ids or []),
                   "claim_amount": None if claim_amount is None else str(claim_amount),
                   "remarks": remarks}
        return self._call("POST", f"/billing/cases/{case_id}/claims", json=payload, **kw)

    def claim_action(self, claim_id: int, action: str, *, approved_amount: Any = None,
                     settled_amount: Any = None, remarks: Optional[str] = None, **kw):
        if action not in ("submit", "query", "resubmit", "approve", "deny", "settle"):
            raise ValidationError(f"Unknown claim action '{action}'")
        payload = {
            "approved_amount": None if approved_amount is None else str(approved_amount),
            "settled_amount": None if settled_amount is None else str(settled_amount),
            "remarks": remarks,
        }
        return self._call("POST", f"/billing/claims/{claim_id}/{action}", json=payload, **kw)

    def claim_history(self, claim_id: int, **kw):
        return self._call("GET", f"/billing/claims/{claim_id}/history", **kw) or []

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------
    def download(self, path: str, *, default_stem: str = "document", **kw) -> Tuple[bytes, str]:
        """Fetch a binary document; returns (content, filename)."""
        resp = self._send("GET", path, **kw)
        if resp.status_code >= 400:
            raise _error_from_response(resp.status_code, self._json(resp))
        name = filename_from_disposition(resp.headers.get("Content-Disposition"))
        return resp.content, name or _fallback_filename(default_stem, resp.headers.get("Content-Type"))
