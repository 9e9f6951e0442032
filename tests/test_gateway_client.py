import threading
from unittest.mock import MagicMock

import pytest
import requests

from hims_billing.client.gateway import (
    BillingGateway,
    error_message,
    filename_from_disposition,
    is_canceled_error,
)
from hims_billing.core.errors import (
    AlreadyVoidedError,
    CanceledError,
    ConflictError,
    InsufficientAdvanceError,
    NotFoundError,
    PartialImportError,
    TransportError,
    ValidationError,
)


def _resp(status=200, body=None, headers=None, content=b""):
    r = MagicMock()
    r.status_code = status
    r.headers = headers or {}
    r.content = content
    if body is None:
        r.json.side_effect = ValueError("no json")
    else:
        r.json.return_value = body
    return r


def _ok(data, status=200):
    return _resp(status, {"ok": True, "status": True, "data": data})


def _fail(status, msg, code=None, details=None, data=None):
    error = {"msg": msg}
    if code:
        error["code"] = code
    if details is not None:
        error["details"] = details
    return _resp(status, {"ok": False, "status": False, "data": data, "error": error, "message": msg})


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


@pytest.fixture
def gw(session):
    return BillingGateway("http://billing.local/api/", user_id=7, session=session,
                          max_retries=2, retry_backoff=0)


class TestEnvelope:
    def test_unwraps_data(self, gw, session):
        session.request.return_value = _ok({"id": 3})
        assert gw.get_invoice(3) == {"id": 3}
        method, url = session.request.call_args.args
        assert (method, url) == ("GET", "http://billing.local/api/billing/invoices/3")
        assert session.headers["X-User-Id"] == "7"

    def test_plain_json_passes_through(self, gw, session):
        session.request.return_value = _resp(200, [{"id": 1}])
        assert gw.list_advances(1) == [{"id": 1}]

    @pytest.mark.parametrize("code, exc", [
        ("ALREADY_VOIDED", AlreadyVoidedError),
        ("INSUFFICIENT_ADVANCE", InsufficientAdvanceError),
        ("NOT_FOUND", NotFoundError),
    ])
    def test_error_by_code(self, gw, session, code, exc):
        session.request.return_value = _fail(409, "nope", code)
        with pytest.raises(exc) as ei:
            gw.approve_invoice(1)
        assert ei.value.message == "nope"
        assert ei.value.domain_code == code

    @pytest.mark.parametrize("status, exc", [
        (404, NotFoundError),
        (409, ConflictError),
        (422, ValidationError),
    ])
    def test_error_by_status(self, gw, session, status, exc):
        session.request.return_value = _fail(status, "bad")
        with pytest.raises(exc) as ei:
            gw.get_case(1)
        assert ei.value.http_status == status

    def test_partial_import(self, gw, session):
        session.request.return_value = _fail(
            207, "1 record(s) could not be imported", "PARTIAL_IMPORT",
            details=[{"uid": "lab:9", "msg": "Unknown or unavailable service"}],
            data={"imported": ["lab:1"], "skipped": []})
        with pytest.raises(PartialImportError) as ei:
            gw.import_selected(5, ["lab:1", "lab:9"])
        assert ei.value.imported == ["lab:1"]
        assert ei.value.failed == {"lab:9": "Unknown or unavailable service"}

    def test_message_fallback_order(self):
        assert error_message({"msg": "top", "error": {"msg": "inner"}}) == "top"
        assert error_message({"error": {"msg": "inner"}}) == "inner"
        assert error_message({"error": {"details": [{"msg": "first"}]}}) == "first"
        assert error_message(None, "fallback") == "fallback"


class TestInsuranceReads:
    def test_not_configured_is_none(self, gw, session):
        session.request.return_value = _fail(404, "Insurance is not configured", "NOT_CONFIGURED")
        assert gw.get_insurance(1) is None

    def test_conflict_is_empty(self, gw, session):
        session.request.return_value = _fail(409, "Insurance required", "INVALID_STATE")
        assert gw.insurance_lines(1) == []
        assert gw.list_claims(1) == []

    def test_other_errors_propagate(self, gw, session):
        session.request.return_value = _fail(404, "Billing case not found", "NOT_FOUND")
        with pytest.raises(NotFoundError):
            gw.list_preauths(1)

    def test_unknown_actions(self, gw, session):
        with pytest.raises(ValidationError):
            gw.decide_preauth(1, "escalate")
        with pytest.raises(ValidationError):
            gw.claim_action(1, "reopen")
        session.request.assert_not_called()


class TestVoidLineFallback:
    def test_405_uses_flat_route(self, gw, session):
        session.request.side_effect = [_resp(405, {"detail": "Method Not Allowed"}), _ok({"id": 1})]
        assert gw.void_line(1, 9, "dup") == {"id": 1}
        urls = [c.args[1] for c in session.request.call_args_list]
        assert urls[1].endswith("/billing/lines/9")
        assert session.request.call_args.kwargs["params"] == {"reason": "dup"}

    def test_routing_404_uses_flat_route(self, gw, session):
        session.request.side_effect = [_fail(404, "Not Found"), _ok({"id": 1})]
        assert gw.void_line(1, 9, "dup") == {"id": 1}
        assert session.request.call_count == 2

    def test_domain_404_is_final(self, gw, session):
        session.request.return_value = _fail(404, "Invoice line not found", "NOT_FOUND")
        with pytest.raises(NotFoundError):
            gw.void_line(1, 9, "dup")
        assert session.request.call_count == 1


class TestPayments:
    def test_query_params_and_key(self, gw, session):
        session.request.return_value = _ok({"created": True}, 201)
        gw.add_payment(4, invoice_id=10, amount="250.00", mode="upi", idempotency_key="k-9")
        kw = session.request.call_args.kwargs
        assert kw["params"] == {"invoice_id": 10, "amount": "250.00", "mode": "upi"}
        assert kw["headers"] == {"Idempotency-Key": "k-9"}
        assert kw["json"] is None

    def test_retries_with_key(self, gw, session):
        session.request.side_effect = [requests.ConnectionError("down"), _ok({"created": False})]
        assert gw.add_payment(4, invoice_id=10, amount=1, idempotency_key="k-1") == {"created": False}
        assert session.request.call_count == 2

    def test_no_retry_without_key(self, gw, session):
        session.request.side_effect = requests.ConnectionError("down")
        with pytest.raises(TransportError):
            gw.add_payment(4, invoice_id=10, amount=1)
        assert session.request.call_count == 1

    def test_server_error_exhausts_retries(self, gw, session):
        session.request.return_value = _fail(503, "busy")
        with pytest.raises(TransportError):
            gw.add_payment(4, invoice_id=10, amount=1, idempotency_key="k-2")
        assert session.request.call_count == 3

    def test_bulk_legs_as_json(self, gw, session):
        session.request.return_value = _ok({"payments": [], "invoice": {}}, 201)
        gw.add_payments_bulk(10, [{"amount": 600, "mode": "cash"},
                                  {"amount": "400.50", "mode": "upi", "reference_no": "UTR1"}])
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "http://billing.local/api/billing/invoices/10/payments/bulk")
        assert session.request.call_args.kwargs["json"] == {"payments": [
            {"amount": "600", "mode": "cash"},
            {"amount": "400.50", "mode": "upi", "reference_no": "UTR1"},
        ]}

    def test_bulk_rejection_carries_details(self, gw, session):
        details = [{"field": "payments.1.mode", "msg": "Invalid payment mode"}]
        session.request.return_value = _fail(400, "Invalid payment mode", "VALIDATION_ERROR", details)
        with pytest.raises(ValidationError) as ei:
            gw.add_payments_bulk(10, [{"amount": 1, "mode": "cash"}, {"amount": 1, "mode": "barter"}])
        assert ei.value.details == details
        assert session.request.call_count == 1


class TestInvoiceList:
    def test_filters_as_params(self, gw, session):
        session.request.return_value = _ok([{"id": 1, "invoice_type": "INSURER"}])
        assert gw.list_invoices(5, invoice_type="INSURER") == [{"id": 1, "invoice_type": "INSURER"}]
        method, url = session.request.call_args.args
        assert (method, url) == ("GET", "http://billing.local/api/billing/cases/5/invoices")
        assert session.request.call_args.kwargs["params"] == {"invoice_type": "INSURER"}

    def test_empty_case(self, gw, session):
        session.request.return_value = _ok(None)
        assert gw.list_invoices(5) == []
        assert session.request.call_args.kwargs["params"] is None

class TestCancel:
    def test_canceled_before_send(self, gw, session):
        ev = threading.Event()
        ev.set()
        with pytest.raises(CanceledError) as ei:
            gw.get_case(1, cancel_event=ev)
        assert is_canceled_error(ei.value)
        session.request.assert_not_called()

    def test_other_errors_are_not_canceled(self):
        assert not is_canceled_error(TransportError("x"))


class TestDownload:
    def test_filename_star_wins(self):
        header = "attachment; filename=\"plain.pdf\"; filename*=UTF-8''inv%20%E2%82%B9.pdf"
        assert filename_from_disposition(header) == "inv ₹.pdf"

    def test_plain_filename(self):
        assert filename_from_disposition('attachment; filename="INV0001.pdf"') == "INV0001.pdf"
        assert filename_from_disposition(None) is None

    def test_fallback_name(self, gw, session):
        session.request.return_value = _resp(200, headers={"Content-Type": "application/pdf"},
                                             content=b"%PDF")
        content, name = gw.download("/billing/invoices/1/print", default_stem="invoice")
        assert content == b"%PDF"
        assert name.startswith("invoice-") and name.endswith(".pdf")
