from decimal import Decimal

import pytest

from hims_billing.core.config import settings
from hims_billing.core.errors import InvalidStateError, NotFoundError, ValidationError
from hims_billing.models.billing import BillingAuditLog, Payment
from hims_billing.services.billing_payment_service import (
    add_payment,
    add_payments_bulk,
    delete_payment,
    normalize_mode,
)
from hims_billing.services.billing_service import approve_invoice, void_invoice


@pytest.fixture
def billed(db, invoice, add_line):
    add_line(invoice, 1, 1000)
    approve_invoice(db, invoice_id=invoice.id, user_id=1)
    return invoice


class TestAddPayment:
    def test_payment_reduces_balance(self, db, billed):
        pay, created = add_payment(db, invoice_id=billed.id, amount=400, mode="UPI",
                                   reference_no="UTR123", user_id=1)
        assert created is True
        assert pay.mode == "upi"
        assert pay.receipt_number.startswith("RCPT")
        assert billed.amount_paid == Decimal("400.00")
        assert billed.balance_due == Decimal("600.00")

    def test_idempotency_key_replay(self, db, billed):
        first, c1 = add_payment(db, invoice_id=billed.id, amount=250, mode="cash",
                                idempotency_key="desk-7:abc")
        again, c2 = add_payment(db, invoice_id=billed.id, amount=250, mode="cash",
                                idempotency_key="desk-7:abc")

        assert (c1, c2) == (True, False)
        assert again.id == first.id
        assert db.query(Payment).filter(Payment.invoice_id == billed.id).count() == 1
        assert billed.balance_due == Decimal("750.00")

    def test_overpayment_goes_negative(self, db, billed):
        add_payment(db, invoice_id=billed.id, amount=1200, mode="card")
        assert billed.balance_due == Decimal("-200.00")

    @pytest.mark.parametrize("amount", [0, -10, "abc"])
    def test_amount_must_be_positive(self, db, billed, amount):
        with pytest.raises(ValidationError):
            add_payment(db, invoice_id=billed.id, amount=amount, mode="cash")

    def test_unknown_mode(self, db, billed):
        with pytest.raises(ValidationError):
            add_payment(db, invoice_id=billed.id, amount=10, mode="bitcoin")

    def test_void_invoice_takes_no_payment(self, db, billed):
        void_invoice(db, invoice_id=billed.id, reason="dup", user_id=1)
        with pytest.raises(InvalidStateError):
            add_payment(db, invoice_id=billed.id, amount=10, mode="cash")

    def test_draft_payment_flag(self, db, invoice, add_line, monkeypatch):
        add_line(invoice, 1, 100)
        monkeypatch.setattr(settings, "BILLING_ALLOW_DRAFT_PAYMENTS", False)
        with pytest.raises(InvalidStateError):
            add_payment(db, invoice_id=invoice.id, amount=10, mode="cash")

        monkeypatch.setattr(settings, "BILLING_ALLOW_DRAFT_PAYMENTS", True)
        _pay, created = add_payment(db, invoice_id=invoice.id, amount=10, mode="cash")
        assert created is True

    def test_mode_normalized(self):
        assert normalize_mode(" NEFT ") == "neft"


class TestDeletePayment:
    def test_delete_restores_balance(self, db, billed):
        pay, _ = add_payment(db, invoice_id=billed.id, amount=300, mode="cash")
        delete_payment(db, invoice_id=billed.id, payment_id=pay.id, reason="wrong invoice")
        assert billed.amount_paid == Decimal("0.00")
        assert billed.balance_due == Decimal("1000.00")

    def test_delete_unknown(self, db, billed):
        with pytest.raises(NotFoundError):
            delete_payment(db, invoice_id=billed.id, payment_id=404)


class TestBulkPayments:
    def test_split_tender(self, db, billed):
        inv, pays = add_payments_bulk(db, invoice_id=billed.id, user_id=1, legs=[
            {"amount": "600", "mode": "cash"},
            {"amount": 250.5, "mode": "UPI", "reference_no": " UTR9 "},
        ])
        assert inv is billed
        assert [(p.mode, p.amount) for p in pays] == [("cash", Decimal("600.00")),
                                                      ("upi", Decimal("250.50"))]
        assert pays[1].reference_no == "UTR9"
        assert len({p.receipt_number for p in pays}) == 2
        assert billed.amount_paid == Decimal("850.50")
        assert billed.balance_due == Decimal("149.50")

        audit = db.query(BillingAuditLog).filter(BillingAuditLog.action == "PAYMENTS_BULK").one()
        assert audit.entity_id == billed.id
        assert [p["mode"] for p in audit.new_json["payments"]] == ["cash", "upi"]

    def test_wrapped_payload(self, db, billed):
        _inv, pays = add_payments_bulk(db, invoice_id=billed.id,
                                       legs={"payments": [{"amount": 100}]})
        assert pays[0].mode == "cash"

    def test_one_bad_leg_writes_nothing(self, db, billed):
        with pytest.raises(ValidationError) as ei:
            add_payments_bulk(db, invoice_id=billed.id, legs=[
                {"amount": 500, "mode": "cash"},
                {"amount": 200, "mode": "barter"},
                {"amount": 0, "mode": "card"},
            ])
        assert [d["field"] for d in ei.value.details] == ["payments.1.mode", "payments.2.amount"]
        assert db.query(Payment).filter(Payment.invoice_id == billed.id).count() == 0
        assert billed.amount_paid == Decimal("0.00")
        assert billed.balance_due == Decimal("1000.00")

    def test_empty(self, db, billed):
        with pytest.raises(ValidationError):
            add_payments_bulk(db, invoice_id=billed.id, legs=[])

    def test_void_invoice(self, db, billed):
        void_invoice(db, invoice_id=billed.id, reason="dup", user_id=1)
        with pytest.raises(InvalidStateError):
            add_payments_bulk(db, invoice_id=billed.id, legs=[{"amount": 10, "mode": "cash"}])

    def test_unknown_invoice(self, db):
        with pytest.raises(NotFoundError):
            add_payments_bulk(db, invoice_id=4040, legs=[{"amount": 10, "mode": "cash"}])
