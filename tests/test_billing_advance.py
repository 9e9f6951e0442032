from decimal import Decimal

import pytest

from hims_billing.core.errors import (
    InsufficientAdvanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hims_billing.models.billing import AdvanceAdjustment
from hims_billing.services.billing_advance import apply_advance, list_advances, record_advance
from hims_billing.services.billing_case_service import case_financials
from hims_billing.services.billing_service import void_invoice


@pytest.fixture
def billed(invoice, add_line):
    add_line(invoice, 1, 1000)
    return invoice


class TestAdvance:
    def test_record_advance(self, db, case):
        adv = record_advance(db, billing_case_id=case.id, amount=500, mode="cash", user_id=1)
        assert adv.receipt_number.startswith("ADV")
        assert adv.balance_remaining == Decimal("500.00")
        assert [a.id for a in list_advances(db, case.id)] == [adv.id]

    def test_apply_then_insufficient(self, db, case, billed):
        """500 received, 300 applied leaves 200; a further 250 is refused."""
        adv = record_advance(db, billing_case_id=case.id, amount=500, mode="cash")
        apply_advance(db, billing_case_id=case.id, invoice_id=billed.id, amount=300)

        assert adv.balance_remaining == Decimal("200.00")
        assert billed.advance_applied == Decimal("300.00")
        assert billed.balance_due == Decimal("700.00")

        with pytest.raises(InsufficientAdvanceError):
            apply_advance(db, billing_case_id=case.id, invoice_id=billed.id, amount=250)
        assert adv.balance_remaining == Decimal("200.00")
        assert billed.balance_due == Decimal("700.00")

    def test_oldest_advance_first(self, db, case, billed):
        a1 = record_advance(db, billing_case_id=case.id, amount=100, mode="cash")
        a2 = record_advance(db, billing_case_id=case.id, amount=400, mode="upi")
        apply_advance(db, billing_case_id=case.id, invoice_id=billed.id, amount=250)

        assert a1.balance_remaining == Decimal("0.00")
        assert a2.balance_remaining == Decimal("250.00")
        rows = db.query(AdvanceAdjustment).order_by(AdvanceAdjustment.id).all()
        assert [r.amount_applied for r in rows] == [Decimal("100.00"), Decimal("150.00")]

    def test_specific_advance(self, db, case, billed):
        record_advance(db, billing_case_id=case.id, amount=100, mode="cash")
        a2 = record_advance(db, billing_case_id=case.id, amount=400, mode="upi")
        with pytest.raises(InsufficientAdvanceError):
            apply_advance(db, billing_case_id=case.id, invoice_id=billed.id,
                          amount=450, advance_id=a2.id)
        apply_advance(db, billing_case_id=case.id, invoice_id=billed.id,
                      amount=400, advance_id=a2.id)
        assert a2.balance_remaining == Decimal("0.00")

    def test_unknown_advance(self, db, case, billed):
        with pytest.raises(NotFoundError):
            apply_advance(db, billing_case_id=case.id, invoice_id=billed.id,
                          amount=10, advance_id=999)

    def test_void_invoice(self, db, case, billed):
        record_advance(db, billing_case_id=case.id, amount=500, mode="cash")
        void_invoice(db, invoice_id=billed.id, reason="dup", user_id=1)
        with pytest.raises(InvalidStateError):
            apply_advance(db, billing_case_id=case.id, invoice_id=billed.id, amount=10)

    @pytest.mark.parametrize("amount", [0, "-1", "x"])
    def test_amount_validation(self, db, case, amount):
        with pytest.raises(ValidationError):
            record_advance(db, billing_case_id=case.id, amount=amount, mode="cash")

    def test_financials_show_available_advance(self, db, case, billed):
        record_advance(db, billing_case_id=case.id, amount=500, mode="cash")
        apply_advance(db, billing_case_id=case.id, invoice_id=billed.id, amount=300)
        fin = case_financials(db, case.id)
        assert fin["advance_received"] == Decimal("500.00")
        assert fin["advance_available"] == Decimal("200.00")
        assert fin["advance_applied"] == Decimal("300.00")
        assert fin["balance_due"] == Decimal("700.00")
