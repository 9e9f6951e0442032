from decimal import Decimal

import pytest

from hims_billing.core.errors import InvalidStateError, ValidationError, ZeroAmountError
from hims_billing.models.billing import EntryKind
from hims_billing.services.billing_discount import add_tax_adjustment, apply_percent_discount
from hims_billing.services.billing_service import void_invoice, void_item


class TestPercentDiscount:
    def test_discount_is_its_own_entry(self, db, invoice, add_line):
        add_line(invoice, 1, 1000)
        it = apply_percent_discount(db, invoice_id=invoice.id, percent=10,
                                    remarks="Staff", authorized_by=3, user_id=1)

        assert it.entry_kind == EntryKind.DISCOUNT
        assert it.line_total == Decimal("-100.00")
        assert it.discount_percent == Decimal("10")
        assert it.authorized_by == 3
        assert invoice.gross_total == Decimal("900.00")
        assert invoice.discount_total == Decimal("100.00")

    def test_second_discount_compounds(self, db, invoice, add_line):
        add_line(invoice, 1, 1000)
        apply_percent_discount(db, invoice_id=invoice.id, percent=10)
        apply_percent_discount(db, invoice_id=invoice.id, percent=10)

        assert invoice.discount_total == Decimal("190.00")
        assert invoice.net_total == Decimal("810.00")

    def test_voiding_discount_restores_total(self, db, invoice, add_line):
        add_line(invoice, 1, 500)
        disc = apply_percent_discount(db, invoice_id=invoice.id, percent=20)
        void_item(db, invoice_id=invoice.id, item_id=disc.id, reason="not approved")

        assert invoice.net_total == Decimal("500.00")
        assert invoice.discount_total == Decimal("0.00")

    @pytest.mark.parametrize("pct", [0, -5, "101", "nan"])
    def test_percent_range(self, db, invoice, add_line, pct):
        add_line(invoice, 1, 100)
        with pytest.raises(ValidationError):
            apply_percent_discount(db, invoice_id=invoice.id, percent=pct)

    def test_full_discount(self, db, invoice, add_line):
        add_line(invoice, 1, 100)
        apply_percent_discount(db, invoice_id=invoice.id, percent=100)
        assert invoice.net_total == Decimal("0.00")

    def test_nothing_to_discount(self, db, invoice):
        with pytest.raises(ZeroAmountError):
            apply_percent_discount(db, invoice_id=invoice.id, percent=10)

    def test_void_invoice_rejects_discount(self, db, invoice, add_line):
        add_line(invoice, 1, 100)
        void_invoice(db, invoice_id=invoice.id, reason="dup", user_id=1)
        with pytest.raises(InvalidStateError):
            apply_percent_discount(db, invoice_id=invoice.id, percent=10)


class TestTaxAdjustment:
    def test_adjustment_moves_tax_and_net(self, db, invoice, add_line):
        add_line(invoice, 1, 100, 18)
        it = add_tax_adjustment(db, invoice_id=invoice.id, amount="-0.40",
                                reason="GST rounding")

        assert it.entry_kind == EntryKind.TAX_ADJUSTMENT
        assert it.unit_price == Decimal("0.00")
        assert invoice.tax_total == Decimal("17.60")
        assert invoice.gross_total == Decimal("117.60")

    def test_zero_adjustment(self, db, invoice):
        with pytest.raises(ZeroAmountError):
            add_tax_adjustment(db, invoice_id=invoice.id, amount=0, reason="x")

    def test_reason_required(self, db, invoice):
        with pytest.raises(ValidationError):
            add_tax_adjustment(db, invoice_id=invoice.id, amount=5, reason="")
