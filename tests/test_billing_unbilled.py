from decimal import Decimal

import pytest

from hims_billing.core.errors import InvalidStateError, PartialImportError, ValidationError
from hims_billing.models.billing import InvoiceItem
from hims_billing.services.billing_case_service import get_or_create_billing_case
from hims_billing.services.billing_hooks import record_rendered_service
from hims_billing.services.billing_service import (
    approve_invoice,
    create_invoice,
    post_invoice,
    void_item,
)
from hims_billing.services.billing_unbilled import (
    import_selected,
    list_unbilled,
    list_unbilled_for_invoice,
    make_uid,
    registered_sources,
)


@pytest.fixture
def rendered(db, case):
    def _render(source_type, source_id, amount, label="Service", **kw):
        return record_rendered_service(db,
                                       billing_case_id=case.id,
                                       source_type=source_type,
                                       source_id=source_id,
                                       label=label,
                                       amount=amount,
                                       **kw)

    return _render


class TestRenderedServices:
    def test_uid_format(self):
        assert make_uid("lab", 42) == "lab:42"

    def test_every_source_has_a_feed(self):
        assert set(registered_sources()) == {"lab", "radiology", "pharmacy", "opd", "ipd"}

    def test_recording_is_idempotent(self, rendered):
        a = rendered("lab", 42, 350, label="CBC")
        b = rendered("lab", 42, 999, label="CBC again")
        assert a.id == b.id
        assert b.amount == Decimal("350.00")

    def test_unknown_source(self, rendered):
        with pytest.raises(ValidationError):
            rendered("canteen", 1, 10)

    def test_same_source_on_other_case(self, db, rendered):
        rendered("lab", 42, 350)
        other = get_or_create_billing_case(db, patient_id=2002)
        with pytest.raises(ValidationError):
            record_rendered_service(db, billing_case_id=other.id, source_type="lab",
                                    source_id=42, label="CBC", amount=350)


class TestUnbilledImport:
    def test_listed_until_imported(self, db, case, invoice, rendered):
        rendered("lab", 42, 350, label="CBC")
        rendered("radiology", 7, 1200, label="Chest X-ray", tax_rate=5)

        uids = [r.uid for r in list_unbilled(db, case.id)]
        assert uids == ["lab:42", "radiology:7"]

        res = import_selected(db, invoice_id=invoice.id, uids=["radiology:7"], user_id=1)
        assert res["imported"] == ["radiology:7"]
        assert [r.uid for r in list_unbilled_for_invoice(db, invoice.id)] == ["lab:42"]
        assert invoice.gross_total == Decimal("1260.00")

    def test_same_uid_imported_once(self, db, invoice, rendered):
        rendered("lab", 42, 350, label="CBC")

        first = import_selected(db, invoice_id=invoice.id, uids=["lab:42"])
        second = import_selected(db, invoice_id=invoice.id, uids=["lab:42"])

        assert first["imported"] == ["lab:42"]
        assert second["imported"] == []
        assert second["skipped"] == ["lab:42"]

        lines = db.query(InvoiceItem).filter(InvoiceItem.service_uid == "lab:42").all()
        assert len(lines) == 1
        assert lines[0].service_ref_id == 42
        assert lines[0].service_type == "lab"

    def test_not_reimported_into_another_invoice(self, db, case, invoice, rendered):
        rendered("lab", 42, 350)
        import_selected(db, invoice_id=invoice.id)
        other = create_invoice(db, billing_case_id=case.id)
        res = import_selected(db, invoice_id=other.id, uids=["lab:42"])
        assert res["skipped"] == ["lab:42"]

    def test_import_all(self, db, invoice, rendered):
        rendered("lab", 1, 100)
        rendered("pharmacy", 2, 50, quantity=2)
        res = import_selected(db, invoice_id=invoice.id, uids=None)
        assert sorted(res["imported"]) == ["lab:1", "pharmacy:2"]
        assert invoice.gross_total == Decimal("200.00")

    def test_voided_line_is_unbilled_again(self, db, case, invoice, rendered):
        rendered("opd", 9, 500, label="Consultation")
        res = import_selected(db, invoice_id=invoice.id)
        void_item(db, invoice_id=invoice.id, item_id=res["items"][0].id, reason="wrong")
        assert [r.uid for r in list_unbilled(db, case.id)] == ["opd:9"]

    def test_partial_import_keeps_successes(self, db, invoice, rendered):
        rendered("lab", 42, 350)
        with pytest.raises(PartialImportError) as ei:
            import_selected(db, invoice_id=invoice.id, uids=["lab:42", "lab:999"])

        err = ei.value
        assert err.imported == ["lab:42"]
        assert list(err.failed) == ["lab:999"]
        assert err.details == [{"uid": "lab:999", "msg": "Unknown or unavailable service"}]
        assert invoice.gross_total == Decimal("350.00")

    def test_posted_invoice_rejects_import(self, db, invoice, add_line, rendered):
        rendered("lab", 42, 350)
        add_line(invoice, 1, 10)
        approve_invoice(db, invoice_id=invoice.id, user_id=1)
        post_invoice(db, invoice_id=invoice.id, user_id=1)
        with pytest.raises(InvalidStateError):
            import_selected(db, invoice_id=invoice.id, uids=["lab:42"])
