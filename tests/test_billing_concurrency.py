"""Two desks editing the same invoice: the second writer must lose."""
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from hims_billing.api.deps import get_db
from hims_billing.db.init_db import init_db
from hims_billing.main import app
from hims_billing.models.billing import DocStatus, EncounterType, Invoice
from hims_billing.services.billing_case_service import get_or_create_billing_case
from hims_billing.services.billing_payment_service import add_payment
from hims_billing.services.billing_service import add_manual_item, create_invoice

API = "/api/billing"


@pytest.fixture
def file_factory(tmp_path):
    # separate connections need a real file, an in-memory db is per connection
    eng = create_engine(f"sqlite:///{tmp_path / 'billing.db'}",
                        connect_args={"check_same_thread": False},
                        future=True)
    init_db(eng)
    yield sessionmaker(bind=eng, autocommit=False, autoflush=False, future=True)
    eng.dispose()


@pytest.fixture
def invoice_id(file_factory):
    s = file_factory()
    try:
        case = get_or_create_billing_case(s, patient_id=2002,
                                          encounter_type=EncounterType.OP,
                                          encounter_id=9, user_id=1)
        inv = create_invoice(s, billing_case_id=case.id, user_id=1)
        add_manual_item(s, invoice_id=inv.id, description="Consultation",
                        qty=1, unit_price=500, user_id=1)
        s.commit()
        return inv.id
    finally:
        s.close()


def _pay_elsewhere(file_factory, invoice_id, amount):
    s = file_factory()
    try:
        add_payment(s, invoice_id=invoice_id, amount=amount, mode="cash", user_id=2)
        s.commit()
    finally:
        s.close()


class TestOptimisticLock:
    def test_payment_bumps_version(self, file_factory, invoice_id):
        s = file_factory()
        try:
            before = s.get(Invoice, invoice_id).version
        finally:
            s.close()
        _pay_elsewhere(file_factory, invoice_id, 100)

        s = file_factory()
        try:
            inv = s.get(Invoice, invoice_id)
            assert inv.version > before
            assert inv.amount_paid == Decimal("100.00")
        finally:
            s.close()

    def test_stale_flush_raises(self, file_factory, invoice_id):
        desk_b = file_factory()
        try:
            stale = desk_b.get(Invoice, invoice_id)
            _pay_elsewhere(file_factory, invoice_id, 200)

            stale.remarks = "edited on desk B"
            with pytest.raises(StaleDataError):
                desk_b.flush()
            desk_b.rollback()
        finally:
            desk_b.close()

        s = file_factory()
        try:
            inv = s.get(Invoice, invoice_id)
            assert inv.remarks is None
            assert inv.amount_paid == Decimal("200.00")
        finally:
            s.close()

    def test_stale_write_is_409_conflict(self, file_factory, invoice_id):
        desk_b = file_factory()

        def override_get_db():
            yield desk_b

        stale = desk_b.get(Invoice, invoice_id)
        assert stale.status == DocStatus.DRAFT
        _pay_elsewhere(file_factory, invoice_id, 300)

        app.dependency_overrides[get_db] = override_get_db
        try:
            with TestClient(app) as client:
                r = client.post(f"{API}/invoices/{invoice_id}/approve")
        finally:
            app.dependency_overrides.clear()
            desk_b.rollback()
            desk_b.close()

        assert r.status_code == 409
        body = r.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "CONFLICT"

        s = file_factory()
        try:
            inv = s.get(Invoice, invoice_id)
            assert inv.status == DocStatus.DRAFT
            assert inv.amount_paid == Decimal("300.00")
        finally:
            s.close()
