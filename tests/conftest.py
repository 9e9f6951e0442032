import os

os.environ.setdefault("DATABASE_URL", "sqlite://")


import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from hims_billing.api.deps import get_db  # noqa: E402
from hims_billing.db.init_db import init_db  # noqa: E402
from hims_billing.main import app  # noqa: E402
from hims_billing.models.billing import EncounterType  # noqa: E402
from hims_billing.services.billing_case_service import get_or_create_billing_case  # noqa: E402
from hims_billing.services.billing_service import add_manual_item, create_invoice  # noqa: E402


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def case(db):
    return get_or_create_billing_case(db,
                                      patient_id=1001,
                                      encounter_type=EncounterType.IP,
                                      encounter_id=501,
                                      user_id=1)


@pytest.fixture
def invoice(db, case):
    return create_invoice(db, billing_case_id=case.id, user_id=1)


@pytest.fixture
def add_line(db):
    """add_line(inv, qty, price, tax=0, service_type="manual")"""

    def _add(inv, qty, unit_price, tax_rate=0, service_type="manual", description="Consultation"):
        return add_manual_item(db,
                               invoice_id=inv.id,
                               description=description,
                               qty=qty,
                               unit_price=unit_price,
                               tax_rate=tax_rate,
                               user_id=1,
                               service_type=service_type)

    return _add
