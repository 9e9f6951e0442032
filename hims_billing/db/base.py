# hims_billing/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All billing tables inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from hims_billing.models import (  # noqa: F401
    billing,
    billing_insurance,
)
