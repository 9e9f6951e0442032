# hims_billing/api/router.py
from fastapi import APIRouter

from hims_billing.api import (
    routes_billing,
    routes_billing_advances,
    routes_billing_insurance,
    routes_billing_payments,
)

api_router = APIRouter()

# Billing
api_router.include_router(routes_billing.router)
api_router.include_router(routes_billing_payments.router)
api_router.include_router(routes_billing_advances.router)
api_router.include_router(routes_billing_insurance.router)
