# hims_billing/models/__init__.py
from .billing import (
    BillingCase,
    Invoice,
    InvoiceItem,
    Payment,
    Advance,
    AdvanceAdjustment,
    RenderedService,
    BillingAuditLog,
    BillingNumberSeries,
)
from .billing_insurance import (
    BillingInsuranceCase,
    BillingCoverageLine,
    BillingPreauthRequest,
    BillingClaim,
    BillingClaimInvoice,
    BillingWorkflowEvent,
)

__all__ = [
    "BillingCase",
    "Invoice",
    "InvoiceItem",
    "Payment",
    "Advance",
    "AdvanceAdjustment",
    "RenderedService",
    "BillingAuditLog",
    "BillingNumberSeries",
    "BillingInsuranceCase",
    "BillingCoverageLine",
    "BillingPreauthRequest",
    "BillingClaim",
    "BillingClaimInvoice",
    "BillingWorkflowEvent",
]
