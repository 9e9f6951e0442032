# FILE: hims_billing/models/billing_insurance.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Enum,
    Index,
    ForeignKey,
    UniqueConstraint,
    Text,
)
from sqlalchemy.orm import relationship

from hims_billing.db.base import Base


class InsurancePayerKind(str, enum.Enum):
    INSURANCE = "INSURANCE"
    TPA = "TPA"
    CORPORATE = "CORPORATE"


class InsuranceStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    PREAUTH_SUBMITTED = "PREAUTH_SUBMITTED"
    PREAUTH_APPROVED = "PREAUTH_APPROVED"
    PREAUTH_PARTIAL = "PREAUTH_PARTIAL"
    PREAUTH_REJECTED = "PREAUTH_REJECTED"
    CLAIM_SUBMITTED = "CLAIM_SUBMITTED"
    CLAIM_APPROVED = "CLAIM_APPROVED"
    CLAIM_DENIED = "CLAIM_DENIED"
    SETTLED = "SETTLED"
    CLOSED = "CLOSED"


class PreauthStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    PARTIAL = "PARTIAL"
    REJECTED = "REJECTED"


class ClaimStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    QUERIED = "QUERIED"
    APPROVED = "APPROVED"
    SETTLED = "SETTLED"
    DENIED = "DENIED"


class BillingInsuranceCase(Base):
    """Payer details of a billing case. At most one per case."""
    __tablename__ = "billing_insurance_cases"

    id = Column(Integer, primary_key=True, index=True)
    billing_case_id = Column(Integer,
                             ForeignKey("billing_cases.id"),
                             nullable=False,
                             unique=True)

    payer_kind = Column(Enum(InsurancePayerKind,
                             name="billing_insurance_payer_kind"),
                        nullable=False,
                        default=InsurancePayerKind.INSURANCE)
    payer_id = Column(Integer, nullable=True)  # insurer / corporate
    tpa_id = Column(Integer, nullable=True)

    policy_no = Column(String(64), nullable=True)
    member_id = Column(String(64), nullable=True)
    plan_name = Column(String(120), nullable=True)

    status = Column(Enum(InsuranceStatus, name="billing_insurance_status"),
                    nullable=False,
                    default=InsuranceStatus.INITIATED)
    approved_limit = Column(Numeric(12, 2), nullable=False, default=0)
    approved_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    case = relationship("BillingCase", back_populates="insurance")
    coverage_lines = relationship(
        "BillingCoverageLine",
        back_populates="insurance_case",
        cascade="all, delete-orphan",
        order_by="BillingCoverageLine.id",
    )


class BillingCoverageLine(Base):
    """Coverage percent per service category (lab, pharmacy, ipd ...)."""
    __tablename__ = "billing_coverage_lines"
    __table_args__ = (UniqueConstraint("insurance_case_id",
                                       "category",
                                       name="uq_billing_coverage_category"), )

    id = Column(Integer, primary_key=True, index=True)
    insurance_case_id = Column(
        Integer,
        ForeignKey("billing_insurance_cases.id", ondelete="CASCADE"),
        nullable=False,
    )
    category = Column(String(32), nullable=False)
    coverage_percent = Column(Numeric(5, 2), nullable=False, default=0)

    insurance_case = relationship("BillingInsuranceCase",
                                  back_populates="coverage_lines")


class BillingPreauthRequest(Base):
    __tablename__ = "billing_preauth_requests"

    id = Column(Integer, primary_key=True, index=True)
    insurance_case_id = Column(Integer,
                               ForeignKey("billing_insurance_cases.id"),
                               nullable=False,
                               index=True)
    billing_case_id = Column(Integer,
                             ForeignKey("billing_cases.id"),
                             nullable=False,
                             index=True)

    requested_amount = Column(Numeric(12, 2), nullable=False)
    approved_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(Enum(PreauthStatus, name="billing_preauth_status"),
                    nullable=False,
                    default=PreauthStatus.DRAFT)
    remarks = Column(Text, nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class BillingClaim(Base):
    __tablename__ = "billing_claims"

    id = Column(Integer, primary_key=True, index=True)
    insurance_case_id = Column(Integer,
                               ForeignKey("billing_insurance_cases.id"),
                               nullable=False,
                               index=True)
    billing_case_id = Column(Integer,
                             ForeignKey("billing_cases.id"),
                             nullable=False,
                             index=True)

    claim_amount = Column(Numeric(12, 2), nullable=False)
    approved_amount = Column(Numeric(12, 2), nullable=False, default=0)
    settled_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(Enum(ClaimStatus, name="billing_claim_status"),
                    nullable=False,
                    default=ClaimStatus.DRAFT)
    remarks = Column(Text, nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    invoice_links = relationship(
        "BillingClaimInvoice",
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="BillingClaimInvoice.id",
    )

    @property
    def invoice_ids(self):
        return [int(x.invoice_id) for x in (self.invoice_links or [])]


class BillingClaimInvoice(Base):
    __tablename__ = "billing_claim_invoices"
    __table_args__ = (UniqueConstraint("claim_id",
                                       "invoice_id",
                                       name="uq_billing_claim_invoice"), )

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer,
                      ForeignKey("billing_claims.id", ondelete="CASCADE"),
                      nullable=False)
    invoice_id = Column(Integer,
                        ForeignKey("billing_invoices.id"),
                        nullable=False,
                        index=True)

    claim = relationship("BillingClaim", back_populates="invoice_links")
    invoice = relationship("Invoice")


class BillingWorkflowEvent(Base):
    """Append-only transition history for preauths and claims."""
    __tablename__ = "billing_workflow_events"
    __table_args__ = (Index("ix_billing_workflow_entity", "entity_type",
                            "entity_id"), )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(20), nullable=False)  # PREAUTH | CLAIM
    entity_id = Column(Integer, nullable=False)
    billing_case_id = Column(Integer, nullable=False, index=True)

    action = Column(String(30), nullable=False)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)
    remarks = Column(Text, nullable=True)

    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
