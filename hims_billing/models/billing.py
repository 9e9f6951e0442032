# FILE: hims_billing/models/billing.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    DateTime,
    Enum,
    Index,
    ForeignKey,
    UniqueConstraint,
    Text,
    BigInteger,
    JSON,
)
from sqlalchemy.orm import relationship

from hims_billing.db.base import Base


# ----------------------------
# enums
# ----------------------------
class EncounterType(str, enum.Enum):
    OP = "OP"
    IP = "IP"


class CaseStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class BillingType(str, enum.Enum):
    OP = "OP"
    IP = "IP"
    PHARMACY = "PHARMACY"
    LAB = "LAB"
    RADIOLOGY = "RADIOLOGY"
    GENERAL = "GENERAL"


class InvoiceType(str, enum.Enum):
    STANDARD = "STANDARD"
    PATIENT = "PATIENT"
    INSURER = "INSURER"


class DocStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    POSTED = "POSTED"
    VOID = "VOID"


class EntryKind(str, enum.Enum):
    CHARGE = "CHARGE"
    DISCOUNT = "DISCOUNT"
    TAX_ADJUSTMENT = "TAX_ADJUSTMENT"


class NumberDocType(str, enum.Enum):
    CASE = "CASE"
    INVOICE = "INVOICE"
    RECEIPT = "RECEIPT"
    ADVANCE = "ADVANCE"


class NumberResetPeriod(str, enum.Enum):
    NONE = "NONE"
    YEAR = "YEAR"
    MONTH = "MONTH"


# lab | radiology | pharmacy | opd | ipd  (+ manual for hand-entered lines)
SERVICE_SOURCES = ("lab", "radiology", "pharmacy", "opd", "ipd")
PAY_MODES = ("cash", "card", "upi", "credit", "cheque", "neft")


class BillingNumberSeries(Base):
    """Document counters. Rows are read with SELECT ... FOR UPDATE."""
    __tablename__ = "billing_number_series"
    __table_args__ = (UniqueConstraint("doc_type",
                                       "prefix",
                                       "reset_period",
                                       name="uq_billing_number_series"), )

    id = Column(Integer, primary_key=True, index=True)
    doc_type = Column(Enum(NumberDocType, name="billing_number_doc_type"),
                      nullable=False)
    prefix = Column(String(16), nullable=False, default="")
    reset_period = Column(Enum(NumberResetPeriod,
                               name="billing_number_reset_period"),
                          nullable=False,
                          default=NumberResetPeriod.YEAR)
    padding = Column(Integer, nullable=False, default=6)
    next_number = Column(Integer, nullable=False, default=1)
    last_period_key = Column(String(10), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class BillingCase(Base):
    """
    One billing case per OP visit / IP admission.
    Owns invoices, advances and (optionally) the insurance case.
    """
    __tablename__ = "billing_cases"
    __table_args__ = (Index("ix_billing_cases_encounter", "encounter_type",
                            "encounter_id"), )

    id = Column(Integer, primary_key=True, index=True)
    case_number = Column(String(32), unique=True, index=True, nullable=False)

    patient_id = Column(Integer, nullable=False, index=True)
    encounter_type = Column(Enum(EncounterType,
                                 name="billing_encounter_type"),
                            nullable=False,
                            default=EncounterType.OP)
    encounter_id = Column(Integer, nullable=True)

    status = Column(Enum(CaseStatus, name="billing_case_status"),
                    nullable=False,
                    default=CaseStatus.OPEN)
    remarks = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    invoices = relationship(
        "Invoice",
        back_populates="case",
        order_by="Invoice.id",
    )
    advances = relationship(
        "Advance",
        back_populates="case",
        order_by="Advance.id",
    )
    insurance = relationship(
        "BillingInsuranceCase",
        back_populates="case",
        uselist=False,
    )


class Invoice(Base):
    """
    Invoice of a billing case.

    - billing_type: OP / IP / PHARMACY / LAB / RADIOLOGY / GENERAL
    - invoice_type: STANDARD, or PATIENT / INSURER when produced by an
      insurance split (split_from_invoice_id points at the voided original)
    - status: DRAFT -> APPROVED -> POSTED, VOID from any non-void status

    Totals are denormalized and rewritten by recompute_totals() after every
    mutation. balance_due is not clamped: negative means overpayment.
    """

    __tablename__ = "billing_invoices"
    __table_args__ = (Index("ix_billing_invoices_case_status",
                            "billing_case_id", "status"), )

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(32), unique=True, index=True, nullable=False)

    billing_case_id = Column(
        Integer,
        ForeignKey("billing_cases.id"),
        nullable=False,
        index=True,
    )
    patient_id = Column(Integer, nullable=False, index=True)

    billing_type = Column(Enum(BillingType, name="billing_type"),
                          nullable=False,
                          default=BillingType.GENERAL)
    invoice_type = Column(Enum(InvoiceType, name="billing_invoice_type"),
                          nullable=False,
                          default=InvoiceType.STANDARD)
    status = Column(Enum(DocStatus, name="billing_doc_status"),
                    nullable=False,
                    default=DocStatus.DRAFT)

    split_from_invoice_id = Column(Integer,
                                   ForeignKey("billing_invoices.id"),
                                   nullable=True,
                                   index=True)

    remarks = Column(Text, nullable=True)

    # Totals
    # gross_total = sum(line_total) of every non-voided entry (discounts included)
    gross_total = Column(Numeric(12, 2), nullable=False, default=0)
    tax_total = Column(Numeric(12, 2), nullable=False, default=0)
    # reporting only: sum of discount entries, as a positive number
    discount_total = Column(Numeric(12, 2), nullable=False, default=0)
    net_total = Column(Numeric(12, 2), nullable=False, default=0)

    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    advance_applied = Column(Numeric(12, 2), nullable=False, default=0)
    balance_due = Column(Numeric(12, 2), nullable=False, default=0)

    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(Integer, nullable=True)
    posted_at = Column(DateTime, nullable=True)
    posted_by = Column(Integer, nullable=True)

    void_reason = Column(String(255), nullable=True)
    voided_by = Column(Integer, nullable=True)
    voided_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    # optimistic lock
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    case = relationship("BillingCase", back_populates="invoices")
    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.seq",
    )
    payments = relationship(
        "Payment",
        back_populates="invoice",
        order_by="Payment.id",
    )
    advance_adjustments = relationship(
        "AdvanceAdjustment",
        back_populates="invoice",
        order_by="AdvanceAdjustment.id",
    )

    @property
    def is_void(self) -> bool:
        return self.status == DocStatus.VOID


class InvoiceItem(Base):
    """
    Tagged ledger entry. entry_kind decides how the row is treated:
      CHARGE          qty * unit_price + tax
      DISCOUNT        single negative row, tax 0
      TAX_ADJUSTMENT  signed tax-only row (tax_amount == line_total)
    """
    __tablename__ = "billing_invoice_items"
    __table_args__ = (
        Index("ix_billing_items_invoice", "invoice_id"),
        Index("ix_billing_items_service", "service_type", "service_ref_id"),
        Index("ix_billing_items_uid", "service_uid"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    # S.no order for UI/print
    seq = Column(Integer, nullable=False, default=1)

    entry_kind = Column(Enum(EntryKind, name="billing_entry_kind"),
                        nullable=False,
                        default=EntryKind.CHARGE)

    # lab | radiology | pharmacy | opd | ipd | manual
    service_type = Column(String(32), nullable=False, default="manual")
    service_ref_id = Column(BigInteger, nullable=True)
    # "<service_type>:<service_ref_id>" for imported services
    service_uid = Column(String(64), nullable=True)

    description = Column(String(300), nullable=False)

    quantity = Column(Numeric(10, 2), nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)

    # GST / tax in %
    tax_rate = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # qty * unit_price + tax_amount
    line_total = Column(Numeric(12, 2), nullable=False, default=0)

    # Discount entries
    discount_percent = Column(Numeric(10, 2), nullable=True)
    remarks = Column(String(255), nullable=True)
    authorized_by = Column(Integer, nullable=True)

    # Insurance overrides (NULL = follow coverage lines)
    is_covered = Column(Boolean, nullable=True)
    insurer_pay_amount = Column(Numeric(12, 2), nullable=True)
    requires_preauth = Column(Boolean, nullable=False, default=False)

    is_voided = Column(Boolean, nullable=False, default=False)

    # Audit for void action
    void_reason = Column(String(255), nullable=True)
    voided_by = Column(Integer, nullable=True)
    voided_at = Column(DateTime, nullable=True)

    meta_json = Column(JSON, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    invoice = relationship("Invoice", back_populates="items")


class Payment(Base):
    """
    Payments tagged to invoice.
    Supports multiple modes (split payments):
    - cash
    - card
    - upi
    - credit (credit provider)
    - cheque
    - neft (also used for insurer settlements)
    """

    __tablename__ = "billing_payments"
    __table_args__ = (
        Index("ix_billing_payments_invoice", "invoice_id"),
        UniqueConstraint("invoice_id",
                         "idempotency_key",
                         name="uq_billing_payment_idempotency"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    billing_case_id = Column(Integer,
                             ForeignKey("billing_cases.id"),
                             nullable=False,
                             index=True)

    receipt_number = Column(String(32), unique=True, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    mode = Column(String(32), nullable=False)
    reference_no = Column(String(100), nullable=True)
    notes = Column(String(255), nullable=True)
    idempotency_key = Column(String(100), nullable=True)
    paid_at = Column(DateTime, default=datetime.utcnow)

    meta_json = Column(JSON, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="payments")


class Advance(Base):
    """
    Patient advance payments (especially IP advance).
    These are NOT tied to a specific invoice directly.
    Instead, they are adjusted later using AdvanceAdjustment rows.
    """

    __tablename__ = "billing_advances"

    id = Column(Integer, primary_key=True, index=True)
    billing_case_id = Column(Integer,
                             ForeignKey("billing_cases.id"),
                             nullable=False,
                             index=True)
    receipt_number = Column(String(32), unique=True, nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    # only ever decreases, never below zero
    balance_remaining = Column(Numeric(12, 2), nullable=False)

    mode = Column(String(32), nullable=False)  # cash/card/upi/...
    reference_no = Column(String(100), nullable=True)
    remarks = Column(String(255), nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("BillingCase", back_populates="advances")
    adjustments = relationship(
        "AdvanceAdjustment",
        back_populates="advance",
        cascade="all, delete-orphan",
    )


class AdvanceAdjustment(Base):
    """
    Many-to-many between invoices and advance payments.
    Represents how much from a particular advance got applied to a particular invoice.
    """

    __tablename__ = "billing_advance_adjustments"
    __table_args__ = (
        Index("ix_billing_adv_adj_invoice", "invoice_id"),
        Index("ix_billing_adv_adj_advance", "advance_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    advance_id = Column(
        Integer,
        ForeignKey("billing_advances.id", ondelete="CASCADE"),
        nullable=False,
    )
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount_applied = Column(Numeric(12, 2), nullable=False)
    applied_at = Column(DateTime, default=datetime.utcnow)
    applied_by = Column(Integer, nullable=True)

    advance = relationship("Advance", back_populates="adjustments")
    invoice = relationship("Invoice", back_populates="advance_adjustments")


class RenderedService(Base):
    """
    Billable service pushed by a clinical module (lab order reported,
    radiology study done, pharmacy dispense, consult, bed day ...).
    Read back by the unbilled-service importer.
    """
    __tablename__ = "billing_rendered_services"
    __table_args__ = (UniqueConstraint("source_type",
                                       "source_id",
                                       name="uq_billing_rendered_source"), )

    id = Column(Integer, primary_key=True, index=True)
    billing_case_id = Column(Integer,
                             ForeignKey("billing_cases.id"),
                             nullable=False,
                             index=True)

    source_type = Column(String(32), nullable=False)
    source_id = Column(BigInteger, nullable=False)

    label = Column(String(300), nullable=False)
    quantity = Column(Numeric(10, 2), nullable=False, default=1)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(10, 2), nullable=False, default=0)

    rendered_at = Column(DateTime, default=datetime.utcnow)
    created_by = Column(Integer, nullable=True)

    @property
    def uid(self) -> str:
        return f"{self.source_type}:{self.source_id}"


class BillingAuditLog(Base):
    """Append-only. Every mutating billing action writes one row."""
    __tablename__ = "billing_audit_logs"
    __table_args__ = (Index("ix_billing_audit_entity", "entity_type",
                            "entity_id"), )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(50), nullable=False)
    user_id = Column(Integer, nullable=True)
    old_json = Column(JSON, nullable=True)
    new_json = Column(JSON, nullable=True)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
