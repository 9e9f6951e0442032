from decimal import Decimal

import pytest

from hims_billing.core.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from hims_billing.models.billing import BillingAuditLog, DocStatus, Invoice, Payment
from hims_billing.models.billing_insurance import ClaimStatus, InsuranceStatus, PreauthStatus
from hims_billing.services.billing_insurance import (
    split_invoices_for_insurance,
    upsert_insurance_case,
)
from hims_billing.services.billing_workflows import (
    claim_approve,
    claim_deny,
    claim_history,
    claim_query,
    claim_ref,
    claim_resubmit,
    claim_settle,
    claim_submit,
    create_claim,
    create_preauth,
    list_claims,
    list_preauths,
    preauth_decide,
    preauth_history,
    preauth_ref,
    preauth_submit,
)


@pytest.fixture
def insured(db, case):
    return upsert_insurance_case(db, case.id, {
        "payer_kind": "TPA",
        "tpa_id": 4,
        "coverage_lines": [{"category": "lab", "coverage_percent": 80}],
    }, user_id=1)


@pytest.fixture
def insurer_invoice(db, case, invoice, add_line, insured):
    add_line(invoice, 1, 1000, service_type="lab")
    res = split_invoices_for_insurance(db, case.id, [invoice.id], user_id=1)["split"][0]
    return db.get(Invoice, res["insurer_invoice_id"])


@pytest.fixture
def submitted_preauth(db, case, insured):
    pr = create_preauth(db, case.id, requested_amount=50000, remarks="Appendectomy", user_id=1)
    preauth_submit(db, pr.id, user_id=1)
    return pr


class TestPreauth:
    def test_needs_insurance(self, db, case):
        with pytest.raises(InvalidStateError):
            create_preauth(db, case.id, requested_amount=100)

    def test_amount_must_be_positive(self, db, case, insured):
        with pytest.raises(ValidationError):
            create_preauth(db, case.id, requested_amount=0)

    def test_ref_and_listing(self, db, case, insured):
        pr = create_preauth(db, case.id, requested_amount=1000)
        assert preauth_ref(pr) == f"PA{pr.id:08d}"
        assert pr.status == PreauthStatus.DRAFT
        assert [p.id for p in list_preauths(db, case.id)] == [pr.id]

    def test_approve_defaults_to_requested(self, db, submitted_preauth, insured):
        preauth_decide(db, submitted_preauth.id, action="approve", user_id=2)
        assert submitted_preauth.status == PreauthStatus.APPROVED
        assert submitted_preauth.approved_amount == Decimal("50000.00")
        assert insured.approved_limit == Decimal("50000.00")
        assert insured.status == InsuranceStatus.PREAUTH_APPROVED

    def test_approve_above_requested(self, db, submitted_preauth):
        with pytest.raises(ValidationError):
            preauth_decide(db, submitted_preauth.id, action="approve", approved_amount=60000)

    def test_partial(self, db, submitted_preauth, insured):
        preauth_decide(db, submitted_preauth.id, action="partial", approved_amount=30000)
        assert submitted_preauth.status == PreauthStatus.PARTIAL
        assert insured.approved_limit == Decimal("30000.00")
        assert insured.status == InsuranceStatus.PREAUTH_PARTIAL

    def test_partial_must_be_less(self, db, submitted_preauth):
        with pytest.raises(ValidationError):
            preauth_decide(db, submitted_preauth.id, action="partial", approved_amount=50000)

    def test_reject(self, db, submitted_preauth, insured):
        preauth_decide(db, submitted_preauth.id, action="reject", remarks="Not covered")
        assert submitted_preauth.status == PreauthStatus.REJECTED
        assert submitted_preauth.approved_amount == Decimal("0.00")
        assert insured.status == InsuranceStatus.PREAUTH_REJECTED

    def test_decide_draft_preauth(self, db, case, insured):
        pr = create_preauth(db, case.id, requested_amount=1000)
        with pytest.raises(InvalidTransitionError):
            preauth_decide(db, pr.id, action="approve")

    def test_decision_is_final(self, db, submitted_preauth):
        preauth_decide(db, submitted_preauth.id, action="reject")
        with pytest.raises(InvalidTransitionError):
            preauth_decide(db, submitted_preauth.id, action="approve")
        with pytest.raises(InvalidTransitionError):
            preauth_submit(db, submitted_preauth.id, user_id=1)

    def test_submit_checks_case(self, db, case, insured):
        pr = create_preauth(db, case.id, requested_amount=1000)
        with pytest.raises(NotFoundError):
            preauth_submit(db, pr.id, user_id=1, billing_case_id=case.id + 1)

    def test_history(self, db, submitted_preauth):
        preauth_decide(db, submitted_preauth.id, action="partial", approved_amount=100, user_id=9)
        events = preauth_history(db, submitted_preauth.id)
        assert [e.action for e in events] == ["create", "submit", "partial"]
        assert [(e.from_status, e.to_status) for e in events] == [
            (None, "DRAFT"), ("DRAFT", "SUBMITTED"), ("SUBMITTED", "PARTIAL")
        ]
        assert events[-1].user_id == 9


class TestClaim:
    def test_amount_from_insurer_invoices(self, db, case, insurer_invoice):
        cl = create_claim(db, case.id, insurer_invoice_ids=[insurer_invoice.id])
        assert cl.claim_amount == Decimal("800.00")
        assert cl.invoice_ids == [insurer_invoice.id]
        assert claim_ref(cl) == f"CL{cl.id:08d}"
        assert [c.id for c in list_claims(db, case.id)] == [cl.id]

    def test_only_insurer_invoices(self, db, case, invoice, add_line, insured):
        add_line(invoice, 1, 100)
        with pytest.raises(ValidationError):
            create_claim(db, case.id, insurer_invoice_ids=[invoice.id])

    def test_manual_amount(self, db, case, insured):
        cl = create_claim(db, case.id, claim_amount="1234.5")
        assert cl.claim_amount == Decimal("1234.50")
        with pytest.raises(ValidationError):
            create_claim(db, case.id)

    def test_query_resubmit_approve_settle(self, db, case, insurer_invoice, insured):
        cl = create_claim(db, case.id, insurer_invoice_ids=[insurer_invoice.id])
        claim_submit(db, cl.id, user_id=1)
        assert insured.status == InsuranceStatus.CLAIM_SUBMITTED

        claim_query(db, cl.id, user_id=2, remarks="Need discharge summary")
        assert cl.status == ClaimStatus.QUERIED
        claim_resubmit(db, cl.id, user_id=1, remarks="Attached")
        assert cl.status == ClaimStatus.SUBMITTED

        claim_approve(db, cl.id, user_id=2, approved_amount=700)
        assert cl.status == ClaimStatus.APPROVED
        assert cl.approved_amount == Decimal("700.00")

        res = claim_settle(db, cl.id, user_id=3)
        assert cl.status == ClaimStatus.SETTLED
        assert cl.settled_amount == Decimal("700.00")
        assert insured.status == InsuranceStatus.SETTLED
        assert res["allocations"][0]["allocated"] == Decimal("700.00")

        # settlement credited the insurer invoice, the unsettled rest stays due
        assert insurer_invoice.amount_paid == Decimal("700.00")
        assert insurer_invoice.balance_due == Decimal("100.00")
        pay = db.query(Payment).filter(Payment.invoice_id == insurer_invoice.id).one()
        assert pay.mode == "neft"
        assert pay.idempotency_key == f"claim-settlement:{cl.id}"

        assert [e.action for e in claim_history(db, cl.id)] == [
            "create", "submit", "query", "resubmit", "approve", "settle"
        ]

    def test_approve_above_claim(self, db, case, insurer_invoice):
        cl = create_claim(db, case.id, insurer_invoice_ids=[insurer_invoice.id])
        claim_submit(db, cl.id, user_id=1)
        with pytest.raises(ValidationError):
            claim_approve(db, cl.id, user_id=1, approved_amount=900)

    def test_settle_above_approved(self, db, case, insurer_invoice):
        cl = create_claim(db, case.id, insurer_invoice_ids=[insurer_invoice.id])
        claim_submit(db, cl.id, user_id=1)
        claim_approve(db, cl.id, user_id=1, approved_amount=500)
        with pytest.raises(ValidationError):
            claim_settle(db, cl.id, user_id=1, settled_amount=600)

    def test_deny_from_queried(self, db, case, insurer_invoice, insured):
        cl = create_claim(db, case.id, insurer_invoice_ids=[insurer_invoice.id])
        claim_submit(db, cl.id, user_id=1)
        claim_query(db, cl.id, user_id=1)
        claim_deny(db, cl.id, user_id=1, remarks="Policy lapsed")
        assert cl.status == ClaimStatus.DENIED
        assert cl.approved_amount == Decimal("0.00")
        assert insured.status == InsuranceStatus.CLAIM_DENIED
        with pytest.raises(InvalidTransitionError):
            claim_settle(db, cl.id, user_id=1)

    def test_invalid_transitions(self, db, case, insured):
        cl = create_claim(db, case.id, claim_amount=100)
        with pytest.raises(InvalidTransitionError):
            claim_approve(db, cl.id, user_id=1)
        with pytest.raises(InvalidTransitionError):
            claim_resubmit(db, cl.id, user_id=1)
        claim_submit(db, cl.id, user_id=1)
        with pytest.raises(InvalidTransitionError):
            claim_submit(db, cl.id, user_id=1)

    def test_invoice_under_one_active_claim(self, db, case, insurer_invoice):
        first = create_claim(db, case.id, insurer_invoice_ids=[insurer_invoice.id])
        second = create_claim(db, case.id, insurer_invoice_ids=[insurer_invoice.id])
        claim_submit(db, first.id, user_id=1)
        with pytest.raises(InvalidStateError):
            claim_submit(db, second.id, user_id=1)

    def test_settle_without_invoices(self, db, case, insured):
        cl = create_claim(db, case.id, claim_amount=500)
        claim_submit(db, cl.id, user_id=1)
        claim_approve(db, cl.id, user_id=1)
        res = claim_settle(db, cl.id, user_id=1, settled_amount=450)
        assert res["allocations"] == []
        assert cl.settled_amount == Decimal("450.00")

    def test_unknown_claim(self, db):
        with pytest.raises(NotFoundError):
            claim_submit(db, 777, user_id=1)

    def test_split_invoice_is_not_void(self, insurer_invoice):
        assert insurer_invoice.status == DocStatus.DRAFT


class TestHistoryVisibility:
    """History reads happen in the same unit of work as the transition."""

    def test_claim_last_step_visible_before_commit(self, db, case, insured):
        cl = create_claim(db, case.id, claim_amount=300, user_id=1)
        assert claim_history(db, cl.id)[-1].action == "create"
        claim_submit(db, cl.id, user_id=1)
        assert claim_history(db, cl.id)[-1].action == "submit"
        claim_approve(db, cl.id, user_id=2)
        assert claim_history(db, cl.id)[-1].action == "approve"
        claim_settle(db, cl.id, user_id=3)
        last = claim_history(db, cl.id)[-1]
        assert (last.action, last.to_status, last.user_id) == ("settle", "SETTLED", 3)

    def test_preauth_decision_visible_before_commit(self, db, submitted_preauth):
        preauth_decide(db, submitted_preauth.id, action="reject", remarks="Not covered", user_id=4)
        last = preauth_history(db, submitted_preauth.id)[-1]
        assert (last.action, last.to_status, last.remarks) == ("reject", "REJECTED", "Not covered")

    def test_audit_row_written_per_transition(self, db, case, insured):
        cl = create_claim(db, case.id, claim_amount=300, user_id=1)
        claim_submit(db, cl.id, user_id=1)
        rows = (db.query(BillingAuditLog).filter(
            BillingAuditLog.entity_type == "CLAIM",
            BillingAuditLog.entity_id == cl.id,
        ).order_by(BillingAuditLog.id).all())
        assert [r.action for r in rows] == ["create", "submit"]
        assert rows[-1].new_json == {"status": "SUBMITTED"}
