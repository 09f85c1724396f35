"""
Tests for the payment gate.
"""

import uuid
from decimal import Decimal

import pytest

from ap_match.core.exceptions import NotFoundException
from ap_match.models.configuration import PurchaseConfig
from ap_match.models.invoice import PayApprovalStatus
from ap_match.models.matching import GlobalMatchStatus
from ap_match.schemas.matching import ToleranceConfig
from ap_match.services.payment_gate import PaymentGateService, evaluate_payment_gate

from tests.factories import COMPANY_ID, invoice_line


@pytest.fixture
def policy():
    return ToleranceConfig()


class TestEvaluatePaymentGate:
    """Gate decisions in evaluation order."""

    def test_unvalidated_invoice_is_not_allowed(self, policy):
        decision = evaluate_payment_gate(False, PayApprovalStatus.APPROVED, GlobalMatchStatus.OK, policy)

        assert decision.allowed is False
        assert decision.message == "Invoice is not validated"

    def test_manual_rejection_wins_over_match_status(self, policy):
        decision = evaluate_payment_gate(True, PayApprovalStatus.REJECTED, GlobalMatchStatus.OK, policy)

        assert decision.allowed is False

    def test_manual_approval_skips_match_checks(self, policy):
        decision = evaluate_payment_gate(True, PayApprovalStatus.APPROVED, GlobalMatchStatus.BLOCKED, policy)

        assert decision.allowed is True
        assert decision.requires_approval is False

    def test_ok_match_is_allowed(self, policy):
        decision = evaluate_payment_gate(True, None, GlobalMatchStatus.OK, policy)

        assert decision.allowed is True
        assert decision.requires_approval is False

    def test_resolved_match_is_allowed(self, policy):
        decision = evaluate_payment_gate(True, None, GlobalMatchStatus.RESOLVED, policy)

        assert decision.allowed is True
        assert decision.requires_approval is False

    def test_warning_requires_approval(self, policy):
        decision = evaluate_payment_gate(True, None, GlobalMatchStatus.WARNING, policy)

        assert decision.allowed is True
        assert decision.requires_approval is True

    def test_warning_blocked_by_policy(self):
        decision = evaluate_payment_gate(
            True, None, GlobalMatchStatus.WARNING, ToleranceConfig(block_pay_on_warning=True)
        )

        assert decision.allowed is False
        assert decision.requires_approval is True

    @pytest.mark.parametrize(
        "status",
        [GlobalMatchStatus.BLOCKED, GlobalMatchStatus.PENDING, None],
    )
    def test_blocked_and_pending_are_not_allowed_by_default(self, policy, status):
        decision = evaluate_payment_gate(True, PayApprovalStatus.BLOCKED_BY_MATCH, status, policy)

        assert decision.allowed is False
        assert decision.requires_approval is True

    @pytest.mark.parametrize("status", [GlobalMatchStatus.BLOCKED, GlobalMatchStatus.PENDING])
    def test_pay_without_match_policy_allows_with_approval(self, status):
        decision = evaluate_payment_gate(True, None, status, ToleranceConfig(allow_pay_without_match=True))

        assert decision.allowed is True
        assert decision.requires_approval is True


class TestPaymentGateService:
    """Gate evaluation for stored invoices."""

    @pytest.mark.asyncio
    async def test_unknown_invoice_raises(self, async_session):
        service = PaymentGateService(async_session)

        with pytest.raises(NotFoundException):
            await service.check_invoice(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_uses_company_policy(self, async_session, make_invoice):
        invoice = await make_invoice(
            [invoice_line("Widget", 1, 10)], match_status=GlobalMatchStatus.WARNING
        )
        async_session.add(PurchaseConfig(company_id=COMPANY_ID, block_pay_on_warning=True))
        await async_session.commit()

        decision = await PaymentGateService(async_session).check_invoice(invoice.id)

        assert decision.allowed is False
        assert decision.details["match_status"] == "warning"

    @pytest.mark.asyncio
    async def test_defaults_without_company_policy(self, async_session, make_invoice):
        invoice = await make_invoice(
            [invoice_line("Widget", 1, 10)], match_status=GlobalMatchStatus.WARNING
        )

        decision = await PaymentGateService(async_session).check_invoice(invoice.id)

        assert decision.allowed is True
        assert decision.requires_approval is True
