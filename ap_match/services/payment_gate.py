"""
Payment gate consumed by the payment-approval collaborator.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ap_match.core.exceptions import NotFoundException
from ap_match.models.invoice import Invoice, PayApprovalStatus
from ap_match.models.matching import GlobalMatchStatus
from ap_match.schemas.matching import PaymentDecision, ToleranceConfig
from ap_match.services.config_service import MatchConfigService

logger = logging.getLogger(__name__)


def evaluate_payment_gate(
    validated: bool,
    pay_approval_status: Optional[PayApprovalStatus],
    match_status: Optional[GlobalMatchStatus],
    tolerances: ToleranceConfig,
) -> PaymentDecision:
    """
    Decide whether an invoice may be paid.

    Checked in order: validation, manual rejection, manual approval, then
    the cached match status against the company payment policy. A manual
    rejection wins over any match status.
    """
    if not validated:
        return PaymentDecision(
            allowed=False,
            requires_approval=False,
            message="Invoice is not validated",
        )

    if pay_approval_status == PayApprovalStatus.REJECTED:
        return PaymentDecision(
            allowed=False,
            requires_approval=False,
            message="Payment was manually rejected",
        )

    if pay_approval_status == PayApprovalStatus.APPROVED:
        return PaymentDecision(
            allowed=True,
            requires_approval=False,
            message="Payment manually approved",
        )

    details = {"match_status": match_status.value if match_status else None}

    if match_status == GlobalMatchStatus.OK:
        return PaymentDecision(
            allowed=True,
            requires_approval=False,
            message="Three-way match OK",
            details=details,
        )

    if match_status == GlobalMatchStatus.RESOLVED:
        return PaymentDecision(
            allowed=True,
            requires_approval=False,
            message="All match exceptions resolved",
            details=details,
        )

    if match_status == GlobalMatchStatus.WARNING:
        if tolerances.block_pay_on_warning:
            return PaymentDecision(
                allowed=False,
                requires_approval=True,
                message="Match has warnings and policy blocks payment on warning",
                details=details,
            )
        return PaymentDecision(
            allowed=True,
            requires_approval=True,
            message="Match has warnings within tolerance, approval required",
            details=details,
        )

    if match_status == GlobalMatchStatus.BLOCKED:
        message = "Match blocked by discrepancies"
    else:
        message = "Match pending, no confirmed goods receipt"

    if tolerances.allow_pay_without_match:
        return PaymentDecision(
            allowed=True,
            requires_approval=True,
            message=f"{message}; policy allows payment without match, approval required",
            details=details,
        )

    return PaymentDecision(
        allowed=False,
        requires_approval=True,
        message=message,
        details=details,
    )


class PaymentGateService:
    """Evaluate the payment gate for stored invoices."""

    def __init__(self, db: AsyncSession, config_service: Optional[MatchConfigService] = None):
        self.db = db
        self.config_service = config_service or MatchConfigService(db)

    async def check_invoice(self, invoice_id) -> PaymentDecision:
        """
        Evaluate the gate for one invoice.

        Raises:
            NotFoundException: If the invoice does not exist
        """
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundException(
                f"Invoice {invoice_id} not found",
                details={"invoice_id": str(invoice_id)},
            )

        tolerances = await self.config_service.get_tolerances(invoice.company_id)
        decision = evaluate_payment_gate(
            validated=bool(invoice.validated),
            pay_approval_status=invoice.pay_approval_status,
            match_status=invoice.match_status,
            tolerances=tolerances,
        )

        logger.debug(
            f"Payment gate for invoice {invoice.id}: allowed={decision.allowed} "
            f"requires_approval={decision.requires_approval}"
        )
        return decision
