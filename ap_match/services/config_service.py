"""
Tolerance and SLA configuration provider.

Reads per-company rows and falls back to deployment defaults from settings
when a company has not configured anything. Lookups never create rows.
"""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ap_match.core.config import settings
from ap_match.models.configuration import ExceptionSlaConfig, PurchaseConfig
from ap_match.models.matching import MatchExceptionType
from ap_match.schemas.exception import PriorityThresholds, SlaRule
from ap_match.schemas.matching import ToleranceConfig

logger = logging.getLogger(__name__)


def default_tolerances() -> ToleranceConfig:
    """Tolerances used when a company has no purchase configuration."""
    return ToleranceConfig(
        qty_tolerance_pct=Decimal(str(settings.MATCH_DEFAULT_QTY_TOLERANCE_PCT)),
        price_tolerance_pct=Decimal(str(settings.MATCH_DEFAULT_PRICE_TOLERANCE_PCT)),
        allow_excess_receipt=settings.MATCH_DEFAULT_ALLOW_EXCESS_RECEIPT,
        allow_pay_without_match=settings.MATCH_DEFAULT_ALLOW_PAY_WITHOUT_MATCH,
        block_pay_on_warning=settings.MATCH_DEFAULT_BLOCK_PAY_ON_WARNING,
    )


def default_sla_rule() -> SlaRule:
    """SLA rule used when no (company, exception type) row exists."""
    return SlaRule(
        sla_hours=settings.EXCEPTION_DEFAULT_SLA_HOURS,
        owner_role=settings.EXCEPTION_DEFAULT_OWNER_ROLE,
        escalate_after_hours=settings.EXCEPTION_DEFAULT_ESCALATE_AFTER_HOURS,
        escalate_to_role=settings.EXCEPTION_DEFAULT_ESCALATE_TO_ROLE or None,
    )


def priority_thresholds() -> PriorityThresholds:
    return PriorityThresholds(
        urgent=Decimal(str(settings.EXCEPTION_PRIORITY_URGENT_AMOUNT)),
        high=Decimal(str(settings.EXCEPTION_PRIORITY_HIGH_AMOUNT)),
        normal=Decimal(str(settings.EXCEPTION_PRIORITY_NORMAL_AMOUNT)),
    )


class MatchConfigService:
    """Read company tolerances and per exception type SLA rules."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_tolerances(self, company_id: str) -> ToleranceConfig:
        """Return the company's tolerance configuration, or the defaults."""
        result = await self.db.execute(
            select(PurchaseConfig).where(PurchaseConfig.company_id == company_id)
        )
        config = result.scalar_one_or_none()

        if config is None:
            logger.debug(f"No purchase config for company {company_id}, using defaults")
            return default_tolerances()

        return ToleranceConfig.model_validate(config)

    async def get_sla_rule(self, company_id: str, exception_type: MatchExceptionType) -> SlaRule:
        """Return the SLA rule for (company, exception type), or the default rule."""
        result = await self.db.execute(
            select(ExceptionSlaConfig).where(
                ExceptionSlaConfig.company_id == company_id,
                ExceptionSlaConfig.exception_type == exception_type,
            )
        )
        rule = result.scalar_one_or_none()

        if rule is None:
            return default_sla_rule()

        return SlaRule(
            sla_hours=float(rule.sla_hours),
            owner_role=rule.owner_role,
            escalate_after_hours=float(rule.escalate_after_hours),
            escalate_to_role=rule.escalate_to_role,
        )
