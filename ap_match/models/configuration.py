"""
Per-company purchase tolerances and per exception type SLA rules.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Enum,
    Numeric,
    String,
    UniqueConstraint,
)

from ap_match.db.base import TimestampMixin, UUIDMixin
from ap_match.db.session import Base
from ap_match.models.matching import MatchExceptionType


class PurchaseConfig(Base, UUIDMixin, TimestampMixin):
    """Match tolerances and payment policy flags for a company."""

    __tablename__ = "purchase_configs"

    company_id = Column(String(64), nullable=False, unique=True)
    qty_tolerance_pct = Column(Numeric(7, 4), nullable=False, default=5)
    price_tolerance_pct = Column(Numeric(7, 4), nullable=False, default=2)
    allow_excess_receipt = Column(Boolean, nullable=False, default=False)
    allow_pay_without_match = Column(Boolean, nullable=False, default=False)
    block_pay_on_warning = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("qty_tolerance_pct >= 0", name='check_qty_tolerance_positive'),
        CheckConstraint("price_tolerance_pct >= 0", name='check_price_tolerance_positive'),
    )

    def __repr__(self):
        return (
            f"<PurchaseConfig(company_id={self.company_id}, qty={self.qty_tolerance_pct}, "
            f"price={self.price_tolerance_pct})>"
        )


class ExceptionSlaConfig(Base, UUIDMixin, TimestampMixin):
    """SLA, ownership and escalation rule for one exception type in a company."""

    __tablename__ = "exception_sla_configs"

    company_id = Column(String(64), nullable=False, index=True)
    exception_type = Column(Enum(MatchExceptionType), nullable=False)
    sla_hours = Column(Numeric(8, 2), nullable=False, default=24)
    owner_role = Column(String(100), nullable=False)
    escalate_after_hours = Column(Numeric(8, 2), nullable=False, default=48)
    escalate_to_role = Column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint('company_id', 'exception_type', name='uq_sla_company_type'),
        CheckConstraint("sla_hours > 0", name='check_sla_hours_positive'),
    )

    def __repr__(self):
        return f"<ExceptionSlaConfig(company_id={self.company_id}, type={self.exception_type})>"
