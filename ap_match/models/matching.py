"""
Match result, line result and match exception models.
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from ap_match.db.base import TimestampMixin, UUIDMixin
from ap_match.db.session import Base


class GlobalMatchStatus(str, enum.Enum):
    """Document-level match verdict."""

    PENDING = "pending"  # no confirmed receipts yet
    OK = "ok"
    WARNING = "warning"
    BLOCKED = "blocked"  # awaiting resolution
    RESOLVED = "resolved"  # terminal, every exception resolved


class LineMatchStatus(str, enum.Enum):
    """Per-line match verdict."""

    OK = "ok"
    WARNING = "warning"
    BLOCKED = "blocked"
    MISSING_RECEIPT = "missing_receipt"  # invoiced, never received
    MISSING_INVOICE = "missing_invoice"  # received, never invoiced


class MatchExceptionType(str, enum.Enum):
    """Discrepancy types raised from non-OK lines."""

    PRICE_VARIANCE = "price_variance"
    QUANTITY_VARIANCE = "quantity_variance"
    MISSING_RECEIPT = "missing_receipt"
    MISSING_INVOICE = "missing_invoice"


class ExceptionPriority(str, enum.Enum):
    """Exception priority tiers."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, URGENT first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ExceptionPriority.URGENT: 1,
    ExceptionPriority.HIGH: 2,
    ExceptionPriority.NORMAL: 3,
    ExceptionPriority.LOW: 4,
}


class ExceptionStatus(str, enum.Enum):
    """Statuses recorded in exception history."""

    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class ExceptionAction(str, enum.Enum):
    """Human resolution actions."""

    APPROVE_DIFFERENCE = "APPROVE_DIFFERENCE"
    ADJUST_INVOICE = "ADJUST_INVOICE"
    ADJUST_RECEIPT = "ADJUST_RECEIPT"
    REJECT_INVOICE = "REJECT_INVOICE"
    ESCALATE = "ESCALATE"
    CLOSE_NO_ACTION = "CLOSE_NO_ACTION"


class HistoryAction(str, enum.Enum):
    """Non-resolution events recorded in exception history."""

    CREATE = "CREATE"
    ESCALATE = "ESCALATE"


SLA_BREACH_REASON = "SLA_BREACH"
SYSTEM_ACTOR = "system"


class MatchResult(Base, UUIDMixin, TimestampMixin):
    """Document-level outcome of the latest evaluator run for an invoice."""

    __tablename__ = "match_results"

    company_id = Column(String(64), nullable=False, index=True)
    invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=False, unique=True)
    goods_receipt_id = Column(Uuid(as_uuid=True), ForeignKey("goods_receipts.id"), nullable=True)
    purchase_order_id = Column(Uuid(as_uuid=True), ForeignKey("purchase_orders.id"), nullable=True)
    receipt_ids = Column(JSON, nullable=False, default=list)

    global_status = Column(Enum(GlobalMatchStatus), nullable=False, default=GlobalMatchStatus.PENDING, index=True)
    discrepancies = Column(JSON, nullable=False, default=list)
    summary = Column(JSON, nullable=False, default=dict)

    evaluated_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency token
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index('idx_match_result_company_status', 'company_id', 'global_status'),
    )

    invoice = relationship("Invoice", back_populates="match_result")
    line_results = relationship(
        "MatchLineResult",
        back_populates="match_result",
        cascade="all, delete-orphan",
        order_by="MatchLineResult.line_no",
    )
    exceptions = relationship(
        "MatchException",
        back_populates="match_result",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<MatchResult(id={self.id}, invoice_id={self.invoice_id}, status={self.global_status})>"


class MatchLineResult(Base, UUIDMixin, TimestampMixin):
    """One compared line: invoice line, over-received item or missing receipt."""

    __tablename__ = "match_line_results"

    match_result_id = Column(
        Uuid(as_uuid=True), ForeignKey("match_results.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_no = Column(Integer, nullable=False)
    line_key = Column(String(255), nullable=False)

    invoice_line_id = Column(Uuid(as_uuid=True), ForeignKey("invoice_lines.id"), nullable=True)
    receipt_line_id = Column(Uuid(as_uuid=True), ForeignKey("goods_receipt_lines.id"), nullable=True)
    item_key = Column(String(100), nullable=True)
    description = Column(Text, nullable=False, default="")

    invoiced_qty = Column(Numeric(18, 4), nullable=False, default=0)
    received_qty = Column(Numeric(18, 4), nullable=False, default=0)
    invoice_price = Column(Numeric(18, 4), nullable=True)
    received_price = Column(Numeric(18, 4), nullable=True)
    compared_price = Column(Numeric(18, 4), nullable=True)
    discount_applied = Column(Boolean, nullable=False, default=False)

    status = Column(Enum(LineMatchStatus), nullable=False)
    diff_qty = Column(Numeric(18, 4), nullable=True)
    diff_pct = Column(Numeric(9, 2), nullable=True)
    diff_price = Column(Numeric(18, 4), nullable=True)
    price_variance_pct = Column(Numeric(9, 2), nullable=True)
    reason = Column(Text, nullable=True)

    match_result = relationship("MatchResult", back_populates="line_results")

    def __repr__(self):
        return f"<MatchLineResult(line_no={self.line_no}, status={self.status})>"


class MatchException(Base, UUIDMixin, TimestampMixin):
    """Discrepancy requiring human disposition, with ownership and an SLA."""

    __tablename__ = "match_exceptions"

    match_result_id = Column(
        Uuid(as_uuid=True), ForeignKey("match_results.id", ondelete="CASCADE"), nullable=False, index=True
    )
    company_id = Column(String(64), nullable=False, index=True)

    exception_type = Column(Enum(MatchExceptionType), nullable=False, index=True)
    line_key = Column(String(255), nullable=False)
    field = Column(Text, nullable=False)
    expected_value = Column(String(100), nullable=True)
    received_value = Column(String(100), nullable=True)
    difference = Column(Numeric(18, 4), nullable=True)
    difference_pct = Column(Numeric(9, 2), nullable=True)
    within_tolerance = Column(Boolean, nullable=False, default=False)
    impact_amount = Column(Numeric(18, 2), nullable=False, default=0)

    # Ownership and SLA
    priority = Column(Enum(ExceptionPriority), nullable=False, default=ExceptionPriority.NORMAL, index=True)
    owner_user_id = Column(String(255), nullable=True, index=True)
    owner_role = Column(String(100), nullable=True, index=True)
    sla_deadline = Column(DateTime(timezone=True), nullable=True)
    sla_breached = Column(Boolean, nullable=False, default=False)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    escalated_to = Column(String(255), nullable=True)

    # Resolution
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_by = Column(String(255), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_action = Column(Enum(ExceptionAction), nullable=True)
    resolution_reason_code = Column(String(100), nullable=True)
    resolution_text = Column(Text, nullable=True)
    adjusted_amount = Column(Numeric(18, 2), nullable=True)
    linked_note_ref = Column(String(100), nullable=True)  # credit/debit note

    __table_args__ = (
        UniqueConstraint('match_result_id', 'exception_type', 'line_key', name='uq_match_exception_key'),
        Index('idx_match_exception_sweep', 'company_id', 'resolved', 'sla_breached', 'sla_deadline'),
        Index('idx_match_exception_owner', 'company_id', 'owner_user_id', 'resolved'),
    )

    match_result = relationship("MatchResult", back_populates="exceptions")
    history = relationship(
        "MatchExceptionHistory",
        back_populates="exception",
        cascade="all, delete-orphan",
        order_by="MatchExceptionHistory.created_at",
    )

    def __repr__(self):
        return (
            f"<MatchException(id={self.id}, type={self.exception_type}, "
            f"priority={self.priority}, resolved={self.resolved})>"
        )


class MatchExceptionHistory(Base, UUIDMixin, TimestampMixin):
    """Append-only ownership/status transitions of an exception."""

    __tablename__ = "match_exception_history"

    exception_id = Column(
        Uuid(as_uuid=True), ForeignKey("match_exceptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = Column(String(50), nullable=False)  # HistoryAction or ExceptionAction value
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    from_owner = Column(String(255), nullable=True)
    to_owner = Column(String(255), nullable=True)
    reason_code = Column(String(100), nullable=True)
    reason_text = Column(Text, nullable=True)
    actor = Column(String(255), nullable=False, default=SYSTEM_ACTOR)

    exception = relationship("MatchException", back_populates="history")

    def __repr__(self):
        return f"<MatchExceptionHistory(exception_id={self.exception_id}, action={self.action})>"
