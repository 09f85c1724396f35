"""
Invoice-related database models.

The invoicing collaborator owns these rows; the match core reads the lines and
writes only the cached match fields (and the pay approval status on block).
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from ap_match.db.base import TimestampMixin, UUIDMixin
from ap_match.db.session import Base
from ap_match.models.matching import GlobalMatchStatus


class PayApprovalStatus(str, enum.Enum):
    """Manual pay approval state of an invoice."""

    APPROVED = "approved"
    REJECTED = "rejected"
    BLOCKED_BY_MATCH = "blocked_by_match"


class Invoice(Base, UUIDMixin, TimestampMixin):
    """Supplier invoice header."""

    __tablename__ = "invoices"

    company_id = Column(String(64), nullable=False, index=True)
    invoice_number = Column(String(100), nullable=False)
    purchase_order_id = Column(Uuid(as_uuid=True), ForeignKey("purchase_orders.id"), nullable=True)

    validated = Column(Boolean, nullable=False, default=False)

    # Cached match state
    match_status = Column(Enum(GlobalMatchStatus), nullable=True, index=True)
    match_checked_at = Column(DateTime(timezone=True), nullable=True)
    match_block_reason = Column(Text, nullable=True)

    # Manual pay approval
    pay_approval_status = Column(Enum(PayApprovalStatus), nullable=True)
    pay_rejected_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_invoice_company_match', 'company_id', 'match_status'),
        CheckConstraint("invoice_number <> ''", name='check_invoice_number_not_empty'),
    )

    # Relationships
    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.line_no",
    )
    goods_receipts = relationship("GoodsReceipt", back_populates="invoice")
    match_result = relationship("MatchResult", back_populates="invoice", uselist=False)

    def __repr__(self):
        return f"<Invoice(id={self.id}, number={self.invoice_number}, match_status={self.match_status})>"


class InvoiceLine(Base, UUIDMixin, TimestampMixin):
    """Invoiced line item."""

    __tablename__ = "invoice_lines"

    invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False)

    description = Column(Text, nullable=False, default="")
    item_key = Column(String(100), nullable=True, index=True)  # catalog item key
    quantity = Column(Numeric(18, 4), nullable=False, default=0)
    unit_price = Column(Numeric(18, 4), nullable=False, default=0)

    # Discounts
    discount_pct = Column(Numeric(7, 4), nullable=True)
    discount_amount = Column(Numeric(18, 4), nullable=True)
    discounted_price = Column(Numeric(18, 4), nullable=True)

    invoice = relationship("Invoice", back_populates="lines")

    def __repr__(self):
        return f"<InvoiceLine(invoice_id={self.invoice_id}, line_no={self.line_no}, qty={self.quantity})>"
