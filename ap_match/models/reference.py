"""
Reference data models (purchase orders, goods receipts).
"""

import enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from ap_match.db.base import TimestampMixin, UUIDMixin
from ap_match.db.session import Base


class POStatus(str, enum.Enum):
    """Purchase order status options."""

    DRAFT = "draft"
    SENT = "sent"
    PARTIAL = "partial"
    RECEIVED = "received"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class ReceiptStatus(str, enum.Enum):
    """Goods receipt status options. Only confirmed receipts are matched."""

    DRAFT = "draft"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PurchaseOrder(Base, UUIDMixin, TimestampMixin):
    """Purchase order header."""

    __tablename__ = "purchase_orders"

    company_id = Column(String(64), nullable=False, index=True)
    po_no = Column(String(100), nullable=False, index=True)
    status = Column(Enum(POStatus), default=POStatus.DRAFT, nullable=False, index=True)

    __table_args__ = (
        CheckConstraint("po_no <> ''", name='check_po_no_not_empty'),
    )

    goods_receipts = relationship("GoodsReceipt", back_populates="purchase_order")

    def __repr__(self):
        return f"<PurchaseOrder(po_no={self.po_no}, status={self.status})>"


class GoodsReceipt(Base, UUIDMixin, TimestampMixin):
    """Goods receipt confirmation, possibly one of several partial deliveries."""

    __tablename__ = "goods_receipts"

    company_id = Column(String(64), nullable=False, index=True)
    grn_no = Column(String(100), nullable=False, index=True)
    invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=True, index=True)
    purchase_order_id = Column(Uuid(as_uuid=True), ForeignKey("purchase_orders.id"), nullable=True)

    status = Column(Enum(ReceiptStatus), default=ReceiptStatus.DRAFT, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=True)
    received_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index('idx_grn_invoice_status', 'invoice_id', 'status'),
        CheckConstraint("grn_no <> ''", name='check_grn_no_not_empty'),
    )

    invoice = relationship("Invoice", back_populates="goods_receipts")
    purchase_order = relationship("PurchaseOrder", back_populates="goods_receipts")
    lines = relationship(
        "GoodsReceiptLine",
        back_populates="goods_receipt",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<GoodsReceipt(grn_no={self.grn_no}, status={self.status})>"


class GoodsReceiptLine(Base, UUIDMixin, TimestampMixin):
    """Accepted quantity of one item on a goods receipt."""

    __tablename__ = "goods_receipt_lines"

    goods_receipt_id = Column(
        Uuid(as_uuid=True), ForeignKey("goods_receipts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_key = Column(String(100), nullable=True, index=True)
    description = Column(Text, nullable=False, default="")
    accepted_quantity = Column(Numeric(18, 4), nullable=False, default=0)
    reference_price = Column(Numeric(18, 4), nullable=True)  # PO price carried by the receipt

    goods_receipt = relationship("GoodsReceipt", back_populates="lines")

    def __repr__(self):
        return f"<GoodsReceiptLine(item_key={self.item_key}, qty={self.accepted_quantity})>"
