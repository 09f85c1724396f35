"""
Match evaluation schemas.

Evaluator inputs are validated from ORM rows (``from_attributes``) so the
evaluator itself never touches the database.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ap_match.models.matching import GlobalMatchStatus, LineMatchStatus


class ToleranceConfig(BaseModel):
    """Per-company tolerance percentages and payment policy flags."""

    qty_tolerance_pct: Decimal = Decimal("5")
    price_tolerance_pct: Decimal = Decimal("2")
    allow_excess_receipt: bool = False
    allow_pay_without_match: bool = False
    block_pay_on_warning: bool = False

    model_config = ConfigDict(from_attributes=True)


class InvoiceLineData(BaseModel):
    """Invoice line as seen by the evaluator."""

    id: Optional[UUID] = None
    line_no: int = 0
    description: str = ""
    item_key: Optional[str] = None
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    discount_pct: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    discounted_price: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptLineData(BaseModel):
    """Accepted goods receipt line as seen by the evaluator."""

    id: Optional[UUID] = None
    item_key: Optional[str] = None
    description: str = ""
    accepted_quantity: Decimal = Decimal("0")
    reference_price: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptData(BaseModel):
    """Confirmed goods receipt with its lines."""

    id: Optional[UUID] = None
    purchase_order_id: Optional[UUID] = None
    lines: List[ReceiptLineData] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class LineMatchResult(BaseModel):
    """Comparison outcome for one line."""

    line_no: int
    line_key: str
    invoice_line_id: Optional[UUID] = None
    receipt_line_id: Optional[UUID] = None
    item_key: Optional[str] = None
    description: str = ""
    invoiced_qty: Decimal = Decimal("0")
    received_qty: Decimal = Decimal("0")
    invoice_price: Optional[Decimal] = None
    received_price: Optional[Decimal] = None
    compared_price: Optional[Decimal] = None
    discount_pct: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    discount_applied: bool = False
    status: LineMatchStatus = LineMatchStatus.OK
    diff_qty: Optional[Decimal] = None
    diff_pct: Optional[Decimal] = None
    diff_price: Optional[Decimal] = None
    price_variance_pct: Optional[Decimal] = None
    reason: Optional[str] = None


class MatchSummary(BaseModel):
    """Line counts of one evaluation."""

    total: int = 0
    ok: int = 0
    warning: int = 0
    blocked: int = 0
    missing: int = 0
    description: str = ""


class MatchEvaluation(BaseModel):
    """Evaluator output."""

    global_status: GlobalMatchStatus
    line_results: List[LineMatchResult] = Field(default_factory=list)
    summary: MatchSummary = Field(default_factory=MatchSummary)


class MatchRunResult(BaseModel):
    """Outcome of a persisted match run."""

    match_result_id: UUID
    invoice_id: UUID
    global_status: GlobalMatchStatus
    summary: MatchSummary
    exceptions_created: int = 0
    exceptions_updated: int = 0
    exceptions_removed: int = 0
    exceptions_preserved: int = 0
    assignment_failures: int = 0
    evaluated_at: datetime


class PaymentDecision(BaseModel):
    """Payment gate answer."""

    allowed: bool
    requires_approval: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
