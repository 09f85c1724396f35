"""
Line-level three-way match evaluation.

Compares invoice lines against the accepted quantities and reference prices
of all confirmed goods receipts. Pure: no database access, no clock.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ap_match.models.matching import GlobalMatchStatus, LineMatchStatus
from ap_match.schemas.matching import (
    InvoiceLineData,
    LineMatchResult,
    MatchEvaluation,
    MatchSummary,
    ReceiptData,
    ToleranceConfig,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
_CENTS = Decimal("0.01")
_PRICE_PLACES = Decimal("0.0001")

_WHITESPACE = re.compile(r"\s+")

MISSING_STATUSES = (LineMatchStatus.MISSING_RECEIPT, LineMatchStatus.MISSING_INVOICE)


def normalize_description(description: Optional[str]) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", (description or "").strip().lower())


def matching_key(item_key: Optional[str], description: Optional[str]) -> str:
    """Catalog item key when present, else the normalized description."""
    if item_key:
        return str(item_key)
    return normalize_description(description)


def round_pct(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def _fmt(value: Decimal) -> str:
    """Render a tolerance or discount without trailing zeros."""
    return format(Decimal(value).normalize(), "f")


def effective_price(line: InvoiceLineData) -> Tuple[Decimal, bool]:
    """
    Return the unit price to compare and whether a discount was applied.

    A precomputed discounted price wins; otherwise a percentage discount,
    otherwise a fixed amount. A discount that would leave a non-positive
    price is ignored.
    """
    price = line.unit_price or ZERO

    if line.discounted_price is not None and line.discounted_price > 0:
        return line.discounted_price, True

    discounted = ZERO
    if line.discount_pct is not None and line.discount_pct > 0:
        discounted = price * (1 - line.discount_pct / HUNDRED)
    elif line.discount_amount is not None and line.discount_amount > 0:
        discounted = price - line.discount_amount

    if discounted > 0:
        return discounted.quantize(_PRICE_PLACES, rounding=ROUND_HALF_UP), True
    return price, False


def _discount_label(line: InvoiceLineData) -> str:
    if line.discount_pct is not None and line.discount_pct > 0:
        return f"{_fmt(line.discount_pct)}%"
    if line.discount_amount is not None and line.discount_amount > 0:
        return f"${_fmt(line.discount_amount)}"
    return "precomputed"


@dataclass
class ReceivedAggregate:
    """Accepted quantity and reference price of one matching key across receipts."""

    key: str
    item_key: Optional[str] = None
    quantity: Decimal = ZERO
    priced_quantity: Decimal = ZERO
    priced_value: Decimal = ZERO
    receipt_line_ids: List = field(default_factory=list)
    descriptions: List[str] = field(default_factory=list)

    def add(self, quantity: Decimal, reference_price: Optional[Decimal], receipt_line_id, description: str):
        self.quantity += quantity
        if reference_price is not None and reference_price > 0 and quantity > 0:
            self.priced_quantity += quantity
            self.priced_value += reference_price * quantity
        if receipt_line_id is not None:
            self.receipt_line_ids.append(receipt_line_id)
        if description and description not in self.descriptions:
            self.descriptions.append(description)

    @property
    def reference_price(self) -> Optional[Decimal]:
        """Quantity-weighted mean of the positive reference prices."""
        if self.priced_quantity <= 0:
            return None
        return (self.priced_value / self.priced_quantity).quantize(_PRICE_PLACES, rounding=ROUND_HALF_UP)


def aggregate_receipts(receipts: Iterable[ReceiptData]) -> Dict[str, ReceivedAggregate]:
    """Group accepted receipt lines by matching key, in first-seen order."""
    aggregates: Dict[str, ReceivedAggregate] = {}

    for receipt in receipts:
        for line in receipt.lines:
            key = matching_key(line.item_key, line.description)
            aggregate = aggregates.get(key)
            if aggregate is None:
                aggregate = ReceivedAggregate(key=key, item_key=line.item_key or None)
                aggregates[key] = aggregate
            aggregate.add(
                line.accepted_quantity or ZERO,
                line.reference_price,
                line.id,
                line.description,
            )

    return aggregates


def resolve_global_status(statuses: Iterable[LineMatchStatus], has_receipts: bool = True) -> GlobalMatchStatus:
    """
    Derive the document status from line statuses.

    BLOCKED beats WARNING beats PENDING beats OK. PENDING only arises when
    no confirmed receipt exists. A missing receipt blocks; a missing invoice
    line only warns.
    """
    if not has_receipts:
        return GlobalMatchStatus.PENDING

    status = GlobalMatchStatus.OK
    for line_status in statuses:
        if line_status in (LineMatchStatus.BLOCKED, LineMatchStatus.MISSING_RECEIPT):
            return GlobalMatchStatus.BLOCKED
        if line_status in (LineMatchStatus.WARNING, LineMatchStatus.MISSING_INVOICE):
            status = GlobalMatchStatus.WARNING
    return status


def summarize(line_results: Sequence[LineMatchResult], description: Optional[str] = None) -> MatchSummary:
    ok = sum(1 for line in line_results if line.status == LineMatchStatus.OK)
    summary = MatchSummary(
        total=len(line_results),
        ok=ok,
        warning=sum(1 for line in line_results if line.status == LineMatchStatus.WARNING),
        blocked=sum(1 for line in line_results if line.status == LineMatchStatus.BLOCKED),
        missing=sum(1 for line in line_results if line.status in MISSING_STATUSES),
    )
    summary.description = description or f"{ok}/{summary.total} lines OK"
    return summary


def _invoice_line_key(line: InvoiceLineData) -> str:
    return f"invoice_line:{line.id if line.id is not None else line.line_no}"


def _evaluate_without_receipts(invoice_lines: Sequence[InvoiceLineData]) -> MatchEvaluation:
    line_results = []
    for index, line in enumerate(invoice_lines, start=1):
        quantity = line.quantity or ZERO
        line_results.append(
            LineMatchResult(
                line_no=index,
                line_key=_invoice_line_key(line),
                invoice_line_id=line.id,
                item_key=line.item_key,
                description=line.description or "No description",
                invoiced_qty=quantity,
                received_qty=ZERO,
                invoice_price=line.unit_price,
                compared_price=line.unit_price,
                status=LineMatchStatus.MISSING_RECEIPT,
                diff_qty=quantity,
                diff_pct=HUNDRED,
                reason="Invoiced but not received (no linked receipts)",
            )
        )

    return MatchEvaluation(
        global_status=GlobalMatchStatus.PENDING,
        line_results=line_results,
        summary=summarize(line_results, description="No linked receipts"),
    )


def _compare_quantity(result: LineMatchResult, received: Decimal, tolerances: ToleranceConfig):
    invoiced = result.invoiced_qty
    diff_qty = abs(received - invoiced)
    diff_pct = diff_qty / invoiced * HUNDRED if invoiced > 0 else ZERO
    tolerance = tolerances.qty_tolerance_pct

    result.diff_qty = diff_qty
    result.diff_pct = round_pct(diff_pct)

    if diff_pct == 0:
        result.status = LineMatchStatus.OK
        result.reason = "Quantity matches exactly"
    elif diff_pct <= tolerance:
        result.status = LineMatchStatus.WARNING
        result.reason = f"Difference {diff_pct:.1f}% within tolerance ({_fmt(tolerance)}%)"
    else:
        result.status = LineMatchStatus.BLOCKED
        result.reason = f"Difference {diff_pct:.1f}% exceeds tolerance ({_fmt(tolerance)}%)"

    if received > invoiced and not tolerances.allow_excess_receipt and diff_pct > tolerance:
        result.status = LineMatchStatus.BLOCKED
        result.reason = f"Received {diff_pct:.1f}% more than invoiced (excess receipt not allowed)"


def _compare_price(
    result: LineMatchResult,
    line: InvoiceLineData,
    reference_price: Optional[Decimal],
    tolerances: ToleranceConfig,
):
    compared = result.compared_price or ZERO
    if compared <= 0 or reference_price is None or reference_price <= 0:
        return

    diff_price = abs(compared - reference_price)
    price_pct = diff_price / reference_price * HUNDRED
    tolerance = tolerances.price_tolerance_pct

    result.diff_price = diff_price
    result.price_variance_pct = round_pct(price_pct)

    if price_pct > tolerance:
        result.status = LineMatchStatus.BLOCKED
        discount_info = f" (with {_discount_label(line)} discount)" if result.discount_applied else ""
        price_reason = (
            f"Price variance {price_pct:.1f}% exceeds tolerance ({_fmt(tolerance)}%): "
            f"invoice ${compared:.2f}{discount_info} vs reference ${reference_price:.2f}"
        )
        result.reason = f"{result.reason}. {price_reason}" if result.reason else price_reason
    elif price_pct > 0 and result.status == LineMatchStatus.OK:
        discount_info = " (discount applied)" if result.discount_applied else ""
        result.status = LineMatchStatus.WARNING
        result.reason = f"Price variance {price_pct:.1f}% within tolerance ({_fmt(tolerance)}%){discount_info}"
    elif price_pct == 0 and result.discount_applied and result.status == LineMatchStatus.OK:
        result.reason = f"Price matches after discount ({_discount_label(line)} applied)"


def evaluate_match(
    invoice_lines: Sequence[InvoiceLineData],
    receipts: Sequence[ReceiptData],
    tolerances: ToleranceConfig,
) -> MatchEvaluation:
    """
    Evaluate an invoice against its confirmed goods receipts.

    Args:
        invoice_lines: Invoice lines in invoice order
        receipts: Confirmed receipts linked to the invoice
        tolerances: Company tolerance configuration

    Returns:
        Global status, one line result per compared line, and a summary
    """
    if not receipts:
        return _evaluate_without_receipts(invoice_lines)

    aggregates = aggregate_receipts(receipts)
    matched_keys = set()
    line_results: List[LineMatchResult] = []

    for line in invoice_lines:
        key = matching_key(line.item_key, line.description)
        aggregate = aggregates.get(key)
        matched_keys.add(key)

        compared, discount_applied = effective_price(line)
        reference_price = aggregate.reference_price if aggregate else None

        result = LineMatchResult(
            line_no=len(line_results) + 1,
            line_key=_invoice_line_key(line),
            invoice_line_id=line.id,
            receipt_line_id=aggregate.receipt_line_ids[0] if aggregate and aggregate.receipt_line_ids else None,
            item_key=line.item_key,
            description=line.description or "No description",
            invoiced_qty=line.quantity or ZERO,
            received_qty=aggregate.quantity if aggregate else ZERO,
            invoice_price=line.unit_price,
            received_price=reference_price,
            compared_price=compared,
            discount_pct=line.discount_pct if line.discount_pct and line.discount_pct > 0 else None,
            discount_amount=line.discount_amount if line.discount_amount and line.discount_amount > 0 else None,
            discount_applied=discount_applied,
        )

        if aggregate is None or aggregate.quantity == 0:
            result.status = LineMatchStatus.MISSING_RECEIPT
            result.diff_qty = result.invoiced_qty
            result.diff_pct = HUNDRED
            result.reason = "Invoiced but not received"
        else:
            _compare_quantity(result, aggregate.quantity, tolerances)
            _compare_price(result, line, reference_price, tolerances)

        line_results.append(result)

    for key, aggregate in aggregates.items():
        if key in matched_keys:
            continue
        line_results.append(
            LineMatchResult(
                line_no=len(line_results) + 1,
                line_key=f"receipt_item:{key}",
                receipt_line_id=aggregate.receipt_line_ids[0] if aggregate.receipt_line_ids else None,
                item_key=aggregate.item_key,
                description=aggregate.descriptions[0] if aggregate.descriptions else key,
                invoiced_qty=ZERO,
                received_qty=aggregate.quantity,
                received_price=aggregate.reference_price,
                compared_price=aggregate.reference_price,
                status=LineMatchStatus.MISSING_INVOICE,
                diff_qty=aggregate.quantity,
                diff_pct=HUNDRED,
                reason="Received but not invoiced",
            )
        )

    global_status = resolve_global_status((line.status for line in line_results), has_receipts=True)

    logger.debug(
        f"Evaluated {len(line_results)} lines against {len(receipts)} receipts: {global_status.value}"
    )

    return MatchEvaluation(
        global_status=global_status,
        line_results=line_results,
        summary=summarize(line_results),
    )
