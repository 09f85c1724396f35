"""
Tests for line-level three-way match evaluation.
"""

import uuid
from decimal import Decimal

import pytest

from ap_match.models.matching import GlobalMatchStatus, LineMatchStatus
from ap_match.schemas.matching import (
    InvoiceLineData,
    ReceiptData,
    ReceiptLineData,
    ToleranceConfig,
)
from ap_match.services.match_evaluator import (
    aggregate_receipts,
    effective_price,
    evaluate_match,
    normalize_description,
    resolve_global_status,
)


def inv(description, quantity, price, item_key=None, line_no=1, **discounts):
    return InvoiceLineData(
        id=uuid.uuid4(),
        line_no=line_no,
        description=description,
        item_key=item_key,
        quantity=Decimal(str(quantity)),
        unit_price=Decimal(str(price)),
        **{name: Decimal(str(value)) for name, value in discounts.items()},
    )


def rec(*lines):
    return ReceiptData(id=uuid.uuid4(), lines=list(lines))


def rec_line(description, quantity, price=None, item_key=None):
    return ReceiptLineData(
        id=uuid.uuid4(),
        description=description,
        item_key=item_key,
        accepted_quantity=Decimal(str(quantity)),
        reference_price=Decimal(str(price)) if price is not None else None,
    )


@pytest.fixture
def tolerances():
    """Default tolerances: 5% quantity, 2% price."""
    return ToleranceConfig(qty_tolerance_pct=Decimal("5"), price_tolerance_pct=Decimal("2"))


class TestScenarios:
    """Reference scenarios."""

    def test_exact_match_is_ok(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [rec(rec_line("Steel bolts", 100, 10))],
            tolerances,
        )

        assert evaluation.global_status == GlobalMatchStatus.OK
        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.OK
        assert line.diff_qty == Decimal("0")
        assert line.reason == "Quantity matches exactly"
        assert evaluation.summary.ok == 1
        assert evaluation.summary.description == "1/1 lines OK"

    def test_quantity_within_tolerance_warns(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [rec(rec_line("Steel bolts", 96, 10))],
            tolerances,
        )

        assert evaluation.global_status == GlobalMatchStatus.WARNING
        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.WARNING
        assert line.diff_qty == Decimal("4")
        assert line.diff_pct == Decimal("4.00")
        assert "within tolerance (5%)" in line.reason

    def test_quantity_over_tolerance_blocks(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [rec(rec_line("Steel bolts", 80, 10))],
            tolerances,
        )

        assert evaluation.global_status == GlobalMatchStatus.BLOCKED
        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.BLOCKED
        assert line.diff_pct == Decimal("20.00")
        assert "exceeds tolerance (5%)" in line.reason
        assert evaluation.summary.blocked == 1

    def test_no_receipts_is_pending(self, tolerances):
        lines = [inv("Steel bolts", 100, 10), inv("Nuts", 50, 2, line_no=2)]

        evaluation = evaluate_match(lines, [], tolerances)

        assert evaluation.global_status == GlobalMatchStatus.PENDING
        assert all(line.status == LineMatchStatus.MISSING_RECEIPT for line in evaluation.line_results)
        assert [line.diff_qty for line in evaluation.line_results] == [Decimal("100"), Decimal("50")]
        assert all(line.diff_pct == Decimal("100") for line in evaluation.line_results)
        assert evaluation.summary.missing == evaluation.summary.total == 2
        assert evaluation.summary.description == "No linked receipts"


class TestQuantityRules:
    """Quantity comparison edge cases."""

    def test_unreceived_line_blocks_when_other_receipts_exist(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10), inv("Nuts", 10, 1, line_no=2)],
            [rec(rec_line("Steel bolts", 100, 10))],
            tolerances,
        )

        statuses = [line.status for line in evaluation.line_results]
        assert statuses == [LineMatchStatus.OK, LineMatchStatus.MISSING_RECEIPT]
        assert evaluation.line_results[1].reason == "Invoiced but not received"
        assert evaluation.global_status == GlobalMatchStatus.BLOCKED

    def test_zero_received_quantity_is_missing_receipt(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [rec(rec_line("Steel bolts", 0, 10))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.MISSING_RECEIPT
        assert line.diff_qty == Decimal("100")
        # the key was matched, so no extra missing-invoice line
        assert len(evaluation.line_results) == 1

    def test_zero_invoiced_quantity_yields_zero_pct(self, tolerances):
        evaluation = evaluate_match(
            [inv("Freight", 0, 0)],
            [rec(rec_line("Freight", 5))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.diff_pct == Decimal("0.00")
        assert line.status == LineMatchStatus.OK

    def test_over_receipt_beyond_tolerance_reason(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [rec(rec_line("Steel bolts", 120, 10))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.BLOCKED
        assert line.reason == "Received 20.0% more than invoiced (excess receipt not allowed)"

    def test_over_receipt_allowed_keeps_generic_reason(self):
        tolerances = ToleranceConfig(allow_excess_receipt=True)

        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [rec(rec_line("Steel bolts", 120, 10))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.BLOCKED
        assert line.reason.startswith("Difference 20.0% exceeds tolerance")

    def test_multiple_receipts_are_aggregated(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [
                rec(rec_line("Steel bolts", 60, 10)),
                rec(rec_line("Steel bolts", 40, 10)),
            ],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.received_qty == Decimal("100")
        assert line.status == LineMatchStatus.OK

    def test_description_normalization_matches_lines(self, tolerances):
        evaluation = evaluate_match(
            [inv("  Steel   BOLTS ", 10, 10)],
            [rec(rec_line("steel bolts", 10, 10))],
            tolerances,
        )

        assert evaluation.line_results[0].status == LineMatchStatus.OK
        assert len(evaluation.line_results) == 1

    def test_item_key_takes_precedence_over_description(self, tolerances):
        evaluation = evaluate_match(
            [inv("Bolts M8", 10, 10, item_key="SKU-1")],
            [rec(rec_line("Bolts, metric 8mm", 10, 10, item_key="SKU-1"))],
            tolerances,
        )

        assert evaluation.line_results[0].status == LineMatchStatus.OK
        assert evaluation.global_status == GlobalMatchStatus.OK


class TestPriceRules:
    """Price variance and discount handling."""

    def test_percentage_discount_compares_effective_price(self, tolerances):
        evaluation = evaluate_match(
            [inv("Valve", 10, 100, discount_pct=10)],
            [rec(rec_line("Valve", 10, 90))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.compared_price == Decimal("90")
        assert line.discount_applied is True
        assert line.status == LineMatchStatus.OK
        assert line.price_variance_pct == Decimal("0.00")
        assert line.reason == "Price matches after discount (10% applied)"

    def test_fixed_discount_amount(self, tolerances):
        price, applied = effective_price(inv("Valve", 1, 100, discount_amount=15))

        assert price == Decimal("85")
        assert applied is True

    def test_precomputed_discounted_price_wins(self):
        price, applied = effective_price(inv("Valve", 1, 100, discount_pct=10, discounted_price=88))

        assert price == Decimal("88")
        assert applied is True

    def test_no_discount_uses_unit_price(self):
        price, applied = effective_price(inv("Valve", 1, 100))

        assert price == Decimal("100")
        assert applied is False

    def test_price_variance_over_tolerance_blocks_and_appends_reason(self, tolerances):
        evaluation = evaluate_match(
            [inv("Valve", 100, 105)],
            [rec(rec_line("Valve", 96, 100))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.BLOCKED
        assert line.diff_price == Decimal("5.00")
        assert line.price_variance_pct == Decimal("5.00")
        assert line.reason.startswith("Difference 4.0% within tolerance (5%). Price variance 5.0% exceeds tolerance (2%)")
        assert evaluation.global_status == GlobalMatchStatus.BLOCKED

    def test_price_variance_within_tolerance_warns(self, tolerances):
        evaluation = evaluate_match(
            [inv("Valve", 100, 101)],
            [rec(rec_line("Valve", 100, 100))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.WARNING
        assert line.price_variance_pct == Decimal("1.00")
        assert line.reason == "Price variance 1.0% within tolerance (2%)"
        assert evaluation.global_status == GlobalMatchStatus.WARNING

    def test_missing_reference_price_skips_price_check(self, tolerances):
        evaluation = evaluate_match(
            [inv("Valve", 100, 500)],
            [rec(rec_line("Valve", 100))],
            tolerances,
        )

        line = evaluation.line_results[0]
        assert line.status == LineMatchStatus.OK
        assert line.price_variance_pct is None

    def test_reference_price_is_quantity_weighted(self):
        aggregates = aggregate_receipts([
            rec(rec_line("Valve", 30, 10)),
            rec(rec_line("Valve", 10, 14)),
        ])

        assert aggregates["valve"].quantity == Decimal("40")
        assert aggregates["valve"].reference_price == Decimal("11.0000")

    def test_percentages_round_half_up(self, tolerances):
        evaluation = evaluate_match(
            [inv("Valve", 3, 10)],
            [rec(rec_line("Valve", 2, 10))],
            tolerances,
        )

        assert evaluation.line_results[0].diff_pct == Decimal("33.33")


class TestMissingInvoiceLines:
    """Received items never billed."""

    def test_unbilled_receipt_item_warns_only(self, tolerances):
        evaluation = evaluate_match(
            [inv("Steel bolts", 100, 10)],
            [rec(rec_line("Steel bolts", 100, 10), rec_line("Washers", 20, 1))],
            tolerances,
        )

        assert len(evaluation.line_results) == 2
        extra = evaluation.line_results[1]
        assert extra.status == LineMatchStatus.MISSING_INVOICE
        assert extra.line_key == "receipt_item:washers"
        assert extra.diff_qty == Decimal("20")
        assert extra.diff_pct == Decimal("100")
        assert extra.reason == "Received but not invoiced"
        assert evaluation.global_status == GlobalMatchStatus.WARNING
        assert evaluation.summary.missing == 1


class TestGlobalStatus:
    """Document status precedence."""

    @pytest.mark.parametrize(
        "statuses,expected",
        [
            ([LineMatchStatus.OK, LineMatchStatus.OK], GlobalMatchStatus.OK),
            ([LineMatchStatus.OK, LineMatchStatus.WARNING], GlobalMatchStatus.WARNING),
            ([LineMatchStatus.WARNING, LineMatchStatus.BLOCKED, LineMatchStatus.OK], GlobalMatchStatus.BLOCKED),
            ([LineMatchStatus.MISSING_INVOICE], GlobalMatchStatus.WARNING),
            ([LineMatchStatus.MISSING_INVOICE, LineMatchStatus.MISSING_RECEIPT], GlobalMatchStatus.BLOCKED),
            ([], GlobalMatchStatus.OK),
        ],
    )
    def test_precedence(self, statuses, expected):
        assert resolve_global_status(statuses) == expected

    def test_no_receipts_is_pending_regardless_of_lines(self):
        assert resolve_global_status([LineMatchStatus.BLOCKED], has_receipts=False) == GlobalMatchStatus.PENDING


class TestDeterminism:
    """Re-running on unchanged input."""

    def test_evaluation_is_idempotent(self, tolerances):
        lines = [inv("Steel bolts", 100, 10), inv("Valve", 10, 101, line_no=2)]
        receipts = [rec(rec_line("Steel bolts", 96, 10), rec_line("Valve", 10, 100), rec_line("Washers", 5, 1))]

        first = evaluate_match(lines, receipts, tolerances)
        second = evaluate_match(lines, receipts, tolerances)

        assert first == second

    def test_normalize_description(self):
        assert normalize_description("  Hex   Bolt\tM8 ") == "hex bolt m8"
        assert normalize_description(None) == ""
