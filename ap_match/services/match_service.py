"""
Match persistence and orchestration.

Runs the evaluator for an invoice and persists the outcome in one unit of
work: match result, line rows, exceptions, invoice cache and audit record.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from ap_match.core.exceptions import ConcurrencyException, NotFoundException
from ap_match.db.base import utcnow
from ap_match.models.invoice import Invoice, PayApprovalStatus
from ap_match.models.matching import (
    GlobalMatchStatus,
    LineMatchStatus,
    MatchException,
    MatchExceptionType,
    MatchLineResult,
    MatchResult,
)
from ap_match.models.reference import GoodsReceipt, ReceiptStatus
from ap_match.schemas.matching import (
    InvoiceLineData,
    LineMatchResult,
    MatchEvaluation,
    MatchRunResult,
    ReceiptData,
    ToleranceConfig,
)
from ap_match.services.audit_service import AuditService
from ap_match.services.config_service import MatchConfigService
from ap_match.services.exception_workflow_service import ExceptionWorkflowService
from ap_match.services.match_evaluator import ZERO, evaluate_match
from ap_match.services.metrics_service import match_metrics

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")

RUN_LINE_MATCH = "RUN_LINE_MATCH"

# Columns copied from an evaluated line onto its MatchLineResult row
_LINE_COLUMNS = (
    "line_no",
    "line_key",
    "invoice_line_id",
    "receipt_line_id",
    "item_key",
    "description",
    "invoiced_qty",
    "received_qty",
    "invoice_price",
    "received_price",
    "compared_price",
    "discount_applied",
    "status",
    "diff_qty",
    "diff_pct",
    "diff_price",
    "price_variance_pct",
    "reason",
)


class InvoiceLockManager:
    """Per-invoice asyncio locks serializing match runs within one process."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, invoice_id):
        key = str(invoice_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, invoice_id) -> bool:
        lock = self._locks.get(str(invoice_id))
        return lock is not None and lock.locked()


# Shared by every MatchService in the process
invoice_locks = InvoiceLockManager()


@dataclass
class ExceptionDraft:
    """Exception derived from a non-OK line, before persistence."""

    exception_type: MatchExceptionType
    line_key: str
    field: str
    expected_value: Optional[str]
    received_value: Optional[str]
    difference: Optional[Decimal]
    difference_pct: Optional[Decimal]
    within_tolerance: bool
    impact_amount: Decimal

    @property
    def key(self) -> Tuple[MatchExceptionType, str]:
        return self.exception_type, self.line_key


def _text(value) -> Optional[str]:
    return None if value is None else str(value)


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)


def derive_exceptions(line_results: Sequence[LineMatchResult], tolerances: ToleranceConfig) -> List[ExceptionDraft]:
    """
    Typed exceptions for every non-OK line.

    A line may carry both a price and a quantity variance. Variances are
    detected from the exact differences, not the rounded percentages, so a
    line flagged for a variance that rounds to 0.00% still gets an
    exception. Impact is the monetary effect used for prioritization.
    """
    drafts: List[ExceptionDraft] = []

    for line in line_results:
        if line.status == LineMatchStatus.OK:
            continue

        field = f"Item: {line.description}"
        compared_price = line.compared_price or ZERO

        if line.status == LineMatchStatus.MISSING_RECEIPT:
            drafts.append(
                ExceptionDraft(
                    exception_type=MatchExceptionType.MISSING_RECEIPT,
                    line_key=line.line_key,
                    field=field,
                    expected_value=_text(line.invoiced_qty),
                    received_value="0",
                    difference=line.diff_qty,
                    difference_pct=line.diff_pct,
                    within_tolerance=False,
                    impact_amount=_money(compared_price * line.invoiced_qty),
                )
            )
            continue

        if line.status == LineMatchStatus.MISSING_INVOICE:
            drafts.append(
                ExceptionDraft(
                    exception_type=MatchExceptionType.MISSING_INVOICE,
                    line_key=line.line_key,
                    field=field,
                    expected_value=_text(line.received_qty),
                    received_value="0",
                    difference=line.diff_qty,
                    difference_pct=line.diff_pct,
                    within_tolerance=False,
                    impact_amount=_money((line.received_price or ZERO) * line.received_qty),
                )
            )
            continue

        if line.diff_price is not None and line.diff_price > 0:
            drafts.append(
                ExceptionDraft(
                    exception_type=MatchExceptionType.PRICE_VARIANCE,
                    line_key=line.line_key,
                    field=field,
                    expected_value=_text(line.received_price),
                    received_value=_text(line.compared_price),
                    difference=line.diff_price,
                    difference_pct=line.price_variance_pct,
                    within_tolerance=line.price_variance_pct <= tolerances.price_tolerance_pct,
                    impact_amount=_money((line.diff_price or ZERO) * line.invoiced_qty),
                )
            )

        if line.diff_qty is not None and line.diff_qty > 0:
            drafts.append(
                ExceptionDraft(
                    exception_type=MatchExceptionType.QUANTITY_VARIANCE,
                    line_key=line.line_key,
                    field=field,
                    expected_value=_text(line.received_qty),
                    received_value=_text(line.invoiced_qty),
                    difference=line.diff_qty,
                    difference_pct=line.diff_pct,
                    within_tolerance=line.diff_pct <= tolerances.qty_tolerance_pct,
                    impact_amount=_money((line.diff_qty or ZERO) * compared_price),
                )
            )

    return drafts


def block_reason(evaluation: MatchEvaluation) -> str:
    return f"{evaluation.summary.blocked} lines with discrepancies, {evaluation.summary.missing} missing"


@dataclass
class _ExceptionChanges:
    created: List[MatchException]
    updated: int = 0
    removed: int = 0
    preserved: int = 0


class MatchService:
    """Evaluate an invoice and replace its persisted match outcome."""

    def __init__(
        self,
        db: AsyncSession,
        config_service: Optional[MatchConfigService] = None,
        workflow: Optional[ExceptionWorkflowService] = None,
        audit_service: Optional[AuditService] = None,
        lock_manager: Optional[InvoiceLockManager] = None,
    ):
        self.db = db
        self.config_service = config_service or MatchConfigService(db)
        self.audit_service = audit_service or AuditService(db)
        self.workflow = workflow or ExceptionWorkflowService(
            db, config_service=self.config_service, audit_service=self.audit_service
        )
        self.lock_manager = lock_manager or invoice_locks

    async def run_match(
        self,
        invoice_id,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MatchRunResult:
        """
        Recompute and persist the match of one invoice.

        Args:
            invoice_id: Invoice to evaluate
            user_id: Acting user recorded in the audit trail
            now: Evaluation time, defaults to the current UTC time

        Returns:
            The persisted outcome with exception change counts

        Raises:
            NotFoundException: If the invoice does not exist
            ConcurrencyException: If another writer updated the match result first
        """
        now = now or utcnow()
        started = time.perf_counter()

        async with self.lock_manager.lock(invoice_id):
            try:
                result = await self._run_match(invoice_id, user_id, now)
            except StaleDataError as e:
                await self.db.rollback()
                logger.warning(f"Concurrent match run detected for invoice {invoice_id}: {e}")
                raise ConcurrencyException(
                    f"Match result for invoice {invoice_id} was modified concurrently",
                    details={"invoice_id": str(invoice_id)},
                )
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Match run failed for invoice {invoice_id}: {e}")
                raise

        match_metrics.record_match_run(result.global_status.value, time.perf_counter() - started)
        return result

    async def recompute_on_receipt_confirmed(
        self,
        goods_receipt_id,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[MatchRunResult]:
        """Re-run the match of the invoice a confirmed receipt is linked to."""
        receipt = await self.db.get(GoodsReceipt, goods_receipt_id)
        if receipt is None:
            raise NotFoundException(
                f"Goods receipt {goods_receipt_id} not found",
                details={"goods_receipt_id": str(goods_receipt_id)},
            )

        if receipt.invoice_id is None:
            logger.info(f"Goods receipt {goods_receipt_id} is not linked to an invoice, nothing to match")
            return None

        return await self.run_match(receipt.invoice_id, user_id=user_id, now=now)

    async def _load_invoice(self, invoice_id) -> Invoice:
        result = await self.db.execute(
            select(Invoice)
            .options(selectinload(Invoice.lines))
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundException(
                f"Invoice {invoice_id} not found",
                details={"invoice_id": str(invoice_id)},
            )
        return invoice

    async def _load_confirmed_receipts(self, invoice_id) -> List[GoodsReceipt]:
        result = await self.db.execute(
            select(GoodsReceipt)
            .options(selectinload(GoodsReceipt.lines))
            .where(
                GoodsReceipt.invoice_id == invoice_id,
                GoodsReceipt.status == ReceiptStatus.CONFIRMED,
            )
            .order_by(GoodsReceipt.created_at.asc(), GoodsReceipt.grn_no.asc())
        )
        return list(result.scalars().all())

    async def _load_match_result(self, invoice_id) -> Optional[MatchResult]:
        result = await self.db.execute(
            select(MatchResult)
            .options(
                selectinload(MatchResult.line_results),
                selectinload(MatchResult.exceptions).selectinload(MatchException.history),
            )
            .where(MatchResult.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _run_match(self, invoice_id, user_id: Optional[str], now: datetime) -> MatchRunResult:
        invoice = await self._load_invoice(invoice_id)
        tolerances = await self.config_service.get_tolerances(invoice.company_id)
        receipts = await self._load_confirmed_receipts(invoice.id)

        evaluation = evaluate_match(
            [InvoiceLineData.model_validate(line) for line in invoice.lines],
            [ReceiptData.model_validate(receipt) for receipt in receipts],
            tolerances,
        )

        match_result = await self._load_match_result(invoice.id)
        if match_result is None:
            match_result = MatchResult(company_id=invoice.company_id, invoice_id=invoice.id)
            self.db.add(match_result)

        match_result.goods_receipt_id = receipts[0].id if receipts else None
        match_result.purchase_order_id = invoice.purchase_order_id or next(
            (receipt.purchase_order_id for receipt in receipts if receipt.purchase_order_id), None
        )
        match_result.receipt_ids = [str(receipt.id) for receipt in receipts]
        match_result.discrepancies = [
            line.model_dump(mode="json") for line in evaluation.line_results if line.status != LineMatchStatus.OK
        ]
        match_result.summary = evaluation.summary.model_dump(mode="json")
        match_result.evaluated_at = now
        match_result.line_results = [
            MatchLineResult(**line.model_dump(include=set(_LINE_COLUMNS))) for line in evaluation.line_results
        ]

        changes = self._upsert_exceptions(
            match_result, derive_exceptions(evaluation.line_results, tolerances), now
        )
        await self.db.flush()

        assignment_failures = await self._assign_new_exceptions(changes.created, invoice.company_id, now)

        exceptions = match_result.exceptions
        if exceptions and all(exception.resolved for exception in exceptions):
            global_status = GlobalMatchStatus.RESOLVED
            match_result.resolved_at = match_result.resolved_at or now
        else:
            global_status = evaluation.global_status
            match_result.resolved_at = None
        match_result.global_status = global_status

        self._update_invoice_cache(invoice, global_status, evaluation, now)

        await self.audit_service.record(
            company_id=invoice.company_id,
            entity="match_result",
            entity_id=str(match_result.id),
            action=RUN_LINE_MATCH,
            payload={
                "global_status": global_status.value,
                "summary": evaluation.summary.model_dump(mode="json"),
                "lines_evaluated": len(evaluation.line_results),
            },
            user_id=user_id,
        )

        await self.db.commit()

        logger.info(
            f"Match for invoice {invoice.id}: {global_status.value} ({evaluation.summary.description}); "
            f"exceptions created={len(changes.created)} updated={changes.updated} "
            f"removed={changes.removed} preserved={changes.preserved}"
        )

        return MatchRunResult(
            match_result_id=match_result.id,
            invoice_id=invoice.id,
            global_status=global_status,
            summary=evaluation.summary,
            exceptions_created=len(changes.created),
            exceptions_updated=changes.updated,
            exceptions_removed=changes.removed,
            exceptions_preserved=changes.preserved,
            assignment_failures=assignment_failures,
            evaluated_at=now,
        )

    def _upsert_exceptions(
        self,
        match_result: MatchResult,
        drafts: List[ExceptionDraft],
        now: datetime,
    ) -> _ExceptionChanges:
        """
        Reconcile stored exceptions with the freshly derived ones by (type, line key).

        Resolved exceptions are never touched. Open ones still present are
        refreshed, open ones that disappeared are deleted, new keys are added.
        """
        changes = _ExceptionChanges(created=[])
        existing = {(exception.exception_type, exception.line_key): exception for exception in match_result.exceptions}
        derived_keys = set()

        for draft in drafts:
            derived_keys.add(draft.key)
            exception = existing.get(draft.key)

            if exception is None:
                exception = MatchException(
                    company_id=match_result.company_id,
                    exception_type=draft.exception_type,
                    line_key=draft.line_key,
                    created_at=now,
                )
                self._apply_draft(exception, draft)
                match_result.exceptions.append(exception)
                changes.created.append(exception)
            elif exception.resolved:
                changes.preserved += 1
            else:
                self._apply_draft(exception, draft)
                changes.updated += 1

        for key, exception in existing.items():
            if key in derived_keys:
                continue
            if exception.resolved:
                changes.preserved += 1
            else:
                match_result.exceptions.remove(exception)
                changes.removed += 1

        return changes

    @staticmethod
    def _apply_draft(exception: MatchException, draft: ExceptionDraft):
        exception.field = draft.field
        exception.expected_value = draft.expected_value
        exception.received_value = draft.received_value
        exception.difference = draft.difference
        exception.difference_pct = draft.difference_pct
        exception.within_tolerance = draft.within_tolerance
        exception.impact_amount = draft.impact_amount

    async def _assign_new_exceptions(self, exceptions: List[MatchException], company_id: str, now: datetime) -> int:
        """
        Best-effort owner/SLA assignment; a failure skips that exception only.

        Each lookup runs in its own SAVEPOINT so a failed statement does not
        abort the surrounding match transaction.
        """
        failures = 0
        for exception in exceptions:
            try:
                async with self.db.begin_nested():
                    plan = await self.workflow.plan_assignment(exception, company_id=company_id, now=now)
            except Exception as e:
                failures += 1
                match_metrics.record_assignment_failure()
                logger.warning(
                    f"Owner/SLA assignment failed for exception {exception.id} "
                    f"({exception.exception_type.value}): {e}"
                )
                continue
            self.workflow.apply_assignment(exception, plan)
        return failures

    @staticmethod
    def _update_invoice_cache(
        invoice: Invoice,
        global_status: GlobalMatchStatus,
        evaluation: MatchEvaluation,
        now: datetime,
    ):
        invoice.match_status = global_status
        invoice.match_checked_at = now

        if global_status == GlobalMatchStatus.BLOCKED:
            invoice.match_block_reason = block_reason(evaluation)
            # Manual approval or rejection is never overwritten
            if invoice.pay_approval_status not in (PayApprovalStatus.APPROVED, PayApprovalStatus.REJECTED):
                invoice.pay_approval_status = PayApprovalStatus.BLOCKED_BY_MATCH
        else:
            invoice.match_block_reason = None
            if invoice.pay_approval_status == PayApprovalStatus.BLOCKED_BY_MATCH:
                invoice.pay_approval_status = None
