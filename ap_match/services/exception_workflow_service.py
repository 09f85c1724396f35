"""
Match exception workflow: priority, ownership, SLA, escalation and resolution.

Exceptions start PENDING, may be escalated (an owner/priority transition, not
a persisted status) and end RESOLVED. Nothing leaves RESOLVED.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ap_match.core.exceptions import NotFoundException
from ap_match.db.base import as_utc, utcnow
from ap_match.models.invoice import Invoice, PayApprovalStatus
from ap_match.models.matching import (
    SLA_BREACH_REASON,
    SYSTEM_ACTOR,
    ExceptionAction,
    ExceptionPriority,
    ExceptionStatus,
    GlobalMatchStatus,
    HistoryAction,
    MatchException,
    MatchExceptionHistory,
    MatchExceptionType,
    MatchResult,
)
from ap_match.schemas.exception import (
    EscalationSweepResult,
    ExceptionFilter,
    ExceptionResolutionRequest,
    ExceptionResolutionResult,
    ExceptionStatistics,
    PendingException,
    PriorityThresholds,
    SlaRule,
)
from ap_match.services.audit_service import AuditService
from ap_match.services.config_service import MatchConfigService, priority_thresholds
from ap_match.services.metrics_service import match_metrics
from ap_match.services.role_directory import (
    OwnerSelectionPolicy,
    RoleDirectory,
    get_selection_policy,
)

logger = logging.getLogger(__name__)


def classify_priority(
    exception_type: MatchExceptionType,
    impact_amount: Decimal,
    thresholds: Optional[PriorityThresholds] = None,
) -> ExceptionPriority:
    """
    Priority tier from exception type and monetary impact.

    A missing receipt blocks all payment and is always URGENT.
    """
    if exception_type == MatchExceptionType.MISSING_RECEIPT:
        return ExceptionPriority.URGENT

    thresholds = thresholds or priority_thresholds()
    impact = Decimal(impact_amount or 0)

    if impact >= thresholds.urgent:
        return ExceptionPriority.URGENT
    if impact >= thresholds.high:
        return ExceptionPriority.HIGH
    if impact >= thresholds.normal:
        return ExceptionPriority.NORMAL
    return ExceptionPriority.LOW


def compute_sla_hours(priority: ExceptionPriority, base_hours: float) -> float:
    """SLA hours adjusted by priority."""
    if priority == ExceptionPriority.URGENT:
        return max(4.0, base_hours / 4)
    if priority == ExceptionPriority.HIGH:
        return max(8.0, base_hours / 2)
    return float(base_hours)


def compute_sla_deadline(created_at: datetime, priority: ExceptionPriority, base_hours: float) -> datetime:
    return as_utc(created_at) + timedelta(hours=compute_sla_hours(priority, base_hours))


def _priority_rank():
    return case(
        *[(MatchException.priority == priority, priority.rank) for priority in ExceptionPriority],
        else_=len(ExceptionPriority) + 1,
    )


class ExceptionQueryBuilder:
    """Accumulates parameterized conditions for exception queue queries."""

    def __init__(self, company_id: str):
        self._conditions = [MatchException.company_id == company_id]

    def unresolved(self) -> "ExceptionQueryBuilder":
        self._conditions.append(MatchException.resolved.is_(False))
        return self

    def visible_to(self, user_id: str, roles: Sequence[str], mine_only: bool = False) -> "ExceptionQueryBuilder":
        """Assigned to the user, or owned by one of their roles unless ``mine_only``."""
        if mine_only or not roles:
            self._conditions.append(MatchException.owner_user_id == user_id)
        else:
            self._conditions.append(
                or_(
                    MatchException.owner_user_id == user_id,
                    MatchException.owner_role.in_(list(roles)),
                )
            )
        return self

    def of_types(self, exception_types: Sequence[MatchExceptionType]) -> "ExceptionQueryBuilder":
        if exception_types:
            self._conditions.append(MatchException.exception_type.in_(list(exception_types)))
        return self

    def with_priorities(self, priorities: Sequence[ExceptionPriority]) -> "ExceptionQueryBuilder":
        if priorities:
            self._conditions.append(MatchException.priority.in_(list(priorities)))
        return self

    def where(self, *conditions) -> "ExceptionQueryBuilder":
        self._conditions.extend(conditions)
        return self

    @property
    def conditions(self) -> List:
        return list(self._conditions)

    def build(self, limit: Optional[int] = None):
        """Select ordered by priority tier, soonest deadline, oldest creation."""
        query = (
            select(MatchException)
            .where(and_(*self._conditions))
            .order_by(
                _priority_rank(),
                MatchException.sla_deadline.asc().nulls_last(),
                MatchException.created_at.asc(),
            )
        )
        if limit is not None:
            query = query.limit(limit)
        return query


@dataclass
class AssignmentPlan:
    """Priority, deadline and owner computed for a new exception."""

    priority: ExceptionPriority
    sla_deadline: datetime
    owner_role: str
    owner_user_id: Optional[str] = None


class ExceptionWorkflowService:
    """Ownership, SLA, escalation and resolution of match exceptions."""

    def __init__(
        self,
        db: AsyncSession,
        role_directory: Optional[RoleDirectory] = None,
        config_service: Optional[MatchConfigService] = None,
        selection_policy: Optional[OwnerSelectionPolicy] = None,
        audit_service: Optional[AuditService] = None,
        thresholds: Optional[PriorityThresholds] = None,
    ):
        self.db = db
        self.role_directory = role_directory or RoleDirectory(db)
        self.config_service = config_service or MatchConfigService(db)
        self.selection_policy = selection_policy or get_selection_policy()
        self.audit_service = audit_service or AuditService(db)
        self.thresholds = thresholds or priority_thresholds()

    async def _select_owner(self, company_id: str, role_name: str, now: datetime) -> Optional[str]:
        candidates = await self.role_directory.active_users_with_role(company_id, role_name, now)
        return self.selection_policy.select(company_id, role_name, candidates)

    # Assignment

    async def plan_assignment(
        self,
        exception: MatchException,
        company_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AssignmentPlan:
        """Compute priority, deadline and owner without mutating the exception."""
        now = now or utcnow()
        company_id = company_id or exception.company_id
        created_at = exception.created_at or now

        rule = await self.config_service.get_sla_rule(company_id, exception.exception_type)
        priority = classify_priority(exception.exception_type, exception.impact_amount, self.thresholds)
        owner_user_id = await self._select_owner(company_id, rule.owner_role, now)

        return AssignmentPlan(
            priority=priority,
            sla_deadline=compute_sla_deadline(created_at, priority, rule.sla_hours),
            owner_role=rule.owner_role,
            owner_user_id=owner_user_id,
        )

    def apply_assignment(self, exception: MatchException, plan: AssignmentPlan):
        """Write a plan onto the exception and record its CREATE history entry."""
        exception.priority = plan.priority
        exception.sla_deadline = plan.sla_deadline
        exception.owner_role = plan.owner_role
        exception.owner_user_id = plan.owner_user_id

        self.db.add(
            MatchExceptionHistory(
                exception_id=exception.id,
                action=HistoryAction.CREATE.value,
                to_status=ExceptionStatus.PENDING.value,
                to_owner=plan.owner_user_id or plan.owner_role,
                actor=SYSTEM_ACTOR,
            )
        )

        match_metrics.record_exception_created(exception.exception_type.value, plan.priority.value)
        logger.info(
            f"Assigned exception {exception.id} ({exception.exception_type.value}) priority "
            f"{plan.priority.value} to {plan.owner_user_id or 'role ' + plan.owner_role}, "
            f"due {plan.sla_deadline.isoformat()}"
        )

    async def assign_owner_and_sla(
        self,
        exception: MatchException,
        company_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MatchException:
        """
        Classify priority, set the SLA deadline and pick an owner for a new exception.

        The owner is an active holder of the rule's owner role; with no holder
        the exception stays unassigned but keeps the role so role queues see it.
        Does not commit.
        """
        if exception.id is None or exception.created_at is None:
            await self.db.flush()

        plan = await self.plan_assignment(exception, company_id=company_id, now=now)
        self.apply_assignment(exception, plan)
        await self.db.flush()
        return exception

    # Escalation

    async def run_escalation_sweep(
        self,
        company_id: str,
        now: Optional[datetime] = None,
    ) -> EscalationSweepResult:
        """
        Mark overdue exceptions breached and escalate the ones past escalate-after.

        Both steps are conditional UPDATEs checked by rowcount, so repeated or
        concurrent sweeps breach and escalate each exception at most once.
        SLA rules are read once per exception type per sweep.
        """
        now = now or utcnow()
        result = EscalationSweepResult(company_id=company_id, swept_at=now)

        query = (
            ExceptionQueryBuilder(company_id)
            .unresolved()
            .where(
                MatchException.escalated_at.is_(None),
                MatchException.sla_deadline.is_not(None),
                MatchException.sla_deadline < now,
            )
            .build()
        )

        try:
            candidates = (await self.db.execute(query)).scalars().all()
            result.checked = len(candidates)
            rules: Dict[MatchExceptionType, SlaRule] = {}

            for exception in candidates:
                if not exception.sla_breached:
                    if not await self._mark_breached(exception):
                        result.skipped += 1
                        continue
                    result.breached += 1

                rule = rules.get(exception.exception_type)
                if rule is None:
                    rule = await self.config_service.get_sla_rule(company_id, exception.exception_type)
                    rules[exception.exception_type] = rule

                if await self._escalate_if_due(exception, rule, company_id, now):
                    result.escalated += 1

            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Escalation sweep failed for company {company_id}: {e}")
            raise

        logger.info(
            f"Escalation sweep for company {company_id}: checked={result.checked} "
            f"breached={result.breached} escalated={result.escalated} skipped={result.skipped}"
        )
        return result

    async def _mark_breached(self, exception: MatchException) -> bool:
        outcome = await self.db.execute(
            update(MatchException)
            .where(
                MatchException.id == exception.id,
                MatchException.sla_breached.is_(False),
                MatchException.resolved.is_(False),
            )
            .values(sla_breached=True)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            logger.debug(f"Exception {exception.id} already breached or resolved by another sweep")
            return False

        exception.sla_breached = True
        match_metrics.record_sla_breach(exception.exception_type.value)
        return True

    async def _escalate_if_due(
        self, exception: MatchException, rule: SlaRule, company_id: str, now: datetime
    ) -> bool:
        if not rule.escalate_to_role:
            return False

        age_hours = (now - as_utc(exception.created_at)).total_seconds() / 3600
        if age_hours <= rule.escalate_after_hours:
            return False

        to_user = await self._select_owner(company_id, rule.escalate_to_role, now)
        escalated_to = to_user or rule.escalate_to_role

        claimed = await self.db.execute(
            update(MatchException)
            .where(
                MatchException.id == exception.id,
                MatchException.escalated_at.is_(None),
                MatchException.resolved.is_(False),
            )
            .values(escalated_at=now, escalated_to=escalated_to)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return False

        self._reassign(
            exception,
            to_user=to_user,
            to_role=rule.escalate_to_role,
            now=now,
            reason_code=SLA_BREACH_REASON,
            actor=SYSTEM_ACTOR,
        )
        match_metrics.record_escalation(exception.exception_type.value, rule.escalate_to_role)
        return True

    def _reassign(
        self,
        exception: MatchException,
        to_user: Optional[str],
        to_role: str,
        now: datetime,
        reason_code: str,
        actor: str,
        reason_text: Optional[str] = None,
    ):
        from_owner = exception.owner_user_id or exception.owner_role
        to_owner = to_user or to_role

        exception.owner_user_id = to_user
        exception.owner_role = to_role
        exception.priority = ExceptionPriority.URGENT
        exception.escalated_at = now
        exception.escalated_to = to_owner

        self.db.add(
            MatchExceptionHistory(
                exception_id=exception.id,
                action=HistoryAction.ESCALATE.value,
                from_status=ExceptionStatus.PENDING.value,
                to_status=ExceptionStatus.PENDING.value,
                from_owner=from_owner,
                to_owner=to_owner,
                reason_code=reason_code,
                reason_text=reason_text,
                actor=actor,
            )
        )
        logger.info(f"Escalated exception {exception.id} from {from_owner} to {to_owner} ({reason_code})")

    # Resolution

    async def get_exception(self, exception_id) -> MatchException:
        result = await self.db.execute(
            select(MatchException)
            .options(selectinload(MatchException.match_result))
            .where(MatchException.id == exception_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        exception = result.scalar_one_or_none()
        if exception is None:
            raise NotFoundException(
                f"Match exception {exception_id} not found",
                details={"exception_id": str(exception_id)},
            )
        return exception

    async def _lock_invoice_of(self, exception_id) -> Optional[Invoice]:
        """Lock the invoice row owning an exception, the same row a match run locks first."""
        invoice_id = await self.db.scalar(
            select(MatchResult.invoice_id)
            .join(MatchException, MatchException.match_result_id == MatchResult.id)
            .where(MatchException.id == exception_id)
        )
        if invoice_id is None:
            raise NotFoundException(
                f"Match exception {exception_id} not found",
                details={"exception_id": str(exception_id)},
            )

        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def resolve_exception(
        self,
        exception_id,
        request: ExceptionResolutionRequest,
        now: Optional[datetime] = None,
    ) -> ExceptionResolutionResult:
        """
        Apply a human resolution to an exception.

        Already resolved exceptions and escalations with no target come back
        as ``success=False``. Resolving the last open exception of a match
        result turns the result and the invoice cache RESOLVED.

        The invoice row is locked before the exception is re-read, so
        resolutions and match runs of one invoice apply one at a time.

        Raises:
            NotFoundException: If the exception does not exist
        """
        now = now or utcnow()
        invoice = await self._lock_invoice_of(exception_id)
        exception = await self.get_exception(exception_id)

        if exception.resolved:
            return ExceptionResolutionResult(
                success=False,
                message="Exception already resolved",
                exception_id=exception.id,
            )

        try:
            if request.action == ExceptionAction.ESCALATE:
                return await self._escalate_manually(exception, request, now)

            match_result_resolved = await self._resolve(exception, invoice, request, now)
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to resolve exception {exception_id}: {e}")
            raise

        match_metrics.record_exception_resolved(request.action.value)
        logger.info(f"Exception {exception.id} resolved by {request.resolved_by} with {request.action.value}")

        return ExceptionResolutionResult(
            success=True,
            message="Match resolved" if match_result_resolved else "Exception resolved",
            exception_id=exception.id,
            match_result_resolved=match_result_resolved,
        )

    async def _escalate_manually(
        self,
        exception: MatchException,
        request: ExceptionResolutionRequest,
        now: datetime,
    ) -> ExceptionResolutionResult:
        rule = await self.config_service.get_sla_rule(exception.company_id, exception.exception_type)
        if not rule.escalate_to_role:
            return ExceptionResolutionResult(
                success=False,
                message="No escalation target configured for this exception type",
                exception_id=exception.id,
            )

        to_user = await self._select_owner(exception.company_id, rule.escalate_to_role, now)
        self._reassign(
            exception,
            to_user=to_user,
            to_role=rule.escalate_to_role,
            now=now,
            reason_code=request.reason_code,
            actor=request.resolved_by,
            reason_text=request.reason_text,
        )

        await self.audit_service.record(
            company_id=exception.company_id,
            entity="match_exception",
            entity_id=str(exception.id),
            action="ESCALATE_EXCEPTION",
            payload={
                "to_owner": exception.escalated_to,
                "reason_code": request.reason_code,
            },
            user_id=request.resolved_by,
        )
        await self.db.commit()
        match_metrics.record_escalation(exception.exception_type.value, rule.escalate_to_role)

        return ExceptionResolutionResult(
            success=True,
            message=f"Exception escalated to {exception.escalated_to}",
            exception_id=exception.id,
        )

    async def _resolve(
        self,
        exception: MatchException,
        invoice: Optional[Invoice],
        request: ExceptionResolutionRequest,
        now: datetime,
    ) -> bool:
        self.db.add(
            MatchExceptionHistory(
                exception_id=exception.id,
                action=request.action.value,
                from_status=ExceptionStatus.PENDING.value,
                to_status=ExceptionStatus.RESOLVED.value,
                from_owner=exception.owner_user_id or exception.owner_role,
                reason_code=request.reason_code,
                reason_text=request.reason_text,
                actor=request.resolved_by,
            )
        )

        exception.resolved = True
        exception.resolved_by = request.resolved_by
        exception.resolved_at = now
        exception.resolution_action = request.action
        exception.resolution_reason_code = request.reason_code
        exception.resolution_text = request.reason_text
        exception.adjusted_amount = request.adjusted_amount
        exception.linked_note_ref = request.linked_note_ref
        await self.db.flush()

        match_result: MatchResult = exception.match_result

        if request.action == ExceptionAction.REJECT_INVOICE and invoice is not None:
            invoice.pay_approval_status = PayApprovalStatus.REJECTED
            invoice.pay_rejected_reason = request.reason_text or request.reason_code

        remaining = await self.db.scalar(
            select(func.count(MatchException.id)).where(
                MatchException.match_result_id == match_result.id,
                MatchException.resolved.is_(False),
            )
        )

        match_result_resolved = remaining == 0
        if match_result_resolved:
            match_result.global_status = GlobalMatchStatus.RESOLVED
            match_result.resolved_at = now
            if invoice is not None:
                invoice.match_status = GlobalMatchStatus.RESOLVED
                invoice.match_block_reason = None
                if invoice.pay_approval_status == PayApprovalStatus.BLOCKED_BY_MATCH:
                    invoice.pay_approval_status = None

        await self.audit_service.record(
            company_id=exception.company_id,
            entity="match_exception",
            entity_id=str(exception.id),
            action="RESOLVE_EXCEPTION",
            payload={
                "action": request.action.value,
                "reason_code": request.reason_code,
                "adjusted_amount": str(request.adjusted_amount) if request.adjusted_amount is not None else None,
                "linked_note_ref": request.linked_note_ref,
                "match_result_resolved": match_result_resolved,
            },
            user_id=request.resolved_by,
        )
        return match_result_resolved

    # Queries

    async def list_pending_for_user(
        self,
        company_id: str,
        user_id: str,
        filters: Optional[ExceptionFilter] = None,
        now: Optional[datetime] = None,
    ) -> List[PendingException]:
        """Unresolved exceptions assigned to the user or to one of their roles."""
        filters = filters or ExceptionFilter()
        roles = [] if filters.mine_only else await self.role_directory.roles_for_user(company_id, user_id, now)

        query = (
            ExceptionQueryBuilder(company_id)
            .unresolved()
            .visible_to(user_id, roles, mine_only=filters.mine_only)
            .of_types(filters.exception_types)
            .with_priorities(filters.priorities)
            .build(limit=filters.limit)
        )
        rows = (await self.db.execute(query)).scalars().all()
        return [PendingException.model_validate(row) for row in rows]

    async def get_statistics(self, company_id: str, now: Optional[datetime] = None) -> ExceptionStatistics:
        """Aggregates over unresolved exceptions. Read-only."""
        now = now or utcnow()
        open_conditions = ExceptionQueryBuilder(company_id).unresolved().conditions

        by_type = await self.db.execute(
            select(MatchException.exception_type, func.count(MatchException.id))
            .where(*open_conditions)
            .group_by(MatchException.exception_type)
        )
        by_priority = await self.db.execute(
            select(MatchException.priority, func.count(MatchException.id))
            .where(*open_conditions)
            .group_by(MatchException.priority)
        )
        rows = await self.db.execute(
            select(
                MatchException.impact_amount,
                MatchException.sla_breached,
                MatchException.created_at,
            ).where(*open_conditions)
        )

        stats = ExceptionStatistics(company_id=company_id)
        stats.by_type = {exception_type.value: count for exception_type, count in by_type.all()}
        stats.by_priority = {priority.value: count for priority, count in by_priority.all()}

        total_age_hours = 0.0
        for impact_amount, sla_breached, created_at in rows.all():
            stats.total_open += 1
            stats.total_impact += Decimal(impact_amount or 0)
            if sla_breached:
                stats.sla_breached += 1
            total_age_hours += max(0.0, (now - as_utc(created_at)).total_seconds() / 3600)

        if stats.total_open:
            stats.avg_age_hours = round(total_age_hours / stats.total_open, 2)

        return stats
