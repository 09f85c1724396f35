"""
Match exception workflow schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ap_match.models.matching import (
    ExceptionAction,
    ExceptionPriority,
    MatchExceptionType,
)


class SlaRule(BaseModel):
    """SLA, ownership and escalation rule for one exception type."""

    sla_hours: float = 24.0
    owner_role: str
    escalate_after_hours: float = 48.0
    escalate_to_role: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PriorityThresholds(BaseModel):
    """Monetary impact thresholds for priority classification."""

    urgent: Decimal = Decimal("100000")
    high: Decimal = Decimal("50000")
    normal: Decimal = Decimal("10000")


class ExceptionResolutionRequest(BaseModel):
    """Human resolution of a match exception."""

    action: ExceptionAction
    reason_code: str = Field(..., min_length=1, max_length=100)
    resolved_by: str = Field(..., min_length=1)
    reason_text: Optional[str] = None
    adjusted_amount: Optional[Decimal] = None
    linked_note_ref: Optional[str] = None


class ExceptionResolutionResult(BaseModel):
    """Structured outcome; ``success=False`` is an invalid state, not a fault."""

    success: bool
    message: str
    exception_id: Optional[UUID] = None
    match_result_resolved: bool = False


class ExceptionFilter(BaseModel):
    """Filters for the pending-exceptions-for-user query."""

    mine_only: bool = False
    exception_types: List[MatchExceptionType] = Field(default_factory=list)
    priorities: List[ExceptionPriority] = Field(default_factory=list)
    limit: int = Field(default=50, ge=1, le=500)


class PendingException(BaseModel):
    """Row of a user's pending exception queue."""

    id: UUID
    match_result_id: UUID
    exception_type: MatchExceptionType
    field: str
    priority: ExceptionPriority
    impact_amount: Decimal
    owner_user_id: Optional[str] = None
    owner_role: Optional[str] = None
    sla_deadline: Optional[datetime] = None
    sla_breached: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExceptionStatistics(BaseModel):
    """Unresolved exception aggregates for a company."""

    company_id: str
    total_open: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)
    sla_breached: int = 0
    total_impact: Decimal = Decimal("0")
    avg_age_hours: float = 0.0


class EscalationSweepResult(BaseModel):
    """Counts from one escalation sweep."""

    company_id: str
    checked: int = 0
    breached: int = 0
    escalated: int = 0
    skipped: int = 0
    swept_at: datetime
