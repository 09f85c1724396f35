"""
Pydantic schemas for match evaluation, payment gating and exception workflow.
"""

from .matching import (
    InvoiceLineData,
    LineMatchResult,
    MatchEvaluation,
    MatchRunResult,
    MatchSummary,
    PaymentDecision,
    ReceiptData,
    ReceiptLineData,
    ToleranceConfig,
)
from .exception import (
    EscalationSweepResult,
    ExceptionFilter,
    ExceptionResolutionRequest,
    ExceptionResolutionResult,
    ExceptionStatistics,
    PendingException,
    PriorityThresholds,
    SlaRule,
)

__all__ = [
    "InvoiceLineData",
    "LineMatchResult",
    "MatchEvaluation",
    "MatchRunResult",
    "MatchSummary",
    "PaymentDecision",
    "ReceiptData",
    "ReceiptLineData",
    "ToleranceConfig",
    "EscalationSweepResult",
    "ExceptionFilter",
    "ExceptionResolutionRequest",
    "ExceptionResolutionResult",
    "ExceptionStatistics",
    "PendingException",
    "PriorityThresholds",
    "SlaRule",
]
