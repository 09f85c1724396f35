"""
Database models for the AP three-way match core.
"""

from .matching import (
    ExceptionAction,
    ExceptionPriority,
    ExceptionStatus,
    GlobalMatchStatus,
    HistoryAction,
    LineMatchStatus,
    MatchException,
    MatchExceptionHistory,
    MatchExceptionType,
    MatchLineResult,
    MatchResult,
)
from .invoice import Invoice, InvoiceLine, PayApprovalStatus
from .reference import (
    GoodsReceipt,
    GoodsReceiptLine,
    POStatus,
    PurchaseOrder,
    ReceiptStatus,
)
from .configuration import ExceptionSlaConfig, PurchaseConfig
from .rbac import Role, UserRole
from .audit import AuditLog

__all__ = [
    "ExceptionAction",
    "ExceptionPriority",
    "ExceptionStatus",
    "GlobalMatchStatus",
    "HistoryAction",
    "LineMatchStatus",
    "MatchException",
    "MatchExceptionHistory",
    "MatchExceptionType",
    "MatchLineResult",
    "MatchResult",
    "Invoice",
    "InvoiceLine",
    "PayApprovalStatus",
    "GoodsReceipt",
    "GoodsReceiptLine",
    "POStatus",
    "PurchaseOrder",
    "ReceiptStatus",
    "ExceptionSlaConfig",
    "PurchaseConfig",
    "Role",
    "UserRole",
    "AuditLog",
]
