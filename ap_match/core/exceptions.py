"""
Custom exceptions for the AP three-way match core.
"""

from typing import Any, Dict, Optional


class APMatchException(Exception):
    """Base exception for the match core."""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(APMatchException):
    """Raised when an invoice, receipt or exception does not exist."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            details=details,
        )


class ConcurrencyException(APMatchException):
    """Raised when a concurrent writer changed the match result first."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="CONFLICT_ERROR",
            details=details,
        )


class ConfigurationException(APMatchException):
    """Raised when configuration is invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details=details,
        )
