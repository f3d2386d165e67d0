"""
Custom exceptions for the ICCT cache and query layer.
Type-safe error handling with clear semantics.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categorization for better handling and monitoring."""
    CACHE = "cache"
    DATABASE = "database"
    VALIDATION = "validation"
    SYSTEM = "system"


class IcctError(Exception):
    """Base exception for all ICCT-specific errors with context."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.error_code = error_code or self._generate_error_code()
        self.severity = severity
        self.category = category
        self.correlation_id = correlation_id or str(uuid.uuid4())

    def _generate_error_code(self) -> str:
        """Generate a unique error code for tracking."""
        return f"{self.__class__.__name__.upper()}_{int(self.timestamp.timestamp() * 1000)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__,
        }


class CacheBackendError(IcctError):
    """Store-client failure. Contained inside CacheService, never raised to callers."""

    def __init__(self, operation: str, key: Optional[str] = None, cause: Optional[BaseException] = None):
        details = {"operation": operation}
        if key is not None:
            details["key"] = key
        if cause is not None:
            details["cause"] = f"{type(cause).__name__}: {cause}"
        super().__init__(
            f"Cache {operation} failed" + (f" for key '{key}'" if key is not None else ""),
            details=details,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CACHE,
        )
        self.operation = operation
        self.key = key


class DataAccessError(IcctError):
    """Slow-path data fetch failure raised by repository implementations."""

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if query:
            details["query"] = query
        super().__init__(
            message,
            details=details,
            severity=kwargs.pop("severity", ErrorSeverity.HIGH),
            category=ErrorCategory.DATABASE,
            **kwargs
        )


class UnknownAnalyticsTypeError(IcctError):
    """Requested analytics type has no aggregation routine."""

    def __init__(self, analytics_type: str, supported: Optional[list] = None):
        super().__init__(
            f"Unknown analytics type: {analytics_type}",
            details={"analytics_type": analytics_type, "supported": supported or []},
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
        )
        self.analytics_type = analytics_type
