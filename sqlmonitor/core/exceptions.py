"""
Custom exceptions for SQL Monitor AI
"""

from typing import Optional, Any


class SQLMonitorError(Exception):
    """Base exception for all application errors"""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(SQLMonitorError):
    """Configuration related errors"""
    pass


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(SQLMonitorError):
    """Base database error"""
    pass


class ConnectionError(DatabaseError):
    """Database connection failed"""

    def __init__(self, message: str, server: Optional[str] = None,
                 database: Optional[str] = None, **kwargs):
        details = {"server": server, "database": database, **kwargs}
        super().__init__(message, details)


class ConnectionTimeoutError(ConnectionError):
    """Connection timed out"""
    pass


class AuthenticationError(DatabaseError):
    """Authentication failed"""
    pass


class QueryExecutionError(DatabaseError):
    """Query execution failed"""

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        details = {"query": query[:500] if query else None, **kwargs}
        super().__init__(message, details)


class QueryTimeoutError(QueryExecutionError):
    """Query execution timed out"""
    pass


class PermissionDeniedError(QueryExecutionError):
    """Insufficient permissions"""
    pass


# =============================================================================
# Collector Errors
# =============================================================================


class CollectorError(SQLMonitorError):
    """Base error for data collectors"""

    def __init__(
        self,
        message: str,
        collector_name: Optional[str] = None,
        is_retryable: bool = False,
        **kwargs
    ):
        details = {
            "collector": collector_name,
            "retryable": is_retryable,
            **kwargs
        }
        super().__init__(message, details)
        self.collector_name = collector_name
        self.is_retryable = is_retryable


class QueryStoreDisabledError(CollectorError):
    """Query Store is not enabled"""

    def __init__(self, database: str, **kwargs):
        message = f"Query Store is disabled for database '{database}'"
        super().__init__(
            message,
            collector_name="query_store",
            is_retryable=False,
            database=database,
            **kwargs
        )


# =============================================================================
# AI/LLM Errors
# =============================================================================


class AIError(SQLMonitorError):
    """Base AI/LLM error"""
    pass


class LLMConnectionError(AIError):
    """Cannot connect to LLM service"""
    pass


class LLMResponseError(AIError):
    """Invalid, unexpected or non-retryable LLM response"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: str = ""):
        super().__init__(message, {"status_code": status_code, "body": response_body[:500]})
        self.status_code = status_code
        self.response_body = response_body


# =============================================================================
# History / Remediation Errors
# =============================================================================


class HistoryStoreError(SQLMonitorError):
    """History persistence failed"""
    pass


class RemediationError(SQLMonitorError):
    """Reindex or query fix could not be carried out"""
    pass


class QueryNotFoundError(RemediationError):
    """Query text could not be resolved for a fix request"""

    def __init__(self, database: str, query_id: str):
        super().__init__(
            f"Query '{query_id}' not found in database '{database}'",
            {"database": database, "query_id": query_id},
        )


# =============================================================================
# Retry Errors
# =============================================================================


class RetryError(SQLMonitorError):
    """Retry related errors"""
    pass


class RetryExhaustedError(RetryError):
    """All retry attempts exhausted"""

    def __init__(self, message: str, attempts: int, last_exception: Optional[Exception] = None,
                 last_response_body: str = ""):
        details = {
            "attempts": attempts,
            "last_error": str(last_exception) if last_exception else None,
            "last_response": last_response_body[:500] if last_response_body else None,
        }
        super().__init__(message, details)
        self.attempts = attempts
        self.last_exception = last_exception
        self.last_response_body = last_response_body
