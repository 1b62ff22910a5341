"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class CartBrawlException(Exception):
    """Base exception class for CartBrawl backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(CartBrawlException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ValidationError(CartBrawlException):
    """Raised when input is malformed or out of range. No state is changed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(CartBrawlException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class ConflictError(CartBrawlException):
    """Raised on duplicates or when an entity is in the wrong state."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFLICT", details)


class AuthorizationError(CartBrawlException):
    """Raised when authorization fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHORIZATION_ERROR", details)


class ExternalServiceError(CartBrawlException):
    """Raised when Whop or Shopify fails or times out."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True
    ):
        super().__init__(message, "EXTERNAL_SERVICE_ERROR", details)
        self.retryable = retryable


class PartialBatchFailure(CartBrawlException):
    """Raised when some units of a batch failed while the rest succeeded."""

    def __init__(self, job: str, succeeded: int, failed: int):
        super().__init__(
            f"{job}: {failed} unit(s) failed, {succeeded} succeeded",
            "PARTIAL_BATCH_FAILURE",
            {"job": job, "succeeded": succeeded, "failed": failed}
        )
        self.succeeded = succeeded
        self.failed = failed


# Competition-specific exceptions
class CompetitionNotFoundError(NotFoundError):
    """Raised when a competition is not found."""

    def __init__(self, competition_id: str):
        super().__init__(
            "Competition not found",
            {"competition_id": competition_id}
        )


class InsufficientBalanceError(ValidationError):
    """Raised when the creator cannot cover the prize."""

    def __init__(self, required: Any, available: Any):
        super().__init__(
            f"Insufficient balance. Required: {required}, Available: {available}",
            {"required": str(required), "available": str(available)}
        )
