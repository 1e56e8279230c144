"""Error taxonomy and tagged service results for escrow workflows"""

import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(Enum):
    """Error categories for classification"""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    STATE_CONFLICT = "state_conflict"
    EXTERNAL_SERVICE = "external_service"


class ErrorCodes:
    """Centralized error codes"""

    # Validation Errors (1000-1999)
    INVALID_INPUT = "1001"
    MISSING_REQUIRED_FIELD = "1002"
    INVALID_FORMAT = "1003"
    VALUE_OUT_OF_RANGE = "1004"
    INVALID_AMOUNT = "1005"
    UNSUPPORTED_CURRENCY = "1006"
    CONTENT_REJECTED = "1007"
    FILE_REJECTED = "1008"
    RATE_LIMITED = "1009"

    # Authorization Errors (3000-3999)
    FORBIDDEN = "3001"
    INSUFFICIENT_PERMISSIONS = "3002"

    # Not Found (4000-4999)
    PROJECT_NOT_FOUND = "4001"
    MILESTONE_NOT_FOUND = "4002"
    DISPUTE_NOT_FOUND = "4003"
    USER_NOT_FOUND = "4004"
    TRANSACTION_NOT_FOUND = "4005"

    # Payment / external (6000-6999)
    PAYMENT_FAILED = "6001"
    MODERATION_UNAVAILABLE = "6002"
    ADVISOR_UNAVAILABLE = "6003"

    # State conflicts (9000-9999)
    INVALID_TRANSITION = "9001"
    CONCURRENT_MODIFICATION = "9002"
    OPERATION_IN_FLIGHT = "9003"
    DUPLICATE_DISPUTE = "9004"
    INSUFFICIENT_ESCROW = "9005"
    ESCROW_IMBALANCE = "9006"
    RECONCILIATION_REQUIRED = "9007"
    APPEAL_NOT_ALLOWED = "9008"


class EscrowDomainError(Exception):
    """Base class for every expected workflow failure"""

    category = ErrorCategory.VALIDATION
    default_code = ErrorCodes.INVALID_INPUT

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(EscrowDomainError):
    """Bad input; never retried automatically"""

    category = ErrorCategory.VALIDATION
    default_code = ErrorCodes.INVALID_INPUT


class AuthorizationError(EscrowDomainError):
    category = ErrorCategory.AUTHORIZATION
    default_code = ErrorCodes.FORBIDDEN


class NotFoundError(EscrowDomainError):
    category = ErrorCategory.NOT_FOUND
    default_code = ErrorCodes.PROJECT_NOT_FOUND


class StateConflictError(EscrowDomainError):
    """Transition attempted from an illegal state; caller should re-fetch"""

    category = ErrorCategory.STATE_CONFLICT
    default_code = ErrorCodes.INVALID_TRANSITION


class ExternalServiceError(EscrowDomainError):
    """Collaborator failure. No domain state was committed when retryable is True."""

    category = ErrorCategory.EXTERNAL_SERVICE
    default_code = ErrorCodes.PAYMENT_FAILED

    def __init__(
        self,
        message: str,
        service: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message, code=code, details=details)
        self.service = service
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"service": self.service, "retryable": self.retryable})
        return data


@dataclass
class ServiceResult(Generic[T]):
    """Tagged result: exactly one of value or error is meaningful"""

    success: bool
    value: Optional[T] = None
    error: Optional[EscrowDomainError] = None
    warnings: list = field(default_factory=list)

    @classmethod
    def ok(cls, value: T = None) -> "ServiceResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: EscrowDomainError) -> "ServiceResult[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Value on success, otherwise raise the carried error"""
        if not self.success:
            raise self.error
        return self.value


def service_operation(func: Callable) -> Callable:
    """
    Wrap an async workflow method so domain errors come back as a ServiceResult.

    Unexpected exceptions are programming errors: they are logged and re-raised.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> ServiceResult:
        try:
            value = await func(*args, **kwargs)
        except EscrowDomainError as e:
            log = logger.error if isinstance(e, ExternalServiceError) else logger.warning
            log(f"🚫 {func.__qualname__} rejected: {type(e).__name__} [{e.code}] {e.message}")
            return ServiceResult.fail(e)
        except Exception:
            logger.exception(f"❌ Unexpected error in {func.__qualname__}")
            raise
        return ServiceResult.ok(value)

    return wrapper
