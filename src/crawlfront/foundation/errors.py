"""Error handling and exception management for crawlfront."""

import random
import traceback
from enum import Enum
from typing import Any, Dict, Optional, List, Union
from dataclasses import dataclass, field
from datetime import datetime

from .logging import get_logger


class ErrorCategory(str, Enum):
    """Categories of errors that can occur in the system."""
    VALIDATION = "validation"
    NETWORK = "network"
    EXTRACTION = "extraction"
    RESOURCE = "resource"
    SYSTEM = "system"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    STATE = "state"
    BILLING = "billing"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FetchErrorKind(str, Enum):
    """Failure kinds reported by a fetch engine."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"


@dataclass
class ErrorContext:
    """Context information for error handling."""
    operation: str
    url: Optional[str] = None
    job_id: Optional[str] = None
    engine: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "operation": self.operation,
            "url": self.url,
            "job_id": self.job_id,
            "engine": self.engine,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None
        }


@dataclass
class ErrorInfo:
    """Detailed error information."""
    error_type: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    context: Optional[ErrorContext] = None
    traceback: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    retryable: bool = False
    retry_after: Optional[float] = None


@dataclass
class RetryConfig:
    """Configuration for retry backoff."""
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True


class CrawlfrontError(Exception):
    """Base exception class for all crawlfront errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[ErrorContext] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.error_code = error_code
        self.details = details
        self.context = context
        self.retryable = retryable
        self.retry_after = retry_after
        self.timestamp = datetime.utcnow()

    def _add_detail(self, key: str, value: Any) -> None:
        if value is None:
            return
        if self.details is None:
            self.details = {}
        self.details[key] = value

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo."""
        return ErrorInfo(
            error_type=self.__class__.__name__,
            message=self.message,
            category=self.category,
            severity=self.severity,
            code=self.error_code,
            details=self.details or {},
            context=self.context,
            traceback=format_traceback(self),
            timestamp=self.timestamp,
            retryable=self.retryable,
            retry_after=self.retry_after
        )


class ValidationError(CrawlfrontError):
    """Error raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            error_code="VALIDATION_ERROR",
            retryable=False,
            **kwargs
        )
        self.field = field
        self._add_detail("field", field)


class ConfigurationError(CrawlfrontError):
    """Error raised when configuration is invalid. Never retried."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            error_code="CONFIGURATION_ERROR",
            retryable=False,
            **kwargs
        )
        self.config_key = config_key
        self._add_detail("config_key", config_key)


class UnsupportedEngineError(CrawlfrontError):
    """Error raised when a job names an engine that is not registered."""

    def __init__(self, engine: Any, available: Optional[List[str]] = None, **kwargs):
        super().__init__(
            f"Unsupported engine: {engine}",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            error_code="UNSUPPORTED_ENGINE",
            retryable=False,
            **kwargs
        )
        self.engine = engine
        self._add_detail("engine", str(engine))
        self._add_detail("available", available)


class JobNotFoundError(CrawlfrontError):
    """Error raised when a job id is unknown or expired."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(
            f"Job not found: {job_id}",
            category=ErrorCategory.RESOURCE,
            severity=ErrorSeverity.LOW,
            error_code="JOB_NOT_FOUND",
            retryable=False,
            **kwargs
        )
        self.job_id = job_id
        self._add_detail("job_id", job_id)


class JobNotReadyError(CrawlfrontError):
    """Error raised when a result is requested before the job has one."""

    def __init__(self, job_id: str, status: Any = None, **kwargs):
        super().__init__(
            f"Job {job_id} has no result yet (status: {getattr(status, 'value', status)})",
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.LOW,
            error_code="JOB_NOT_READY",
            retryable=False,
            **kwargs
        )
        self.job_id = job_id
        self.status = status
        self._add_detail("job_id", job_id)


class InvalidTransitionError(CrawlfrontError):
    """Error raised for an illegal job state-machine move."""

    def __init__(self, job_id: str, current: Any, target: Any, **kwargs):
        current_str = getattr(current, "value", current)
        target_str = getattr(target, "value", target)
        super().__init__(
            f"Job {job_id} cannot move from {current_str} to {target_str}",
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.LOW,
            error_code="INVALID_TRANSITION",
            retryable=False,
            **kwargs
        )
        self.job_id = job_id
        self.current = current
        self.target = target
        self._add_detail("current", current_str)
        self._add_detail("target", target_str)


class QueueUnavailableError(CrawlfrontError):
    """Error raised when submitting to a stopped engine queue."""

    def __init__(self, engine: Any, **kwargs):
        super().__init__(
            f"Queue for engine {getattr(engine, 'value', engine)} is not accepting work",
            category=ErrorCategory.RESOURCE,
            severity=ErrorSeverity.MEDIUM,
            error_code="QUEUE_UNAVAILABLE",
            retryable=False,
            **kwargs
        )
        self.engine = engine


class EngineFetchError(CrawlfrontError):
    """Error raised when a fetch engine fails to produce content."""

    def __init__(
        self,
        message: str,
        kind: FetchErrorKind = FetchErrorKind.NETWORK,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        **kwargs
    ):
        category = ErrorCategory.TIMEOUT if kind == FetchErrorKind.TIMEOUT else ErrorCategory.NETWORK
        super().__init__(
            message,
            category=category,
            severity=ErrorSeverity.MEDIUM,
            error_code="ENGINE_FETCH_ERROR",
            retryable=True,
            **kwargs
        )
        self.kind = FetchErrorKind(kind)
        self.status_code = status_code
        self.url = url
        self._add_detail("kind", self.kind.value)
        self._add_detail("status_code", status_code)
        self._add_detail("url", url)


class ExtractionError(CrawlfrontError):
    """Error raised when raw content cannot be turned into a result."""

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        retryable: bool = False,
        **kwargs
    ):
        super().__init__(
            message,
            category=ErrorCategory.EXTRACTION,
            severity=ErrorSeverity.MEDIUM,
            error_code="EXTRACTION_ERROR",
            retryable=retryable,
            **kwargs
        )
        self.step = step
        self._add_detail("step", step)


class AlreadyDebitedError(CrawlfrontError):
    """Error raised when a job id has already been charged."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(
            f"Job {job_id} has already been debited",
            category=ErrorCategory.BILLING,
            severity=ErrorSeverity.LOW,
            error_code="ALREADY_DEBITED",
            retryable=False,
            **kwargs
        )
        self.job_id = job_id
        self._add_detail("job_id", job_id)


class InsufficientBalanceError(CrawlfrontError):
    """Error raised by a billing pre-check when credits are exhausted."""

    def __init__(self, account_id: str, balance: int, required: int, **kwargs):
        super().__init__(
            f"Insufficient credits for account {account_id}: balance {balance}, required {required}",
            category=ErrorCategory.BILLING,
            severity=ErrorSeverity.LOW,
            error_code="INSUFFICIENT_BALANCE",
            retryable=False,
            **kwargs
        )
        self.account_id = account_id
        self.balance = balance
        self.required = required
        self._add_detail("balance", balance)
        self._add_detail("required", required)


class AccountNotFoundError(CrawlfrontError):
    """Error raised when a billing account does not exist."""

    def __init__(self, account_id: str, **kwargs):
        super().__init__(
            f"Account not found: {account_id}",
            category=ErrorCategory.BILLING,
            severity=ErrorSeverity.MEDIUM,
            error_code="ACCOUNT_NOT_FOUND",
            retryable=False,
            **kwargs
        )
        self.account_id = account_id


def format_traceback(error: BaseException) -> Optional[str]:
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class ErrorHandler:
    """Centralized error tracking and logging."""

    def __init__(self, max_recent_errors: int = 100):
        self.error_count: int = 0
        self.recent_errors: List[Dict[str, Any]] = []
        self.max_recent_errors = max_recent_errors
        self.error_counts: Dict[str, int] = {}

    def handle_error(
        self,
        error: Union[Exception, ErrorInfo],
        context: Optional[ErrorContext] = None
    ) -> ErrorInfo:
        """Handle and categorize an error.

        Args:
            error: Exception or ErrorInfo to handle
            context: Optional error context

        Returns:
            ErrorInfo with details
        """
        if isinstance(error, ErrorInfo):
            error_info = error
        elif isinstance(error, CrawlfrontError):
            error_info = error.to_error_info()
            if context and not error_info.context:
                error_info.context = context
        else:
            error_info = self._categorize_generic_error(error, context)

        self._track_error(error_info)
        self._log_error(error_info)

        return error_info

    def _categorize_generic_error(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ErrorInfo:
        """Categorize a generic exception."""
        error_type = error.__class__.__name__
        message = str(error)

        category = ErrorCategory.SYSTEM
        severity = ErrorSeverity.MEDIUM
        retryable = False

        if isinstance(error, TimeoutError) or "timeout" in message.lower():
            category = ErrorCategory.TIMEOUT
            retryable = True
        elif isinstance(error, ConnectionError) or "connection" in message.lower():
            category = ErrorCategory.NETWORK
            retryable = True
        elif isinstance(error, MemoryError):
            category = ErrorCategory.RESOURCE
            severity = ErrorSeverity.HIGH
        elif isinstance(error, (ValueError, TypeError)):
            category = ErrorCategory.VALIDATION
            severity = ErrorSeverity.LOW

        return ErrorInfo(
            error_type=error_type,
            message=message,
            category=category,
            severity=severity,
            context=context,
            traceback=format_traceback(error),
            retryable=retryable
        )

    def _track_error(self, error_info: ErrorInfo) -> None:
        """Track error occurrences."""
        self.error_count += 1

        self.recent_errors.insert(0, {
            "error_type": error_info.error_type,
            "message": error_info.message,
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "context": error_info.context.to_dict() if error_info.context else None,
            "timestamp": error_info.timestamp.isoformat(),
            "retryable": error_info.retryable,
        })
        del self.recent_errors[self.max_recent_errors:]

        error_key = f"{error_info.category.value}:{error_info.error_type}"
        self.error_counts[error_key] = self.error_counts.get(error_key, 0) + 1

    def _log_error(self, error_info: ErrorInfo) -> None:
        """Log error based on severity."""
        logger = get_logger(__name__)
        log_message = f"{error_info.error_type}: {error_info.message}"

        if error_info.context:
            context_info = f" (operation: {error_info.context.operation}"
            if error_info.context.url:
                context_info += f", url: {error_info.context.url}"
            if error_info.context.job_id:
                context_info += f", job: {error_info.context.job_id}"
            context_info += ")"
            log_message += context_info

        if error_info.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
        elif error_info.severity in (ErrorSeverity.HIGH, ErrorSeverity.MEDIUM):
            logger.error(log_message)
        else:
            logger.info(log_message)

        if error_info.traceback and error_info.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.debug(f"Traceback for {error_info.error_type}:\n{error_info.traceback}")

    def should_retry(
        self,
        error: Union[Exception, ErrorInfo],
        retry_count: int,
        max_retries: int
    ) -> bool:
        """Determine if a failed unit should be attempted again.

        Args:
            error: Error that occurred
            retry_count: Retries already performed (0 on the first failure)
            max_retries: Maximum number of retries allowed

        Returns:
            True if should retry, False otherwise
        """
        if retry_count >= max_retries:
            return False

        if isinstance(error, (ErrorInfo, CrawlfrontError)):
            return error.retryable

        return self._categorize_generic_error(error).retryable

    def calculate_retry_delay(
        self,
        attempt: int,
        config: Optional[RetryConfig] = None,
        error: Optional[Union[Exception, ErrorInfo]] = None
    ) -> float:
        """Calculate delay before retry.

        Args:
            attempt: Current attempt number (1-based)
            config: Retry configuration
            error: Error that occurred (may specify retry_after)

        Returns:
            Delay in seconds
        """
        if config is None:
            config = RetryConfig()

        if isinstance(error, (CrawlfrontError, ErrorInfo)) and error.retry_after:
            return error.retry_after

        if config.base_delay <= 0:
            return 0.0

        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
        delay = min(delay, config.max_delay)

        if config.jitter:
            delay *= (0.5 + random.random() * 0.5)
            delay = max(delay, config.base_delay)

        return delay

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics."""
        error_types: Dict[str, int] = {}
        operations: Dict[str, int] = {}

        for error_record in self.recent_errors:
            error_type = error_record["error_type"]
            error_types[error_type] = error_types.get(error_type, 0) + 1

            if error_record["context"] and error_record["context"]["operation"]:
                operation = error_record["context"]["operation"]
                operations[operation] = operations.get(operation, 0) + 1

        return {
            "total_errors": self.error_count,
            "error_types": error_types,
            "operations": operations,
            "error_counts": dict(self.error_counts),
        }

    def clear_errors(self) -> None:
        """Clear error history."""
        self.error_count = 0
        self.recent_errors.clear()
        self.error_counts.clear()

