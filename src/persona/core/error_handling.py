"""
Unified Error Handling

Error taxonomy for the speech pipeline and memory subsystem, plus a single
handler that turns any exception into structured, logged context.

Design:
1. Classify errors by recovery strategy, not by origin
2. Provider failures degrade gracefully; isolation violations never do
3. Automatic context capture for debugging
"""

import asyncio
import inspect
import time
import traceback
import uuid
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable, Type, TypeVar
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


# ============================================================
# Domain exceptions
# ============================================================

class ProviderFailure(Exception):
    """An embedding, speech or index call failed. Recoverable."""

    def __init__(self, message: str, provider: str = "", retriable: bool = False,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable
        self.status_code = status_code


class EmbeddingError(ProviderFailure):
    """Embedding provider failed or returned malformed vectors"""


class SpeechSynthesisError(ProviderFailure):
    """Speech provider failed to produce audio"""


class SimilaritySearchError(ProviderFailure):
    """Similarity index query failed"""


class SynthesisTimeout(SpeechSynthesisError):
    """A single sentence exceeded its synthesis deadline"""

    def __init__(self, sequence: int, timeout: float):
        super().__init__(
            f"Synthesis of sentence {sequence} exceeded {timeout:.1f}s",
            provider="speech",
            retriable=True,
        )
        self.sequence = sequence
        self.timeout = timeout


class IsolationViolation(Exception):
    """
    A response carried an avatar_id/user_id that does not match the query.

    Fatal: never caught by graceful-degradation paths.
    """

    def __init__(self, expected: tuple[str, str], actual: tuple[str, str], fragment_id: str = ""):
        super().__init__(
            f"Fragment {fragment_id or '?'} belongs to avatar={actual[0]} user={actual[1]}, "
            f"query was scoped to avatar={expected[0]} user={expected[1]}"
        )
        self.expected = expected
        self.actual = actual
        self.fragment_id = fragment_id


# ============================================================
# Classification
# ============================================================

class ErrorSeverity(Enum):
    """Error severity classification by impact"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"       # Degraded, service continues
    ERROR = "error"           # Feature failure, other features work
    CRITICAL = "critical"     # Service failure
    FATAL = "fatal"           # Must not continue


class ErrorCategory(Enum):
    """Error categories by recovery strategy"""
    # Retriable
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"

    # Degrade gracefully
    PROVIDER = "provider"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"

    # Require operator intervention / code fix
    CONFIGURATION = "config"
    ISOLATION = "isolation"
    LOGIC = "logic"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Structured error context for debugging and recovery"""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: float = field(default_factory=time.time)

    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN

    message: str = ""
    original_exception: Optional[BaseException] = None
    error_type: str = ""

    operation: str = ""
    component: str = ""
    avatar_id: Optional[str] = None
    user_id: Optional[str] = None

    stack_trace: str = ""
    function_name: str = ""
    file_name: str = ""
    line_number: int = 0

    is_retriable: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            "error_id": self.error_id,
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "error_type": self.error_type,
            "operation": self.operation,
            "component": self.component,
            "avatar_id": self.avatar_id,
            "user_id": self.user_id,
            "function_name": self.function_name,
            "file_name": self.file_name,
            "line_number": self.line_number,
            "is_retriable": self.is_retriable,
            "metadata": self.metadata,
        }


class ErrorHandler:
    """
    Single responsibility: convert any error into structured context,
    keep counters, and log at the right level.
    """

    def __init__(self):
        self.error_stats: Dict[str, int] = {}
        self.recent_errors: list[ErrorContext] = []
        self.max_recent_errors = 100
        self.classification_rules = self._build_classification_rules()

    def _build_classification_rules(self) -> Dict[Type[BaseException], tuple[ErrorCategory, ErrorSeverity]]:
        """Most specific types first; lookup falls back to isinstance in this order"""
        return {
            IsolationViolation: (ErrorCategory.ISOLATION, ErrorSeverity.FATAL),
            SynthesisTimeout: (ErrorCategory.TIMEOUT, ErrorSeverity.WARNING),
            ProviderFailure: (ErrorCategory.PROVIDER, ErrorSeverity.WARNING),

            asyncio.TimeoutError: (ErrorCategory.TIMEOUT, ErrorSeverity.WARNING),
            TimeoutError: (ErrorCategory.TIMEOUT, ErrorSeverity.WARNING),
            ConnectionError: (ErrorCategory.NETWORK, ErrorSeverity.WARNING),

            ValueError: (ErrorCategory.VALIDATION, ErrorSeverity.WARNING),
            KeyError: (ErrorCategory.VALIDATION, ErrorSeverity.WARNING),
            FileNotFoundError: (ErrorCategory.NOT_FOUND, ErrorSeverity.WARNING),

            AssertionError: (ErrorCategory.LOGIC, ErrorSeverity.CRITICAL),
            TypeError: (ErrorCategory.LOGIC, ErrorSeverity.ERROR),
            AttributeError: (ErrorCategory.LOGIC, ErrorSeverity.ERROR),

            Exception: (ErrorCategory.UNKNOWN, ErrorSeverity.ERROR),
        }

    def classify_error(self, exception: BaseException) -> tuple[ErrorCategory, ErrorSeverity]:
        """Classify error by type"""
        exception_type = type(exception)

        if exception_type in self.classification_rules:
            return self.classification_rules[exception_type]

        for error_type, classification in self.classification_rules.items():
            if isinstance(exception, error_type):
                return classification

        return ErrorCategory.UNKNOWN, ErrorSeverity.ERROR

    def create_context(self,
                       exception: BaseException,
                       operation: str = "",
                       component: str = "",
                       avatar_id: Optional[str] = None,
                       user_id: Optional[str] = None,
                       **metadata) -> ErrorContext:
        """Create structured error context from exception"""
        frame = inspect.currentframe()
        caller_frame = frame.f_back if frame else None

        function_name = ""
        file_name = ""
        line_number = 0

        if caller_frame:
            function_name = caller_frame.f_code.co_name
            file_name = caller_frame.f_code.co_filename.split("/")[-1]
            line_number = caller_frame.f_lineno

        category, severity = self.classify_error(exception)

        is_retriable = category in {
            ErrorCategory.NETWORK,
            ErrorCategory.RATE_LIMIT,
            ErrorCategory.TIMEOUT,
        } or bool(getattr(exception, "retriable", False))

        return ErrorContext(
            severity=severity,
            category=category,
            message=str(exception),
            original_exception=exception,
            error_type=type(exception).__name__,
            operation=operation,
            component=component,
            avatar_id=avatar_id,
            user_id=user_id,
            stack_trace="".join(traceback.format_exception(type(exception), exception, exception.__traceback__)),
            function_name=function_name,
            file_name=file_name,
            line_number=line_number,
            is_retriable=is_retriable,
            metadata=metadata,
        )

    def handle_error(self, context: ErrorContext) -> None:
        """Handle error with unified logging and stats"""
        key = f"{context.category.value}.{context.severity.value}"
        self.error_stats[key] = self.error_stats.get(key, 0) + 1

        self.recent_errors.append(context)
        if len(self.recent_errors) > self.max_recent_errors:
            self.recent_errors.pop(0)

        log_data = context.to_dict()

        if context.severity == ErrorSeverity.DEBUG:
            logger.debug("error.handled", **log_data)
        elif context.severity == ErrorSeverity.INFO:
            logger.info("error.handled", **log_data)
        elif context.severity == ErrorSeverity.WARNING:
            logger.warning("error.handled", **log_data)
        elif context.severity == ErrorSeverity.ERROR:
            logger.error("error.handled", **log_data)
        elif context.severity == ErrorSeverity.CRITICAL:
            logger.critical("error.handled", **log_data)
        elif context.severity == ErrorSeverity.FATAL:
            logger.critical("error.fatal", **log_data)

    def get_stats(self) -> Dict[str, Any]:
        """Get error statistics for monitoring"""
        now = time.time()
        return {
            "total_errors": sum(self.error_stats.values()),
            "error_breakdown": self.error_stats.copy(),
            "recent_error_count": len(self.recent_errors),
            "errors_last_minute": len([e for e in self.recent_errors if now - e.timestamp < 60]),
        }

    def reset(self) -> None:
        """Clear counters (used by tests)"""
        self.error_stats.clear()
        self.recent_errors.clear()


# Global error handler instance
_error_handler = ErrorHandler()


def get_error_handler() -> ErrorHandler:
    """Get global error handler instance"""
    return _error_handler


def log_and_return_error(exception: BaseException,
                         default_return: Any = None,
                         operation: str = "",
                         component: str = "",
                         **metadata) -> Any:
    """Log error and return default value instead of raising"""
    context = _error_handler.create_context(
        exception,
        operation=operation,
        component=component,
        **metadata
    )
    _error_handler.handle_error(context)
    return default_return


def create_error_response(exception: BaseException,
                          operation: str = "",
                          component: str = "",
                          **metadata) -> Dict[str, Any]:
    """Create standardized error response for APIs"""
    context = _error_handler.create_context(
        exception,
        operation=operation,
        component=component,
        **metadata
    )
    _error_handler.handle_error(context)

    return {
        "success": False,
        "error": {
            "id": context.error_id,
            "type": context.error_type,
            "message": context.message,
            "category": context.category.value,
            "is_retriable": context.is_retriable,
            "timestamp": context.timestamp,
        }
    }


async def retry_async(func: Callable[[], Awaitable[T]],
                      operation: str,
                      max_retries: int = 3,
                      backoff_seconds: float = 0.5,
                      max_backoff_seconds: float = 8.0) -> T:
    """
    Run func, retrying retriable ProviderFailures with exponential backoff.

    Non-retriable errors and the final failure propagate unchanged.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except ProviderFailure as e:
            if not e.retriable or attempt >= max_retries:
                raise
            delay = min(backoff_seconds * (2 ** attempt), max_backoff_seconds)
            attempt += 1
            logger.warning("retry.scheduled",
                           operation=operation,
                           attempt=attempt,
                           max_retries=max_retries,
                           delay_sec=delay,
                           error=str(e))
            await asyncio.sleep(delay)
