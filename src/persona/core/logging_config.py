"""
Structured Logging Configuration

Unified structlog setup for the speech pipeline and memory subsystem.

Features:
1. Event names follow "component.operation[.detail]" and are split into fields
2. Human-readable console output in development
3. JSON output with file rotation in production
4. Performance timing helpers
"""

import asyncio
import logging
import logging.handlers
import os
import sys
import time
from pathlib import Path
from typing import Dict, Any

import structlog
from structlog.typing import FilteringBoundLogger

from persona.core.config import config


def get_log_level() -> int:
    """Get log level from environment"""
    level_str = os.getenv("PERSONA_LOG_LEVEL", config.LOG_LEVEL).upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_dir() -> Path:
    """Get logs directory"""
    log_dir = Path(os.getenv("PERSONA_LOG_DIR", config.PROJECT_ROOT / "logs"))
    log_dir.mkdir(exist_ok=True)
    return log_dir


def add_event_context(logger: FilteringBoundLogger,
                      wrapped_method,
                      event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split dotted event names into component / operation fields"""
    event_dict["process_id"] = os.getpid()

    event = event_dict.get("event")
    if isinstance(event, str):
        event_parts = event.split(".")
        if len(event_parts) >= 2:
            event_dict.setdefault("component", event_parts[0])
            event_dict.setdefault("operation", event_parts[1])
            if len(event_parts) >= 3:
                event_dict["sub_operation"] = ".".join(event_parts[2:])

    return event_dict


def add_error_enrichment(logger: FilteringBoundLogger,
                         wrapped_method,
                         event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add a fingerprint to error events for deduplication"""
    if event_dict.get("level", "").lower() in ["error", "critical"]:
        error_key = f"{event_dict.get('component', 'unknown')}.{event_dict.get('operation', 'unknown')}"
        event_dict["error_fingerprint"] = error_key

        if "isolation" in str(event_dict.get("event", "")).lower():
            event_dict["alert_priority"] = "high"
        elif event_dict.get("level", "").lower() == "critical":
            event_dict["alert_priority"] = "high"
        else:
            event_dict["alert_priority"] = "medium"

    return event_dict


def format_for_humans(logger: FilteringBoundLogger,
                      name: str,
                      event_dict: Dict[str, Any]) -> str:
    """Human-readable format for development"""

    timestamp = event_dict.pop("timestamp", time.time())
    level = event_dict.pop("level", "info").upper()
    event = event_dict.pop("event", "")

    if isinstance(timestamp, str):
        time_str = timestamp.split('T')[1][:8] if 'T' in timestamp else timestamp[:8]
    else:
        time_str = time.strftime("%H:%M:%S", time.localtime(timestamp))

    colors = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    reset = "\033[0m"
    color = colors.get(level, "")

    message = f"{color}[{time_str}] {level:8s} {event}{reset}"

    important_keys = ["avatar_id", "user_id", "sequence", "error_id"]
    context_parts = [f"{key}={event_dict[key]}" for key in important_keys if key in event_dict]
    if context_parts:
        message += f" ({', '.join(context_parts)})"

    skipped = set(important_keys) | {"component", "operation", "sub_operation", "process_id", "logger"}
    remaining = {k: v for k, v in event_dict.items()
                 if k not in skipped and not k.startswith('_')}

    if remaining and len(remaining) <= 4:
        extra = ", ".join(f"{k}={v}" for k, v in remaining.items())
        message += f" | {extra}"

    return message


def configure_logging(development_mode: bool = None) -> None:
    """Configure structured logging for Persona"""

    if development_mode is None:
        development_mode = os.getenv("PERSONA_ENV", "development") in ("development", "test")

    log_level = get_log_level()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_event_context,
        add_error_enrichment,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode:
        processors.append(format_for_humans)
        handler = logging.StreamHandler(sys.stdout)
    else:
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ])
        handler = logging.handlers.RotatingFileHandler(
            get_log_dir() / "persona.log",
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=5
        )

    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("persona.logging")
    logger.info("logging.configured",
                development_mode=development_mode,
                log_level=logging.getLevelName(log_level))


class PerformanceLogger:
    """Helper for logging how long an operation took"""

    def __init__(self, logger: FilteringBoundLogger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time

        if exc_type:
            self.logger.warning("performance.failed",
                                operation=self.operation,
                                duration_ms=round(self.duration * 1000, 1),
                                error_type=exc_type.__name__,
                                **self.context)
        else:
            self.logger.debug("performance.completed",
                              operation=self.operation,
                              duration_ms=round(self.duration * 1000, 1),
                              **self.context)


def log_performance(operation: str):
    """Decorator for automatic performance logging"""
    def decorator(func):
        logger = structlog.get_logger(func.__module__)

        if asyncio.iscoroutinefunction(func):
            async def async_wrapper(*args, **kwargs):
                with PerformanceLogger(logger, operation):
                    return await func(*args, **kwargs)
            return async_wrapper
        else:
            def sync_wrapper(*args, **kwargs):
                with PerformanceLogger(logger, operation):
                    return func(*args, **kwargs)
            return sync_wrapper
    return decorator
