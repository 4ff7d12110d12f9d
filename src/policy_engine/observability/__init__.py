"""Decision logging and the in-process event bus."""

from policy_engine.observability.events import CriticalSink, DispatchError, EventBus, Subscriber
from policy_engine.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "CriticalSink",
    "DispatchError",
    "EventBus",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "Subscriber",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "setup_logging",
    "shutdown_logging",
]
