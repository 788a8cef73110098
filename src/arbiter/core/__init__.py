"""Core framework infrastructure - config, events, logging, lifecycle, retry."""

from arbiter.core.config import ConfigManager
from arbiter.core.events import EventBus
from arbiter.core.logging import get_logger, setup_logging
from arbiter.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from arbiter.core.retry import (
    ArbiterError,
    ErrorCategory,
    ExecutorError,
    InvalidParticipant,
    InvalidRequest,
    InvalidState,
    NetworkError,
    NotFound,
    PermanentError,
    QuoteUnavailable,
    ResultUnavailable,
    StoreError,
    TransientError,
    is_retryable,
    retry_network,
)

__all__ = [
    # Config
    "ConfigManager",
    # Events
    "EventBus",
    # Logging
    "setup_logging",
    "get_logger",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Errors
    "ArbiterError",
    "ErrorCategory",
    "TransientError",
    "NetworkError",
    "QuoteUnavailable",
    "ResultUnavailable",
    "ExecutorError",
    "StoreError",
    "PermanentError",
    "NotFound",
    "InvalidState",
    "InvalidParticipant",
    "InvalidRequest",
    # Retry
    "retry_network",
    "is_retryable",
]
