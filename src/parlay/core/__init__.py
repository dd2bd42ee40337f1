"""Config, events, logging, component lifecycle and the error hierarchy."""

from parlay.core.config import ConfigManager
from parlay.core.events import EventBus, publish_quietly
from parlay.core.lifecycle import BaseComponent, ComponentGroup, HealthCheckResult, HealthStatus
from parlay.core.logging import record_context, setup_logging
from parlay.core.retry import (
    ConditionFailedError,
    InvalidTransitionError,
    ParlayError,
    PermanentError,
    ResourceNotFoundError,
    RetryPolicy,
    TransientError,
    ValidationError,
    retry_transient,
    wrap_external_error,
)

__all__ = [
    "BaseComponent",
    "ComponentGroup",
    "ConditionFailedError",
    "ConfigManager",
    "EventBus",
    "HealthCheckResult",
    "HealthStatus",
    "InvalidTransitionError",
    "ParlayError",
    "PermanentError",
    "ResourceNotFoundError",
    "RetryPolicy",
    "TransientError",
    "ValidationError",
    "record_context",
    "publish_quietly",
    "retry_transient",
    "setup_logging",
    "wrap_external_error",
]
