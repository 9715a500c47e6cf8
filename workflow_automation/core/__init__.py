"""Core workflow automation components."""

from .exceptions import (
    WorkflowAutomationError,
    WorkflowValidationError,
    NodeConfigurationError,
    NodeExecutionError,
    ExecutionCancelledError,
    ExecutionEngineError,
    NotFoundError,
    WorkflowInactiveError,
    InvalidStateTransitionError,
    StorageError,
    ResourceExhaustionError,
    SchedulerError,
    InvalidCronExpressionError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowAutomationError",
    "WorkflowValidationError",
    "NodeConfigurationError",
    "NodeExecutionError",
    "ExecutionCancelledError",
    "ExecutionEngineError",
    "NotFoundError",
    "WorkflowInactiveError",
    "InvalidStateTransitionError",
    "StorageError",
    "ResourceExhaustionError",
    "SchedulerError",
    "InvalidCronExpressionError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
