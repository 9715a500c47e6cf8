"""Data models for the workflow automation engine."""

from .core import (
    NodeType,
    ExecutionStatusEnum,
    TERMINAL_STATUSES,
    ALLOWED_TRANSITIONS,
    ValidationResult,
    NodeDefinition,
    EdgeDefinition,
    WorkflowDefinition,
    WorkflowUpdate,
    WorkflowRecord,
    WorkflowSummary,
    WorkflowSnapshot,
    ExecutionRecord,
    ExecutionLogEntry,
    ExecutionFilter,
    StartExecutionRequest,
    ScheduledWorkflow,
    ScheduleCreate,
    ScheduleUpdate,
    PoolStatus,
)

__all__ = [
    "NodeType",
    "ExecutionStatusEnum",
    "TERMINAL_STATUSES",
    "ALLOWED_TRANSITIONS",
    "ValidationResult",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowDefinition",
    "WorkflowUpdate",
    "WorkflowRecord",
    "WorkflowSummary",
    "WorkflowSnapshot",
    "ExecutionRecord",
    "ExecutionLogEntry",
    "ExecutionFilter",
    "StartExecutionRequest",
    "ScheduledWorkflow",
    "ScheduleCreate",
    "ScheduleUpdate",
    "PoolStatus",
]
