"""Database models and storage layer."""

from .database import Base, create_tables, drop_tables, get_database_engine
from .models import (
    WorkflowModel,
    WorkflowNodeModel,
    WorkflowEdgeModel,
    WorkflowExecutionModel,
    ExecutionLogModel,
    ScheduledWorkflowModel,
)
from .repository import WorkflowStore

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "get_database_engine",
    "WorkflowModel",
    "WorkflowNodeModel",
    "WorkflowEdgeModel",
    "WorkflowExecutionModel",
    "ExecutionLogModel",
    "ScheduledWorkflowModel",
    "WorkflowStore",
]
