"""Core Pydantic models for the workflow automation engine."""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeType(str, Enum):
    """Closed set of node type tags."""
    START = "Start"
    HTTP_REQUEST = "HttpRequest"
    DELAY = "Delay"
    CONDITION = "Condition"
    TRANSFORM = "Transform"
    END = "End"
    EMAIL = "Email"
    SCRIPT = "Script"
    DATABASE = "Database"

    @property
    def is_structural(self) -> bool:
        """Start and End nodes have no executor."""
        return self in (NodeType.START, NodeType.END)


class ExecutionStatusEnum(str, Enum):
    """Enumeration of execution and node log statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatusEnum.COMPLETED,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.CANCELLED,
})

# Pending -> Running -> terminal, plus Pending -> Cancelled/Failed for runs that
# are stopped or rejected before a worker picks them up.
ALLOWED_TRANSITIONS: Dict[ExecutionStatusEnum, frozenset] = {
    ExecutionStatusEnum.PENDING: frozenset({
        ExecutionStatusEnum.RUNNING,
        ExecutionStatusEnum.CANCELLED,
        ExecutionStatusEnum.FAILED,
    }),
    ExecutionStatusEnum.RUNNING: TERMINAL_STATUSES,
    ExecutionStatusEnum.COMPLETED: frozenset(),
    ExecutionStatusEnum.FAILED: frozenset(),
    ExecutionStatusEnum.CANCELLED: frozenset(),
}

CONDITION_HANDLES = ("true", "false")


class ValidationResult(BaseModel):
    """Result of workflow structure validation."""
    is_valid: bool = Field(..., description="Whether the workflow can be executed")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    node_id: str = Field(..., description="Identifier of the node, unique within its workflow")
    node_type: NodeType = Field(..., description="Type tag selecting the node's executor")
    label: Optional[str] = Field(None, description="Optional display name")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Executor-owned configuration")

    @field_validator('node_id')
    @classmethod
    def validate_node_id_format(cls, node_id):
        """Ensure node ID follows valid format."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")

        if not re.match(r'^[a-zA-Z0-9_.:-]+$', node_id.strip()):
            raise ValueError(
                "Node ID must contain only alphanumeric characters, underscores, dots, colons, and hyphens"
            )

        return node_id.strip()

    @field_validator('configuration', mode='before')
    @classmethod
    def default_configuration(cls, configuration):
        return configuration if configuration is not None else {}


class EdgeDefinition(BaseModel):
    """Definition of a directed edge between workflow nodes."""
    edge_id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Edge identifier")
    source_node_id: str = Field(..., description="Source node ID")
    target_node_id: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(
        None,
        description="Branch selector on Condition nodes ('true' or 'false')"
    )
    target_handle: Optional[str] = Field(None, description="Target connector, stored only")

    @field_validator('source_node_id', 'target_node_id')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('source_handle')
    @classmethod
    def normalize_source_handle(cls, handle):
        if handle is None or not handle.strip():
            return None
        return handle.strip().lower()


class WorkflowDefinition(BaseModel):
    """Workflow definition as supplied by a client."""
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    is_active: bool = Field(True, description="Whether the workflow may be executed")
    nodes: List[NodeDefinition] = Field(default_factory=list, description="Nodes of the workflow graph")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name or not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.node_id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @model_validator(mode='after')
    def validate_unique_edge_ids(self):
        edge_ids = [edge.edge_id for edge in self.edges]
        if len(edge_ids) != len(set(edge_ids)):
            raise ValueError("All edge IDs must be unique")
        return self


class WorkflowUpdate(BaseModel):
    """Partial update of a workflow; nodes and edges are replaced as a whole."""
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    nodes: Optional[List[NodeDefinition]] = None
    edges: Optional[List[EdgeDefinition]] = None

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if name is not None and not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip() if name else name

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        if nodes is not None:
            node_ids = [node.node_id for node in nodes]
            if len(node_ids) != len(set(node_ids)):
                raise ValueError("All node IDs must be unique")
        return nodes


class WorkflowRecord(WorkflowDefinition):
    """A stored workflow definition."""
    id: str = Field(..., description="Workflow ID")
    version: int = Field(1, description="Incremented on every update")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class WorkflowSummary(BaseModel):
    """Summary information about a workflow."""
    id: str = Field(..., description="Workflow ID")
    name: str = Field(..., description="Workflow name")
    description: str = Field("", description="Workflow description")
    is_active: bool = Field(..., description="Whether the workflow may be executed")
    version: int = Field(..., description="Workflow version")
    created_at: datetime = Field(..., description="Creation timestamp")
    node_count: int = Field(..., description="Number of nodes in the workflow")


class WorkflowSnapshot(BaseModel):
    """Immutable view of a workflow taken when an execution starts.

    Edits made to the stored definition afterwards never reach an in-flight
    execution, which only ever sees this snapshot.
    """
    model_config = ConfigDict(frozen=True)

    workflow_id: str
    name: str
    is_active: bool
    version: int = 1
    nodes: Tuple[NodeDefinition, ...] = ()
    edges: Tuple[EdgeDefinition, ...] = ()

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        """Outgoing edges of a node, in definition order."""
        return [edge for edge in self.edges if edge.source_node_id == node_id]

    def nodes_of_type(self, node_type: NodeType) -> List[NodeDefinition]:
        return [node for node in self.nodes if node.node_type == node_type]


class ExecutionRecord(BaseModel):
    """State of one workflow execution."""
    id: str = Field(..., description="Execution ID")
    workflow_id: str = Field(..., description="ID of the executed workflow")
    user_id: Optional[str] = Field(None, description="User who requested the execution")
    status: ExecutionStatusEnum = Field(..., description="Current execution status")
    started_at: Optional[datetime] = Field(None, description="When the traversal began")
    completed_at: Optional[datetime] = Field(None, description="When the execution reached a terminal state")
    error_message: Optional[str] = Field(None, description="Error message if execution failed")
    input_data: Optional[Dict[str, Any]] = Field(None, description="Caller-supplied payload")
    context_snapshot: Optional[Dict[str, Any]] = Field(None, description="Final execution context")
    created_at: datetime = Field(..., description="When the execution was requested")


class ExecutionLogEntry(BaseModel):
    """Audit record of one node execution."""
    id: int = Field(..., description="Log entry ID")
    execution_id: str = Field(..., description="Parent execution ID")
    node_id: str = Field(..., description="ID of the executed node")
    node_type: str = Field(..., description="Type tag of the executed node")
    status: ExecutionStatusEnum = Field(..., description="Node status")
    started_at: datetime = Field(..., description="When the node started")
    completed_at: Optional[datetime] = Field(None, description="When the node finished")
    input_data_json: Optional[str] = Field(None, description="Serialized previousOutput seen by the node")
    output_data_json: Optional[str] = Field(None, description="Serialized node result")
    error_message: Optional[str] = Field(None, description="Error message if the node failed")


class ExecutionFilter(BaseModel):
    """Filter for listing executions."""
    workflow_id: Optional[str] = None
    status: Optional[ExecutionStatusEnum] = None
    user_id: Optional[str] = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


class StartExecutionRequest(BaseModel):
    """Request to start a workflow execution."""
    input_data: Optional[Dict[str, Any]] = Field(None, description="Payload exposed as inputData")
    user_id: Optional[str] = Field(None, description="User requesting the execution")


class ScheduledWorkflow(BaseModel):
    """A cron schedule attached to a workflow."""
    id: str = Field(..., description="Schedule ID")
    workflow_id: str = Field(..., description="ID of the scheduled workflow")
    cron_expression: str = Field(..., description="Cron expression driving the trigger")
    is_active: bool = Field(True, description="Whether a live trigger should exist")
    last_run_at: Optional[datetime] = Field(None, description="Last successful fire")
    next_run_at: Optional[datetime] = Field(None, description="Next computed fire time")
    input_data: Optional[Dict[str, Any]] = Field(None, description="Payload passed to every fired execution")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")


class ScheduleCreate(BaseModel):
    """Request to create a schedule."""
    workflow_id: str = Field(..., description="ID of the workflow to schedule")
    cron_expression: str = Field(..., description="Cron expression")
    is_active: bool = Field(True, description="Register the trigger immediately")
    input_data: Optional[Dict[str, Any]] = Field(None, description="Payload passed as inputData")

    @field_validator('cron_expression')
    @classmethod
    def strip_cron_expression(cls, expression):
        if not expression or not expression.strip():
            raise ValueError("Cron expression cannot be empty")
        return expression.strip()


class ScheduleUpdate(BaseModel):
    """Partial update of a schedule."""
    workflow_id: Optional[str] = None
    cron_expression: Optional[str] = None
    is_active: Optional[bool] = None
    input_data: Optional[Dict[str, Any]] = None

    @field_validator('cron_expression')
    @classmethod
    def strip_cron_expression(cls, expression):
        if expression is not None and not expression.strip():
            raise ValueError("Cron expression cannot be empty")
        return expression.strip() if expression else expression


class PoolStatus(BaseModel):
    """Saturation of the bounded execution pool."""
    max_workers: int = Field(..., description="Worker threads running traversals")
    capacity: int = Field(..., description="Workers plus queue slots")
    active: int = Field(..., description="Executions currently running")
    queued: int = Field(..., description="Admitted executions waiting for a worker")
    rejected_total: int = Field(..., description="Executions refused since startup")
    saturation: float = Field(..., description="Fraction of capacity in use")
    admission_policy: str = Field(..., description="reject or wait")
