"""SQLAlchemy database models for the workflow automation engine."""

from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Text, JSON, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    nodes = relationship(
        "WorkflowNodeModel",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowNodeModel.position"
    )
    edges = relationship(
        "WorkflowEdgeModel",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowEdgeModel.position"
    )
    executions = relationship("WorkflowExecutionModel", back_populates="workflow", cascade="all, delete-orphan")
    schedules = relationship("ScheduledWorkflowModel", back_populates="workflow", cascade="all, delete-orphan")


class WorkflowNodeModel(Base):
    """Database model for workflow nodes."""
    __tablename__ = "workflow_nodes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False)
    node_id = Column(String(255), nullable=False)
    node_type = Column(String(50), nullable=False)
    label = Column(String(255))
    configuration = Column(JSON)
    position = Column(Integer, nullable=False, default=0)

    workflow = relationship("WorkflowModel", back_populates="nodes")

    __table_args__ = (Index("ix_workflow_nodes_workflow_node", "workflow_id", "node_id", unique=True),)


class WorkflowEdgeModel(Base):
    """Database model for workflow edges."""
    __tablename__ = "workflow_edges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False)
    edge_id = Column(String(255), nullable=False)
    source_node_id = Column(String(255), nullable=False)
    target_node_id = Column(String(255), nullable=False)
    source_handle = Column(String(50))
    target_handle = Column(String(50))
    position = Column(Integer, nullable=False, default=0)

    workflow = relationship("WorkflowModel", back_populates="edges")


class WorkflowExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(255), index=True)
    status = Column(String(20), nullable=False, index=True)  # pending, running, completed, failed, cancelled
    input_data = Column(JSON)
    context_snapshot = Column(JSON)
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowModel", back_populates="executions")
    logs = relationship(
        "ExecutionLogModel",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="ExecutionLogModel.id"
    )


class ExecutionLogModel(Base):
    """Database model for per-node execution log entries."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(
        String(36),
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    node_id = Column(String(255), nullable=False)
    node_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)  # running, completed, failed
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    input_data_json = Column(Text)
    output_data_json = Column(Text)
    error_message = Column(Text)

    execution = relationship("WorkflowExecutionModel", back_populates="logs")


class ScheduledWorkflowModel(Base):
    """Database model for cron schedules."""
    __tablename__ = "scheduled_workflows"

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    cron_expression = Column(String(120), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    input_data = Column(JSON)
    last_run_at = Column(DateTime)
    next_run_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="schedules")
