"""Persistence for workflows, executions, execution logs and schedules."""

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    InvalidStateTransitionError,
    NotFoundError,
    StorageError,
    WorkflowAutomationError,
)
from ..core.logging import get_logger
from ..models.core import (
    ALLOWED_TRANSITIONS,
    EdgeDefinition,
    ExecutionFilter,
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatusEnum,
    NodeDefinition,
    ScheduledWorkflow,
    WorkflowDefinition,
    WorkflowRecord,
    WorkflowSnapshot,
    WorkflowSummary,
    WorkflowUpdate,
)
from .database import get_database_engine, get_session_factory
from .models import (
    ExecutionLogModel,
    ScheduledWorkflowModel,
    WorkflowEdgeModel,
    WorkflowExecutionModel,
    WorkflowModel,
    WorkflowNodeModel,
)

logger = get_logger(__name__)

_UNSET = object()


class WorkflowStore:
    """SQLAlchemy-backed store used by the engine, the scheduler and the API.

    Every public method runs in its own short transaction so that each write
    is committed, and visible to status-polling readers, before it returns.
    """

    def __init__(self, engine: Optional[Engine] = None):
        """Initialize the store.

        Args:
            engine: Optional engine; defaults to the process-wide engine
        """
        self.engine = engine or get_database_engine()
        self._session_factory = get_session_factory(self.engine)
        self._write_lock = threading.RLock()

    @contextmanager
    def _session(self, operation: str, write: bool = False) -> Iterator[Session]:
        """Open a session, committing on success and rolling back on error."""
        lock = self._write_lock if write else None
        if lock:
            lock.acquire()
        session = self._session_factory()
        try:
            yield session
            if write:
                session.commit()
        except WorkflowAutomationError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation)
        finally:
            session.close()
            if lock:
                lock.release()

    # Workflows

    def create_workflow(self, definition: WorkflowDefinition) -> WorkflowRecord:
        """
        Persist a new workflow definition.

        Args:
            definition: The workflow definition to store

        Returns:
            WorkflowRecord: The stored workflow, with its generated ID

        Raises:
            StorageError: If storage operation fails
        """
        workflow_id = str(uuid.uuid4())
        now = datetime.utcnow()

        with self._session("create workflow", write=True) as session:
            model = WorkflowModel(
                id=workflow_id,
                name=definition.name,
                description=definition.description,
                is_active=definition.is_active,
                version=1,
                created_at=now,
                updated_at=now,
            )
            model.nodes = self._node_models(definition.nodes)
            model.edges = self._edge_models(definition.edges)
            session.add(model)
            session.flush()
            record = self._to_workflow_record(model)

        logger.info(f"Created workflow '{definition.name}' with ID: {workflow_id}")
        return record

    def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        with self._session("get workflow") as session:
            return self._to_workflow_record(self._require_workflow(session, workflow_id))

    def list_workflows(self, active_only: bool = False) -> List[WorkflowSummary]:
        with self._session("list workflows") as session:
            query = session.query(WorkflowModel)
            if active_only:
                query = query.filter(WorkflowModel.is_active.is_(True))
            return [
                WorkflowSummary(
                    id=model.id,
                    name=model.name,
                    description=model.description or "",
                    is_active=model.is_active,
                    version=model.version,
                    created_at=model.created_at,
                    node_count=len(model.nodes),
                )
                for model in query.order_by(WorkflowModel.created_at.desc()).all()
            ]

    def update_workflow(self, workflow_id: str, update: WorkflowUpdate) -> WorkflowRecord:
        """
        Apply a partial update to a workflow and bump its version.

        Nodes and edges, when supplied, replace the stored ones as a whole.

        Raises:
            NotFoundError: If the workflow does not exist
            StorageError: If storage operation fails
        """
        with self._session("update workflow", write=True) as session:
            model = self._require_workflow(session, workflow_id)

            if update.name is not None:
                model.name = update.name
            if update.description is not None:
                model.description = update.description
            if update.is_active is not None:
                model.is_active = update.is_active
            if update.nodes is not None:
                node_ids = [node.node_id for node in update.nodes]
                model.nodes.clear()
                session.flush()
                model.nodes.extend(self._node_models(update.nodes))
                logger.debug(f"Replaced nodes of workflow {workflow_id}: {node_ids}")
            if update.edges is not None:
                model.edges.clear()
                session.flush()
                model.edges.extend(self._edge_models(update.edges))

            model.version = (model.version or 1) + 1
            model.updated_at = datetime.utcnow()
            session.flush()
            record = self._to_workflow_record(model)

        logger.info(f"Updated workflow {workflow_id} to version {record.version}")
        return record

    def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow with its executions and schedules; False if absent."""
        with self._session("delete workflow", write=True) as session:
            model = session.get(WorkflowModel, workflow_id)
            if not model:
                logger.warning(f"Workflow with ID '{workflow_id}' not found for deletion")
                return False
            session.delete(model)

        logger.info(f"Deleted workflow with ID: {workflow_id}")
        return True

    def load_workflow_snapshot(self, workflow_id: str) -> WorkflowSnapshot:
        """
        Load an immutable snapshot of a workflow's nodes and edges.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        with self._session("load workflow snapshot") as session:
            model = self._require_workflow(session, workflow_id)
            return WorkflowSnapshot(
                workflow_id=model.id,
                name=model.name,
                is_active=model.is_active,
                version=model.version,
                nodes=tuple(self._to_node_definition(node) for node in model.nodes),
                edges=tuple(self._to_edge_definition(edge) for edge in model.edges),
            )

    # Executions

    def create_execution(
        self,
        workflow_id: str,
        user_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Persist a Pending execution and return its ID.

        Raises:
            NotFoundError: If the workflow does not exist
            StorageError: If storage operation fails
        """
        execution_id = str(uuid.uuid4())

        with self._session("create execution", write=True) as session:
            self._require_workflow(session, workflow_id)
            session.add(WorkflowExecutionModel(
                id=execution_id,
                workflow_id=workflow_id,
                user_id=user_id,
                status=ExecutionStatusEnum.PENDING.value,
                input_data=input_data,
                created_at=datetime.utcnow(),
            ))

        logger.debug(f"Created pending execution {execution_id} for workflow {workflow_id}")
        return execution_id

    def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatusEnum,
        error_message: Optional[str] = None,
        context_snapshot: Optional[Dict[str, Any]] = None
    ) -> ExecutionRecord:
        """
        Move an execution to a new status.

        Running stamps ``started_at``; terminal statuses stamp ``completed_at``.

        Raises:
            NotFoundError: If the execution does not exist
            InvalidStateTransitionError: If the transition is not allowed
        """
        status = ExecutionStatusEnum(status)

        with self._session("update execution status", write=True) as session:
            model = self._require_execution(session, execution_id)
            current = ExecutionStatusEnum(model.status)

            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStateTransitionError(
                    f"Execution {execution_id} cannot move from {current.value} to {status.value}",
                    current_status=current.value,
                    requested_status=status.value,
                )

            now = datetime.utcnow()
            model.status = status.value
            if status == ExecutionStatusEnum.RUNNING:
                model.started_at = now
            if status.is_terminal:
                model.completed_at = now
            if error_message is not None:
                model.error_message = error_message
            if context_snapshot is not None:
                model.context_snapshot = context_snapshot
            session.flush()
            record = self._to_execution_record(model)

        logger.debug(f"Execution {execution_id}: {current.value} -> {status.value}")
        return record

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        with self._session("get execution") as session:
            return self._to_execution_record(self._require_execution(session, execution_id))

    def list_executions(self, execution_filter: Optional[ExecutionFilter] = None) -> List[ExecutionRecord]:
        """List executions, newest first."""
        execution_filter = execution_filter or ExecutionFilter()

        with self._session("list executions") as session:
            query = session.query(WorkflowExecutionModel)
            if execution_filter.workflow_id:
                query = query.filter(WorkflowExecutionModel.workflow_id == execution_filter.workflow_id)
            if execution_filter.status:
                query = query.filter(WorkflowExecutionModel.status == execution_filter.status.value)
            if execution_filter.user_id:
                query = query.filter(WorkflowExecutionModel.user_id == execution_filter.user_id)

            models = (
                query.order_by(WorkflowExecutionModel.created_at.desc(), WorkflowExecutionModel.id)
                .offset(execution_filter.offset)
                .limit(execution_filter.limit)
                .all()
            )
            return [self._to_execution_record(model) for model in models]

    # Execution logs

    def start_execution_log(
        self,
        execution_id: str,
        node_id: str,
        node_type: str,
        input_data_json: Optional[str] = None
    ) -> int:
        """Append a Running log row for a node and return its ID."""
        with self._session("start execution log", write=True) as session:
            log = ExecutionLogModel(
                execution_id=execution_id,
                node_id=node_id,
                node_type=node_type,
                status=ExecutionStatusEnum.RUNNING.value,
                started_at=datetime.utcnow(),
                input_data_json=input_data_json,
            )
            session.add(log)
            session.flush()
            return log.id

    def complete_execution_log(self, log_id: int, output_data_json: Optional[str] = None) -> None:
        self._finish_execution_log(log_id, ExecutionStatusEnum.COMPLETED, output_data_json=output_data_json)

    def fail_execution_log(self, log_id: int, error_message: str) -> None:
        self._finish_execution_log(log_id, ExecutionStatusEnum.FAILED, error_message=error_message)

    def _finish_execution_log(
        self,
        log_id: int,
        status: ExecutionStatusEnum,
        output_data_json: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> None:
        with self._session("finish execution log", write=True) as session:
            log = session.get(ExecutionLogModel, log_id)
            if not log:
                raise NotFoundError(f"Execution log {log_id} not found", entity="execution_log", entity_id=str(log_id))
            if log.status != ExecutionStatusEnum.RUNNING.value:
                raise InvalidStateTransitionError(
                    f"Execution log {log_id} is already {log.status}",
                    current_status=log.status,
                    requested_status=status.value,
                )
            log.status = status.value
            log.completed_at = datetime.utcnow()
            log.output_data_json = output_data_json
            log.error_message = error_message

    def get_execution_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        """
        Get the per-node log of an execution ordered by start time.

        Raises:
            NotFoundError: If the execution does not exist
        """
        with self._session("get execution logs") as session:
            self._require_execution(session, execution_id)
            logs = (
                session.query(ExecutionLogModel)
                .filter(ExecutionLogModel.execution_id == execution_id)
                .order_by(ExecutionLogModel.started_at, ExecutionLogModel.id)
                .all()
            )
            return [ExecutionLogEntry(
                id=log.id,
                execution_id=log.execution_id,
                node_id=log.node_id,
                node_type=log.node_type,
                status=ExecutionStatusEnum(log.status),
                started_at=log.started_at,
                completed_at=log.completed_at,
                input_data_json=log.input_data_json,
                output_data_json=log.output_data_json,
                error_message=log.error_message,
            ) for log in logs]

    # Schedules

    def create_schedule(
        self,
        workflow_id: str,
        cron_expression: str,
        is_active: bool = True,
        input_data: Optional[Dict[str, Any]] = None,
        next_run_at: Optional[datetime] = None
    ) -> ScheduledWorkflow:
        """
        Persist a new schedule.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        schedule_id = str(uuid.uuid4())
        now = datetime.utcnow()

        with self._session("create schedule", write=True) as session:
            self._require_workflow(session, workflow_id)
            model = ScheduledWorkflowModel(
                id=schedule_id,
                workflow_id=workflow_id,
                cron_expression=cron_expression,
                is_active=is_active,
                input_data=input_data,
                next_run_at=next_run_at,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            session.flush()
            return self._to_schedule(model)

    def get_schedule(self, schedule_id: str) -> ScheduledWorkflow:
        with self._session("get schedule") as session:
            return self._to_schedule(self._require_schedule(session, schedule_id))

    def list_schedules(self, workflow_id: Optional[str] = None) -> List[ScheduledWorkflow]:
        with self._session("list schedules") as session:
            query = session.query(ScheduledWorkflowModel)
            if workflow_id:
                query = query.filter(ScheduledWorkflowModel.workflow_id == workflow_id)
            return [self._to_schedule(model) for model in query.order_by(ScheduledWorkflowModel.created_at).all()]

    def list_active_schedules(self) -> List[ScheduledWorkflow]:
        with self._session("list active schedules") as session:
            models = (
                session.query(ScheduledWorkflowModel)
                .filter(ScheduledWorkflowModel.is_active.is_(True))
                .order_by(ScheduledWorkflowModel.created_at)
                .all()
            )
            return [self._to_schedule(model) for model in models]

    def update_schedule(
        self,
        schedule_id: str,
        workflow_id: Optional[str] = None,
        cron_expression: Optional[str] = None,
        is_active: Optional[bool] = None,
        input_data: Any = _UNSET,
        next_run_at: Any = _UNSET
    ) -> ScheduledWorkflow:
        """
        Update the user-editable fields of a schedule.

        Raises:
            NotFoundError: If the schedule or the new workflow does not exist
        """
        with self._session("update schedule", write=True) as session:
            model = self._require_schedule(session, schedule_id)
            if workflow_id is not None:
                self._require_workflow(session, workflow_id)
                model.workflow_id = workflow_id
            if cron_expression is not None:
                model.cron_expression = cron_expression
            if is_active is not None:
                model.is_active = is_active
            if input_data is not _UNSET:
                model.input_data = input_data
            if next_run_at is not _UNSET:
                model.next_run_at = next_run_at
            model.updated_at = datetime.utcnow()
            session.flush()
            return self._to_schedule(model)

    def update_schedule_run_times(
        self,
        schedule_id: str,
        last_run_at: Optional[datetime] = None,
        next_run_at: Optional[datetime] = None
    ) -> ScheduledWorkflow:
        """Persist the scheduler-owned run times; None leaves a field untouched."""
        with self._session("update schedule run times", write=True) as session:
            model = self._require_schedule(session, schedule_id)
            if last_run_at is not None:
                model.last_run_at = last_run_at
            if next_run_at is not None:
                model.next_run_at = next_run_at
            session.flush()
            return self._to_schedule(model)

    def delete_schedule(self, schedule_id: str) -> bool:
        with self._session("delete schedule", write=True) as session:
            model = session.get(ScheduledWorkflowModel, schedule_id)
            if not model:
                return False
            session.delete(model)
        logger.info(f"Deleted schedule with ID: {schedule_id}")
        return True

    # Helpers

    def _require_workflow(self, session: Session, workflow_id: str) -> WorkflowModel:
        model = session.get(WorkflowModel, workflow_id)
        if not model:
            raise NotFoundError(f"Workflow {workflow_id} not found", entity="workflow", entity_id=workflow_id)
        return model

    def _require_execution(self, session: Session, execution_id: str) -> WorkflowExecutionModel:
        model = session.get(WorkflowExecutionModel, execution_id)
        if not model:
            raise NotFoundError(f"Execution {execution_id} not found", entity="execution", entity_id=execution_id)
        return model

    def _require_schedule(self, session: Session, schedule_id: str) -> ScheduledWorkflowModel:
        model = session.get(ScheduledWorkflowModel, schedule_id)
        if not model:
            raise NotFoundError(f"Schedule {schedule_id} not found", entity="schedule", entity_id=schedule_id)
        return model

    @staticmethod
    def _node_models(nodes: List[NodeDefinition]) -> List[WorkflowNodeModel]:
        return [
            WorkflowNodeModel(
                node_id=node.node_id,
                node_type=node.node_type.value,
                label=node.label,
                configuration=node.configuration,
                position=position,
            )
            for position, node in enumerate(nodes)
        ]

    @staticmethod
    def _edge_models(edges: List[EdgeDefinition]) -> List[WorkflowEdgeModel]:
        return [
            WorkflowEdgeModel(
                edge_id=edge.edge_id,
                source_node_id=edge.source_node_id,
                target_node_id=edge.target_node_id,
                source_handle=edge.source_handle,
                target_handle=edge.target_handle,
                position=position,
            )
            for position, edge in enumerate(edges)
        ]

    @staticmethod
    def _to_node_definition(model: WorkflowNodeModel) -> NodeDefinition:
        return NodeDefinition(
            node_id=model.node_id,
            node_type=model.node_type,
            label=model.label,
            configuration=model.configuration or {},
        )

    @staticmethod
    def _to_edge_definition(model: WorkflowEdgeModel) -> EdgeDefinition:
        return EdgeDefinition(
            edge_id=model.edge_id,
            source_node_id=model.source_node_id,
            target_node_id=model.target_node_id,
            source_handle=model.source_handle,
            target_handle=model.target_handle,
        )

    def _to_workflow_record(self, model: WorkflowModel) -> WorkflowRecord:
        return WorkflowRecord(
            id=model.id,
            name=model.name,
            description=model.description or "",
            is_active=model.is_active,
            version=model.version,
            nodes=[self._to_node_definition(node) for node in model.nodes],
            edges=[self._to_edge_definition(edge) for edge in model.edges],
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_execution_record(model: WorkflowExecutionModel) -> ExecutionRecord:
        return ExecutionRecord(
            id=model.id,
            workflow_id=model.workflow_id,
            user_id=model.user_id,
            status=ExecutionStatusEnum(model.status),
            started_at=model.started_at,
            completed_at=model.completed_at,
            error_message=model.error_message,
            input_data=model.input_data,
            context_snapshot=model.context_snapshot,
            created_at=model.created_at,
        )

    @staticmethod
    def _to_schedule(model: ScheduledWorkflowModel) -> ScheduledWorkflow:
        return ScheduledWorkflow(
            id=model.id,
            workflow_id=model.workflow_id,
            cron_expression=model.cron_expression,
            is_active=model.is_active,
            last_run_at=model.last_run_at,
            next_run_at=model.next_run_at,
            input_data=model.input_data,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
