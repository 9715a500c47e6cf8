"""Execution Engine for workflow processing."""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from ..config import AdmissionPolicy, AppConfig, get_config
from ..models.core import (
    ExecutionFilter,
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatusEnum,
    NodeDefinition,
    NodeType,
    PoolStatus,
    WorkflowSnapshot,
)
from ..storage.repository import WorkflowStore
from .context import CONDITION_RESULT, CancellationToken, ExecutionContext, to_json_compatible
from .exceptions import (
    ExecutionCancelledError,
    ExecutionEngineError,
    InvalidStateTransitionError,
    NodeExecutionError,
    ResourceExhaustionError,
    WorkflowAutomationError,
    WorkflowInactiveError,
    WorkflowValidationError,
)
from .execution_log import ExecutionLogRecorder
from .executor_registry import ExecutorRegistry, get_default_registry
from .logging import get_logger, logging_context
from .workflow_manager import validate_workflow

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Execution cancelled"


class _ActiveRun:
    """Bookkeeping for an execution admitted into this process's pool."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        self.token = CancellationToken()
        self.started = False
        self.future: Optional[Future] = None


class ExecutionEngine:
    """Runs workflow traversals on a bounded pool of worker threads.

    ``start_execution`` persists a Pending execution and returns its ID at
    once; the traversal runs on a pool worker. Admission is limited to
    ``max_concurrent_executions`` running plus ``execution_queue_size``
    waiting executions, after which new starts are rejected or wait,
    depending on the admission policy.
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: Optional[ExecutorRegistry] = None,
        config: Optional[AppConfig] = None,
        max_concurrent_executions: Optional[int] = None,
        execution_queue_size: Optional[int] = None,
        admission_policy: Optional[AdmissionPolicy] = None,
        admission_timeout: Optional[float] = None,
        validate_on_start: Optional[bool] = None
    ):
        """Initialize the execution engine.

        Args:
            store: Persistence for workflows, executions and logs
            registry: Executor registry; defaults to the process-wide registry
            config: Application configuration supplying pool defaults
            max_concurrent_executions: Worker threads running traversals
            execution_queue_size: Admitted executions allowed to wait for a worker
            admission_policy: What to do when the pool and queue are full
            admission_timeout: Seconds to wait for a slot under the wait policy
            validate_on_start: Validate workflow structure before running any node
        """
        config = config or get_config()
        self.store = store
        self.registry = registry or get_default_registry()
        self.recorder = ExecutionLogRecorder(store)

        self._max_workers = max_concurrent_executions or config.max_concurrent_executions
        self._queue_size = config.execution_queue_size if execution_queue_size is None else execution_queue_size
        self._admission_policy = AdmissionPolicy(admission_policy or config.admission_policy)
        self._admission_timeout = admission_timeout if admission_timeout is not None else config.admission_timeout
        self._validate_on_start = config.validate_on_start if validate_on_start is None else validate_on_start

        self._capacity = self._max_workers + self._queue_size
        self._slots = threading.BoundedSemaphore(self._capacity)
        self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="workflow-exec")
        self._runs: Dict[str, _ActiveRun] = {}
        self._lock = threading.RLock()
        self._rejected_total = 0
        self._shut_down = False

        logger.info(
            f"ExecutionEngine initialized with max_concurrent_executions={self._max_workers}, "
            f"execution_queue_size={self._queue_size}, admission_policy={self._admission_policy.value}"
        )

    # Public API

    def start_execution(
        self,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> str:
        """
        Start a workflow execution without waiting for it to finish.

        Args:
            workflow_id: ID of the workflow to execute
            input_data: Payload exposed to nodes as ``inputData``
            user_id: User requesting the execution

        Returns:
            ID of the Pending execution

        Raises:
            NotFoundError: If the workflow does not exist
            WorkflowInactiveError: If the workflow is inactive
            ResourceExhaustionError: If the pool cannot admit another execution
            ExecutionEngineError: If the engine has been shut down
        """
        if self._shut_down:
            raise ExecutionEngineError("Execution engine is shut down", workflow_id=workflow_id)

        snapshot = self.store.load_workflow_snapshot(workflow_id)
        if not snapshot.is_active:
            raise WorkflowInactiveError(f"Workflow {workflow_id} is not active", workflow_id=workflow_id)

        self._admit(workflow_id)

        run = _ActiveRun(workflow_id)
        try:
            payload = to_json_compatible(input_data) if input_data is not None else {}
            execution_id = self.store.create_execution(workflow_id, user_id=user_id, input_data=payload)
        except Exception:
            self._slots.release()
            raise

        with self._lock:
            self._runs[execution_id] = run
        try:
            run.future = self._executor.submit(self._run_execution, execution_id, snapshot, payload, run)
        except RuntimeError as e:
            self._release(execution_id)
            self.store.update_execution_status(
                execution_id, ExecutionStatusEnum.FAILED, error_message=f"Failed to start execution: {str(e)}"
            )
            raise ExecutionEngineError(
                f"Failed to start workflow execution: {str(e)}",
                execution_id=execution_id,
                workflow_id=workflow_id,
            )

        logger.info(f"Started workflow execution: execution_id={execution_id}, workflow_id={workflow_id}")
        return execution_id

    def stop_execution(self, execution_id: str) -> bool:
        """
        Request cancellation of an execution.

        A run owned by this process has its cancellation token set; a run that
        has not reached a worker yet, or that no process owns any more (e.g.
        after a restart), is marked Cancelled directly.

        Returns:
            True if a cancellation was requested, False if the execution had
            already finished

        Raises:
            NotFoundError: If the execution does not exist
        """
        record = self.store.get_execution(execution_id)
        if record.status.is_terminal:
            logger.warning(f"Attempted to stop finished execution {execution_id} ({record.status.value})")
            return False

        with self._lock:
            run = self._runs.get(execution_id)
            if run is not None:
                run.token.cancel()
                if run.started:
                    logger.info(f"Cancellation requested for running execution {execution_id}")
                    return True

        try:
            self.store.update_execution_status(
                execution_id, ExecutionStatusEnum.CANCELLED, error_message=CANCELLED_MESSAGE
            )
        except InvalidStateTransitionError:
            # An owned run may have been cancelled by its worker in the meantime
            return run is not None

        logger.info(f"Cancelled execution {execution_id} before it ran")
        return True

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        return self.store.get_execution(execution_id)

    def get_execution_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        return self.recorder.get_logs(execution_id)

    def list_executions(self, execution_filter: Optional[ExecutionFilter] = None) -> List[ExecutionRecord]:
        return self.store.list_executions(execution_filter)

    def is_execution_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._runs

    def get_active_executions(self) -> List[str]:
        with self._lock:
            return list(self._runs.keys())

    def wait_for_execution(self, execution_id: str, timeout: float = 30.0,
                           poll_interval: float = 0.05) -> ExecutionRecord:
        """Block until an execution reaches a terminal state.

        Raises:
            ExecutionEngineError: If the execution is still unfinished after ``timeout``
        """
        deadline = time.monotonic() + timeout
        while True:
            record = self.store.get_execution(execution_id)
            if record.status.is_terminal:
                return record
            if time.monotonic() >= deadline:
                raise ExecutionEngineError(
                    f"Execution {execution_id} did not finish within {timeout} seconds",
                    execution_id=execution_id,
                )
            time.sleep(poll_interval)

    def get_pool_status(self) -> PoolStatus:
        """Saturation of the execution pool."""
        with self._lock:
            in_flight = len(self._runs)
            active = sum(1 for run in self._runs.values() if run.started)
            rejected = self._rejected_total
        return PoolStatus(
            max_workers=self._max_workers,
            capacity=self._capacity,
            active=active,
            queued=in_flight - active,
            rejected_total=rejected,
            saturation=round(in_flight / self._capacity, 4) if self._capacity else 1.0,
            admission_policy=self._admission_policy.value,
        )

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting executions, cancel the ones in flight and stop the pool.
        """
        self._shut_down = True
        with self._lock:
            for run in self._runs.values():
                run.token.cancel()
        self._executor.shutdown(wait=wait)
        logger.info("ExecutionEngine shutdown completed")

    # Admission

    def _admit(self, workflow_id: str) -> None:
        if self._admission_policy == AdmissionPolicy.WAIT:
            acquired = self._slots.acquire(timeout=self._admission_timeout)
        else:
            acquired = self._slots.acquire(blocking=False)

        if not acquired:
            with self._lock:
                self._rejected_total += 1
                in_flight = len(self._runs)
            logger.warning(f"Rejected execution of workflow {workflow_id}: pool saturated ({in_flight}/{self._capacity})")
            raise ResourceExhaustionError(
                "Execution pool is saturated, please try again later",
                resource_type="execution_pool",
                current_usage=in_flight,
                limit=self._capacity,
            )

    def _release(self, execution_id: str) -> None:
        with self._lock:
            run = self._runs.pop(execution_id, None)
        if run is not None:
            self._slots.release()

    # Traversal

    def _run_execution(self, execution_id: str, snapshot: WorkflowSnapshot,
                       input_data: Dict[str, Any], run: _ActiveRun) -> None:
        """Run one execution on a pool worker, always leaving it in a terminal state."""
        with logging_context(execution_id=execution_id, workflow_id=snapshot.workflow_id):
            try:
                with self._lock:
                    cancelled_while_queued = run.token.is_cancelled
                    run.started = not cancelled_while_queued

                if cancelled_while_queued:
                    self._finish(execution_id, ExecutionStatusEnum.CANCELLED, CANCELLED_MESSAGE)
                    return

                self.store.update_execution_status(execution_id, ExecutionStatusEnum.RUNNING)
                context = ExecutionContext(execution_id, snapshot.workflow_id, input_data)

                try:
                    self._traverse(execution_id, snapshot, context, run.token)
                except ExecutionCancelledError:
                    logger.info(f"Workflow execution {execution_id} cancelled")
                    self._finish(execution_id, ExecutionStatusEnum.CANCELLED, CANCELLED_MESSAGE, context)
                except WorkflowAutomationError as e:
                    logger.error(f"Workflow execution {execution_id} failed: {e.message}")
                    self._finish(execution_id, ExecutionStatusEnum.FAILED, e.message, context)
                except Exception as e:
                    logger.error(f"Workflow execution {execution_id} failed: {str(e)}", exc_info=True)
                    self._finish(execution_id, ExecutionStatusEnum.FAILED, str(e), context)
                else:
                    self._finish(execution_id, ExecutionStatusEnum.COMPLETED, None, context)
                    logger.info(f"Workflow execution {execution_id} completed")

            except Exception as e:
                logger.error(f"Could not record outcome of execution {execution_id}: {str(e)}", exc_info=True)
            finally:
                self._release(execution_id)

    def _finish(self, execution_id: str, status: ExecutionStatusEnum, error_message: Optional[str],
                context: Optional[ExecutionContext] = None) -> None:
        try:
            self.store.update_execution_status(
                execution_id,
                status,
                error_message=error_message,
                context_snapshot=context.snapshot() if context is not None else None,
            )
        except InvalidStateTransitionError as e:
            # Already terminal, e.g. cancelled directly while queued
            logger.debug(f"Execution {execution_id} not moved to {status.value}: {e.message}")

    def _traverse(self, execution_id: str, snapshot: WorkflowSnapshot,
                  context: ExecutionContext, token: CancellationToken) -> None:
        """
        Depth-first traversal from the Start node.

        Each node runs at most once: a node reached again through a
        re-convergent path or a cycle is skipped.

        Raises:
            WorkflowValidationError: If the workflow structure is invalid
            ExecutionEngineError: If there is no Start node
            NodeExecutionError: If a node fails
            ExecutionCancelledError: If the execution is stopped
        """
        start_node = self._find_start_node(execution_id, snapshot)

        stack = [start_node.node_id]
        visited = set()
        while stack:
            node_id = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)

            node = snapshot.get_node(node_id)
            if node is None:
                raise ExecutionEngineError(
                    f"Edge points to unknown node '{node_id}'",
                    execution_id=execution_id,
                    workflow_id=snapshot.workflow_id,
                )

            token.raise_if_cancelled(execution_id)
            self._execute_node(execution_id, node, context, token)

            # Reversed so that the first outgoing edge is explored first
            stack.extend(reversed(self._next_node_ids(snapshot, node, context)))

    def _find_start_node(self, execution_id: str, snapshot: WorkflowSnapshot) -> NodeDefinition:
        if self._validate_on_start:
            result = validate_workflow(list(snapshot.nodes), list(snapshot.edges))
            for warning in result.warnings:
                logger.warning(f"Workflow {snapshot.workflow_id}: {warning}")
            if not result.is_valid:
                raise WorkflowValidationError(
                    f"Workflow validation failed: {'; '.join(result.errors)}",
                    validation_errors=result.errors,
                    workflow_id=snapshot.workflow_id,
                )

        start_nodes = snapshot.nodes_of_type(NodeType.START)
        if not start_nodes:
            raise ExecutionEngineError(
                "Workflow has no Start node",
                execution_id=execution_id,
                workflow_id=snapshot.workflow_id,
            )
        return start_nodes[0]

    def _execute_node(self, execution_id: str, node: NodeDefinition,
                      context: ExecutionContext, token: CancellationToken) -> None:
        """Run one node and record it in the execution log."""
        log_id = self.recorder.start(execution_id, node, context.previous_output)

        try:
            if node.node_type.is_structural:
                result = None
            else:
                executor = self.registry.get(node.node_type)
                result = executor.execute(node.configuration, context, token)
                context.previous_output = result
                result = context.previous_output
        except ExecutionCancelledError as e:
            self.recorder.fail(log_id, e.message)
            raise
        except WorkflowAutomationError as e:
            self.recorder.fail(log_id, e.message)
            e.add_context(node_id=node.node_id, execution_id=execution_id)
            raise
        except Exception as e:
            logger.error(f"Unexpected error in node {node.node_id}: {str(e)}", exc_info=True)
            self.recorder.fail(log_id, str(e) or type(e).__name__)
            raise NodeExecutionError(
                f"Node {node.node_id} failed: {str(e) or type(e).__name__}",
                node_id=node.node_id,
                execution_id=execution_id,
                node_type=node.node_type.value,
            )

        self.recorder.complete(log_id, result)

    @staticmethod
    def _next_node_ids(snapshot: WorkflowSnapshot, node: NodeDefinition,
                       context: ExecutionContext) -> List[str]:
        """Pick the successors of a finished node."""
        if node.node_type == NodeType.END:
            return []

        edges = snapshot.outgoing_edges(node.node_id)
        if node.node_type == NodeType.CONDITION:
            handle = "true" if context.get(CONDITION_RESULT) else "false"
            for edge in edges:
                if edge.source_handle == handle:
                    return [edge.target_node_id]
            # No edge for this branch: it ends here
            return []

        return [edge.target_node_id for edge in edges]
