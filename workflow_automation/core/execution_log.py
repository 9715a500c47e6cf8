"""Per-node audit trail of an execution."""

from typing import Any, List

from ..models.core import ExecutionLogEntry, NodeDefinition
from ..storage.repository import WorkflowStore
from .context import serialize_value
from .logging import get_logger

logger = get_logger(__name__)


class ExecutionLogRecorder:
    """Writes one log row per visited node: Running, then Completed or Failed.

    Each write is committed before it returns, so a crash mid-run leaves a
    consistent partial trail and pollers see progress immediately.
    """

    def __init__(self, store: WorkflowStore):
        self.store = store

    def start(self, execution_id: str, node: NodeDefinition, input_value: Any) -> int:
        """Record that a node started, with the ``previousOutput`` it sees as input."""
        log_id = self.store.start_execution_log(
            execution_id=execution_id,
            node_id=node.node_id,
            node_type=node.node_type.value,
            input_data_json=serialize_value(input_value),
        )
        logger.debug(f"Node {node.node_id} ({node.node_type.value}) started in execution {execution_id}")
        return log_id

    def complete(self, log_id: int, output: Any) -> None:
        self.store.complete_execution_log(log_id, serialize_value(output))

    def fail(self, log_id: int, error_message: str) -> None:
        self.store.fail_execution_log(log_id, error_message or "Node failed")

    def get_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        return self.store.get_execution_logs(execution_id)
