"""Registry mapping node types to their executors."""

import threading
from typing import Dict, List, Optional

from ..config import AppConfig, get_config
from ..executors.base import NodeExecutor
from ..executors.condition import ConditionExecutor
from ..executors.database import DatabaseExecutor
from ..executors.delay import DelayExecutor
from ..executors.email import EmailExecutor
from ..executors.http_request import HttpRequestExecutor
from ..executors.script import ScriptExecutor
from ..executors.transform import TransformExecutor
from ..models.core import NodeType
from .exceptions import NodeConfigurationError
from .logging import get_logger

logger = get_logger(__name__)


class ExecutorRegistry:
    """Read-only lookup from node type to executor, shared by all executions.

    The registry is filled once at startup; afterwards it is only read.
    """

    def __init__(self):
        self._executors: Dict[NodeType, NodeExecutor] = {}

    def register(self, executor: NodeExecutor) -> None:
        """Register the executor for its node type.

        Raises:
            ValueError: If the node type is structural or already registered
        """
        node_type = executor.node_type
        if node_type.is_structural:
            raise ValueError(f"{node_type.value} nodes are structural and take no executor")
        if node_type in self._executors:
            raise ValueError(f"An executor for {node_type.value} is already registered")

        self._executors[node_type] = executor
        logger.debug(f"Registered executor {type(executor).__name__} for {node_type.value}")

    def get(self, node_type: NodeType) -> NodeExecutor:
        """Get the executor for a node type.

        Raises:
            NodeConfigurationError: If no executor handles the node type
        """
        executor = self._executors.get(NodeType(node_type))
        if executor is None:
            raise NodeConfigurationError(
                f"No executor registered for node type {NodeType(node_type).value}",
                node_type=NodeType(node_type).value,
            )
        return executor

    def has(self, node_type: NodeType) -> bool:
        return NodeType(node_type) in self._executors

    def list_node_types(self) -> List[str]:
        return [node_type.value for node_type in self._executors]

    def shutdown(self) -> None:
        """Release resources held by executors."""
        for executor in self._executors.values():
            shutdown = getattr(executor, "shutdown", None)
            if callable(shutdown):
                shutdown()


def build_default_registry(config: Optional[AppConfig] = None) -> ExecutorRegistry:
    """Build the registry holding one executor per non-structural node type."""
    config = config or get_config()

    registry = ExecutorRegistry()
    registry.register(HttpRequestExecutor(default_timeout=config.http_timeout))
    registry.register(DelayExecutor())
    registry.register(ConditionExecutor())
    registry.register(TransformExecutor())
    registry.register(EmailExecutor(timeout=config.smtp_timeout))
    registry.register(ScriptExecutor(default_timeout=config.script_timeout))
    registry.register(DatabaseExecutor())

    logger.info(f"Executor registry built for node types: {', '.join(registry.list_node_types())}")
    return registry


_default_registry: Optional[ExecutorRegistry] = None
_registry_lock = threading.Lock()


def get_default_registry() -> ExecutorRegistry:
    """Process-wide registry, built on first use."""
    global _default_registry
    with _registry_lock:
        if _default_registry is None:
            _default_registry = build_default_registry()
        return _default_registry
