"""Base class for node executors."""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, Optional, Type

from pydantic import ValidationError

from ..core.context import CancellationToken, ExecutionContext
from ..core.exceptions import NodeConfigurationError
from ..core.logging import get_logger
from ..models.configs import NodeConfig
from ..models.core import NodeType


def format_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic validation error into one readable line."""
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages)


class NodeExecutor(ABC):
    """Executes one node type.

    Executors are stateless with respect to the graph: they read their own
    configuration and the shared context, and return the node's result. The
    engine stores that result as ``previousOutput``.
    """

    node_type: ClassVar[NodeType]
    config_model: ClassVar[Type[NodeConfig]]

    def __init__(self):
        self.logger = get_logger(f"{__name__.rsplit('.', 1)[0]}.{self.node_type.value}")

    def parse_config(self, configuration: Optional[Dict[str, Any]]) -> NodeConfig:
        """
        Validate a node's raw configuration.

        Raises:
            NodeConfigurationError: If the configuration is missing or invalid
        """
        try:
            return self.config_model.model_validate(configuration or {})
        except ValidationError as e:
            raise NodeConfigurationError(
                f"Invalid {self.node_type.value} configuration: {format_validation_error(e)}",
                node_type=self.node_type.value,
            )

    @abstractmethod
    def execute(
        self,
        configuration: Dict[str, Any],
        context: ExecutionContext,
        cancellation: CancellationToken
    ) -> Any:
        """
        Run the node.

        Args:
            configuration: The node's raw configuration
            context: Shared execution context
            cancellation: Token set when the execution is stopped

        Returns:
            JSON-compatible result of the node

        Raises:
            NodeConfigurationError: For missing or invalid configuration
            NodeExecutionError: For failures talking to the outside world
            ExecutionCancelledError: If the execution was stopped mid-node
        """
