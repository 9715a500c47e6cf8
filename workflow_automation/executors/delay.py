"""Delay node: waits on the execution's cancellation token."""

from typing import Any, Dict

from ..core.context import CancellationToken, ExecutionContext
from ..core.exceptions import ExecutionCancelledError
from ..models.configs import DelayConfig
from ..models.core import NodeType
from .base import NodeExecutor


class DelayExecutor(NodeExecutor):
    node_type = NodeType.DELAY
    config_model = DelayConfig

    def execute(self, configuration: Dict[str, Any], context: ExecutionContext,
                cancellation: CancellationToken) -> Dict[str, Any]:
        config: DelayConfig = self.parse_config(configuration)

        self.logger.debug(f"Delaying execution {context.execution_id} for {config.duration} {config.unit}")
        if cancellation.wait(config.seconds):
            raise ExecutionCancelledError(execution_id=context.execution_id)

        return {"delayedFor": config.duration}
