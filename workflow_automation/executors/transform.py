"""Transform node: evaluates an expression producing any JSON value."""

from typing import Any, Dict

from ..core.context import CancellationToken, ExecutionContext
from ..core.exceptions import NodeExecutionError
from ..core.expressions import ExpressionError, evaluate_expression
from ..models.configs import TransformConfig
from ..models.core import NodeType
from .base import NodeExecutor


class TransformExecutor(NodeExecutor):
    node_type = NodeType.TRANSFORM
    config_model = TransformConfig

    def execute(self, configuration: Dict[str, Any], context: ExecutionContext,
                cancellation: CancellationToken) -> Any:
        config: TransformConfig = self.parse_config(configuration)

        try:
            return evaluate_expression(config.script, context)
        except ExpressionError as e:
            raise NodeExecutionError(str(e), node_type=self.node_type.value)
