"""Condition node: evaluates a boolean expression and records the branch taken."""

from typing import Any, Dict

from ..core.context import CONDITION_RESULT, CancellationToken, ExecutionContext
from ..core.exceptions import NodeExecutionError
from ..core.expressions import ExpressionError, evaluate_condition
from ..models.configs import ConditionConfig
from ..models.core import NodeType
from .base import NodeExecutor


class ConditionExecutor(NodeExecutor):
    """Sets ``conditionResult`` so the engine can pick the "true" or "false" edge."""

    node_type = NodeType.CONDITION
    config_model = ConditionConfig

    def execute(self, configuration: Dict[str, Any], context: ExecutionContext,
                cancellation: CancellationToken) -> Dict[str, Any]:
        config: ConditionConfig = self.parse_config(configuration)

        try:
            result = evaluate_condition(config.expression, context)
        except ExpressionError as e:
            raise NodeExecutionError(str(e), node_type=self.node_type.value)

        context[CONDITION_RESULT] = result
        self.logger.debug(f"Condition '{config.expression}' evaluated to {result}")
        return {"result": result}
