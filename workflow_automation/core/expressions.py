"""Restricted expression evaluation for Condition and Transform nodes."""

import ast
from typing import Any, Dict, Optional

from .context import INPUT_DATA, PREVIOUS_OUTPUT, ExecutionContext, to_json_compatible


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed, is disallowed or fails."""


class AttrDict(dict):
    """Dictionary whose keys can also be read as attributes.

    Lets expressions written as ``previousOutput.statusCode == 200`` work on
    the JSON objects stored in the context. Missing keys read as None.
    """

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)


def _wrap(value: Any) -> Any:
    if isinstance(value, dict):
        return AttrDict({key: _wrap(item) for key, item in value.items()})
    if isinstance(value, list):
        return [_wrap(item) for item in value]
    return value


SAFE_FUNCTIONS: Dict[str, Any] = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'list': list,
    'dict': dict,
    'min': min,
    'max': max,
    'sum': sum,
    'abs': abs,
    'round': round,
    'sorted': sorted,
    'any': any,
    'all': all,
    'isinstance': isinstance,
    'range': range,
    'enumerate': enumerate,
    'zip': zip,
    # JSON-style literals
    'true': True,
    'false': False,
    'null': None,
}

# Format fields can reach attributes the AST check never sees
BLOCKED_ATTRIBUTES = frozenset({"format", "format_map"})


def _check_tree(tree: ast.AST, source: str) -> None:
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"Access to private attribute '{node.attr}' is not allowed: {source}")
        if isinstance(node, ast.Attribute) and node.attr in BLOCKED_ATTRIBUTES:
            raise ExpressionError(f"Method '{node.attr}' is not allowed: {source}")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ExpressionError(f"Name '{node.id}' is not allowed: {source}")
        if isinstance(node, (ast.Lambda, ast.NamedExpr)):
            raise ExpressionError(f"Unsupported syntax in expression: {source}")


def build_namespace(context: ExecutionContext) -> Dict[str, Any]:
    """Names visible to an expression: the context, its reserved keys and safe helpers."""
    data = context.as_dict()
    namespace = dict(SAFE_FUNCTIONS)
    namespace['context'] = _wrap(data)
    namespace[PREVIOUS_OUTPUT] = _wrap(data.get(PREVIOUS_OUTPUT))
    namespace[INPUT_DATA] = _wrap(data.get(INPUT_DATA))
    return namespace


def evaluate_expression(expression: str, context: ExecutionContext,
                        extra: Optional[Dict[str, Any]] = None) -> Any:
    """
    Evaluate a single Python expression against the execution context.

    Args:
        expression: Expression source
        context: Execution context supplying ``context``, ``previousOutput`` and ``inputData``
        extra: Additional names to expose

    Returns:
        The JSON-compatible value of the expression

    Raises:
        ExpressionError: If the expression is invalid or raises
    """
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e.msg}")

    _check_tree(tree, expression)

    namespace = build_namespace(context)
    if extra:
        namespace.update(extra)
    # Names live in globals so comprehensions can see them
    namespace["__builtins__"] = {}

    try:
        code = compile(tree, "<expression>", "eval")
        result = eval(code, namespace)
    except Exception as e:
        raise ExpressionError(f"Failed to evaluate expression '{expression}': {str(e)}")

    return to_json_compatible(result)


def evaluate_condition(expression: str, context: ExecutionContext) -> bool:
    """Evaluate an expression and coerce its value to a boolean."""
    return bool(evaluate_expression(expression, context))
