"""Node executors, one per non-structural node type."""

from .base import NodeExecutor
from .condition import ConditionExecutor
from .database import DatabaseExecutor
from .delay import DelayExecutor
from .email import EmailExecutor
from .http_request import HttpRequestExecutor
from .script import ScriptExecutor
from .transform import TransformExecutor

__all__ = [
    "NodeExecutor",
    "ConditionExecutor",
    "DatabaseExecutor",
    "DelayExecutor",
    "EmailExecutor",
    "HttpRequestExecutor",
    "ScriptExecutor",
    "TransformExecutor",
]
