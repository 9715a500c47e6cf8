"""Execution context and cancellation primitives shared by one workflow run."""

import json
import threading
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, Optional
from uuid import UUID

from pydantic import BaseModel

from .exceptions import ExecutionCancelledError

PREVIOUS_OUTPUT = "previousOutput"
INPUT_DATA = "inputData"
CONDITION_RESULT = "conditionResult"
EXECUTION_ID = "executionId"
WORKFLOW_ID = "workflowId"

RESERVED_KEYS = frozenset({INPUT_DATA, EXECUTION_ID, WORKFLOW_ID})


def to_json_compatible(value: Any) -> Any:
    """Normalize a value so that it survives a JSON round-trip unchanged.

    Datetimes become ISO strings, decimals become floats, tuples and sets
    become lists and mapping keys become strings. Anything without a JSON
    representation is stringified.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, BaseModel):
        return to_json_compatible(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return to_json_compatible(value.value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


def serialize_value(value: Any) -> Optional[str]:
    """Serialize a context value to JSON text for log rows."""
    if value is None:
        return None
    return json.dumps(to_json_compatible(value))


class CancellationToken:
    """Cooperative cancellation signal for one execution.

    The token is checked by the traversal before each node and is passed to
    every executor so that blocking waits can be interrupted.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block for up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, execution_id: Optional[str] = None) -> None:
        if self._event.is_set():
            raise ExecutionCancelledError(execution_id=execution_id)


class ExecutionContext:
    """Mutable key/value bag shared by reference across one traversal.

    Every value written is normalized with ``to_json_compatible`` so that the
    whole context can be persisted as the execution's context snapshot.
    ``inputData``, ``executionId`` and ``workflowId`` are set once when the
    context is created and cannot be overwritten afterwards.
    """

    def __init__(
        self,
        execution_id: str,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None
    ):
        self._data: Dict[str, Any] = {
            INPUT_DATA: to_json_compatible(input_data if input_data is not None else {}),
            EXECUTION_ID: execution_id,
            WORKFLOW_ID: workflow_id,
        }

    @property
    def execution_id(self) -> str:
        return self._data[EXECUTION_ID]

    @property
    def workflow_id(self) -> str:
        return self._data[WORKFLOW_ID]

    @property
    def input_data(self) -> Any:
        return self._data[INPUT_DATA]

    @property
    def previous_output(self) -> Any:
        return self._data.get(PREVIOUS_OUTPUT)

    @previous_output.setter
    def previous_output(self, value: Any) -> None:
        self._data[PREVIOUS_OUTPUT] = to_json_compatible(value)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if key in RESERVED_KEYS:
            raise KeyError(f"Context key '{key}' is read-only")
        self._data[key] = to_json_compatible(value)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def update(self, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def as_dict(self) -> Dict[str, Any]:
        """A deep copy of the context, safe to hand to user code."""
        return json.loads(json.dumps(self._data))

    def snapshot(self) -> Dict[str, Any]:
        """The JSON-compatible snapshot persisted on the execution."""
        return self.as_dict()
