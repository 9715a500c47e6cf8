"""Script node: runs a Python snippet under RestrictedPython.

The snippet sees ``context``, ``previousOutput`` and ``inputData`` as
globals. Whatever it assigns to ``result`` becomes the node's output, and
top-level keys it writes into ``context`` are copied back into the
execution context. Only JSON-compatible values cross the process boundary.
"""

import multiprocessing
import operator
import threading
import time
from typing import Any, Dict, Optional, Set, Tuple

from RestrictedPython import compile_restricted
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

from ..core.context import (
    INPUT_DATA,
    PREVIOUS_OUTPUT,
    RESERVED_KEYS,
    CancellationToken,
    ExecutionContext,
    to_json_compatible,
)
from ..core.exceptions import ExecutionCancelledError, NodeExecutionError
from ..models.configs import ScriptConfig
from ..models.core import NodeType
from .base import NodeExecutor

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "|=": operator.ior,
    "&=": operator.iand,
}

# Each script runs in its own spawned interpreter
_MP_CONTEXT = multiprocessing.get_context("spawn")

_EXTRA_BUILTINS = {
    "dict": dict,
    "list": list,
    "set": set,
    "sum": sum,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "enumerate": enumerate,
    "map": map,
    "filter": filter,
    "reversed": reversed,
}


def _inplacevar(op: str, target: Any, value: Any) -> Any:
    if op not in _INPLACE_OPERATORS:
        raise SyntaxError(f"Augmented assignment '{op}' is not allowed")
    return _INPLACE_OPERATORS[op](target, value)


def _apply(function, *args, **kwargs):
    return function(*args, **kwargs)


def build_restricted_globals(data: Dict[str, Any]) -> Dict[str, Any]:
    """Globals for a restricted script: guards, safe builtins and a copy of the context."""
    builtins = dict(safe_builtins)
    builtins.update(_EXTRA_BUILTINS)
    return {
        "__builtins__": builtins,
        "__name__": "workflow_script",
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "_print_": PrintCollector,
        "context": data,
        PREVIOUS_OUTPUT: data.get(PREVIOUS_OUTPUT),
        INPUT_DATA: data.get(INPUT_DATA),
        "result": None,
    }


def _run_script(code: str, data: Dict[str, Any], connection) -> None:
    """Child process entry point: run the snippet and send back its outcome."""
    try:
        byte_code = compile_restricted(code, "<workflow_script>", "exec")
        script_globals = build_restricted_globals(data)
        exec(byte_code, script_globals)
        printed = script_globals.get("_print")
        connection.send((
            True,
            to_json_compatible(script_globals.get("result")),
            to_json_compatible(script_globals.get("context")),
            printed() if printed is not None else None,
        ))
    except Exception as e:
        connection.send((False, str(e), None, None))
    finally:
        connection.close()


class ScriptExecutor(NodeExecutor):
    """Runs restricted Python in a child process with a per-node timeout.

    The child is terminated when the timeout expires or the execution is
    cancelled, so a runaway snippet never outlives its node.
    """

    node_type = NodeType.SCRIPT
    config_model = ScriptConfig

    def __init__(self, default_timeout: float = 30.0, poll_interval: float = 0.05):
        super().__init__()
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self._processes: Set[Any] = set()
        self._lock = threading.Lock()

    def execute(self, configuration: Dict[str, Any], context: ExecutionContext,
                cancellation: CancellationToken) -> Any:
        config: ScriptConfig = self.parse_config(configuration)
        cancellation.raise_if_cancelled(context.execution_id)

        try:
            compile_restricted(config.code, "<workflow_script>", "exec")
        except SyntaxError as e:
            raise NodeExecutionError(f"Script compilation failed: {str(e)}", node_type=self.node_type.value)

        timeout = config.timeout or self.default_timeout
        succeeded, value, script_context, printed = self._run_in_child(
            config.code, context, cancellation, timeout
        )
        if not succeeded:
            raise NodeExecutionError(f"Script execution failed: {value}", node_type=self.node_type.value)

        self._copy_back(script_context, context)
        if printed:
            self.logger.debug(f"Script output: {printed}")

        return value

    def _run_in_child(self, code: str, context: ExecutionContext,
                      cancellation: CancellationToken, timeout: float) -> Tuple[bool, Any, Any, Optional[str]]:
        receiver, sender = _MP_CONTEXT.Pipe(duplex=False)
        process = _MP_CONTEXT.Process(
            target=_run_script, args=(code, context.as_dict(), sender), name="script-node", daemon=True
        )
        with self._lock:
            self._processes.add(process)
        try:
            process.start()
            # Only the child writes, so EOF shows up once it exits
            sender.close()

            deadline = time.monotonic() + timeout
            while not receiver.poll(self.poll_interval):
                if cancellation.is_cancelled:
                    raise ExecutionCancelledError(execution_id=context.execution_id)
                if time.monotonic() >= deadline:
                    raise NodeExecutionError(
                        f"Script execution timed out after {timeout} seconds",
                        node_type=self.node_type.value,
                    )

            try:
                return receiver.recv()
            except EOFError:
                raise NodeExecutionError(
                    f"Script process exited with code {process.exitcode} without a result",
                    node_type=self.node_type.value,
                )
        finally:
            receiver.close()
            sender.close()
            self._stop_process(process)

    def _stop_process(self, process) -> None:
        if process.pid is None:
            with self._lock:
                self._processes.discard(process)
            return
        if process.is_alive():
            process.terminate()
        process.join(timeout=5)
        if process.is_alive():
            process.kill()
            process.join()
        with self._lock:
            self._processes.discard(process)

    @staticmethod
    def _copy_back(script_context: Any, context: ExecutionContext) -> None:
        if not isinstance(script_context, dict):
            return
        for key, value in script_context.items():
            if key in RESERVED_KEYS or key == PREVIOUS_OUTPUT:
                continue
            if context.get(key) != value:
                context[key] = value

    def shutdown(self) -> None:
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            self._stop_process(process)
