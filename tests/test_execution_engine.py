"""Tests for workflow traversal, cancellation and the bounded execution pool."""

import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from conftest import linear_workflow, make_edge, make_node, make_workflow, node_statuses
from workflow_automation.config import AdmissionPolicy
from workflow_automation.core.exceptions import (
    NotFoundError,
    ResourceExhaustionError,
    WorkflowInactiveError,
)
from workflow_automation.core.execution_engine import ExecutionEngine
from workflow_automation.core.executor_registry import ExecutorRegistry
from workflow_automation.executors import DelayExecutor, TransformExecutor
from workflow_automation.executors.base import NodeExecutor
from workflow_automation.models.configs import NodeConfig
from workflow_automation.models.core import ExecutionFilter, ExecutionStatusEnum, NodeType, WorkflowUpdate


def run_to_completion(engine, workflow_id, input_data=None):
    execution_id = engine.start_execution(workflow_id, input_data)
    return engine.wait_for_execution(execution_id, timeout=10)


def branch_workflow(expression):
    nodes = [
        make_node("start", NodeType.START),
        make_node("check", NodeType.CONDITION, expression=expression),
        make_node("yes", NodeType.TRANSFORM, script="'took true'"),
        make_node("no", NodeType.TRANSFORM, script="'took false'"),
        make_node("end", NodeType.END),
    ]
    edges = [
        make_edge("start", "check"),
        make_edge("check", "yes", "true"),
        make_edge("check", "no", "false"),
        make_edge("yes", "end"),
        make_edge("no", "end"),
    ]
    return make_workflow(nodes, edges, name="Branching")


class BlockingExecutor(NodeExecutor):
    """Test executor that holds its worker until released."""

    node_type = NodeType.HTTP_REQUEST
    config_model = NodeConfig

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def execute(self, configuration, context, cancellation):
        self.started.set()
        self.release.wait(10)
        return {"released": True}


class TestTraversal:

    def test_linear_workflow_completes(self, engine, store):
        workflow = store.create_workflow(linear_workflow(
            make_node("double", NodeType.TRANSFORM, script="inputData['amount'] * 2"),
            make_node("describe", NodeType.TRANSFORM, script="{'value': previousOutput, 'who': inputData['name']}"),
        ))

        record = run_to_completion(engine, workflow.id, {"amount": 21, "name": "Ada"})

        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.started_at is not None and record.completed_at is not None
        assert record.input_data == {"amount": 21, "name": "Ada"}
        assert record.context_snapshot["previousOutput"] == {"value": 42, "who": "Ada"}
        assert record.context_snapshot["inputData"] == {"amount": 21, "name": "Ada"}
        assert record.context_snapshot["executionId"] == record.id
        assert record.context_snapshot["workflowId"] == workflow.id

        logs = engine.get_execution_logs(record.id)
        assert [log.node_id for log in logs] == ["start", "double", "describe", "end"]
        assert all(log.status == ExecutionStatusEnum.COMPLETED for log in logs)
        assert json.loads(logs[1].output_data_json) == 42
        # Each node sees the previous node's output as its input
        assert json.loads(logs[2].input_data_json) == 42
        assert logs[0].output_data_json is None

    @pytest.mark.parametrize("amount, taken, skipped, output", [
        (10, "yes", "no", "took true"),
        (1, "no", "yes", "took false"),
    ])
    def test_condition_follows_one_branch(self, engine, store, amount, taken, skipped, output):
        workflow = store.create_workflow(branch_workflow("inputData['amount'] > 5"))

        record = run_to_completion(engine, workflow.id, {"amount": amount})

        assert record.status == ExecutionStatusEnum.COMPLETED
        statuses = node_statuses(engine.get_execution_logs(record.id))
        assert taken in statuses
        assert skipped not in statuses
        assert record.context_snapshot["previousOutput"] == output
        assert record.context_snapshot["conditionResult"] is (taken == "yes")

    def test_missing_branch_ends_silently(self, engine, store):
        nodes = [
            make_node("start", NodeType.START),
            make_node("check", NodeType.CONDITION, expression="false"),
            make_node("end", NodeType.END),
        ]
        workflow = store.create_workflow(make_workflow(nodes, [make_edge("start", "check"), make_edge("check", "end", "true")]))

        record = run_to_completion(engine, workflow.id)

        assert record.status == ExecutionStatusEnum.COMPLETED
        assert list(node_statuses(engine.get_execution_logs(record.id))) == ["start", "check"]

    def test_reconvergent_node_runs_once(self, engine, store):
        nodes = [
            make_node("start", NodeType.START),
            make_node("left", NodeType.TRANSFORM, script="'left'"),
            make_node("right", NodeType.TRANSFORM, script="'right'"),
            make_node("join", NodeType.TRANSFORM, script="previousOutput"),
            make_node("end", NodeType.END),
        ]
        edges = [
            make_edge("start", "left"),
            make_edge("start", "right"),
            make_edge("left", "join"),
            make_edge("right", "join"),
            make_edge("join", "end"),
        ]
        workflow = store.create_workflow(make_workflow(nodes, edges))

        record = run_to_completion(engine, workflow.id)

        logs = engine.get_execution_logs(record.id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        # Depth-first in edge definition order: the left branch runs first
        assert [log.node_id for log in logs] == ["start", "left", "join", "end", "right"]
        assert record.context_snapshot["previousOutput"] == "right"

    def test_cycle_terminates(self, engine, store):
        nodes = [
            make_node("start", NodeType.START),
            make_node("a", NodeType.TRANSFORM, script="1"),
            make_node("b", NodeType.TRANSFORM, script="2"),
        ]
        edges = [make_edge("start", "a"), make_edge("a", "b"), make_edge("b", "a")]
        workflow = store.create_workflow(make_workflow(nodes, edges))

        record = run_to_completion(engine, workflow.id)

        assert record.status == ExecutionStatusEnum.COMPLETED
        assert [log.node_id for log in engine.get_execution_logs(record.id)] == ["start", "a", "b"]

    def test_http_request_workflow(self, engine, store):
        response = MagicMock(status_code=200, text='{"id": 7}', headers={"Content-Type": "application/json"})
        workflow = store.create_workflow(linear_workflow(
            make_node("fetch", NodeType.HTTP_REQUEST, url="https://api.example.com/orders/7"),
        ))

        with patch("workflow_automation.executors.http_request.requests.request", return_value=response) as request:
            record = run_to_completion(engine, workflow.id)

        assert record.status == ExecutionStatusEnum.COMPLETED
        request.assert_called_once()
        assert request.call_args[0] == ("GET", "https://api.example.com/orders/7")

        logs = engine.get_execution_logs(record.id)
        assert [log.node_id for log in logs] == ["start", "fetch", "end"]
        assert all(log.status == ExecutionStatusEnum.COMPLETED for log in logs)
        output = json.loads(logs[1].output_data_json)
        assert output["statusCode"] == 200
        assert output["isSuccess"] is True
        assert record.context_snapshot["previousOutput"]["statusCode"] == 200

    def test_delay_node_lasts_its_duration(self, engine, store):
        workflow = store.create_workflow(linear_workflow(
            make_node("wait", NodeType.DELAY, duration=400),
        ))

        started = time.monotonic()
        record = run_to_completion(engine, workflow.id)

        assert record.status == ExecutionStatusEnum.COMPLETED
        assert time.monotonic() - started >= 0.4
        wait_log = next(log for log in engine.get_execution_logs(record.id) if log.node_id == "wait")
        assert wait_log.status == ExecutionStatusEnum.COMPLETED
        assert (wait_log.completed_at - wait_log.started_at).total_seconds() >= 0.4

    def test_long_chain_completes(self, engine, store):
        steps = [make_node(f"step-{i}", NodeType.TRANSFORM, script="previousOutput + 1") for i in range(1100)]
        workflow = store.create_workflow(linear_workflow(
            make_node("seed", NodeType.TRANSFORM, script="0"), *steps,
        ))

        execution_id = engine.start_execution(workflow.id)
        record = engine.wait_for_execution(execution_id, timeout=120)

        assert record.status == ExecutionStatusEnum.COMPLETED, record.error_message
        assert record.context_snapshot["previousOutput"] == 1100

    def test_end_node_stops_branch(self, engine, store):
        nodes = [
            make_node("start", NodeType.START),
            make_node("end", NodeType.END),
            make_node("after", NodeType.TRANSFORM, script="'never'"),
        ]
        workflow = store.create_workflow(make_workflow(nodes, [make_edge("start", "end"), make_edge("end", "after")]))

        record = run_to_completion(engine, workflow.id)

        assert "after" not in node_statuses(engine.get_execution_logs(record.id))

    def test_node_failure_fails_execution(self, engine, store):
        workflow = store.create_workflow(linear_workflow(
            make_node("ok", NodeType.TRANSFORM, script="1"),
            make_node("broken", NodeType.TRANSFORM, script="inputData['missing']"),
            make_node("never", NodeType.TRANSFORM, script="2"),
        ))

        record = run_to_completion(engine, workflow.id)

        assert record.status == ExecutionStatusEnum.FAILED
        assert "missing" in record.error_message
        statuses = node_statuses(engine.get_execution_logs(record.id))
        assert statuses == {"start": "completed", "ok": "completed", "broken": "failed"}
        failed = [log for log in engine.get_execution_logs(record.id) if log.node_id == "broken"][0]
        assert failed.error_message

    def test_configuration_error_fails_execution(self, engine, store):
        workflow = store.create_workflow(linear_workflow(make_node("http", NodeType.HTTP_REQUEST)))

        record = run_to_completion(engine, workflow.id)

        assert record.status == ExecutionStatusEnum.FAILED
        assert "HttpRequest configuration" in record.error_message

    def test_invalid_structure_fails_before_any_node(self, engine, store):
        workflow = store.create_workflow(make_workflow([make_node("end", NodeType.END)], []))

        record = run_to_completion(engine, workflow.id)

        assert record.status == ExecutionStatusEnum.FAILED
        assert "no Start node" in record.error_message
        assert engine.get_execution_logs(record.id) == []

    def test_unexpected_executor_error_is_recorded(self, store, test_config):
        failing = MagicMock(spec=NodeExecutor)
        failing.node_type = NodeType.TRANSFORM
        failing.execute.side_effect = RuntimeError("kaboom")
        registry = ExecutorRegistry()
        registry.register(failing)
        engine = ExecutionEngine(store, registry, test_config)
        try:
            workflow = store.create_workflow(linear_workflow(make_node("t", NodeType.TRANSFORM, script="1")))
            record = run_to_completion(engine, workflow.id)
        finally:
            engine.shutdown()

        assert record.status == ExecutionStatusEnum.FAILED
        assert "kaboom" in record.error_message
        assert node_statuses(engine.get_execution_logs(record.id))["t"] == "failed"


class TestStartExecution:

    def test_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError):
            engine.start_execution("missing")

    def test_inactive_workflow_creates_no_row(self, engine, store):
        workflow = store.create_workflow(linear_workflow())
        store.update_workflow(workflow.id, WorkflowUpdate(is_active=False))

        with pytest.raises(WorkflowInactiveError):
            engine.start_execution(workflow.id)
        assert engine.list_executions(ExecutionFilter(workflow_id=workflow.id)) == []

    def test_returns_before_workflow_finishes(self, engine, store):
        workflow = store.create_workflow(linear_workflow(
            make_node("wait", NodeType.DELAY, duration=300),
        ))

        execution_id = engine.start_execution(workflow.id, user_id="alice")

        record = engine.get_execution(execution_id)
        assert record.status in (ExecutionStatusEnum.PENDING, ExecutionStatusEnum.RUNNING)
        assert record.user_id == "alice"
        assert engine.wait_for_execution(execution_id).status == ExecutionStatusEnum.COMPLETED

    def test_snapshot_isolated_from_edit_during_run(self, engine, store):
        workflow = store.create_workflow(linear_workflow(
            make_node("wait", NodeType.DELAY, duration=200),
            make_node("after", NodeType.TRANSFORM, script="'original'"),
        ))
        execution_id = engine.start_execution(workflow.id)
        store.update_workflow(workflow.id, WorkflowUpdate(nodes=[make_node("start", NodeType.START)], edges=[]))

        record = engine.wait_for_execution(execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.context_snapshot["previousOutput"] == "original"


class TestStopExecution:

    def test_stop_running_delay(self, engine, store):
        workflow = store.create_workflow(linear_workflow(
            make_node("wait", NodeType.DELAY, duration=30, unit="seconds"),
            make_node("after", NodeType.TRANSFORM, script="'never'"),
        ))
        execution_id = engine.start_execution(workflow.id)
        _wait_for_log(engine, execution_id, "wait")

        assert engine.stop_execution(execution_id) is True
        record = engine.wait_for_execution(execution_id, timeout=5)

        assert record.status == ExecutionStatusEnum.CANCELLED
        assert record.error_message == "Execution cancelled"
        assert record.context_snapshot is not None
        logs = {log.node_id: log for log in engine.get_execution_logs(execution_id)}
        assert logs["wait"].status == ExecutionStatusEnum.FAILED
        assert logs["wait"].error_message == "Execution cancelled"
        assert "after" not in logs

    def test_stop_running_script(self, engine, store):
        workflow = store.create_workflow(linear_workflow(
            make_node("spin", NodeType.SCRIPT, code="while True:\n    pass", timeout=60),
            make_node("after", NodeType.TRANSFORM, script="'never'"),
        ))
        execution_id = engine.start_execution(workflow.id)
        _wait_for_log(engine, execution_id, "spin")
        started = time.monotonic()

        assert engine.stop_execution(execution_id) is True
        record = engine.wait_for_execution(execution_id, timeout=10)

        assert record.status == ExecutionStatusEnum.CANCELLED
        assert time.monotonic() - started < 10
        logs = {log.node_id: log for log in engine.get_execution_logs(execution_id)}
        assert logs["spin"].error_message == "Execution cancelled"
        assert "after" not in logs

    def test_stop_finished_execution_returns_false(self, engine, store):
        workflow = store.create_workflow(linear_workflow())
        record = run_to_completion(engine, workflow.id)
        assert engine.stop_execution(record.id) is False

    def test_stop_unknown_execution(self, engine):
        with pytest.raises(NotFoundError):
            engine.stop_execution("missing")

    def test_stop_orphaned_execution(self, engine, store):
        # A Running row left behind by another process
        workflow = store.create_workflow(linear_workflow())
        execution_id = store.create_execution(workflow.id)
        store.update_execution_status(execution_id, ExecutionStatusEnum.RUNNING)

        assert engine.stop_execution(execution_id) is True
        assert engine.get_execution(execution_id).status == ExecutionStatusEnum.CANCELLED


class TestExecutionPool:

    @pytest.fixture
    def blocking(self):
        executor = BlockingExecutor()
        yield executor
        executor.release.set()

    def make_engine(self, store, blocking, config, **kwargs):
        registry = ExecutorRegistry()
        registry.register(blocking)
        registry.register(TransformExecutor())
        registry.register(DelayExecutor())
        return ExecutionEngine(store, registry, config, max_concurrent_executions=1, execution_queue_size=1, **kwargs)

    def test_rejects_when_saturated(self, store, blocking, test_config):
        engine = self.make_engine(store, blocking, test_config, admission_policy=AdmissionPolicy.REJECT)
        workflow = store.create_workflow(linear_workflow(make_node("block", NodeType.HTTP_REQUEST)))
        try:
            running = engine.start_execution(workflow.id)
            assert blocking.started.wait(5)
            queued = engine.start_execution(workflow.id)

            with pytest.raises(ResourceExhaustionError):
                engine.start_execution(workflow.id)

            status = engine.get_pool_status()
            assert status.capacity == 2
            assert status.active == 1
            assert status.queued == 1
            assert status.rejected_total == 1
            assert status.saturation == 1.0
            assert len(engine.list_executions(ExecutionFilter(workflow_id=workflow.id))) == 2
            assert set(engine.get_active_executions()) == {running, queued}

            blocking.release.set()
            assert engine.wait_for_execution(running).status == ExecutionStatusEnum.COMPLETED
            assert engine.wait_for_execution(queued).status == ExecutionStatusEnum.COMPLETED
        finally:
            engine.shutdown()

        assert engine.get_pool_status().active == 0
        assert not engine.is_execution_active(running)

    def test_wait_policy_times_out(self, store, blocking, test_config):
        engine = self.make_engine(store, blocking, test_config, admission_policy=AdmissionPolicy.WAIT, admission_timeout=0.1)
        workflow = store.create_workflow(linear_workflow(make_node("block", NodeType.HTTP_REQUEST)))
        try:
            engine.start_execution(workflow.id)
            assert blocking.started.wait(5)
            engine.start_execution(workflow.id)

            with pytest.raises(ResourceExhaustionError):
                engine.start_execution(workflow.id)
        finally:
            blocking.release.set()
            engine.shutdown()

    def test_stop_queued_execution(self, store, blocking, test_config):
        engine = self.make_engine(store, blocking, test_config)
        workflow = store.create_workflow(linear_workflow(make_node("block", NodeType.HTTP_REQUEST)))
        try:
            running = engine.start_execution(workflow.id)
            assert blocking.started.wait(5)
            queued = engine.start_execution(workflow.id)

            assert engine.stop_execution(queued) is True
            assert engine.get_execution(queued).status == ExecutionStatusEnum.CANCELLED

            blocking.release.set()
            assert engine.wait_for_execution(running).status == ExecutionStatusEnum.COMPLETED
            assert engine.get_execution_logs(queued) == []
        finally:
            engine.shutdown()


def _wait_for_log(engine, execution_id, node_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if any(log.node_id == node_id for log in engine.get_execution_logs(execution_id)):
            return
        time.sleep(0.02)
    raise AssertionError(f"Node {node_id} never started")
