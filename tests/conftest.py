"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import Any, Dict, List, Optional

import pytest

from workflow_automation.config import AppConfig, get_preset_config
from workflow_automation.core.context import CancellationToken, ExecutionContext
from workflow_automation.core.execution_engine import ExecutionEngine
from workflow_automation.core.executor_registry import build_default_registry
from workflow_automation.models.core import EdgeDefinition, NodeDefinition, NodeType, WorkflowDefinition
from workflow_automation.storage.database import create_database_engine, create_tables
from workflow_automation.storage.repository import WorkflowStore


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    yield db_path

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def test_config(temp_db_path) -> AppConfig:
    return get_preset_config("testing").model_copy(update={"database_url": f"sqlite:///{temp_db_path}"})


@pytest.fixture
def database_engine(test_config):
    engine = create_database_engine(test_config.database_url)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(database_engine) -> WorkflowStore:
    return WorkflowStore(database_engine)


@pytest.fixture
def registry(test_config):
    registry = build_default_registry(test_config)
    yield registry
    registry.shutdown()


@pytest.fixture
def engine(store, registry, test_config):
    engine = ExecutionEngine(store, registry, test_config)
    yield engine
    engine.shutdown()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext("exec-1", "wf-1", {"name": "Ada", "amount": 42})


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


def make_node(node_id: str, node_type: NodeType, **configuration: Any) -> NodeDefinition:
    return NodeDefinition(node_id=node_id, node_type=node_type, configuration=configuration)


def make_edge(source: str, target: str, handle: Optional[str] = None) -> EdgeDefinition:
    return EdgeDefinition(
        edge_id=f"{source}->{target}:{handle or ''}",
        source_node_id=source,
        target_node_id=target,
        source_handle=handle,
    )


def make_workflow(nodes: List[NodeDefinition], edges: List[EdgeDefinition],
                  name: str = "Test workflow", is_active: bool = True) -> WorkflowDefinition:
    return WorkflowDefinition(name=name, is_active=is_active, nodes=nodes, edges=edges)


def linear_workflow(*middle: NodeDefinition, name: str = "Linear workflow") -> WorkflowDefinition:
    """Start -> middle nodes in order -> End."""
    nodes = [make_node("start", NodeType.START), *middle, make_node("end", NodeType.END)]
    edges = [make_edge(nodes[i].node_id, nodes[i + 1].node_id) for i in range(len(nodes) - 1)]
    return make_workflow(nodes, edges, name=name)


def node_statuses(logs) -> Dict[str, str]:
    return {log.node_id: log.status.value for log in logs}
