"""Workflow definition handling: structural validation and stored definitions."""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

from ..models.core import (
    CONDITION_HANDLES,
    EdgeDefinition,
    NodeDefinition,
    NodeType,
    ValidationResult,
    WorkflowDefinition,
    WorkflowRecord,
    WorkflowSummary,
    WorkflowUpdate,
)
from ..storage.repository import WorkflowStore
from .logging import get_logger

logger = get_logger(__name__)


def _adjacency(edges: Iterable[EdgeDefinition]) -> Dict[str, List[str]]:
    graph: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        graph[edge.source_node_id].append(edge.target_node_id)
    return graph


def find_reachable_nodes(entry_point: str, edges: Iterable[EdgeDefinition]) -> Set[str]:
    """Find all nodes reachable from the entry point."""
    graph = _adjacency(edges)
    reachable = {entry_point}
    stack = [entry_point]
    while stack:
        current = stack.pop()
        for neighbor in graph.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                stack.append(neighbor)
    return reachable


def has_cycles(nodes: Iterable[NodeDefinition], edges: Iterable[EdgeDefinition]) -> bool:
    """Check if the graph contains cycles using an iterative DFS."""
    graph = _adjacency(edges)
    # Nodes on the current DFS path are in progress, fully explored ones are done
    in_progress, done = 1, 2
    state: Dict[str, int] = {}

    for node in nodes:
        if node.node_id in state:
            continue
        state[node.node_id] = in_progress
        stack = [(node.node_id, iter(graph.get(node.node_id, [])))]
        while stack:
            node_id, neighbors = stack[-1]
            for neighbor in neighbors:
                neighbor_state = state.get(neighbor)
                if neighbor_state == in_progress:
                    return True
                if neighbor_state is None:
                    state[neighbor] = in_progress
                    stack.append((neighbor, iter(graph.get(neighbor, []))))
                    break
            else:
                state[node_id] = done
                stack.pop()
    return False


def validate_workflow(nodes: List[NodeDefinition], edges: List[EdgeDefinition]) -> ValidationResult:
    """
    Validate a workflow graph for execution.

    Errors block execution: a missing or duplicated Start node, edges that
    reference unknown nodes and Condition nodes with more than one edge for
    the same branch. Warnings do not: unreachable nodes, no reachable End
    node, missing Condition branches and cycles (a node runs at most once per
    execution, so cycles terminate).

    Args:
        nodes: Nodes of the workflow
        edges: Edges of the workflow

    Returns:
        ValidationResult: Validation results with errors and warnings
    """
    errors: List[str] = []
    warnings: List[str] = []

    node_ids = {node.node_id for node in nodes}
    nodes_by_id = {node.node_id: node for node in nodes}

    start_nodes = [node for node in nodes if node.node_type == NodeType.START]
    if not start_nodes:
        errors.append("Workflow has no Start node")
    elif len(start_nodes) > 1:
        errors.append(
            f"Workflow must have exactly one Start node, found {len(start_nodes)}: "
            f"{', '.join(node.node_id for node in start_nodes)}"
        )

    for edge in edges:
        if edge.source_node_id not in node_ids:
            errors.append(f"Edge '{edge.edge_id}' references non-existent source node: '{edge.source_node_id}'")
        if edge.target_node_id not in node_ids:
            errors.append(f"Edge '{edge.edge_id}' references non-existent target node: '{edge.target_node_id}'")

    for node in nodes:
        if node.node_type != NodeType.CONDITION:
            continue
        handles: Dict[Optional[str], int] = defaultdict(int)
        for edge in edges:
            if edge.source_node_id == node.node_id:
                handles[edge.source_handle] += 1
        for handle in CONDITION_HANDLES:
            if handles.get(handle, 0) > 1:
                errors.append(f"Condition node '{node.node_id}' has {handles[handle]} edges for the '{handle}' branch")
            elif handles.get(handle, 0) == 0:
                warnings.append(f"Condition node '{node.node_id}' has no '{handle}' branch")
        unknown = sorted(str(handle) for handle in handles if handle not in CONDITION_HANDLES)
        if unknown:
            warnings.append(
                f"Condition node '{node.node_id}' has edges that are never followed (handles: {', '.join(unknown)})"
            )

    for node in nodes:
        if node.node_type == NodeType.END and any(edge.source_node_id == node.node_id for edge in edges):
            warnings.append(f"End node '{node.node_id}' has outgoing edges that are never followed")

    if len(start_nodes) == 1:
        reachable = find_reachable_nodes(start_nodes[0].node_id, edges)
        unreachable = node_ids - reachable
        if unreachable:
            warnings.append(f"Unreachable nodes detected: {', '.join(sorted(unreachable))}")
        if not any(nodes_by_id[node_id].node_type == NodeType.END for node_id in reachable if node_id in nodes_by_id):
            warnings.append("No End node is reachable from the Start node")

    if has_cycles(nodes, edges):
        warnings.append("Workflow contains cycles; each node runs at most once per execution")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


class WorkflowManager:
    """Manages workflow definitions and their validation."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    def create_workflow(self, definition: WorkflowDefinition) -> WorkflowRecord:
        """
        Store a new workflow definition.

        Definitions that would fail at execution start are still accepted so
        that drafts can be saved; the problems are logged.
        """
        logger.info(f"Creating new workflow: {definition.name}")
        result = self.validate(definition)
        if not result.is_valid:
            logger.warning(f"Workflow '{definition.name}' saved with validation errors: {'; '.join(result.errors)}")
        return self.store.create_workflow(definition)

    def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        return self.store.get_workflow(workflow_id)

    def list_workflows(self, active_only: bool = False) -> List[WorkflowSummary]:
        return self.store.list_workflows(active_only=active_only)

    def update_workflow(self, workflow_id: str, update: WorkflowUpdate) -> WorkflowRecord:
        """
        Update a workflow and bump its version.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        record = self.store.update_workflow(workflow_id, update)
        result = validate_workflow(record.nodes, record.edges)
        if not result.is_valid:
            logger.warning(f"Workflow {workflow_id} saved with validation errors: {'; '.join(result.errors)}")
        return record

    def delete_workflow(self, workflow_id: str) -> bool:
        return self.store.delete_workflow(workflow_id)

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        result = validate_workflow(definition.nodes, definition.edges)
        logger.debug(f"Workflow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
        return result

    def validate_stored(self, workflow_id: str) -> ValidationResult:
        """Validate a stored workflow.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        snapshot = self.store.load_workflow_snapshot(workflow_id)
        return validate_workflow(list(snapshot.nodes), list(snapshot.edges))
