"""Workflow graph validation and execution ordering.

Resolves the order in which a workflow's nodes run: only nodes reachable
from a trigger take part, ordering follows the connections (Kahn's
algorithm) and ties are broken by node declaration order, so the same
graph always produces the same order.
"""

from collections import deque
from collections.abc import Iterable, Sequence
from typing import Protocol

import structlog

from chainly.models.node import is_trigger_type

logger = structlog.get_logger()


class GraphNode(Protocol):
    id: str
    type: str


class GraphConnection(Protocol):
    from_node_id: str
    to_node_id: str


class GraphValidationError(Exception):
    """Base exception for invalid workflow graphs.

    Messages are safe to show to the workflow owner verbatim.
    """

    pass


class EmptyWorkflowError(GraphValidationError):
    """Workflow has no nodes."""

    def __init__(self) -> None:
        super().__init__("You must have at least one node in your workflow")


class NoTriggerError(GraphValidationError):
    """Workflow has no trigger node."""

    def __init__(self) -> None:
        super().__init__("No trigger node found in workflow")


class InvalidTriggerError(GraphValidationError):
    """Requested start node is missing or is not a trigger."""

    pass


class DisconnectedGraphError(GraphValidationError):
    """More than one node exists but no connection links two reachable nodes."""

    def __init__(self) -> None:
        super().__init__("You must have at least one connection between reachable nodes")


class CyclicGraphError(GraphValidationError):
    """The reachable subgraph contains a cycle."""

    def __init__(self, node_ids: Sequence[str]) -> None:
        super().__init__("Cyclic dependency detected in workflow")
        self.node_ids = list(node_ids)


def _adjacency(connections: Iterable[GraphConnection]) -> dict[str, list[str]]:
    adjacency: dict[str, list[str]] = {}
    for connection in connections:
        targets = adjacency.setdefault(connection.from_node_id, [])
        if connection.to_node_id not in targets:
            targets.append(connection.to_node_id)
    return adjacency


def find_reachable_nodes(
    start_ids: Iterable[str],
    connections: Iterable[GraphConnection],
) -> set[str]:
    """Breadth-first search over forward edges from the start nodes."""
    adjacency = _adjacency(connections)
    reachable: set[str] = set()
    queue: deque[str] = deque()

    for start_id in start_ids:
        if start_id not in reachable:
            reachable.add(start_id)
            queue.append(start_id)

    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)

    return reachable


def get_node_predecessors(
    node_id: str,
    connections: Iterable[GraphConnection],
) -> list[str]:
    """IDs of nodes with a connection into ``node_id``."""
    return [c.from_node_id for c in connections if c.to_node_id == node_id]


def _start_nodes(
    nodes: Sequence[GraphNode],
    trigger_node_id: str | None,
) -> list[GraphNode]:
    if trigger_node_id is not None:
        specified = next((n for n in nodes if n.id == trigger_node_id), None)
        if specified is None:
            raise InvalidTriggerError(f"Trigger node with ID {trigger_node_id} not found")
        if not is_trigger_type(specified.type):
            raise InvalidTriggerError(f"Node with ID {trigger_node_id} is not a trigger node")
        return [specified]

    triggers = [n for n in nodes if is_trigger_type(n.type)]
    if not triggers:
        raise NoTriggerError()
    return triggers


def resolve_execution_order(
    nodes: Sequence[GraphNode],
    connections: Sequence[GraphConnection],
    trigger_node_id: str | None = None,
) -> list[str]:
    """Resolve the execution order of a workflow graph.

    Args:
        nodes: Workflow nodes in declaration order
        connections: Workflow connections
        trigger_node_id: Start from this trigger only (webhook or schedule
            initiated runs); otherwise every trigger node is a start node

    Returns:
        Node IDs in execution order, restricted to reachable nodes

    Raises:
        EmptyWorkflowError: If there are no nodes
        NoTriggerError: If no node is a trigger type
        InvalidTriggerError: If trigger_node_id is unknown or not a trigger
        DisconnectedGraphError: If several nodes exist but no connection links
            two reachable nodes
        CyclicGraphError: If the reachable subgraph has a cycle
    """
    if not nodes:
        raise EmptyWorkflowError()

    starts = _start_nodes(nodes, trigger_node_id)
    reachable = find_reachable_nodes((n.id for n in starts), connections)

    declaration_index = {node.id: index for index, node in enumerate(nodes)}
    reachable_ids = [n.id for n in nodes if n.id in reachable]

    edges: set[tuple[str, str]] = {
        (c.from_node_id, c.to_node_id)
        for c in connections
        if c.from_node_id in reachable
        and c.to_node_id in reachable
        and c.from_node_id in declaration_index
        and c.to_node_id in declaration_index
    }

    if not edges:
        if len(nodes) > 1:
            raise DisconnectedGraphError()
        return reachable_ids

    in_degree = {node_id: 0 for node_id in reachable_ids}
    successors: dict[str, list[str]] = {node_id: [] for node_id in reachable_ids}
    for source, target in edges:
        in_degree[target] += 1
        successors[source].append(target)

    ready = [node_id for node_id in reachable_ids if in_degree[node_id] == 0]
    order: list[str] = []

    while ready:
        # Earliest-declared ready node goes first
        ready.sort(key=declaration_index.__getitem__)
        current = ready.pop(0)
        order.append(current)
        for successor in successors[current]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                ready.append(successor)

    if len(order) != len(reachable_ids):
        cyclic = [node_id for node_id in reachable_ids if in_degree[node_id] > 0]
        logger.info("workflow_graph_cyclic", node_ids=cyclic)
        raise CyclicGraphError(cyclic)

    return order
