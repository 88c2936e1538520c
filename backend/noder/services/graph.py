"""
Dependency graph helpers for workflow runs.

- ``build_dependency_graph`` turns the edge list into adjacency, in-degree
  and dependency maps.
- ``topological_layers`` groups nodes into layers that can run concurrently.
- ``get_node_inputs`` resolves a node's inputs from upstream outputs,
  keeping fan-in connections as ordered lists.
- ``upstream_subgraph`` extracts a node together with everything it depends on.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from noder.errors import CycleError, NotFoundError, ValidationError
from noder.models.workflow import GraphDependent, NodeOutputs, WorkflowEdge, WorkflowNode

logger = logging.getLogger(__name__)

DEFAULT_HANDLE = "default"


def _require_unique_ids(nodes: list[WorkflowNode]) -> None:
    seen: set[str] = set()
    duplicates: list[str] = []
    for node in nodes:
        if node.id in seen and node.id not in duplicates:
            duplicates.append(node.id)
        seen.add(node.id)
    if duplicates:
        raise ValidationError(f"Duplicate node ids: {', '.join(duplicates)}")


def build_dependency_graph(
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
) -> tuple[dict[str, list[GraphDependent]], dict[str, int], dict[str, list[str]]]:
    """
    Build dependency tracking structures from workflow edges.

    Returns:
        graph: node -> downstream dependents, one entry per edge
        in_degree: count of incoming edges for each node
        dependencies: node -> upstream node ids (deduplicated, edge order)

    Raises:
        ValidationError: if two nodes share an id.
    """
    _require_unique_ids(nodes)
    graph: dict[str, list[GraphDependent]] = {n.id: [] for n in nodes}
    in_degree: dict[str, int] = {n.id: 0 for n in nodes}
    dependencies: dict[str, list[str]] = {n.id: [] for n in nodes}

    for edge in edges:
        # Edges pointing at nodes outside this run cannot be satisfied or scheduled
        if edge.source not in graph or edge.target not in graph:
            logger.debug("Ignoring edge %s -> %s with an unknown endpoint", edge.source, edge.target)
            continue

        graph[edge.source].append(
            GraphDependent(
                target_id=edge.target,
                source_handle=edge.source_handle,
                target_handle=edge.target_handle,
            )
        )
        in_degree[edge.target] += 1
        if edge.source not in dependencies[edge.target]:
            dependencies[edge.target].append(edge.source)

    return graph, in_degree, dependencies


def topological_layers(
    nodes: list[WorkflowNode],
    graph: dict[str, list[GraphDependent]],
    in_degree: dict[str, int],
) -> list[list[WorkflowNode]]:
    """
    Partition nodes into execution layers.

    Every node whose remaining in-degree is zero joins the current layer; the
    layer's outgoing edges are then released and the scan repeats.

    Raises:
        CycleError: naming every node that could not be placed in a layer.
        ValidationError: if two nodes share an id.
    """
    _require_unique_ids(nodes)
    layers: list[list[WorkflowNode]] = []
    visited: set[str] = set()
    remaining = dict(in_degree)

    while len(visited) < len(nodes):
        current_layer = [
            node for node in nodes if node.id not in visited and remaining.get(node.id, 0) == 0
        ]

        if not current_layer:
            raise CycleError([node.id for node in nodes if node.id not in visited])

        layers.append(current_layer)

        for node in current_layer:
            visited.add(node.id)
            for dependent in graph.get(node.id, []):
                remaining[dependent.target_id] = max(0, remaining.get(dependent.target_id, 0) - 1)

    return layers


def get_node_inputs(
    node: WorkflowNode,
    edges: list[WorkflowEdge],
    nodes: list[WorkflowNode],
    node_outputs: dict[str, NodeOutputs],
) -> dict[str, Any]:
    """
    Resolve a node's inputs from upstream outputs.

    Each contribution is a copy of the upstream output annotated with
    ``sourceNode`` and ``sourceHandle``. A target handle fed by one edge maps
    to that contribution; one fed by several maps to the list of
    contributions in edge order.
    """
    node_ids = {n.id for n in nodes}
    inputs_by_handle: dict[str, list[dict[str, Any]]] = {}

    for edge in edges:
        if edge.target != node.id or edge.source not in node_ids:
            continue

        source_output = node_outputs.get(edge.source)
        if not source_output:
            continue

        handle_key = edge.source_handle or DEFAULT_HANDLE
        output_data = source_output.get(handle_key) or source_output.get(DEFAULT_HANDLE)
        if not isinstance(output_data, dict):
            continue

        contribution = {
            **output_data,
            "sourceNode": edge.source,
            "sourceHandle": edge.source_handle,
        }
        inputs_by_handle.setdefault(edge.target_handle or DEFAULT_HANDLE, []).append(contribution)

    inputs: dict[str, Any] = {}
    for handle, connections in inputs_by_handle.items():
        if len(connections) == 1:
            inputs[handle] = connections[0]
        else:
            logger.debug("Fan-in on handle '%s' of node %s: %d values", handle, node.id, len(connections))
            inputs[handle] = connections
    return inputs


def upstream_subgraph(
    node_id: str,
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
) -> tuple[list[WorkflowNode], list[WorkflowEdge]]:
    """
    Return ``node_id`` plus all of its transitive upstream dependencies, and
    the edges whose both ends lie in that set.

    Raises:
        NotFoundError: If ``node_id`` is not among ``nodes``.
    """
    if not any(n.id == node_id for n in nodes):
        raise NotFoundError(f"Node {node_id} not found")

    _, _, dependencies = build_dependency_graph(nodes, edges)

    upstream: set[str] = set()
    queue = deque([node_id])
    while queue:
        current = queue.popleft()
        for dep in dependencies.get(current, []):
            if dep not in upstream:
                upstream.add(dep)
                queue.append(dep)

    keep = upstream | {node_id}
    sub_nodes = [n for n in nodes if n.id in keep]
    sub_edges = [e for e in edges if e.source in keep and e.target in keep]
    return sub_nodes, sub_edges
