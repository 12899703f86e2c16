"""Graph model: read-only traversal index and structural validation."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from autoflow.core.errors import GraphStructureError, InvalidGraph, UnknownNodeType
from autoflow.core.types import BRANCH_TYPES, Edge, Node, NodeType, Workflow

LOOP_BODY = "body"
LOOP_EXIT = "exit"


class WorkflowGraph:
    """Indexes a validated Workflow for traversal. Never mutated after construction."""

    def __init__(self, workflow: Workflow) -> None:
        self.workflow = workflow
        self._nodes: dict[str, Node] = {n.id: n for n in workflow.nodes}
        self._outgoing: dict[str, list[Edge]] = defaultdict(list)
        self._incoming: dict[str, list[Edge]] = defaultdict(list)
        for edge in workflow.edges:
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)
        starts = [n for n in workflow.nodes if n.type == NodeType.START.value]
        self.start: Node | None = starts[0] if len(starts) == 1 else None

    def node(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, ()))

    def predecessors(self, node_id: str) -> list[str]:
        return [e.source for e in self._incoming.get(node_id, ())]

    def next_node(self, node_id: str, handle: str | None = None) -> str | None:
        """
        Follow the outbound edge matching ``handle``.

        Edges without a handle act as the default output when no edge
        carries the requested handle.
        """
        edges = self._outgoing.get(node_id, ())
        for edge in edges:
            if edge.source_handle == handle:
                return edge.target
        if handle is not None:
            for edge in edges:
                if edge.source_handle is None:
                    return edge.target
        return None

    def body_of(self, loop_id: str) -> str | None:
        for edge in self._outgoing.get(loop_id, ()):
            if edge.source_handle == LOOP_BODY:
                return edge.target
        return None


def validate_workflow(
    workflow: Workflow,
    known_types: Iterable[str] | None = None,
) -> WorkflowGraph:
    """
    Check every graph invariant and return the traversal index.

    Raises
    ------
    InvalidGraph
        Not exactly one ``start`` node, duplicate ids, or an edge that
        references a node id which does not exist.
    UnknownNodeType
        ``known_types`` was given and a node type is not in it.
    GraphStructureError
        A non-branch node fans out, or a cycle bypasses every loop body.
    """
    ids = [n.id for n in workflow.nodes]
    seen: set[str] = set()
    for node_id in ids:
        if node_id in seen:
            raise InvalidGraph(f"Duplicate node id {node_id!r}")
        seen.add(node_id)

    starts = [n.id for n in workflow.nodes if n.type == NodeType.START.value]
    if len(starts) != 1:
        raise InvalidGraph(f"Workflow must have exactly one start node, found {len(starts)}")

    edge_ids: set[str] = set()
    for edge in workflow.edges:
        if edge.id in edge_ids:
            raise InvalidGraph(f"Duplicate edge id {edge.id!r}")
        edge_ids.add(edge.id)
        if edge.source not in seen:
            raise InvalidGraph(f"Edge {edge.id!r} references non-existent source node {edge.source!r}")
        if edge.target not in seen:
            raise InvalidGraph(f"Edge {edge.id!r} references non-existent target node {edge.target!r}")

    if known_types is not None:
        allowed = set(known_types)
        for node in workflow.nodes:
            if node.type not in allowed:
                raise UnknownNodeType(node.id, node.type)

    graph = WorkflowGraph(workflow)
    _check_fan_out(workflow, graph)
    _check_cycles(workflow)
    return graph


def _check_fan_out(workflow: Workflow, graph: WorkflowGraph) -> None:
    for node in workflow.nodes:
        edges = graph.outgoing(node.id)
        if node.type not in BRANCH_TYPES:
            if len(edges) > 1:
                raise GraphStructureError(
                    f"Node {node.id!r} of type {node.type!r} has {len(edges)} outbound edges; "
                    "only branch and loop nodes may fan out"
                )
            continue
        handles = [e.source_handle for e in edges]
        if node.type == NodeType.LOOP.value and LOOP_BODY not in handles:
            raise GraphStructureError(f"Loop node {node.id!r} has no {LOOP_BODY!r} edge")
        duplicates = {h for h in handles if handles.count(h) > 1}
        if duplicates:
            raise GraphStructureError(
                f"Node {node.id!r} has more than one edge on handle {sorted(map(str, duplicates))[0]!r}"
            )


def _check_cycles(workflow: Workflow) -> None:
    """Every cycle must re-enter through a loop node's body handle."""
    loop_ids = {n.id for n in workflow.nodes if n.type == NodeType.LOOP.value}
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in workflow.edges:
        if edge.source in loop_ids and edge.source_handle == LOOP_BODY:
            continue
        adjacency[edge.source].append(edge.target)

    white, grey, black = 0, 1, 2
    color = {n.id: white for n in workflow.nodes}
    for root in color:
        if color[root] != white:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = grey
        while stack:
            node_id, idx = stack[-1]
            targets = adjacency.get(node_id, [])
            if idx < len(targets):
                stack[-1] = (node_id, idx + 1)
                target = targets[idx]
                if color[target] == grey:
                    raise GraphStructureError(
                        f"Cycle through {target!r} does not pass through a loop node"
                    )
                if color[target] == white:
                    color[target] = grey
                    stack.append((target, 0))
            else:
                color[node_id] = black
                stack.pop()
