"""Workflow graph operations and navigation.

This module provides graph-based operations for workflow definitions,
including structural validation and outgoing edge selection.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any

from crm_workflows.core.definition import BranchNodeData, ConditionNodeData
from crm_workflows.core.types import ExecutionMode, NodeType

if TYPE_CHECKING:
    from collections.abc import Mapping

    from crm_workflows.core.definition import Edge, Node, Workflow

__all__ = ["WorkflowGraph"]

_SELECTING = frozenset({NodeType.CONDITION, NodeType.BRANCH})


class WorkflowGraph:
    """Graph representation of a workflow for navigation and validation.

    Attributes:
        workflow: The workflow this graph represents.
        _adjacency: Adjacency list mapping node ids to outgoing edges, in declaration order.
        _reverse_adjacency: Reverse adjacency list for finding predecessors.
    """

    def __init__(self, workflow: Workflow) -> None:
        """Initialize a workflow graph from a definition.

        Args:
            workflow: The workflow definition to represent as a graph.
        """
        self.workflow = workflow
        self._nodes: dict[str, Node] = {}
        self._adjacency: dict[str, list[Edge]] = {}
        self._reverse_adjacency: dict[str, list[str]] = {}
        self._build_adjacency()

    def _build_adjacency(self) -> None:
        for node in self.workflow.nodes:
            self._nodes.setdefault(node.id, node)
            self._adjacency.setdefault(node.id, [])
            self._reverse_adjacency.setdefault(node.id, [])

        for edge in self.workflow.edges:
            self._adjacency.setdefault(edge.source, []).append(edge)
            self._reverse_adjacency.setdefault(edge.target, []).append(edge.source)

    def outgoing(self, node_id: str) -> list[Edge]:
        """Get the outgoing edges of a node in declaration order."""
        return self._adjacency.get(node_id, [])

    def get_previous_nodes(self, node_id: str) -> list[str]:
        """Get the ids of the nodes that lead to the given node."""
        return self._reverse_adjacency.get(node_id, [])

    def is_terminal(self, node_id: str) -> bool:
        """Check if a node ends its cursor.

        Returns:
            True for end nodes and for nodes with no outgoing edges.
        """
        node = self._nodes.get(node_id)
        if node is not None and node.type == NodeType.END:
            return True
        return not self._adjacency.get(node_id)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Validate the workflow graph structure.

        Checks for:
        - Exactly one trigger node, with no incoming edges
        - Duplicate node or edge ids
        - Orphan edges (endpoints that reference no node)
        - Cycles
        - Nodes unreachable from the trigger
        - Fan-out from non-selecting nodes in sequential mode
        - More than one default edge out of a condition/branch node

        Returns:
            List of validation error messages. Empty list if valid.

        Example:
            >>> errors = WorkflowGraph(workflow).validate()
            >>> if errors:
            ...     for error in errors:
            ...         print(f"Validation error: {error}")
        """
        errors: list[str] = []

        seen_nodes: set[str] = set()
        for node in self.workflow.nodes:
            if node.id in seen_nodes:
                errors.append(f"Duplicate node id '{node.id}'")
            seen_nodes.add(node.id)

        seen_edges: set[str] = set()
        for edge in self.workflow.edges:
            if edge.id in seen_edges:
                errors.append(f"Duplicate edge id '{edge.id}'")
            seen_edges.add(edge.id)
            if edge.source not in self._nodes:
                errors.append(f"Edge '{edge.id}' source '{edge.source}' not found in nodes")
            if edge.target not in self._nodes:
                errors.append(f"Edge '{edge.id}' target '{edge.target}' not found in nodes")

        triggers = [node.id for node in self.workflow.nodes if node.type == NodeType.TRIGGER]
        if len(triggers) != 1:
            errors.append(f"Workflow must have exactly one trigger node, found {len(triggers)}")
        for trigger_id in triggers:
            if self.get_previous_nodes(trigger_id):
                errors.append(f"Trigger node '{trigger_id}' must not have incoming edges")

        cycle = self.find_cycle()
        if cycle:
            errors.append(f"Workflow graph contains a cycle: {' -> '.join(cycle)}")

        if len(triggers) == 1:
            reachable = self.get_reachable_nodes(triggers[0])
            for node_id in self._nodes:
                if node_id not in reachable:
                    errors.append(f"Node '{node_id}' is unreachable from the trigger node")

        for node_id, node in self._nodes.items():
            edges = self.outgoing(node_id)
            if node.type in _SELECTING:
                defaults = [edge.id for edge in edges if edge.is_default]
                if len(defaults) > 1:
                    errors.append(f"Node '{node_id}' has more than one default edge: {', '.join(defaults)}")
            elif self.workflow.execution_mode == ExecutionMode.SEQUENTIAL:
                unconditional = [edge for edge in edges if edge.condition is None]
                if len(unconditional) > 1:
                    errors.append(
                        f"Node '{node_id}' fans out to {len(unconditional)} nodes; "
                        "sequential workflows need a condition or branch node to choose a path"
                    )
            if node.type == NodeType.END and edges:
                errors.append(f"End node '{node_id}' must not have outgoing edges")

        return errors

    def get_reachable_nodes(self, start: str) -> set[str]:
        """Get all node ids reachable from ``start`` (inclusive)."""
        reachable: set[str] = set()
        to_visit = [start]

        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in self._adjacency.get(current, []):
                if edge.target not in reachable:
                    to_visit.append(edge.target)

        return reachable

    def find_cycle(self) -> list[str] | None:
        """Find a cycle with a visited-set depth-first search.

        Returns:
            The node ids along the first cycle found, closed on its first node,
            or None if the graph is acyclic.
        """
        done: set[str] = set()

        for root in self._adjacency:
            if root in done:
                continue
            path: list[str] = [root]
            on_path = {root}
            stack = [iter(self._adjacency.get(root, []))]
            while stack:
                edge = next(stack[-1], None)
                if edge is None:
                    stack.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                    continue
                target = edge.target
                if target in on_path:
                    return [*path[path.index(target) :], target]
                if target in done:
                    continue
                path.append(target)
                on_path.add(target)
                stack.append(iter(self._adjacency.get(target, [])))

        return None

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def next_nodes(
        self,
        node: Node,
        scope: Mapping[str, Any],
        *,
        execution_id: Any = None,
    ) -> list[str]:
        """Get the nodes a cursor moves to after ``node`` completes.

        Condition and branch nodes choose at most one edge: the first edge in
        declaration order whose condition holds (or whose ``yes``/``no`` label
        matches the node's own condition), falling back to the default edge.
        A branch node with split weights picks an edge label deterministically
        from the execution id. Other nodes follow every unconditional edge and
        every conditional edge whose condition holds; in sequential mode only
        the first of those is taken.

        Args:
            node: The node that just completed.
            scope: Variables visible to conditions.
            execution_id: Identifier used to seed split branches.

        Returns:
            Target node ids. Empty when the cursor ends here.

        Raises:
            ConditionError: If a condition cannot be evaluated.

        Example:
            >>> graph.next_nodes(graph.workflow.get_node("check"), {"amount": 50})
            ['fallback']
        """
        edges = self.outgoing(node.id)
        if not edges or node.type == NodeType.END:
            return []

        if node.type in _SELECTING:
            edge = self._select_edge(node, edges, scope, execution_id)
            return [edge.target] if edge is not None else []

        targets = [edge.target for edge in edges if edge.condition is None or edge.condition.evaluate(scope)]
        if self.workflow.execution_mode == ExecutionMode.SEQUENTIAL:
            return targets[:1]
        return targets

    def _select_edge(
        self,
        node: Node,
        edges: list[Edge],
        scope: Mapping[str, Any],
        execution_id: Any,
    ) -> Edge | None:
        data = node.data
        if isinstance(data, BranchNodeData) and data.split:
            label = self._split_label(node.id, data.split, execution_id)
            for edge in edges:
                if edge.label == label:
                    return edge

        own = data.condition if isinstance(data, ConditionNodeData) else None
        outcome: bool | None = None
        default: Edge | None = None
        for edge in edges:
            if edge.condition is not None:
                if edge.condition.evaluate(scope):
                    return edge
                continue
            if own is not None and edge.outcome is not None:
                if outcome is None:
                    outcome = own.evaluate(scope)
                if edge.outcome == outcome:
                    return edge
                continue
            if edge.is_default and default is None:
                default = edge
        return default

    @staticmethod
    def _split_label(node_id: str, split: Mapping[str, float], execution_id: Any) -> str:
        digest = hashlib.sha256(f"{execution_id}:{node_id}".encode()).hexdigest()
        point = int(digest[:12], 16) / float(16**12) * sum(split.values())
        cumulative = 0.0
        label = next(iter(split))
        for label, weight in split.items():
            cumulative += weight
            if point < cumulative:
                return label
        return label
