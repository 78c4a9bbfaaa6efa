"""Dependency graph built from a snapshot of tasks."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator
from typing import Any

from agent_dispatch.dependencies.extractor import DependencyExtractor
from agent_dispatch.dependencies.models import GraphEdge, TaskDocument
from agent_dispatch.dependencies.resolver import find_matching_tasks

logger = logging.getLogger(__name__)

GRAPH_MIN_CONFIDENCE = 0.5
GRAPH_MIN_MATCH_SCORE = 0.4
GRAPH_MAX_MATCHES = 3


class DependencyGraph:
    """Directed task graph with cycle detection and ordering queries.

    Edges point from the task that must finish first to the task that waits
    on it. The graph is not maintained incrementally: rebuild it from a fresh
    task snapshot when the corpus changes.
    """

    def __init__(self, nodes: dict[str, TaskDocument], edges: list[GraphEdge]) -> None:
        self.nodes = nodes
        self.edges = edges
        self.in_degree: dict[str, int] = dict.fromkeys(nodes, 0)
        self.out_degree: dict[str, int] = dict.fromkeys(nodes, 0)
        for edge in edges:
            self.in_degree[edge.to_task_id] = self.in_degree.get(edge.to_task_id, 0) + 1
            self.out_degree[edge.from_task_id] = self.out_degree.get(edge.from_task_id, 0) + 1
        self.cycles = self.detect_cycles()

    @classmethod
    def build(
        cls,
        tasks: Iterable[TaskDocument],
        *,
        extractor: DependencyExtractor | None = None,
        min_confidence: float = GRAPH_MIN_CONFIDENCE,
        min_match_score: float = GRAPH_MIN_MATCH_SCORE,
        max_matches: int = GRAPH_MAX_MATCHES,
    ) -> DependencyGraph:
        """Extract hints from every task and link each to its resolved candidates."""

        extractor = extractor or DependencyExtractor()
        nodes = _index_nodes(tasks)
        corpus = list(nodes.values())
        edges: list[GraphEdge] = []
        for task_id, task in nodes.items():
            for hint in extractor.extract(task):
                if hint.confidence < min_confidence:
                    continue
                matches = find_matching_tasks(
                    hint,
                    corpus,
                    min_score=min_match_score,
                    max_results=max_matches,
                )
                for match in matches:
                    blocker_id = match.task.node_id
                    if not blocker_id or blocker_id == task_id:
                        continue
                    edges.append(
                        GraphEdge(
                            from_task_id=blocker_id,
                            to_task_id=task_id,
                            dependency_type=hint.dependency_type,
                            confidence=hint.confidence * match.score,
                            raw_match=hint.raw_match,
                            match_score=match.score,
                            match_reasons=list(match.reasons),
                        ),
                    )
        graph = cls(nodes, edges)
        if graph.cycles:
            logger.warning("Dependency graph contains %d cycle(s)", len(graph.cycles))
        return graph

    @classmethod
    def from_edges(
        cls,
        tasks: Iterable[TaskDocument],
        edges: Iterable[GraphEdge],
    ) -> DependencyGraph:
        """Graph over stored edges; edges with an unknown endpoint are dropped."""

        nodes = _index_nodes(tasks)
        kept = [
            edge
            for edge in edges
            if edge.from_task_id in nodes
            and edge.to_task_id in nodes
            and edge.from_task_id != edge.to_task_id
        ]
        return cls(nodes, kept)

    @property
    def roots(self) -> list[str]:
        """Tasks with no dependencies."""

        return [task_id for task_id in self.nodes if self.in_degree.get(task_id, 0) == 0]

    @property
    def leaves(self) -> list[str]:
        """Tasks nothing depends on."""

        return [task_id for task_id in self.nodes if self.out_degree.get(task_id, 0) == 0]

    def detect_cycles(self) -> list[list[str]]:
        """Depth-first search reporting every back edge as a closed path.

        Overlapping cycles through a shared node may each be reported.
        """

        adjacency = self._adjacency()
        cycles: list[list[str]] = []
        visited: set[str] = set()
        on_stack: set[str] = set()
        for start in self.nodes:
            if start in visited:
                continue
            visited.add(start)
            on_stack.add(start)
            stack: list[tuple[str, list[str], Iterator[str]]] = [
                (start, [start], iter(adjacency[start])),
            ]
            while stack:
                node, path, neighbors = stack[-1]
                descended = False
                for neighbor in neighbors:
                    if neighbor not in visited:
                        visited.add(neighbor)
                        on_stack.add(neighbor)
                        stack.append((neighbor, [*path, neighbor], iter(adjacency[neighbor])))
                        descended = True
                        break
                    if neighbor in on_stack:
                        cycles.append([*path[path.index(neighbor) :], neighbor])
                if not descended:
                    on_stack.discard(node)
                    stack.pop()
        return cycles

    def execution_order(self) -> list[str]:
        """Kahn topological order; tasks on a cycle are left out."""

        if self.cycles:
            logger.warning("Graph contains cycles, execution order is partial")
        adjacency = self._adjacency()
        remaining = dict.fromkeys(self.nodes, 0)
        for edge in self.edges:
            remaining[edge.to_task_id] += 1
        queue = deque(task_id for task_id, degree in remaining.items() if degree == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for neighbor in adjacency[current]:
                remaining[neighbor] -= 1
                if remaining[neighbor] == 0:
                    queue.append(neighbor)
        return order

    def ancestors(self, task_id: str) -> list[str]:
        """Every task ``task_id`` depends on, directly or transitively."""

        reverse: dict[str, list[str]] = {node: [] for node in self.nodes}
        for edge in self.edges:
            reverse[edge.to_task_id].append(edge.from_task_id)
        return self._reachable(task_id, reverse)

    def descendants(self, task_id: str) -> list[str]:
        """Every task waiting on ``task_id``, directly or transitively."""

        return self._reachable(task_id, self._adjacency())

    def edges_for(self, task_id: str) -> list[GraphEdge]:
        return [
            edge for edge in self.edges if task_id in {edge.from_task_id, edge.to_task_id}
        ]

    def stats(self) -> dict[str, Any]:
        return {
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "root_count": len(self.roots),
            "leaf_count": len(self.leaves),
            "cycle_count": len(self.cycles),
        }

    def _adjacency(self) -> dict[str, list[str]]:
        adjacency: dict[str, list[str]] = {node: [] for node in self.nodes}
        for edge in self.edges:
            adjacency[edge.from_task_id].append(edge.to_task_id)
        return adjacency

    def _reachable(self, task_id: str, adjacency: dict[str, list[str]]) -> list[str]:
        found: list[str] = []
        seen: set[str] = {task_id}
        pending = list(adjacency.get(task_id, ()))
        while pending:
            current = pending.pop(0)
            if current in seen:
                continue
            seen.add(current)
            found.append(current)
            pending.extend(adjacency.get(current, ()))
        return [node for node in found if node in self.nodes]


def _index_nodes(tasks: Iterable[TaskDocument]) -> dict[str, TaskDocument]:
    nodes: dict[str, TaskDocument] = {}
    for task in tasks:
        node_id = task.node_id
        if node_id:
            nodes[node_id] = task
    return nodes
