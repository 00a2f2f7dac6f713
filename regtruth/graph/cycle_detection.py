"""
Cycle detection for the reference graph.

Each relation (SUPERSEDES, OVERRIDES, DEPENDS_ON) must stay acyclic on its
own. Before an edge is inserted, a bounded breadth-first search checks
whether the target can already reach the source. A search that exceeds
its node bound counts as a cycle: the edge is refused rather than guessed.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable

from pydantic import BaseModel, Field

from regtruth.core.config import get_settings
from regtruth.core.errors import CycleDetectedError
from regtruth.core.models import EdgeRelation
from regtruth.storage.records import GraphEdgeRecord
from regtruth.storage.repositories import EdgeRepository

logger = logging.getLogger(__name__)


class ReferenceGraph:
    """Directed adjacency keyed by rule id."""

    def __init__(self, edges: Iterable[GraphEdgeRecord] = (), max_traversal: int | None = None):
        self._outgoing: dict[str, set[str]] = {}
        self._incoming: dict[str, set[str]] = {}
        self.max_traversal = max_traversal or get_settings().graph_max_traversal
        for edge in edges:
            self.add_edge(edge.from_rule_id, edge.to_rule_id)

    @classmethod
    def load(
        cls,
        edges: EdgeRepository,
        relation: EdgeRelation | str | None = None,
        max_traversal: int | None = None,
    ) -> ReferenceGraph:
        relation = EdgeRelation(relation).value if relation is not None else None
        return cls(edges.get_edges(relation), max_traversal)

    # =========================================================================
    # Edge Operations
    # =========================================================================

    def add_edge(self, from_id: str, to_id: str) -> None:
        self._outgoing.setdefault(from_id, set()).add(to_id)
        self._incoming.setdefault(to_id, set()).add(from_id)
        self._outgoing.setdefault(to_id, set())
        self._incoming.setdefault(from_id, set())

    def remove_edge(self, from_id: str, to_id: str) -> None:
        self._outgoing.get(from_id, set()).discard(to_id)
        self._incoming.get(to_id, set()).discard(from_id)

    def predecessors(self, node_id: str) -> set[str]:
        return set(self._incoming.get(node_id, ()))

    @property
    def nodes(self) -> set[str]:
        return set(self._outgoing)

    # =========================================================================
    # Traversal
    # =========================================================================

    def would_create_cycle(self, from_id: str, to_id: str) -> bool:
        """Would adding ``from_id -> to_id`` close a cycle?"""
        if from_id == to_id:
            return True

        visited = {to_id}
        queue = deque([to_id])
        while queue:
            node_id = queue.popleft()
            for next_id in self._outgoing.get(node_id, ()):
                if next_id == from_id:
                    return True
                if next_id not in visited:
                    visited.add(next_id)
                    if len(visited) > self.max_traversal:
                        logger.warning(
                            f"[Graph] Reachability check {to_id} -> {from_id} exceeded "
                            f"{self.max_traversal} nodes; treating as a cycle"
                        )
                        return True
                    queue.append(next_id)
        return False

    def find_path(self, source_id: str, target_id: str) -> list[str] | None:
        """Shortest directed path between two rules, or None."""
        if source_id not in self._outgoing or target_id not in self._outgoing:
            return None

        visited = {source_id}
        queue: deque[tuple[str, list[str]]] = deque([(source_id, [source_id])])
        while queue:
            node_id, path = queue.popleft()
            if node_id == target_id:
                return path
            if len(visited) > self.max_traversal:
                return None
            for next_id in sorted(self._outgoing.get(node_id, ())):
                if next_id not in visited:
                    visited.add(next_id)
                    queue.append((next_id, path + [next_id]))
        return None

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a closed list of ids, or None if acyclic."""
        state: dict[str, int] = {}  # 1 = on stack, 2 = done
        for root in sorted(self._outgoing):
            if state.get(root):
                continue
            stack: list[tuple[str, list[str]]] = [(root, sorted(self._outgoing[root]))]
            path = [root]
            state[root] = 1
            while stack:
                node_id, pending = stack[-1]
                if not pending:
                    state[node_id] = 2
                    stack.pop()
                    path.pop()
                    continue
                next_id = pending.pop()
                if state.get(next_id) == 1:
                    return path[path.index(next_id):] + [next_id]
                if not state.get(next_id):
                    state[next_id] = 1
                    path.append(next_id)
                    stack.append((next_id, sorted(self._outgoing.get(next_id, ()))))
        return None


class AcyclicityReport(BaseModel):
    acyclic: bool
    cycles: dict[str, list[str]] = Field(default_factory=dict)
    edge_counts: dict[str, int] = Field(default_factory=dict)


# =============================================================================
# Store-backed helpers
# =============================================================================


def would_create_cycle(
    conn,
    from_id: str,
    to_id: str,
    relation: EdgeRelation | str,
    max_traversal: int | None = None,
) -> bool:
    graph = ReferenceGraph.load(EdgeRepository(conn), relation, max_traversal)
    return graph.would_create_cycle(from_id, to_id)


def create_edge_with_cycle_check(
    conn,
    from_id: str,
    to_id: str,
    relation: EdgeRelation | str,
    notes: str | None = None,
    max_traversal: int | None = None,
) -> GraphEdgeRecord | None:
    """Insert an edge unless it would close a cycle.

    Returns None when the edge already exists. Raises ``CycleDetectedError``
    when it would close a cycle; nothing is written in that case.
    """
    relation = EdgeRelation(relation)
    edges = EdgeRepository(conn)
    if edges.edge_exists(from_id, to_id, relation.value):
        return None
    if would_create_cycle(conn, from_id, to_id, relation, max_traversal):
        logger.warning(f"[Graph] Rejected {relation.value} edge {from_id} -> {to_id}: cycle")
        raise CycleDetectedError(from_id, to_id, relation.value)
    return edges.insert_edge(GraphEdgeRecord(
        from_rule_id=from_id,
        to_rule_id=to_id,
        relation=relation.value,
        notes=notes,
    ))


def find_path(
    source_id: str,
    target_id: str,
    relation: EdgeRelation | str | None = None,
    conn=None,
) -> list[str] | None:
    return ReferenceGraph.load(EdgeRepository(conn), relation).find_path(source_id, target_id)


def validate_graph_acyclicity(conn=None) -> AcyclicityReport:
    """Check every relation's subgraph for cycles."""
    edges = EdgeRepository(conn)
    report = AcyclicityReport(acyclic=True)
    for relation in EdgeRelation:
        relation_edges = edges.get_edges(relation.value)
        report.edge_counts[relation.value] = len(relation_edges)
        cycle = ReferenceGraph(relation_edges).find_cycle()
        if cycle:
            report.acyclic = False
            report.cycles[relation.value] = cycle
            logger.error(f"[Graph] {relation.value} cycle found: {' -> '.join(cycle)}")
    return report
