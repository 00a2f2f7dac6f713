"""Reference graph: supersession, override and dependency edges between rules."""

from regtruth.graph.cycle_detection import (
    AcyclicityReport,
    ReferenceGraph,
    create_edge_with_cycle_check,
    find_path,
    validate_graph_acyclicity,
    would_create_cycle,
)
from regtruth.graph.edge_builder import (
    EdgeBuildResult,
    EdgeTrace,
    build_edge_trace,
    find_superseded_rules,
    find_superseding_rules,
    rebuild_edges_for_rule,
)
from regtruth.graph.rebuild_worker import GraphRebuildWorker, backoff_delay

__all__ = [
    "AcyclicityReport",
    "EdgeBuildResult",
    "EdgeTrace",
    "GraphRebuildWorker",
    "ReferenceGraph",
    "backoff_delay",
    "build_edge_trace",
    "create_edge_with_cycle_check",
    "find_path",
    "find_superseded_rules",
    "find_superseding_rules",
    "rebuild_edges_for_rule",
    "validate_graph_acyclicity",
    "would_create_cycle",
]
