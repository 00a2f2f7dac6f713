"""
Tests for the reference graph: cycle checks, edge building and traversal.
"""

import json

import pytest

from regtruth.core.errors import CycleDetectedError, NotFoundError
from regtruth.core.models import EdgeRelation, RuleStatus
from regtruth.graph.cycle_detection import (
    ReferenceGraph,
    create_edge_with_cycle_check,
    find_path,
    validate_graph_acyclicity,
)
from regtruth.graph.edge_builder import build_edge_trace, rebuild_edges_for_rule
from regtruth.storage.records import GraphEdgeRecord
from regtruth.storage.repositories import EdgeRepository, EvidenceRepository


def _graph(*pairs, max_traversal=None):
    graph = ReferenceGraph(max_traversal=max_traversal)
    for from_id, to_id in pairs:
        graph.add_edge(from_id, to_id)
    return graph


def _edges(relation):
    return {(e.from_rule_id, e.to_rule_id) for e in EdgeRepository().get_edges(relation.value)}


# =============================================================================
# In-memory graph
# =============================================================================


class TestReferenceGraph:
    """Test reachability and cycle search."""

    def test_closing_edge_detected(self):
        graph = _graph(("a", "b"), ("b", "c"))
        assert graph.would_create_cycle("c", "a")
        assert not graph.would_create_cycle("a", "c")

    def test_self_loop_is_cycle(self):
        assert _graph().would_create_cycle("a", "a")

    def test_traversal_bound_counts_as_cycle(self):
        chain = [(f"n{i}", f"n{i + 1}") for i in range(10)]
        graph = _graph(*chain, max_traversal=3)
        assert graph.would_create_cycle("x", "n0")

    def test_find_path(self):
        graph = _graph(("a", "b"), ("b", "c"), ("a", "d"))
        assert graph.find_path("a", "c") == ["a", "b", "c"]
        assert graph.find_path("c", "a") is None
        assert graph.find_path("a", "unknown") is None

    def test_find_cycle(self):
        assert _graph(("a", "b"), ("b", "c")).find_cycle() is None
        cycle = _graph(("a", "b"), ("b", "c"), ("c", "a")).find_cycle()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_remove_edge(self):
        graph = _graph(("a", "b"), ("b", "a"))
        graph.remove_edge("b", "a")
        assert graph.find_cycle() is None
        assert graph.predecessors("b") == {"a"}


class TestStoredEdges:
    """Test cycle-checked edge insertion against the database."""

    def test_edge_inserted(self, make_rule):
        a, b = make_rule(), make_rule()

        edge = create_edge_with_cycle_check(None, a.id, b.id, EdgeRelation.SUPERSEDES, "note")

        assert edge.relation == "SUPERSEDES"
        assert _edges(EdgeRelation.SUPERSEDES) == {(a.id, b.id)}

    def test_duplicate_returns_none(self, make_rule):
        a, b = make_rule(), make_rule()
        create_edge_with_cycle_check(None, a.id, b.id, EdgeRelation.SUPERSEDES)

        assert create_edge_with_cycle_check(None, a.id, b.id, EdgeRelation.SUPERSEDES) is None

    def test_cycle_refused_and_nothing_written(self, make_rule):
        a, b = make_rule(), make_rule()
        create_edge_with_cycle_check(None, a.id, b.id, EdgeRelation.DEPENDS_ON)

        with pytest.raises(CycleDetectedError) as exc_info:
            create_edge_with_cycle_check(None, b.id, a.id, EdgeRelation.DEPENDS_ON)

        assert exc_info.value.code == "cycle_detected"
        assert _edges(EdgeRelation.DEPENDS_ON) == {(a.id, b.id)}

    def test_relations_checked_independently(self, make_rule):
        a, b = make_rule(), make_rule()
        create_edge_with_cycle_check(None, a.id, b.id, EdgeRelation.SUPERSEDES)

        assert create_edge_with_cycle_check(None, b.id, a.id, EdgeRelation.OVERRIDES) is not None

    def test_acyclicity_report(self, make_rule):
        a, b = make_rule(), make_rule()
        repo = EdgeRepository()
        repo.insert_edge(GraphEdgeRecord(from_rule_id=a.id, to_rule_id=b.id, relation="OVERRIDES"))
        assert validate_graph_acyclicity().acyclic

        # Written around the check to simulate corrupted data
        repo.insert_edge(GraphEdgeRecord(from_rule_id=b.id, to_rule_id=a.id, relation="OVERRIDES"))
        report = validate_graph_acyclicity()

        assert not report.acyclic
        assert set(report.cycles) == {"OVERRIDES"}
        assert report.edge_counts["OVERRIDES"] == 2
        assert report.edge_counts["SUPERSEDES"] == 0

    def test_find_path_by_relation(self, make_rule):
        a, b, c = make_rule(), make_rule(), make_rule()
        create_edge_with_cycle_check(None, a.id, b.id, EdgeRelation.DEPENDS_ON)
        create_edge_with_cycle_check(None, b.id, c.id, EdgeRelation.DEPENDS_ON)

        assert find_path(a.id, c.id, EdgeRelation.DEPENDS_ON) == [a.id, b.id, c.id]
        assert find_path(a.id, c.id, EdgeRelation.SUPERSEDES) is None


# =============================================================================
# Edge builder
# =============================================================================


class TestSupersedes:
    """Test version chains within a concept."""

    def test_newer_supersedes_older(self, make_rule):
        old = make_rule(value="23", status=RuleStatus.PUBLISHED, effective_from="2024-01-01")
        new = make_rule(value="25", status=RuleStatus.PUBLISHED, effective_from="2025-01-01")

        result = rebuild_edges_for_rule(new.id)

        assert result.supersedes == 1
        assert _edges(EdgeRelation.SUPERSEDES) == {(new.id, old.id)}

    def test_rebuild_is_idempotent(self, make_rule):
        make_rule(value="23", status=RuleStatus.PUBLISHED, effective_from="2024-01-01")
        new = make_rule(value="25", status=RuleStatus.PUBLISHED, effective_from="2025-01-01")

        rebuild_edges_for_rule(new.id)
        rebuild_edges_for_rule(new.id)

        assert len(EdgeRepository().get_edges()) == 1

    def test_middle_version_relinks_chain(self, make_rule):
        v2023 = make_rule(value="23", status=RuleStatus.PUBLISHED, effective_from="2023-01-01")
        v2025 = make_rule(value="25", status=RuleStatus.PUBLISHED, effective_from="2025-01-01")
        rebuild_edges_for_rule(v2025.id)
        v2024 = make_rule(value="24", status=RuleStatus.PUBLISHED, effective_from="2024-01-01")

        rebuild_edges_for_rule(v2024.id)

        assert _edges(EdgeRelation.SUPERSEDES) == {(v2025.id, v2024.id), (v2024.id, v2023.id)}
        trace = build_edge_trace(v2025.id)
        assert trace.supersedes == [v2024.id, v2023.id]
        assert build_edge_trace(v2023.id).superseded_by == [v2024.id, v2025.id]

    def test_other_concepts_ignored(self, make_rule):
        make_rule(concept_slug="pdv-reduced-rate", status=RuleStatus.PUBLISHED, effective_from="2020-01-01")
        rule = make_rule(status=RuleStatus.PUBLISHED)

        assert rebuild_edges_for_rule(rule.id).supersedes == 0


class TestOverridesAndDependencies:
    """Test edges derived from claim exceptions and applies-when references."""

    def test_claim_exception_overrides_latest_rule(self, make_rule):
        older = make_rule(concept_slug="pdv-reduced-rate", value="13", status=RuleStatus.PUBLISHED,
                          effective_from="2020-01-01")
        target = make_rule(concept_slug="pdv-reduced-rate", value="13", status=RuleStatus.PUBLISHED)
        rule = make_rule(status=RuleStatus.PUBLISHED)
        EvidenceRepository().add_claim_exception(rule.id, "pdv-reduced-rate", "Article 38(4)")

        result = rebuild_edges_for_rule(rule.id)

        assert result.overrides == 1
        assert _edges(EdgeRelation.OVERRIDES) == {(rule.id, target.id)}
        assert build_edge_trace(target.id).overridden_by == [rule.id]
        assert build_edge_trace(older.id).overridden_by == []

    def test_missing_override_target_reported(self, make_rule):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        EvidenceRepository().add_claim_exception(rule.id, "pdv-nonexistent")

        result = rebuild_edges_for_rule(rule.id)

        assert result.overrides == 0
        assert result.errors == ["Overriding rule not found: pdv-nonexistent"]

    def test_depends_on_references(self, make_rule):
        threshold = make_rule(concept_slug="pausalni-revenue-threshold", value="60000",
                              status=RuleStatus.PUBLISHED)
        pinned = make_rule(concept_slug="osobni-odbitak", value="600", status=RuleStatus.PUBLISHED)
        applies_when = json.dumps({
            "op": "and",
            "args": [
                {"op": "cmp", "field": "entity.revenue", "cmp": "lt", "value": 60000,
                 "concept_ref": "pausalni-revenue-threshold"},
                {"op": "exists", "field": "entity.vat_id", "rule_ref": pinned.id},
            ],
        })
        rule = make_rule(status=RuleStatus.PUBLISHED, applies_when=applies_when)

        result = rebuild_edges_for_rule(rule.id)

        assert result.depends_on == 2
        assert set(build_edge_trace(rule.id).depends_on) == {threshold.id, pinned.id}

    def test_dependency_cycle_rejected(self, make_rule):
        a = make_rule(concept_slug="concept-a", status=RuleStatus.PUBLISHED,
                      applies_when=json.dumps({"op": "true", "depends_on": ["concept-b"]}))
        b = make_rule(concept_slug="concept-b", status=RuleStatus.PUBLISHED,
                      applies_when=json.dumps({"op": "true", "depends_on": "concept-a"}))
        rebuild_edges_for_rule(a.id)

        result = rebuild_edges_for_rule(b.id)

        assert result.depends_on == 0
        assert result.rejected_edges == [
            {"from_rule_id": b.id, "to_rule_id": a.id, "relation": "DEPENDS_ON"}
        ]
        assert "Cycle prevented" in result.errors[0]
        assert validate_graph_acyclicity().acyclic

    def test_non_live_rule_loses_edges(self, make_rule, lifecycle):
        make_rule(value="23", status=RuleStatus.PUBLISHED, effective_from="2024-01-01")
        new = make_rule(value="25", status=RuleStatus.PUBLISHED, effective_from="2025-01-01")
        rebuild_edges_for_rule(new.id)
        lifecycle.deprecate(new.id, superseded_by="other", rationale="replaced")

        result = rebuild_edges_for_rule(new.id)

        assert not result.live
        assert EdgeRepository().get_outgoing(new.id) == []

    def test_missing_rule(self):
        with pytest.raises(NotFoundError):
            rebuild_edges_for_rule("missing")
