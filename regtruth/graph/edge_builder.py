"""
Reference graph builder.

Recomputes a published rule's SUPERSEDES, OVERRIDES and DEPENDS_ON edges.
Each relation is deleted and rebuilt, so running a rebuild twice gives the
same graph. Every insertion is cycle-checked; a rejected edge is recorded in
the result rather than dropped.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from regtruth.arbitration.deterministic import _as_date
from regtruth.core.config import Settings, get_settings
from regtruth.core.errors import CycleDetectedError, NotFoundError
from regtruth.core.models import EdgeRelation, RuleStatus
from regtruth.dsl.applies_when import extract_references
from regtruth.graph.cycle_detection import create_edge_with_cycle_check
from regtruth.storage.database import transaction
from regtruth.storage.records import RuleRecord
from regtruth.storage.repositories import EdgeRepository, EvidenceRepository, RuleRepository

logger = logging.getLogger(__name__)


class EdgeBuildResult(BaseModel):
    rule_id: str
    concept_slug: str | None = None
    live: bool = True
    supersedes: int = 0
    overrides: int = 0
    depends_on: int = 0
    errors: list[str] = Field(default_factory=list)
    rejected_edges: list[dict[str, Any]] = Field(default_factory=list)


class EdgeTrace(BaseModel):
    rule_id: str
    supersedes: list[str] = Field(default_factory=list)  # older versions, nearest first
    superseded_by: list[str] = Field(default_factory=list)  # newer versions, nearest first
    overrides: list[str] = Field(default_factory=list)
    overridden_by: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)


def _latest_live_rule(rules: RuleRepository, concept_slug: str) -> RuleRecord | None:
    published = rules.get_published(concept_slug)
    return published[-1] if published else None


def rebuild_edges_for_rule(rule_id: str, settings: Settings | None = None) -> EdgeBuildResult:
    """Rebuild every outgoing edge of a rule in one transaction."""
    settings = settings or get_settings()
    with transaction(settings.transaction_timeout_ms) as conn:
        rules = RuleRepository(conn)
        rule = rules.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("Rule", rule_id, rule_id=rule_id)

        result = EdgeBuildResult(rule_id=rule.id, concept_slug=rule.concept_slug)
        if rule.status != RuleStatus.PUBLISHED or rule.is_revoked:
            # Only live rules carry edges
            edges = EdgeRepository(conn)
            for relation in EdgeRelation:
                edges.delete_outgoing(rule.id, relation.value)
            result.live = False
            return result

        max_traversal = settings.graph_max_traversal
        _build_supersedes(conn, rule, result, max_traversal)
        _build_overrides(conn, rule, result, max_traversal)
        _build_depends_on(conn, rule, result, max_traversal)

    logger.info(
        f"[Graph] Rebuilt {rule.concept_slug} ({rule.id}): {result.supersedes} supersedes, "
        f"{result.overrides} overrides, {result.depends_on} depends_on, {len(result.errors)} errors"
    )
    return result


def _add_edge(
    conn,
    result: EdgeBuildResult,
    from_id: str,
    to_id: str,
    relation: EdgeRelation,
    notes: str | None,
    max_traversal: int,
) -> bool:
    try:
        edge = create_edge_with_cycle_check(conn, from_id, to_id, relation, notes, max_traversal)
    except CycleDetectedError:
        result.errors.append(f"Cycle prevented: {from_id} -> {to_id}")
        result.rejected_edges.append(
            {"from_rule_id": from_id, "to_rule_id": to_id, "relation": relation.value}
        )
        return False
    return edge is not None


def _build_supersedes(conn, rule: RuleRecord, result: EdgeBuildResult, max_traversal: int) -> None:
    """Link a rule to its immediate predecessor, and its immediate successor to it."""
    edges = EdgeRepository(conn)
    siblings = [
        r for r in RuleRepository(conn).get_published(rule.concept_slug) if r.id != rule.id
    ]
    effective = _as_date(rule.effective_from)
    older = [r for r in siblings if _as_date(r.effective_from) < effective]
    newer = [r for r in siblings if _as_date(r.effective_from) > effective]

    edges.delete_outgoing(rule.id, EdgeRelation.SUPERSEDES.value)
    if older:
        predecessor = max(older, key=lambda r: _as_date(r.effective_from))
        notes = f"{rule.concept_slug}: {effective} supersedes {_as_date(predecessor.effective_from)}"
        if _add_edge(conn, result, rule.id, predecessor.id, EdgeRelation.SUPERSEDES, notes, max_traversal):
            result.supersedes += 1

    if newer:
        successor = min(newer, key=lambda r: _as_date(r.effective_from))
        edges.delete_outgoing(successor.id, EdgeRelation.SUPERSEDES.value)
        notes = f"{rule.concept_slug}: {_as_date(successor.effective_from)} supersedes {effective}"
        if _add_edge(conn, result, successor.id, rule.id, EdgeRelation.SUPERSEDES, notes, max_traversal):
            result.supersedes += 1


def _build_overrides(conn, rule: RuleRecord, result: EdgeBuildResult, max_traversal: int) -> None:
    rules = RuleRepository(conn)
    EdgeRepository(conn).delete_outgoing(rule.id, EdgeRelation.OVERRIDES.value)

    for exception in EvidenceRepository(conn).get_claim_exceptions(rule.id):
        target = _latest_live_rule(rules, exception.overrides_to)
        if target is None:
            result.errors.append(f"Overriding rule not found: {exception.overrides_to}")
            continue
        if _add_edge(
            conn, result, rule.id, target.id, EdgeRelation.OVERRIDES,
            exception.reason, max_traversal,
        ):
            result.overrides += 1


def _build_depends_on(conn, rule: RuleRecord, result: EdgeBuildResult, max_traversal: int) -> None:
    """Edges from the references in the applies-when expression only."""
    rules = RuleRepository(conn)
    EdgeRepository(conn).delete_outgoing(rule.id, EdgeRelation.DEPENDS_ON.value)

    for reference in extract_references(rule.applies_when):
        if reference.kind == "rule":
            target = rules.get_rule(reference.target)
        else:
            target = _latest_live_rule(rules, reference.target)
        if target is None:
            result.errors.append(f"Dependency not found: {reference.kind}:{reference.target}")
            continue
        if _add_edge(
            conn, result, rule.id, target.id, EdgeRelation.DEPENDS_ON,
            f"{reference.kind}:{reference.target}", max_traversal,
        ):
            result.depends_on += 1


# =============================================================================
# Traversal
# =============================================================================


def _walk(edges: EdgeRepository, rule_id: str, relation: EdgeRelation, outgoing: bool) -> list[str]:
    chain: list[str] = []
    seen = {rule_id}
    current = rule_id
    while True:
        found = edges.get_outgoing(current, relation.value) if outgoing else edges.get_incoming(current, relation.value)
        next_ids = [e.to_rule_id if outgoing else e.from_rule_id for e in found]
        next_ids = [n for n in next_ids if n not in seen]
        if not next_ids:
            return chain
        current = next_ids[0]
        seen.add(current)
        chain.append(current)


def find_superseded_rules(rule_id: str, conn=None) -> list[str]:
    """Older versions this rule replaces, nearest first."""
    return _walk(EdgeRepository(conn), rule_id, EdgeRelation.SUPERSEDES, outgoing=True)


def find_superseding_rules(rule_id: str, conn=None) -> list[str]:
    """Newer versions that replace this rule, nearest first."""
    return _walk(EdgeRepository(conn), rule_id, EdgeRelation.SUPERSEDES, outgoing=False)


def build_edge_trace(rule_id: str, conn=None) -> EdgeTrace:
    edges = EdgeRepository(conn)
    return EdgeTrace(
        rule_id=rule_id,
        supersedes=find_superseded_rules(rule_id, conn),
        superseded_by=find_superseding_rules(rule_id, conn),
        overrides=[e.to_rule_id for e in edges.get_outgoing(rule_id, EdgeRelation.OVERRIDES.value)],
        overridden_by=[e.from_rule_id for e in edges.get_incoming(rule_id, EdgeRelation.OVERRIDES.value)],
        depends_on=[e.to_rule_id for e in edges.get_outgoing(rule_id, EdgeRelation.DEPENDS_ON.value)],
    )
