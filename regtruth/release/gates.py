"""
Release gates.

Checked across the whole batch inside the release transaction. The first
failing rule aborts the release.
"""

from __future__ import annotations

from typing import Iterable

from regtruth.core.errors import (
    EvidenceStrengthError,
    MissingPointerError,
    OpenConflictError,
    TierGateError,
)
from regtruth.core.models import AuthorityLevel
from regtruth.storage.records import RuleRecord
from regtruth.storage.repositories import ConflictRepository, EvidenceRepository


def check_tier_approval(rule: RuleRecord) -> None:
    if rule.risk_tier.is_high_stakes and not rule.approved_by:
        raise TierGateError(
            f"{rule.risk_tier.value} rule {rule.concept_slug} has no recorded approver",
            rule_id=rule.id, concept_slug=rule.concept_slug,
        )


def check_no_open_conflicts(rule: RuleRecord, conflicts: ConflictRepository) -> None:
    open_count = conflicts.count_unresolved_for_rule(rule.id)
    if open_count:
        raise OpenConflictError(
            f"Rule {rule.concept_slug} has {open_count} unresolved conflict(s)",
            rule_id=rule.id, concept_slug=rule.concept_slug,
        )


def check_source_pointers(rule: RuleRecord, evidence: EvidenceRepository) -> None:
    if evidence.count_pointers_for_rule(rule.id) == 0:
        raise MissingPointerError(
            f"Rule {rule.concept_slug} has no source pointers",
            rule_id=rule.id, concept_slug=rule.concept_slug,
        )


def check_evidence_strength(rule: RuleRecord, evidence: EvidenceRepository) -> None:
    """Single-source rules must come from LAW; multi-source rules pass."""
    sources = {p.evidence_id for p in evidence.get_pointers_for_rule(rule.id)}
    if len(sources) == 1 and rule.authority_level != AuthorityLevel.LAW:
        raise EvidenceStrengthError(
            f"Rule {rule.concept_slug} has a single source and authority "
            f"{rule.authority_level.value}; single-source rules must be LAW",
            rule_id=rule.id, concept_slug=rule.concept_slug,
            details={"source_count": 1, "authority_level": rule.authority_level.value},
        )


def check_release_gates(
    rules: Iterable[RuleRecord],
    evidence: EvidenceRepository,
    conflicts: ConflictRepository,
) -> None:
    for rule in rules:
        check_tier_approval(rule)
        check_no_open_conflicts(rule, conflicts)
        check_source_pointers(rule, evidence)
        check_evidence_strength(rule, evidence)
