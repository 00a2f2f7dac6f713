"""
Structural conflict detection.

Deterministic checks run when a rule enters review. They only seed
conflicts; the arbitration pipeline decides them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from regtruth.arbitration.deterministic import _as_date, get_authority_score
from regtruth.core.models import ConflictType
from regtruth.storage.records import RuleRecord


@dataclass
class ConflictSeed:
    conflict_type: ConflictType
    existing_rule_id: str
    new_rule_id: str
    reason: str


def windows_overlap(
    from_a: str | date | None,
    until_a: str | date | None,
    from_b: str | date | None,
    until_b: str | date | None,
) -> bool:
    """Whether two validity windows share at least one day. Open ends are unbounded."""
    start_a = _as_date(from_a) if from_a else date.min
    end_a = _as_date(until_a) if until_a else date.max
    start_b = _as_date(from_b) if from_b else date.min
    end_b = _as_date(until_b) if until_b else date.max
    return start_a <= end_b and start_b <= end_a


def detect_structural_conflicts(
    new_rule: RuleRecord,
    existing_rules: Iterable[RuleRecord],
) -> list[ConflictSeed]:
    seeds = []
    for existing in existing_rules:
        if existing.id == new_rule.id:
            continue

        if existing.value != new_rule.value and windows_overlap(
            existing.effective_from, existing.effective_until,
            new_rule.effective_from, new_rule.effective_until,
        ):
            seeds.append(ConflictSeed(
                conflict_type=ConflictType.VALUE_MISMATCH,
                existing_rule_id=existing.id,
                new_rule_id=new_rule.id,
                reason=(
                    f'Same concept "{new_rule.concept_slug}" with different values: '
                    f'"{existing.value}" vs "{new_rule.value}" during overlapping period'
                ),
            ))

        if get_authority_score(new_rule.authority_level) < get_authority_score(existing.authority_level):
            seeds.append(ConflictSeed(
                conflict_type=ConflictType.AUTHORITY_SUPERSEDE,
                existing_rule_id=existing.id,
                new_rule_id=new_rule.id,
                reason=(
                    f"New rule from higher authority ({new_rule.authority_level.value}) "
                    f"may supersede existing ({existing.authority_level.value})"
                ),
            ))
    return seeds
