"""
Precedent matching.

Learns from the resolution audit trail: when enough earlier conflicts of
the same concept and type were settled the same way, that strategy is
reused. Tier gating still applies, so T0/T1 pairs only ever receive the
precedent as a recommendation.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable

from pydantic import BaseModel

from regtruth.arbitration.deterministic import (
    STRATEGY_AUTHORITY,
    STRATEGY_SOURCE_HIERARCHY,
    STRATEGY_TEMPORAL,
    RuleForResolution,
    _as_date,
    get_authority_score,
)
from regtruth.core.config import Settings, get_settings
from regtruth.core.models import RiskTier
from regtruth.storage.repositories import ConflictRepository

logger = logging.getLogger(__name__)


class PrecedentMatch(BaseModel):
    found: bool
    can_auto_apply: bool
    precedent_count: int
    winner_strategy: str | None = None
    agreement_percentage: float = 0.0
    reason: str


def evaluate_precedents(
    strategies: Iterable[str],
    risk_tier: RiskTier | str,
    min_count: int = 3,
    agreement_threshold: float = 70.0,
) -> PrecedentMatch:
    """Decide whether a set of prior strategies is strong enough to reuse.

    Strategies compare case-insensitively. Agreement is the share of the
    most frequent strategy and must be at least ``agreement_threshold``.
    """
    risk_tier = RiskTier(risk_tier)
    normalized = [s.strip().lower() for s in strategies if s and s.strip()]
    count = len(normalized)

    if count == 0:
        return PrecedentMatch(
            found=False, can_auto_apply=False, precedent_count=0,
            reason="no matching precedents",
        )

    top_strategy, top_count = Counter(normalized).most_common(1)[0]
    agreement = top_count * 100 / count

    if count < min_count:
        return PrecedentMatch(
            found=False, can_auto_apply=False, precedent_count=count,
            winner_strategy=top_strategy, agreement_percentage=agreement,
            reason=f"insufficient precedents ({count} < {min_count})",
        )
    if agreement < agreement_threshold:
        return PrecedentMatch(
            found=False, can_auto_apply=False, precedent_count=count,
            winner_strategy=top_strategy, agreement_percentage=agreement,
            reason=f"insufficient agreement ({agreement:.1f}% < {agreement_threshold:.1f}%)",
        )
    if risk_tier.is_high_stakes:
        return PrecedentMatch(
            found=True, can_auto_apply=False, precedent_count=count,
            winner_strategy=top_strategy, agreement_percentage=agreement,
            reason=f"{risk_tier.value} conflicts are never auto-resolved; precedent is a recommendation",
        )
    return PrecedentMatch(
        found=True, can_auto_apply=True, precedent_count=count,
        winner_strategy=top_strategy, agreement_percentage=agreement,
        reason=f"{top_count}/{count} precedents agree on '{top_strategy}' ({agreement:.1f}%)",
    )


def pick_winner_by_strategy(
    strategy: str,
    rule_a: RuleForResolution,
    rule_b: RuleForResolution,
) -> RuleForResolution | None:
    """Apply a precedent strategy to a pair; None when it cannot separate them."""
    strategy = strategy.lower()

    if strategy in (STRATEGY_AUTHORITY, STRATEGY_SOURCE_HIERARCHY, "hierarchy"):
        if strategy != STRATEGY_SOURCE_HIERARCHY:
            score_a = get_authority_score(rule_a.authority_level)
            score_b = get_authority_score(rule_b.authority_level)
            if score_a != score_b:
                return rule_a if score_a < score_b else rule_b
        hier_a, hier_b = rule_a.source_hierarchy, rule_b.source_hierarchy
        if hier_a is not None and hier_b is not None and hier_a != hier_b:
            return rule_a if hier_a < hier_b else rule_b
        return None

    if strategy in (STRATEGY_TEMPORAL, "temporal"):
        date_a = _as_date(rule_a.effective_from)
        date_b = _as_date(rule_b.effective_from)
        if date_a != date_b:
            return rule_a if date_a > date_b else rule_b
        return None

    if strategy == "specificity":
        # A rule scoped by conditions is more specific than an unconditional one
        if bool(rule_a.applies_when) != bool(rule_b.applies_when):
            return rule_a if rule_a.applies_when else rule_b
        return None

    return None


class PrecedentMatcher:
    """Looks up prior resolutions for a concept and conflict type."""

    def __init__(self, conflicts: ConflictRepository | None = None, settings: Settings | None = None):
        self.conflicts = conflicts or ConflictRepository()
        self.settings = settings or get_settings()

    def find_precedent(
        self,
        concept_slug: str,
        conflict_type: str,
        risk_tier: RiskTier | str,
    ) -> PrecedentMatch:
        audits = self.conflicts.get_resolution_audits(concept_slug, conflict_type)
        match = evaluate_precedents(
            (a.resolution_strategy for a in audits),
            risk_tier,
            min_count=self.settings.precedent_min_count,
            agreement_threshold=self.settings.precedent_agreement_threshold,
        )
        logger.debug(
            f"[Precedent] {concept_slug}/{conflict_type}: {match.reason}"
        )
        return match
