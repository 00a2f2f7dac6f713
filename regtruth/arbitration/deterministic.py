"""
Deterministic conflict resolution.

Pure comparisons in a fixed order: authority, then source hierarchy, then
effective date. High-stakes pairs still get a winner, but only as a
recommendation for the human who must decide.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from pydantic import BaseModel

from regtruth.core.models import AUTHORITY_SCORES, AuthorityLevel, RiskTier
from regtruth.storage.records import RuleRecord

UNKNOWN_AUTHORITY_SCORE = 999

STRATEGY_AUTHORITY = "authority_higher"
STRATEGY_SOURCE_HIERARCHY = "source_hierarchy"
STRATEGY_TEMPORAL = "temporal_newer"


@dataclass
class RuleForResolution:
    """The fields of a rule that deterministic resolution looks at."""

    id: str
    risk_tier: RiskTier
    authority_level: AuthorityLevel | str
    effective_from: date | str
    source_hierarchy: int | None = None
    applies_when: str | None = None

    def __post_init__(self):
        self.risk_tier = RiskTier(self.risk_tier)

    @classmethod
    def from_record(cls, rule: RuleRecord, source_hierarchy: int | None = None) -> RuleForResolution:
        return cls(
            id=rule.id,
            risk_tier=rule.risk_tier,
            authority_level=rule.authority_level,
            effective_from=rule.effective_from,
            source_hierarchy=source_hierarchy,
            applies_when=rule.applies_when,
        )


class DeterministicResolution(BaseModel):
    resolved: bool
    winner: str | None = None
    loser: str | None = None
    strategy: str | None = None
    recommendation_only: bool
    reason: str


def get_authority_score(level: AuthorityLevel | str | None) -> int:
    """LAW=1 (strongest) .. PRACTICE=4; anything unrecognised scores 999."""
    try:
        return AUTHORITY_SCORES[AuthorityLevel(level)]
    except ValueError:
        return UNKNOWN_AUTHORITY_SCORE


def _level_name(level: AuthorityLevel | str) -> str:
    return level.value if isinstance(level, AuthorityLevel) else str(level)


def _as_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def try_deterministic_resolution(
    rule_a: RuleForResolution,
    rule_b: RuleForResolution,
) -> DeterministicResolution:
    """Resolve a pair by authority, source hierarchy, then recency.

    Identical effective dates leave the pair unresolved; there is no
    tiebreak on identifiers. Either side being T0/T1 marks the outcome as
    recommendation-only.
    """
    recommendation_only = rule_a.risk_tier.is_high_stakes or rule_b.risk_tier.is_high_stakes

    def decided(winner: RuleForResolution, loser: RuleForResolution, strategy: str, reason: str):
        if recommendation_only:
            reason += " (recommendation only: T0/T1 rule involved)"
        return DeterministicResolution(
            resolved=True,
            winner=winner.id,
            loser=loser.id,
            strategy=strategy,
            recommendation_only=recommendation_only,
            reason=reason,
        )

    score_a = get_authority_score(rule_a.authority_level)
    score_b = get_authority_score(rule_b.authority_level)
    if score_a != score_b:
        winner, loser = (rule_a, rule_b) if score_a < score_b else (rule_b, rule_a)
        return decided(
            winner, loser, STRATEGY_AUTHORITY,
            f"Higher authority wins: {_level_name(winner.authority_level)} "
            f"over {_level_name(loser.authority_level)}",
        )

    hier_a, hier_b = rule_a.source_hierarchy, rule_b.source_hierarchy
    if hier_a is not None and hier_b is not None and hier_a != hier_b:
        winner, loser = (rule_a, rule_b) if hier_a < hier_b else (rule_b, rule_a)
        return decided(
            winner, loser, STRATEGY_SOURCE_HIERARCHY,
            f"Higher source hierarchy wins: {winner.source_hierarchy} over {loser.source_hierarchy}",
        )

    date_a, date_b = _as_date(rule_a.effective_from), _as_date(rule_b.effective_from)
    if date_a != date_b:
        winner, loser = (rule_a, rule_b) if date_a > date_b else (rule_b, rule_a)
        return decided(
            winner, loser, STRATEGY_TEMPORAL,
            f"Newer effective date wins: {max(date_a, date_b)} over {min(date_a, date_b)}",
        )

    return DeterministicResolution(
        resolved=False,
        recommendation_only=recommendation_only,
        reason="Equal authority, source hierarchy and effective date",
    )
