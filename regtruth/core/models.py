"""
Domain vocabulary for the truth layer.

Enums shared by every component plus the structured result models returned
by service entry points.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# =============================================================================
# Rule vocabulary
# =============================================================================


class RuleStatus(str, Enum):
    """Lifecycle status of a rule.

    REVOKED is never stored in the status column. It is reported by
    ``RuleRecord.effective_status`` when the revocation overlay is set.
    """
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    DEPRECATED = "DEPRECATED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"


class RiskTier(str, Enum):
    """Risk tier, T0 is the highest stakes."""
    T0 = "T0"
    T1 = "T1"
    T2 = "T2"
    T3 = "T3"

    @property
    def rank(self) -> int:
        return int(self.value[1])

    @property
    def is_high_stakes(self) -> bool:
        return self in (RiskTier.T0, RiskTier.T1)


class AuthorityLevel(str, Enum):
    """Legal authority of the rule's source, strongest first."""
    LAW = "LAW"
    GUIDANCE = "GUIDANCE"
    PROCEDURE = "PROCEDURE"
    PRACTICE = "PRACTICE"


AUTHORITY_SCORES: dict[AuthorityLevel, int] = {
    AuthorityLevel.LAW: 1,
    AuthorityLevel.GUIDANCE: 2,
    AuthorityLevel.PROCEDURE: 3,
    AuthorityLevel.PRACTICE: 4,
}


class GraphStatus(str, Enum):
    PENDING = "PENDING"
    CURRENT = "CURRENT"
    STALE = "STALE"


class MatchType(str, Enum):
    """How a quote was located in its evidence."""
    EXACT = "exact"
    NORMALIZED = "normalized"
    NOT_FOUND = "not_found"


# =============================================================================
# Conflict vocabulary
# =============================================================================


class ConflictStatus(str, Enum):
    OPEN = "OPEN"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class ConflictType(str, Enum):
    """Kinds of disagreement the pipeline resolves."""
    VALUE_MISMATCH = "VALUE_MISMATCH"
    AUTHORITY_SUPERSEDE = "AUTHORITY_SUPERSEDE"
    TEMPORAL_OVERLAP = "TEMPORAL_OVERLAP"
    CROSS_SLUG_DUPLICATE = "CROSS_SLUG_DUPLICATE"
    SOURCE_CONFLICT = "SOURCE_CONFLICT"  # contradictory values inside source data


class Resolution(str, Enum):
    RULE_A_PREVAILS = "RULE_A_PREVAILS"
    RULE_B_PREVAILS = "RULE_B_PREVAILS"
    ESCALATE_TO_HUMAN = "ESCALATE_TO_HUMAN"


class ResolutionMethod(str, Enum):
    DETERMINISTIC = "deterministic"
    PRECEDENT = "precedent"
    MODEL = "model"
    HUMAN = "human"


class EdgeRelation(str, Enum):
    SUPERSEDES = "SUPERSEDES"
    OVERRIDES = "OVERRIDES"
    DEPENDS_ON = "DEPENDS_ON"


# =============================================================================
# Review, audit and alert vocabulary
# =============================================================================


class HumanReviewReason(str, Enum):
    T0_RULE_APPROVAL = "T0_RULE_APPROVAL"
    T1_RULE_APPROVAL = "T1_RULE_APPROVAL"
    LOW_RULE_CONFIDENCE = "LOW_RULE_CONFIDENCE"
    NOT_ALLOWLISTED = "NOT_ALLOWLISTED"
    PROVENANCE_FAILED = "PROVENANCE_FAILED"
    AUTO_APPROVAL_FAILED = "AUTO_APPROVAL_FAILED"
    CONFLICT_UNRESOLVABLE = "CONFLICT_UNRESOLVABLE"
    CONFLICT_BOTH_T0 = "CONFLICT_BOTH_T0"
    CONFLICT_EQUAL_AUTHORITY = "CONFLICT_EQUAL_AUTHORITY"
    CONFLICT_HIGH_STAKES = "CONFLICT_HIGH_STAKES"
    ARBITER_LOW_CONFIDENCE = "ARBITER_LOW_CONFIDENCE"
    SOURCE_CONFLICT = "SOURCE_CONFLICT"


class ReviewPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


class AuditAction(str, Enum):
    RULE_CREATED = "RULE_CREATED"
    RULE_SUBMITTED = "RULE_SUBMITTED"
    RULE_APPROVED = "RULE_APPROVED"
    RULE_APPROVAL_FAILED = "RULE_APPROVAL_FAILED"
    RULE_REJECTED = "RULE_REJECTED"
    RULE_PUBLISHED = "RULE_PUBLISHED"
    RULE_PUBLISH_FAILED = "RULE_PUBLISH_FAILED"
    RULE_REVERTED = "RULE_REVERTED"
    RULE_REVOKED = "RULE_REVOKED"
    RULE_REVOCATION_FAILED = "RULE_REVOCATION_FAILED"
    RULE_DEPRECATED = "RULE_DEPRECATED"
    CONFLICT_CREATED = "CONFLICT_CREATED"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    CONFLICT_ESCALATED = "CONFLICT_ESCALATED"
    RELEASE_CREATED = "RELEASE_CREATED"
    RELEASE_FAILED = "RELEASE_FAILED"
    RELEASE_ROLLED_BACK = "RELEASE_ROLLED_BACK"
    RELEASE_ROLLBACK_FAILED = "RELEASE_ROLLBACK_FAILED"
    GRAPH_EDGE_REJECTED = "GRAPH_EDGE_REJECTED"
    GRAPH_REBUILD_FAILED = "GRAPH_REBUILD_FAILED"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


# =============================================================================
# Structured results
# =============================================================================


class RuleStatusResult(BaseModel):
    """Outcome of a single-rule lifecycle operation."""
    success: bool
    rule_id: str
    concept_slug: str | None = None
    previous_status: RuleStatus | None = None
    new_status: RuleStatus | None = None
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class PublishRulesResult(BaseModel):
    """Outcome of an all-or-nothing publish batch."""
    success: bool
    published_count: int = 0
    results: list[RuleStatusResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    failed_concept_slug: str | None = None
    error_code: str | None = None
