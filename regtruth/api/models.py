"""Request and response models for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from regtruth.core.models import AuthorityLevel, GraphStatus, RiskTier, RuleStatus
from regtruth.lifecycle.service import RevocationReason
from regtruth.storage.records import ConflictRecord, ReleaseRecord, RuleRecord


# =============================================================================
# Rules
# =============================================================================

class RuleResponse(BaseModel):
    """A rule as seen by API consumers, with the revocation overlay applied."""
    id: str
    concept_slug: str
    title: str | None
    value: str
    value_type: str
    applies_when: str | None
    risk_tier: RiskTier
    authority_level: AuthorityLevel
    status: RuleStatus
    effective_status: RuleStatus
    effective_from: str
    effective_until: str | None
    confidence: float
    approved_by: str | None
    review_reason: str | None
    revoked_at: str | None
    revoked_reason: str | None
    graph_status: GraphStatus | None

    @classmethod
    def from_record(cls, rule: RuleRecord) -> RuleResponse:
        return cls(
            id=rule.id,
            concept_slug=rule.concept_slug,
            title=rule.title,
            value=rule.value,
            value_type=rule.value_type,
            applies_when=rule.applies_when,
            risk_tier=rule.risk_tier,
            authority_level=rule.authority_level,
            status=rule.status,
            effective_status=rule.effective_status,
            effective_from=rule.effective_from,
            effective_until=rule.effective_until,
            confidence=rule.confidence,
            approved_by=rule.approved_by,
            review_reason=rule.review_reason,
            revoked_at=rule.revoked_at,
            revoked_reason=rule.revoked_reason,
            graph_status=rule.graph_status,
        )


class ReviewRuleRequest(BaseModel):
    source_slug: str | None = None


class ApproveRuleRequest(BaseModel):
    actor: str = Field(..., description="Identifier of the approving human")


class RejectRuleRequest(BaseModel):
    actor: str
    reason: str


class PublishRulesRequest(BaseModel):
    rule_ids: list[str] = Field(..., min_length=1)
    actor: str


class RevertRulesRequest(BaseModel):
    rule_ids: list[str] = Field(..., min_length=1)
    actor: str
    reason: str


class RevokeRuleRequest(BaseModel):
    actor: str
    reason: RevocationReason
    detail: str = ""


# =============================================================================
# Conflicts
# =============================================================================

class ConflictResponse(BaseModel):
    id: str
    conflict_type: str
    status: str
    item_a_id: str | None
    item_b_id: str | None
    description: str | None
    resolution: dict[str, Any] | None
    requires_human_review: bool
    human_review_reason: str | None
    confidence: float | None
    created_at: str
    resolved_at: str | None
    resolved_by: str | None

    @classmethod
    def from_record(cls, conflict: ConflictRecord) -> ConflictResponse:
        return cls(
            id=conflict.id,
            conflict_type=conflict.conflict_type,
            status=conflict.status.value,
            item_a_id=conflict.item_a_id,
            item_b_id=conflict.item_b_id,
            description=conflict.description,
            resolution=conflict.resolution,
            requires_human_review=conflict.requires_human_review,
            human_review_reason=conflict.human_review_reason,
            confidence=conflict.confidence,
            created_at=conflict.created_at,
            resolved_at=conflict.resolved_at,
            resolved_by=conflict.resolved_by,
        )


class HumanDecisionRequest(BaseModel):
    winner_id: str
    actor: str
    rationale: str
    strategy: str = "human_decision"


# =============================================================================
# Releases
# =============================================================================

class CreateReleaseRequest(BaseModel):
    rule_ids: list[str] = Field(..., min_length=1)
    actor: str
    suggested_version: str | None = None
    notes: str | None = None


class RollbackRequest(BaseModel):
    actor: str
    dry_run: bool = False
    reason: str = "release rollback"


class ReleaseResponse(BaseModel):
    id: str
    version: str
    release_type: str
    content_hash: str
    rule_count: int
    audit_counts: dict[str, int]
    released_by: str | None
    notes: str | None
    released_at: str
    rule_ids: list[str]

    @classmethod
    def from_record(cls, release: ReleaseRecord) -> ReleaseResponse:
        return cls(
            id=release.id,
            version=release.version,
            release_type=release.release_type,
            content_hash=release.content_hash,
            rule_count=release.rule_count,
            audit_counts=release.audit_counts,
            released_by=release.released_by,
            notes=release.notes,
            released_at=release.released_at,
            rule_ids=release.rule_ids,
        )
