"""
Record types for the persistence layer.

Uses dataclasses for lightweight, serialization-friendly record types that
mirror the database schema.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from regtruth.core.models import (
    AuthorityLevel,
    ConflictStatus,
    GraphStatus,
    MatchType,
    RiskTier,
    RuleStatus,
)


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Get current time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _load_json(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


# =============================================================================
# Rule Record
# =============================================================================


@dataclass
class RuleRecord:
    """Database record for a rule."""

    concept_slug: str
    value: str
    risk_tier: RiskTier
    authority_level: AuthorityLevel
    effective_from: str
    id: str = field(default_factory=generate_uuid)
    title: str | None = None
    value_type: str = "text"
    applies_when: str | None = None
    status: RuleStatus = RuleStatus.DRAFT
    effective_until: str | None = None
    confidence: float = 0.0

    approved_by: str | None = None
    approved_at: str | None = None
    review_reason: str | None = None
    reviewer_notes: str | None = None

    revoked_at: str | None = None
    revoked_reason: str | None = None

    graph_status: GraphStatus | None = None
    graph_status_at: str | None = None

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def effective_status(self) -> RuleStatus:
        """Status as consumers see it, with the revocation overlay applied."""
        return RuleStatus.REVOKED if self.is_revoked else self.status

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RuleRecord:
        """Create from database row."""
        return cls(
            id=row["id"],
            concept_slug=row["concept_slug"],
            title=row["title"],
            value=row["value"],
            value_type=row["value_type"],
            applies_when=row["applies_when"],
            risk_tier=RiskTier(row["risk_tier"]),
            authority_level=AuthorityLevel(row["authority_level"]),
            status=RuleStatus(row["status"]),
            effective_from=row["effective_from"],
            effective_until=row["effective_until"],
            confidence=row["confidence"] or 0.0,
            approved_by=row["approved_by"],
            approved_at=row["approved_at"],
            review_reason=row["review_reason"],
            reviewer_notes=row["reviewer_notes"],
            revoked_at=row["revoked_at"],
            revoked_reason=row["revoked_reason"],
            graph_status=GraphStatus(row["graph_status"]) if row["graph_status"] else None,
            graph_status_at=row["graph_status_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return {
            "id": self.id,
            "concept_slug": self.concept_slug,
            "title": self.title,
            "value": self.value,
            "value_type": self.value_type,
            "applies_when": self.applies_when,
            "risk_tier": self.risk_tier.value,
            "authority_level": self.authority_level.value,
            "status": self.status.value,
            "effective_from": self.effective_from,
            "effective_until": self.effective_until,
            "confidence": self.confidence,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "review_reason": self.review_reason,
            "reviewer_notes": self.reviewer_notes,
            "revoked_at": self.revoked_at,
            "revoked_reason": self.revoked_reason,
            "graph_status": self.graph_status.value if self.graph_status else None,
            "graph_status_at": self.graph_status_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# =============================================================================
# Evidence and Source Pointers
# =============================================================================


@dataclass
class EvidenceRecord:
    """Immutable raw document text. Never mutated by this package."""

    raw_content: str
    content_hash: str
    id: str = field(default_factory=generate_uuid)
    source_name: str | None = None
    source_hierarchy: int | None = None
    url: str | None = None
    fetched_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> EvidenceRecord:
        return cls(
            id=row["id"],
            raw_content=row["raw_content"],
            content_hash=row["content_hash"],
            source_name=row["source_name"],
            source_hierarchy=row["source_hierarchy"],
            url=row["url"],
            fetched_at=row["fetched_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "raw_content": self.raw_content,
            "content_hash": self.content_hash,
            "source_name": self.source_name,
            "source_hierarchy": self.source_hierarchy,
            "url": self.url,
            "fetched_at": self.fetched_at,
        }


@dataclass
class SourcePointerRecord:
    """A quotation in a piece of evidence backing one or more rules."""

    evidence_id: str
    exact_quote: str
    id: str = field(default_factory=generate_uuid)
    extracted_value: str | None = None
    confidence: float = 0.0
    match_type: MatchType | None = None  # None means never validated
    start_offset: int | None = None
    end_offset: int | None = None
    validated_at: str | None = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SourcePointerRecord:
        return cls(
            id=row["id"],
            evidence_id=row["evidence_id"],
            exact_quote=row["exact_quote"],
            extracted_value=row["extracted_value"],
            confidence=row["confidence"] or 0.0,
            match_type=MatchType(row["match_type"]) if row["match_type"] else None,
            start_offset=row["start_offset"],
            end_offset=row["end_offset"],
            validated_at=row["validated_at"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "evidence_id": self.evidence_id,
            "exact_quote": self.exact_quote,
            "extracted_value": self.extracted_value,
            "confidence": self.confidence,
            "match_type": self.match_type.value if self.match_type else None,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "validated_at": self.validated_at,
            "created_at": self.created_at,
        }


@dataclass
class ClaimExceptionRecord:
    """An exception recorded on a rule's claim, pointing at the concept it overrides."""

    rule_id: str
    overrides_to: str
    id: str = field(default_factory=generate_uuid)
    reason: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ClaimExceptionRecord:
        return cls(
            id=row["id"],
            rule_id=row["rule_id"],
            overrides_to=row["overrides_to"],
            reason=row["reason"],
        )


# =============================================================================
# Conflicts
# =============================================================================


@dataclass
class ConflictRecord:
    """Database record for a conflict between two rules or within source data."""

    conflict_type: str
    id: str = field(default_factory=generate_uuid)
    status: ConflictStatus = ConflictStatus.OPEN
    item_a_id: str | None = None
    item_b_id: str | None = None
    description: str | None = None
    resolution: dict[str, Any] | None = None
    requires_human_review: bool = False
    human_review_reason: str | None = None
    confidence: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)
    resolved_at: str | None = None
    resolved_by: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ConflictRecord:
        return cls(
            id=row["id"],
            conflict_type=row["conflict_type"],
            status=ConflictStatus(row["status"]),
            item_a_id=row["item_a_id"],
            item_b_id=row["item_b_id"],
            description=row["description"],
            resolution=_load_json(row["resolution"]),
            requires_human_review=bool(row["requires_human_review"]),
            human_review_reason=row["human_review_reason"],
            confidence=row["confidence"],
            metadata=_load_json(row["metadata"]) or {},
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conflict_type": self.conflict_type,
            "status": self.status.value,
            "item_a_id": self.item_a_id,
            "item_b_id": self.item_b_id,
            "description": self.description,
            "resolution": json.dumps(self.resolution) if self.resolution is not None else None,
            "requires_human_review": 1 if self.requires_human_review else 0,
            "human_review_reason": self.human_review_reason,
            "confidence": self.confidence,
            "metadata": json.dumps(self.metadata),
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
        }


@dataclass
class ResolutionAuditRecord:
    """One immutable entry per conflict resolution, whatever path produced it."""

    conflict_id: str
    concept_slug: str
    conflict_type: str
    resolution_strategy: str
    method: str
    resolution: str
    id: str = field(default_factory=generate_uuid)
    winner_id: str | None = None
    loser_id: str | None = None
    confidence: float | None = None
    rationale: str | None = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ResolutionAuditRecord:
        return cls(
            id=row["id"],
            conflict_id=row["conflict_id"],
            concept_slug=row["concept_slug"],
            conflict_type=row["conflict_type"],
            resolution_strategy=row["resolution_strategy"],
            method=row["method"],
            resolution=row["resolution"],
            winner_id=row["winner_id"],
            loser_id=row["loser_id"],
            confidence=row["confidence"],
            rationale=row["rationale"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conflict_id": self.conflict_id,
            "concept_slug": self.concept_slug,
            "conflict_type": self.conflict_type,
            "resolution_strategy": self.resolution_strategy,
            "method": self.method,
            "resolution": self.resolution,
            "winner_id": self.winner_id,
            "loser_id": self.loser_id,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "created_at": self.created_at,
        }


# =============================================================================
# Releases
# =============================================================================


@dataclass
class ReleaseRecord:
    """An immutable published bundle of rules."""

    version: str
    release_type: str
    content_hash: str
    rule_count: int
    id: str = field(default_factory=generate_uuid)
    audit_counts: dict[str, int] = field(default_factory=dict)
    released_by: str | None = None
    notes: str | None = None
    released_at: str = field(default_factory=now_iso)
    rule_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], rule_ids: list[str] | None = None) -> ReleaseRecord:
        return cls(
            id=row["id"],
            version=row["version"],
            release_type=row["release_type"],
            content_hash=row["content_hash"],
            rule_count=row["rule_count"],
            audit_counts=_load_json(row["audit_counts"]) or {},
            released_by=row["released_by"],
            notes=row["notes"],
            released_at=row["released_at"],
            rule_ids=rule_ids or [],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "release_type": self.release_type,
            "content_hash": self.content_hash,
            "rule_count": self.rule_count,
            "audit_counts": json.dumps(self.audit_counts),
            "released_by": self.released_by,
            "notes": self.notes,
            "released_at": self.released_at,
        }


# =============================================================================
# Reference Graph
# =============================================================================


@dataclass
class GraphEdgeRecord:
    """Directed relation between two rules."""

    from_rule_id: str
    to_rule_id: str
    relation: str
    id: str = field(default_factory=generate_uuid)
    notes: str | None = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> GraphEdgeRecord:
        return cls(
            id=row["id"],
            from_rule_id=row["from_rule_id"],
            to_rule_id=row["to_rule_id"],
            relation=row["relation"],
            notes=row["notes"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from_rule_id": self.from_rule_id,
            "to_rule_id": self.to_rule_id,
            "relation": self.relation,
            "notes": self.notes,
            "created_at": self.created_at,
        }


@dataclass
class GraphRebuildJobRecord:
    """Retry queue entry for a rule whose graph rebuild failed or is pending."""

    rule_id: str
    next_attempt_at: str
    id: str = field(default_factory=generate_uuid)
    status: str = "PENDING"  # PENDING, DONE, EXHAUSTED
    attempts: int = 0
    last_error: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> GraphRebuildJobRecord:
        return cls(
            id=row["id"],
            rule_id=row["rule_id"],
            status=row["status"],
            attempts=row["attempts"],
            next_attempt_at=row["next_attempt_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "status": self.status,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class AuditEventRecord:
    """Append-only audit event."""

    action: str
    entity_type: str
    entity_id: str
    sequence_number: int
    id: str = field(default_factory=generate_uuid)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AuditEventRecord:
        return cls(
            id=row["id"],
            sequence_number=row["sequence_number"],
            action=row["action"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            metadata=_load_json(row["metadata"]) or {},
            timestamp=row["timestamp"],
        )
