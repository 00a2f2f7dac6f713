"""
Conflict and resolution audit repository.

Resolution audits are append-only; they are the precedent matcher's only input.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import text

from regtruth.core.models import ConflictStatus
from regtruth.storage.records import ConflictRecord, ResolutionAuditRecord, now_iso
from regtruth.storage.repositories.base import BaseRepository


class ConflictRepository(BaseRepository):
    """Repository for conflicts and their resolution audit trail."""

    # =========================================================================
    # Conflicts
    # =========================================================================

    def create_conflict(self, conflict: ConflictRecord) -> ConflictRecord:
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO conflicts (id, conflict_type, status, item_a_id, item_b_id,
                    description, resolution, requires_human_review, human_review_reason,
                    confidence, metadata, created_at, resolved_at, resolved_by)
                VALUES (:id, :conflict_type, :status, :item_a_id, :item_b_id,
                    :description, :resolution, :requires_human_review, :human_review_reason,
                    :confidence, :metadata, :created_at, :resolved_at, :resolved_by)
                """),
                conflict.to_dict(),
            )
        return conflict

    def get_conflict(self, conflict_id: str) -> ConflictRecord | None:
        with self._connect() as conn:
            result = conn.execute(
                text("SELECT * FROM conflicts WHERE id = :id"), {"id": conflict_id}
            )
            row = result.fetchone()
            return ConflictRecord.from_row(row._mapping) if row else None

    def find_open_between(
        self, rule_a_id: str, rule_b_id: str, conflict_type: str
    ) -> ConflictRecord | None:
        """Find an unresolved conflict between two rules, in either order."""
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM conflicts
                WHERE conflict_type = :conflict_type
                  AND status IN ('OPEN', 'ESCALATED')
                  AND ((item_a_id = :a AND item_b_id = :b) OR (item_a_id = :b AND item_b_id = :a))
                """),
                {"conflict_type": conflict_type, "a": rule_a_id, "b": rule_b_id},
            )
            row = result.fetchone()
            return ConflictRecord.from_row(row._mapping) if row else None

    def get_open_conflicts(self, limit: int | None = None) -> list[ConflictRecord]:
        """OPEN conflicts, oldest first."""
        sql = "SELECT * FROM conflicts WHERE status = :status ORDER BY created_at ASC"
        params: dict[str, Any] = {"status": ConflictStatus.OPEN.value}
        if limit:
            sql += " LIMIT :limit"
            params["limit"] = limit
        with self._connect() as conn:
            result = conn.execute(text(sql), params)
            return [ConflictRecord.from_row(row._mapping) for row in result.fetchall()]

    def count_unresolved_for_rule(self, rule_id: str) -> int:
        """Count OPEN or ESCALATED conflicts that involve a rule on either side."""
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT COUNT(*) FROM conflicts
                WHERE status IN ('OPEN', 'ESCALATED') AND (item_a_id = :rule_id OR item_b_id = :rule_id)
                """),
                {"rule_id": rule_id},
            )
            return result.fetchone()[0]

    def resolve(
        self,
        conflict_id: str,
        resolution: dict[str, Any],
        confidence: float | None = None,
        resolved_by: str = "system",
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                text("""
                UPDATE conflicts
                SET status = :status, resolution = :resolution, confidence = :confidence,
                    requires_human_review = 0, resolved_at = :resolved_at, resolved_by = :resolved_by
                WHERE id = :id
                """),
                {
                    "id": conflict_id,
                    "status": ConflictStatus.RESOLVED.value,
                    "resolution": json.dumps(resolution),
                    "confidence": confidence,
                    "resolved_at": now_iso(),
                    "resolved_by": resolved_by,
                },
            )

    def escalate(
        self,
        conflict_id: str,
        reason: str,
        resolution: dict[str, Any] | None = None,
        confidence: float | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                text("""
                UPDATE conflicts
                SET status = :status, requires_human_review = 1, human_review_reason = :reason,
                    resolution = :resolution, confidence = :confidence
                WHERE id = :id
                """),
                {
                    "id": conflict_id,
                    "status": ConflictStatus.ESCALATED.value,
                    "reason": reason,
                    "resolution": json.dumps(resolution) if resolution is not None else None,
                    "confidence": confidence,
                },
            )

    # =========================================================================
    # Resolution audit (append-only)
    # =========================================================================

    def append_resolution_audit(self, audit: ResolutionAuditRecord) -> ResolutionAuditRecord:
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO conflict_resolution_audits (id, conflict_id, concept_slug,
                    conflict_type, resolution_strategy, method, resolution, winner_id,
                    loser_id, confidence, rationale, created_at)
                VALUES (:id, :conflict_id, :concept_slug, :conflict_type,
                    :resolution_strategy, :method, :resolution, :winner_id,
                    :loser_id, :confidence, :rationale, :created_at)
                """),
                audit.to_dict(),
            )
        return audit

    def get_resolution_audits(
        self, concept_slug: str, conflict_type: str
    ) -> list[ResolutionAuditRecord]:
        """Prior resolutions for a concept and conflict type, newest first."""
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM conflict_resolution_audits
                WHERE concept_slug = :concept_slug AND conflict_type = :conflict_type
                ORDER BY created_at DESC
                """),
                {"concept_slug": concept_slug, "conflict_type": conflict_type},
            )
            return [ResolutionAuditRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_audits_for_conflict(self, conflict_id: str) -> list[ResolutionAuditRecord]:
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM conflict_resolution_audits
                WHERE conflict_id = :conflict_id ORDER BY created_at ASC
                """),
                {"conflict_id": conflict_id},
            )
            return [ResolutionAuditRecord.from_row(row._mapping) for row in result.fetchall()]
