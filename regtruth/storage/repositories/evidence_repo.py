"""
Evidence and source pointer repository.

Evidence rows are write-once. Source pointers are only updated with the
outcome of provenance validation.
"""

from __future__ import annotations

import hashlib

from sqlalchemy import text

from regtruth.core.models import MatchType
from regtruth.storage.records import (
    ClaimExceptionRecord,
    EvidenceRecord,
    SourcePointerRecord,
    now_iso,
)
from regtruth.storage.repositories.base import BaseRepository


def compute_evidence_hash(raw_content: str) -> str:
    """SHA-256 of the raw evidence text."""
    return hashlib.sha256(raw_content.encode("utf-8")).hexdigest()


class EvidenceRepository(BaseRepository):
    """Evidence, source pointer and claim exception persistence.

    Also satisfies the ``EvidenceStore`` protocol.
    """

    # =========================================================================
    # Evidence
    # =========================================================================

    def add_evidence(
        self,
        raw_content: str,
        source_name: str | None = None,
        source_hierarchy: int | None = None,
        url: str | None = None,
        evidence_id: str | None = None,
    ) -> EvidenceRecord:
        """Store a piece of evidence along with its content hash."""
        record = EvidenceRecord(
            raw_content=raw_content,
            content_hash=compute_evidence_hash(raw_content),
            source_name=source_name,
            source_hierarchy=source_hierarchy,
            url=url,
        )
        if evidence_id:
            record.id = evidence_id
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO evidence (id, raw_content, content_hash, source_name,
                                      source_hierarchy, url, fetched_at)
                VALUES (:id, :raw_content, :content_hash, :source_name,
                        :source_hierarchy, :url, :fetched_at)
                """),
                record.to_dict(),
            )
        return record

    def get_evidence(self, evidence_id: str) -> EvidenceRecord | None:
        with self._connect() as conn:
            result = conn.execute(
                text("SELECT * FROM evidence WHERE id = :id"), {"id": evidence_id}
            )
            row = result.fetchone()
            return EvidenceRecord.from_row(row._mapping) if row else None

    # =========================================================================
    # Source pointers
    # =========================================================================

    def add_pointer(self, rule_id: str, pointer: SourcePointerRecord) -> SourcePointerRecord:
        """Insert a pointer and link it to a rule."""
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO source_pointers (id, evidence_id, exact_quote, extracted_value,
                    confidence, match_type, start_offset, end_offset, validated_at, created_at)
                VALUES (:id, :evidence_id, :exact_quote, :extracted_value,
                    :confidence, :match_type, :start_offset, :end_offset, :validated_at, :created_at)
                """),
                pointer.to_dict(),
            )
            conn.execute(
                text("INSERT INTO rule_source_pointers (rule_id, pointer_id) VALUES (:rule_id, :pointer_id)"),
                {"rule_id": rule_id, "pointer_id": pointer.id},
            )
        return pointer

    def get_pointer(self, pointer_id: str) -> SourcePointerRecord | None:
        with self._connect() as conn:
            result = conn.execute(
                text("SELECT * FROM source_pointers WHERE id = :id"), {"id": pointer_id}
            )
            row = result.fetchone()
            return SourcePointerRecord.from_row(row._mapping) if row else None

    def get_pointers_for_rule(self, rule_id: str) -> list[SourcePointerRecord]:
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT sp.* FROM source_pointers sp
                JOIN rule_source_pointers rsp ON rsp.pointer_id = sp.id
                WHERE rsp.rule_id = :rule_id
                ORDER BY sp.created_at ASC
                """),
                {"rule_id": rule_id},
            )
            return [SourcePointerRecord.from_row(row._mapping) for row in result.fetchall()]

    def count_pointers_for_rule(self, rule_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM rule_source_pointers WHERE rule_id = :rule_id"),
                {"rule_id": rule_id},
            )
            return result.fetchone()[0]

    def get_source_hierarchy_for_rule(self, rule_id: str) -> int | None:
        """Best (lowest) hierarchy number among a rule's evidence sources."""
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT MIN(e.source_hierarchy) FROM evidence e
                JOIN source_pointers sp ON sp.evidence_id = e.id
                JOIN rule_source_pointers rsp ON rsp.pointer_id = sp.id
                WHERE rsp.rule_id = :rule_id
                """),
                {"rule_id": rule_id},
            )
            return result.fetchone()[0]

    def record_match(
        self,
        pointer_id: str,
        match_type: MatchType,
        start_offset: int | None,
        end_offset: int | None,
    ) -> None:
        """Persist the outcome of a provenance check.

        not_found is written with explicit NULL offsets so that a verified
        absence differs from a pointer that was never checked.
        """
        with self._connect() as conn:
            conn.execute(
                text("""
                UPDATE source_pointers
                SET match_type = :match_type,
                    start_offset = :start_offset,
                    end_offset = :end_offset,
                    validated_at = :validated_at
                WHERE id = :id
                """),
                {
                    "id": pointer_id,
                    "match_type": match_type.value,
                    "start_offset": start_offset,
                    "end_offset": end_offset,
                    "validated_at": now_iso(),
                },
            )

    # =========================================================================
    # Claim exceptions
    # =========================================================================

    def add_claim_exception(
        self, rule_id: str, overrides_to: str, reason: str | None = None
    ) -> ClaimExceptionRecord:
        record = ClaimExceptionRecord(rule_id=rule_id, overrides_to=overrides_to, reason=reason)
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO claim_exceptions (id, rule_id, overrides_to, reason)
                VALUES (:id, :rule_id, :overrides_to, :reason)
                """),
                {
                    "id": record.id,
                    "rule_id": record.rule_id,
                    "overrides_to": record.overrides_to,
                    "reason": record.reason,
                },
            )
        return record

    def get_claim_exceptions(self, rule_id: str) -> list[ClaimExceptionRecord]:
        with self._connect() as conn:
            result = conn.execute(
                text("SELECT * FROM claim_exceptions WHERE rule_id = :rule_id"),
                {"rule_id": rule_id},
            )
            return [ClaimExceptionRecord.from_row(row._mapping) for row in result.fetchall()]
