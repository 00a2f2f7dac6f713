"""
Rule repository for database operations.

The only writer of the rules table. Status writes are performed by the
lifecycle service after it has checked the transition table.
"""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import bindparam, text

from regtruth.core.models import GraphStatus, RuleStatus
from regtruth.storage.records import RuleRecord, now_iso
from regtruth.storage.repositories.base import BaseRepository


class RuleRepository(BaseRepository):
    """Repository for rule persistence operations."""

    # =========================================================================
    # Rule CRUD
    # =========================================================================

    def create_rule(self, rule: RuleRecord) -> RuleRecord:
        """Insert a new rule.

        Args:
            rule: The record to insert

        Returns:
            The inserted RuleRecord
        """
        data = rule.to_dict()
        columns = ", ".join(data)
        placeholders = ", ".join(f":{key}" for key in data)
        with self._connect() as conn:
            conn.execute(text(f"INSERT INTO rules ({columns}) VALUES ({placeholders})"), data)
        return rule

    def get_rule(self, rule_id: str) -> RuleRecord | None:
        """Get a rule by ID."""
        with self._connect() as conn:
            result = conn.execute(text("SELECT * FROM rules WHERE id = :id"), {"id": rule_id})
            row = result.fetchone()
            return RuleRecord.from_row(row._mapping) if row else None

    def update_fields(self, rule_id: str, **fields: Any) -> None:
        """Update arbitrary columns and bump updated_at.

        Enum values are stored by value.
        """
        values = {
            key: (value.value if hasattr(value, "value") else value)
            for key, value in fields.items()
        }
        values["updated_at"] = now_iso()
        assignments = ", ".join(f"{key} = :{key}" for key in values)
        values["id"] = rule_id
        with self._connect() as conn:
            conn.execute(text(f"UPDATE rules SET {assignments} WHERE id = :id"), values)

    def set_status(self, rule_id: str, status: RuleStatus, **fields: Any) -> None:
        """Write a status that the caller has already validated."""
        self.update_fields(rule_id, status=status, **fields)

    def set_graph_status(self, rule_id: str, graph_status: GraphStatus) -> None:
        self.update_fields(rule_id, graph_status=graph_status, graph_status_at=now_iso())

    # =========================================================================
    # Queries
    # =========================================================================

    def get_by_concept(
        self,
        concept_slug: str,
        statuses: Iterable[RuleStatus] | None = None,
        include_revoked: bool = False,
    ) -> list[RuleRecord]:
        """Get rules sharing a concept slug, oldest effective date first."""
        sql = "SELECT * FROM rules WHERE concept_slug = :slug"
        params: dict[str, Any] = {"slug": concept_slug}
        if statuses is not None:
            sql += " AND status IN :statuses"
            params["statuses"] = [s.value for s in statuses]
        if not include_revoked:
            sql += " AND revoked_at IS NULL"
        sql += " ORDER BY effective_from ASC, created_at ASC"

        stmt = text(sql)
        if statuses is not None:
            stmt = stmt.bindparams(bindparam("statuses", expanding=True))
        with self._connect() as conn:
            result = conn.execute(stmt, params)
            return [RuleRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_by_status(
        self,
        status: RuleStatus,
        include_revoked: bool = False,
    ) -> list[RuleRecord]:
        """Get all rules in a status, oldest first."""
        sql = "SELECT * FROM rules WHERE status = :status"
        if not include_revoked:
            sql += " AND revoked_at IS NULL"
        sql += " ORDER BY created_at ASC"
        with self._connect() as conn:
            result = conn.execute(text(sql), {"status": status.value})
            return [RuleRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_published(self, concept_slug: str | None = None) -> list[RuleRecord]:
        """Rules visible to consumers: PUBLISHED and not revoked."""
        if concept_slug is None:
            return self.get_by_status(RuleStatus.PUBLISHED)
        return self.get_by_concept(concept_slug, statuses=[RuleStatus.PUBLISHED])

    def get_requiring_review(self) -> list[RuleRecord]:
        """PENDING_REVIEW rules that have been flagged for a human."""
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM rules
                WHERE status = :status
                  AND review_reason IS NOT NULL
                  AND revoked_at IS NULL
                ORDER BY created_at ASC
                """),
                {"status": RuleStatus.PENDING_REVIEW.value},
            )
            return [RuleRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_graph_stuck(self, older_than: str) -> list[RuleRecord]:
        """PUBLISHED rules whose graph has been PENDING or STALE since before a cutoff."""
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM rules
                WHERE status = :published
                  AND graph_status IN ('PENDING', 'STALE')
                  AND graph_status_at < :cutoff
                ORDER BY graph_status_at ASC
                """),
                {"published": RuleStatus.PUBLISHED.value, "cutoff": older_than},
            )
            return [RuleRecord.from_row(row._mapping) for row in result.fetchall()]

    def count_rules(self, status: RuleStatus | None = None) -> int:
        with self._connect() as conn:
            if status is None:
                result = conn.execute(text("SELECT COUNT(*) FROM rules"))
            else:
                result = conn.execute(
                    text("SELECT COUNT(*) FROM rules WHERE status = :status"),
                    {"status": status.value},
                )
            return result.fetchone()[0]
