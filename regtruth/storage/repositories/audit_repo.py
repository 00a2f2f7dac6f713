"""
Audit event repository.

Provides append-only storage for audit events and a database-backed
``AuditSink``.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import text

from regtruth.storage.records import AuditEventRecord
from regtruth.storage.repositories.base import BaseRepository


class AuditEventRepository(BaseRepository):
    """Repository for audit events.

    Events are append-only and form the audit log of every destructive action.
    """

    def append_event(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEventRecord:
        """Append a new event to the log.

        Args:
            action: What happened (e.g. RULE_APPROVED)
            entity_type: Kind of entity (rule, conflict, release)
            entity_id: The entity identifier
            metadata: Event payload as dictionary

        Returns:
            The created AuditEventRecord
        """
        with self._connect() as conn:
            result = conn.execute(text("SELECT MAX(sequence_number) FROM audit_events"))
            current = result.fetchone()[0]
            record = AuditEventRecord(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence_number=(current or 0) + 1,
                metadata=metadata or {},
            )
            conn.execute(
                text("""
                INSERT INTO audit_events (id, sequence_number, action, entity_type,
                                          entity_id, metadata, timestamp)
                VALUES (:id, :sequence_number, :action, :entity_type,
                        :entity_id, :metadata, :timestamp)
                """),
                {
                    "id": record.id,
                    "sequence_number": record.sequence_number,
                    "action": record.action,
                    "entity_type": record.entity_type,
                    "entity_id": record.entity_id,
                    "metadata": json.dumps(record.metadata, default=str),
                    "timestamp": record.timestamp,
                },
            )
        return record

    def get_events_for_entity(
        self, entity_type: str, entity_id: str, limit: int | None = None
    ) -> list[AuditEventRecord]:
        """Events for one entity, newest first."""
        sql = """
            SELECT * FROM audit_events
            WHERE entity_type = :entity_type AND entity_id = :entity_id
            ORDER BY sequence_number DESC
        """
        params: dict[str, Any] = {"entity_type": entity_type, "entity_id": entity_id}
        if limit:
            sql += " LIMIT :limit"
            params["limit"] = limit
        with self._connect() as conn:
            result = conn.execute(text(sql), params)
            return [AuditEventRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_events_by_action(self, action: str, limit: int = 100) -> list[AuditEventRecord]:
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM audit_events WHERE action = :action
                ORDER BY sequence_number DESC LIMIT :limit
                """),
                {"action": action, "limit": limit},
            )
            return [AuditEventRecord.from_row(row._mapping) for row in result.fetchall()]


class DatabaseAuditSink:
    """``AuditSink`` that writes to the audit_events table."""

    def __init__(self, repository: AuditEventRepository | None = None):
        self._repository = repository or AuditEventRepository()

    def record(self, action, entity_type, entity_id, metadata=None) -> None:
        self._repository.append_event(action, entity_type, entity_id, metadata)
