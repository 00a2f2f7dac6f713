"""Graph edge and rebuild-job repository."""

from __future__ import annotations

from sqlalchemy import text

from regtruth.storage.records import GraphEdgeRecord, GraphRebuildJobRecord, now_iso
from regtruth.storage.repositories.base import BaseRepository


class EdgeRepository(BaseRepository):
    """Persistence for reference graph edges.

    Inserts go through the cycle-checked path in ``regtruth.graph``; nothing
    else should call ``insert_edge`` directly.
    """

    # =========================================================================
    # Edges
    # =========================================================================

    def insert_edge(self, edge: GraphEdgeRecord) -> GraphEdgeRecord:
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO graph_edges (id, from_rule_id, to_rule_id, relation, notes, created_at)
                VALUES (:id, :from_rule_id, :to_rule_id, :relation, :notes, :created_at)
                """),
                edge.to_dict(),
            )
        return edge

    def edge_exists(self, from_rule_id: str, to_rule_id: str, relation: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT 1 FROM graph_edges
                WHERE from_rule_id = :from_id AND to_rule_id = :to_id AND relation = :relation
                """),
                {"from_id": from_rule_id, "to_id": to_rule_id, "relation": relation},
            )
            return result.fetchone() is not None

    def get_edges(self, relation: str | None = None) -> list[GraphEdgeRecord]:
        with self._connect() as conn:
            if relation is None:
                result = conn.execute(text("SELECT * FROM graph_edges ORDER BY created_at"))
            else:
                result = conn.execute(
                    text("SELECT * FROM graph_edges WHERE relation = :relation ORDER BY created_at"),
                    {"relation": relation},
                )
            return [GraphEdgeRecord.from_row(row._mapping) for row in result.fetchall()]

    def get_outgoing(self, rule_id: str, relation: str | None = None) -> list[GraphEdgeRecord]:
        return self._edges_by("from_rule_id", rule_id, relation)

    def get_incoming(self, rule_id: str, relation: str | None = None) -> list[GraphEdgeRecord]:
        return self._edges_by("to_rule_id", rule_id, relation)

    def delete_outgoing(self, rule_id: str, relation: str) -> int:
        return self._delete_by("from_rule_id", rule_id, relation)

    def _edges_by(self, column: str, rule_id: str, relation: str | None) -> list[GraphEdgeRecord]:
        sql = f"SELECT * FROM graph_edges WHERE {column} = :rule_id"
        params = {"rule_id": rule_id}
        if relation is not None:
            sql += " AND relation = :relation"
            params["relation"] = relation
        sql += " ORDER BY created_at"
        with self._connect() as conn:
            result = conn.execute(text(sql), params)
            return [GraphEdgeRecord.from_row(row._mapping) for row in result.fetchall()]

    def _delete_by(self, column: str, rule_id: str, relation: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                text(f"DELETE FROM graph_edges WHERE {column} = :rule_id AND relation = :relation"),
                {"rule_id": rule_id, "relation": relation},
            )
            return result.rowcount


class RebuildJobRepository(BaseRepository):
    """Retry queue for graph rebuilds."""

    def get_active_job(self, rule_id: str) -> GraphRebuildJobRecord | None:
        with self._connect() as conn:
            result = conn.execute(
                text("SELECT * FROM graph_rebuild_jobs WHERE rule_id = :rule_id AND status = 'PENDING'"),
                {"rule_id": rule_id},
            )
            row = result.fetchone()
            return GraphRebuildJobRecord.from_row(row._mapping) if row else None

    def create_job(self, job: GraphRebuildJobRecord) -> GraphRebuildJobRecord:
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO graph_rebuild_jobs (id, rule_id, status, attempts, next_attempt_at,
                    last_error, created_at, updated_at)
                VALUES (:id, :rule_id, :status, :attempts, :next_attempt_at,
                    :last_error, :created_at, :updated_at)
                """),
                job.to_dict(),
            )
        return job

    def get_job(self, job_id: str) -> GraphRebuildJobRecord | None:
        with self._connect() as conn:
            result = conn.execute(
                text("SELECT * FROM graph_rebuild_jobs WHERE id = :id"), {"id": job_id}
            )
            row = result.fetchone()
            return GraphRebuildJobRecord.from_row(row._mapping) if row else None

    def get_due_jobs(self, now: str, limit: int = 50) -> list[GraphRebuildJobRecord]:
        with self._connect() as conn:
            result = conn.execute(
                text("""
                SELECT * FROM graph_rebuild_jobs
                WHERE status = 'PENDING' AND next_attempt_at <= :now
                ORDER BY next_attempt_at ASC
                LIMIT :limit
                """),
                {"now": now, "limit": limit},
            )
            return [GraphRebuildJobRecord.from_row(row._mapping) for row in result.fetchall()]

    def update_job(
        self,
        job_id: str,
        status: str,
        attempts: int,
        next_attempt_at: str | None = None,
        last_error: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                text("""
                UPDATE graph_rebuild_jobs
                SET status = :status, attempts = :attempts,
                    next_attempt_at = COALESCE(:next_attempt_at, next_attempt_at),
                    last_error = :last_error, updated_at = :updated_at
                WHERE id = :id
                """),
                {
                    "id": job_id,
                    "status": status,
                    "attempts": attempts,
                    "next_attempt_at": next_attempt_at,
                    "last_error": last_error,
                    "updated_at": now_iso(),
                },
            )
