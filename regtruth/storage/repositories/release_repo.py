"""
Release repository.

Releases are created once and never edited, except that rollback removes
the link between a release and the rules it reverted.
"""

from __future__ import annotations

from sqlalchemy import text

from regtruth.storage.records import ReleaseRecord
from regtruth.storage.repositories.base import BaseRepository


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in version.split("."))


class ReleaseRepository(BaseRepository):
    """Repository for release persistence operations."""

    def create_release(self, release: ReleaseRecord) -> ReleaseRecord:
        """Insert a release and its rule links."""
        with self._connect() as conn:
            conn.execute(
                text("""
                INSERT INTO releases (id, version, release_type, content_hash, rule_count,
                    audit_counts, released_by, notes, released_at)
                VALUES (:id, :version, :release_type, :content_hash, :rule_count,
                    :audit_counts, :released_by, :notes, :released_at)
                """),
                release.to_dict(),
            )
            for rule_id in release.rule_ids:
                conn.execute(
                    text("INSERT INTO release_rules (release_id, rule_id) VALUES (:release_id, :rule_id)"),
                    {"release_id": release.id, "rule_id": rule_id},
                )
        return release

    def get_release(self, release_id: str) -> ReleaseRecord | None:
        with self._connect() as conn:
            result = conn.execute(text("SELECT * FROM releases WHERE id = :id"), {"id": release_id})
            row = result.fetchone()
            if row is None:
                return None
            return ReleaseRecord.from_row(row._mapping, self._rule_ids(conn, release_id))

    def list_releases(self) -> list[ReleaseRecord]:
        """All releases, newest first. Versions only ever increase, so they give the order."""
        with self._connect() as conn:
            result = conn.execute(text("SELECT * FROM releases"))
            releases = [
                ReleaseRecord.from_row(row._mapping, self._rule_ids(conn, row._mapping["id"]))
                for row in result.fetchall()
            ]
        return sorted(releases, key=lambda r: (_version_key(r.version), r.released_at), reverse=True)

    def get_latest(self) -> ReleaseRecord | None:
        releases = self.list_releases()
        return releases[0] if releases else None

    def get_previous(self, release: ReleaseRecord) -> ReleaseRecord | None:
        """The release immediately preceding another."""
        releases = self.list_releases()
        for index, candidate in enumerate(releases):
            if candidate.id == release.id:
                return releases[index + 1] if index + 1 < len(releases) else None
        return None

    def disconnect_rules(self, release_id: str, rule_ids: list[str]) -> None:
        with self._connect() as conn:
            for rule_id in rule_ids:
                conn.execute(
                    text("DELETE FROM release_rules WHERE release_id = :release_id AND rule_id = :rule_id"),
                    {"release_id": release_id, "rule_id": rule_id},
                )

    @staticmethod
    def _rule_ids(conn, release_id: str) -> list[str]:
        result = conn.execute(
            text("SELECT rule_id FROM release_rules WHERE release_id = :release_id ORDER BY rule_id"),
            {"release_id": release_id},
        )
        return [row[0] for row in result.fetchall()]
