"""
Database connection management and initialization.

Supports both SQLite (local dev) and PostgreSQL (production) via DATABASE_URL.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Connection

from regtruth.core.config import get_settings


# Global engine instance
_engine: Engine | None = None
_DB_PATH: Path | None = None


def _is_postgres() -> bool:
    """Check if using PostgreSQL database."""
    database_url = os.getenv("DATABASE_URL", "")
    return database_url.startswith("postgres")


def get_database_url() -> str:
    """Get database URL from environment or default to SQLite.

    Handles the postgres:// URL form by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    return f"sqlite:///{get_db_path()}"


def get_db_path() -> Path:
    """Get the SQLite database file path (used when DATABASE_URL not set)."""
    global _DB_PATH
    if _DB_PATH is None:
        data_dir = Path(get_settings().data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        _DB_PATH = data_dir / "regtruth.db"
    return _DB_PATH


def set_db_path(path: Path | str) -> None:
    """Set a custom database path (useful for testing)."""
    global _DB_PATH, _engine
    _DB_PATH = Path(path)
    _engine = None


def get_engine() -> Engine:
    """Get SQLAlchemy engine for database operations."""
    global _engine
    if _engine is None:
        database_url = get_database_url()

        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Busy timeout stands in for statement_timeout on SQLite
            connect_args["timeout"] = get_settings().transaction_timeout_ms / 1000

        _engine = create_engine(database_url, echo=False, connect_args=connect_args)
    return _engine


def reset_engine() -> None:
    """Reset the engine (useful for testing or reconfiguration)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def get_db() -> Generator[Connection, None, None]:
    """Get a database connection.

    Callers commit explicitly:
        with get_db() as conn:
            conn.execute(text("UPDATE rules SET ..."))
            conn.commit()
    """
    engine = get_engine()
    with engine.connect() as conn:
        if not _is_postgres():
            conn.execute(text("PRAGMA foreign_keys = ON"))
            conn.commit()
        yield conn


@contextmanager
def transaction(timeout_ms: int | None = None) -> Generator[Connection, None, None]:
    """Serializable, time-bounded transaction.

    Commits when the block exits cleanly and rolls back on any exception,
    so a batch is either fully applied or not applied at all.

    Args:
        timeout_ms: Statement timeout, defaults to the configured value
    """
    if timeout_ms is None:
        timeout_ms = get_settings().transaction_timeout_ms

    engine = get_engine()
    with engine.connect() as conn:
        if _is_postgres():
            conn = conn.execution_options(isolation_level="SERIALIZABLE")
            conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
        else:
            conn.execute(text("PRAGMA foreign_keys = ON"))
            conn.commit()
            # Take the write lock up front so overlapping batches serialize
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()


def init_db() -> None:
    """Initialize database schema.

    Creates all tables if they don't exist. Safe to call multiple times.
    """
    engine = get_engine()

    if not _is_postgres():
        raw_conn = engine.raw_connection()
        try:
            raw_conn.executescript(_SCHEMA)
            raw_conn.commit()
        finally:
            raw_conn.close()
    else:
        with engine.connect() as conn:
            for statement in _split_statements(_SCHEMA):
                conn.execute(text(statement))
            conn.commit()


def _split_statements(script: str) -> list[str]:
    """Split the schema script into individual statements for PostgreSQL."""
    statements = []
    current: list[str] = []
    for line in script.split("\n"):
        stripped = line.strip()
        if stripped.startswith("--"):
            continue
        current.append(line)
        if stripped.endswith(";"):
            statement = "\n".join(current).strip().rstrip(";")
            if statement:
                statements.append(statement)
            current = []
    return statements


# =============================================================================
# Database Schema (SQLite, PostgreSQL-compatible design)
# =============================================================================

_SCHEMA = """
-- =============================================================================
-- RULES
-- =============================================================================
-- Status column never holds REVOKED; revocation is the revoked_at overlay.

CREATE TABLE IF NOT EXISTS rules (
    id TEXT PRIMARY KEY,                -- UUID
    concept_slug TEXT NOT NULL,         -- Groups versions of the same rule
    title TEXT,
    value TEXT NOT NULL,
    value_type TEXT NOT NULL DEFAULT 'text',
    applies_when TEXT,                  -- JSON predicate
    risk_tier TEXT NOT NULL,            -- T0..T3
    authority_level TEXT NOT NULL,      -- LAW, GUIDANCE, PROCEDURE, PRACTICE
    status TEXT NOT NULL DEFAULT 'DRAFT',
    effective_from TEXT NOT NULL,       -- ISO date
    effective_until TEXT,
    confidence REAL NOT NULL DEFAULT 0,

    -- Approval
    approved_by TEXT,
    approved_at TEXT,
    review_reason TEXT,                 -- Why human review is required
    reviewer_notes TEXT,                -- JSON

    -- Revocation overlay
    revoked_at TEXT,
    revoked_reason TEXT,

    -- Reference graph
    graph_status TEXT,                  -- PENDING, CURRENT, STALE
    graph_status_at TEXT,

    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- =============================================================================
-- EVIDENCE AND SOURCE POINTERS
-- =============================================================================

CREATE TABLE IF NOT EXISTS evidence (
    id TEXT PRIMARY KEY,
    raw_content TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    source_name TEXT,
    source_hierarchy INTEGER,           -- 1 constitutional .. 7 informal
    url TEXT,
    fetched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS source_pointers (
    id TEXT PRIMARY KEY,
    evidence_id TEXT NOT NULL,          -- Soft reference, evidence is external
    exact_quote TEXT NOT NULL,
    extracted_value TEXT,
    confidence REAL NOT NULL DEFAULT 0,
    match_type TEXT,                    -- NULL until validated
    start_offset INTEGER,
    end_offset INTEGER,
    validated_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rule_source_pointers (
    rule_id TEXT NOT NULL,
    pointer_id TEXT NOT NULL,
    PRIMARY KEY (rule_id, pointer_id),
    FOREIGN KEY (rule_id) REFERENCES rules(id) ON DELETE CASCADE,
    FOREIGN KEY (pointer_id) REFERENCES source_pointers(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS claim_exceptions (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    overrides_to TEXT NOT NULL,         -- Concept slug of the overridden rule
    reason TEXT,
    FOREIGN KEY (rule_id) REFERENCES rules(id) ON DELETE CASCADE
);

-- =============================================================================
-- CONFLICTS
-- =============================================================================

CREATE TABLE IF NOT EXISTS conflicts (
    id TEXT PRIMARY KEY,
    conflict_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'OPEN',
    item_a_id TEXT,                     -- Rule ids; NULL for source conflicts
    item_b_id TEXT,
    description TEXT,
    resolution TEXT,                    -- JSON payload
    requires_human_review INTEGER NOT NULL DEFAULT 0,
    human_review_reason TEXT,
    confidence REAL,
    metadata TEXT,                      -- JSON
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    resolved_by TEXT
);

-- Append-only; read by the precedent matcher
CREATE TABLE IF NOT EXISTS conflict_resolution_audits (
    id TEXT PRIMARY KEY,
    conflict_id TEXT NOT NULL,
    concept_slug TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    resolution_strategy TEXT NOT NULL,
    method TEXT NOT NULL,               -- deterministic, precedent, model, human
    resolution TEXT NOT NULL,
    winner_id TEXT,
    loser_id TEXT,
    confidence REAL,
    rationale TEXT,
    created_at TEXT NOT NULL
);

-- =============================================================================
-- RELEASES
-- =============================================================================

CREATE TABLE IF NOT EXISTS releases (
    id TEXT PRIMARY KEY,
    version TEXT UNIQUE NOT NULL,       -- semver
    release_type TEXT NOT NULL,         -- major, minor, patch
    content_hash TEXT NOT NULL,
    rule_count INTEGER NOT NULL,
    audit_counts TEXT,                  -- JSON tier counters
    released_by TEXT,
    notes TEXT,
    released_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS release_rules (
    release_id TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    PRIMARY KEY (release_id, rule_id),
    FOREIGN KEY (release_id) REFERENCES releases(id) ON DELETE CASCADE,
    FOREIGN KEY (rule_id) REFERENCES rules(id) ON DELETE CASCADE
);

-- =============================================================================
-- REFERENCE GRAPH
-- =============================================================================

CREATE TABLE IF NOT EXISTS graph_edges (
    id TEXT PRIMARY KEY,
    from_rule_id TEXT NOT NULL,
    to_rule_id TEXT NOT NULL,
    relation TEXT NOT NULL,             -- SUPERSEDES, OVERRIDES, DEPENDS_ON
    notes TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (from_rule_id, to_rule_id, relation),
    FOREIGN KEY (from_rule_id) REFERENCES rules(id) ON DELETE CASCADE,
    FOREIGN KEY (to_rule_id) REFERENCES rules(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS graph_rebuild_jobs (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',  -- PENDING, DONE, EXHAUSTED
    attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TEXT NOT NULL,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- =============================================================================
-- AUDIT LOG
-- =============================================================================

CREATE TABLE IF NOT EXISTS audit_events (
    id TEXT PRIMARY KEY,
    sequence_number INTEGER NOT NULL,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    metadata TEXT,                      -- JSON
    timestamp TEXT NOT NULL
);

-- =============================================================================
-- INDEXES
-- =============================================================================

CREATE INDEX IF NOT EXISTS idx_rules_concept ON rules(concept_slug);
CREATE INDEX IF NOT EXISTS idx_rules_status ON rules(status);
CREATE INDEX IF NOT EXISTS idx_rules_graph_status ON rules(graph_status, graph_status_at);

CREATE INDEX IF NOT EXISTS idx_rule_pointers_pointer ON rule_source_pointers(pointer_id);
CREATE INDEX IF NOT EXISTS idx_claim_exceptions_rule ON claim_exceptions(rule_id);

CREATE INDEX IF NOT EXISTS idx_conflicts_status ON conflicts(status, created_at);
CREATE INDEX IF NOT EXISTS idx_conflicts_items ON conflicts(item_a_id, item_b_id);
CREATE INDEX IF NOT EXISTS idx_resolution_audits_lookup ON conflict_resolution_audits(concept_slug, conflict_type);

CREATE INDEX IF NOT EXISTS idx_releases_released_at ON releases(released_at);
CREATE INDEX IF NOT EXISTS idx_release_rules_rule ON release_rules(rule_id);

CREATE INDEX IF NOT EXISTS idx_graph_edges_from ON graph_edges(from_rule_id, relation);
CREATE INDEX IF NOT EXISTS idx_graph_edges_to ON graph_edges(to_rule_id, relation);
CREATE INDEX IF NOT EXISTS idx_rebuild_jobs_due ON graph_rebuild_jobs(status, next_attempt_at);

CREATE INDEX IF NOT EXISTS idx_audit_events_entity ON audit_events(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_events_sequence ON audit_events(sequence_number);
"""


def reset_db() -> None:
    """Drop all tables and recreate schema. USE WITH CAUTION."""
    with get_db() as conn:
        if _is_postgres():
            for table in _list_tables(conn):
                conn.execute(text(f"DROP TABLE IF EXISTS {table} CASCADE"))
            conn.commit()
        else:
            # SQLite has no CASCADE; the pragma only changes outside a transaction
            conn.execute(text("PRAGMA foreign_keys = OFF"))
            conn.commit()
            try:
                for table in _list_tables(conn):
                    conn.execute(text(f"DROP TABLE IF EXISTS {table}"))
                conn.commit()
            finally:
                conn.rollback()
                conn.execute(text("PRAGMA foreign_keys = ON"))
                conn.commit()

    init_db()


def get_table_stats() -> dict[str, int]:
    """Get row counts for all tables (useful for diagnostics)."""
    with get_db() as conn:
        stats = {}
        for table in _list_tables(conn):
            result = conn.execute(text(f"SELECT COUNT(*) as count FROM {table}"))
            stats[table] = result.fetchone()[0]
        return stats


def _list_tables(conn: Connection) -> list[str]:
    if _is_postgres():
        result = conn.execute(text(
            "SELECT table_name as name FROM information_schema.tables "
            "WHERE table_schema = 'public'"
        ))
    else:
        result = conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]
