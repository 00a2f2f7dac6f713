"""Repositories, one per aggregate."""

from regtruth.storage.repositories.audit_repo import AuditEventRepository, DatabaseAuditSink
from regtruth.storage.repositories.conflict_repo import ConflictRepository
from regtruth.storage.repositories.edge_repo import EdgeRepository, RebuildJobRepository
from regtruth.storage.repositories.evidence_repo import EvidenceRepository, compute_evidence_hash
from regtruth.storage.repositories.release_repo import ReleaseRepository
from regtruth.storage.repositories.rule_repo import RuleRepository

__all__ = [
    "AuditEventRepository",
    "ConflictRepository",
    "DatabaseAuditSink",
    "EdgeRepository",
    "EvidenceRepository",
    "RebuildJobRepository",
    "ReleaseRepository",
    "RuleRepository",
    "compute_evidence_hash",
]
