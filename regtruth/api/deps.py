"""
Service wiring for the API.

Services are created lazily and shared across requests. Audit events go
to the audit_events table; publish hands new rules to the graph worker.
"""

from __future__ import annotations

from fastapi import HTTPException

from regtruth.arbitration.orchestrator import ArbitrationOrchestrator
from regtruth.core.errors import (
    IrreconcilableStateError,
    NotFoundError,
    PolicyGateError,
    RegTruthError,
    TransientError,
)
from regtruth.graph.rebuild_worker import GraphRebuildWorker
from regtruth.lifecycle.service import RuleLifecycleService
from regtruth.release.manager import ReleaseManager
from regtruth.review.reviewer import Reviewer
from regtruth.storage.repositories import DatabaseAuditSink

_lifecycle: RuleLifecycleService | None = None
_worker: GraphRebuildWorker | None = None
_orchestrator: ArbitrationOrchestrator | None = None
_reviewer: Reviewer | None = None
_release_manager: ReleaseManager | None = None


def get_worker() -> GraphRebuildWorker:
    global _worker
    if _worker is None:
        _worker = GraphRebuildWorker(audit=DatabaseAuditSink())
    return _worker


def get_lifecycle() -> RuleLifecycleService:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = RuleLifecycleService(
            audit=DatabaseAuditSink(), post_publish=get_worker().on_published
        )
    return _lifecycle


def get_orchestrator() -> ArbitrationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ArbitrationOrchestrator(lifecycle=get_lifecycle())
    return _orchestrator


def get_reviewer() -> Reviewer:
    global _reviewer
    if _reviewer is None:
        _reviewer = Reviewer(lifecycle=get_lifecycle())
    return _reviewer


def get_release_manager() -> ReleaseManager:
    global _release_manager
    if _release_manager is None:
        _release_manager = ReleaseManager(lifecycle=get_lifecycle())
    return _release_manager


def reset_services() -> None:
    """Drop the shared services (used by tests and on settings changes)."""
    global _lifecycle, _worker, _orchestrator, _reviewer, _release_manager
    _lifecycle = _worker = _orchestrator = _reviewer = _release_manager = None


# =============================================================================
# Error mapping
# =============================================================================

_STATUS_BY_FAMILY = (
    (NotFoundError, 404),
    (PolicyGateError, 422),
    (IrreconcilableStateError, 409),
    (TransientError, 503),
)


def status_for_error(error_type: type[RegTruthError]) -> int:
    for family, status in _STATUS_BY_FAMILY:
        if issubclass(error_type, family):
            return status
    return 400


def _subclasses(cls: type) -> list[type]:
    found = []
    for sub in cls.__subclasses__():
        found.append(sub)
        found.extend(_subclasses(sub))
    return found


def status_for_code(code: str | None) -> int:
    for error_type in [RegTruthError, *_subclasses(RegTruthError)]:
        if error_type.code == code:
            return status_for_error(error_type)
    return 400


def raise_for_failure(success: bool, error: str | None, error_code: str | None, **extra) -> None:
    """Turn a structured failure result into an HTTP error."""
    if success:
        return
    raise HTTPException(
        status_code=status_for_code(error_code),
        detail={"error": error, "code": error_code, **extra},
    )
