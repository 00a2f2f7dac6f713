"""
Contracts for external collaborators.

Audit storage, human-review queueing, alerting, evidence storage, model
arbitration and extraction all live outside this package. Services depend
on these protocols only; the logging implementations below are the
defaults used when nothing else is wired in.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from regtruth.storage.records import EvidenceRecord, generate_uuid

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class HumanReviewQueue(Protocol):
    def request_review(
        self,
        entity_type: str,
        entity_id: str,
        reason: str,
        priority: str,
        context: dict[str, Any] | None = None,
    ) -> str: ...


class AlertSink(Protocol):
    def raise_alert(
        self,
        severity: str,
        alert_type: str,
        entity_id: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None: ...


class EvidenceStore(Protocol):
    def get_evidence(self, evidence_id: str) -> EvidenceRecord | None: ...


class ArbitrationClient(Protocol):
    """Model-backed arbitration between two formatted claims.

    Returns the raw JSON payload. Callers validate it against the current
    output schema before use.
    """

    def arbitrate(self, claim_a: str, claim_b: str, conflict_type: str) -> dict[str, Any]: ...


class ExtractionClient(Protocol):
    """Produces rule-shaped proposals from one evidence document."""

    def extract(self, evidence_id: str) -> list[dict[str, Any]]: ...


# =============================================================================
# Logging defaults
# =============================================================================


class LoggingAuditSink:
    def record(self, action, entity_type, entity_id, metadata=None) -> None:
        logger.info(f"[Audit] {action} {entity_type}={entity_id} {metadata or {}}")


class LoggingAlertSink:
    def raise_alert(self, severity, alert_type, entity_id, message, details=None) -> None:
        level = logging.CRITICAL if str(severity) == "CRITICAL" else logging.WARNING
        logger.log(level, f"[Alert] {alert_type} {entity_id}: {message} {details or {}}")


class LoggingReviewQueue:
    def request_review(self, entity_type, entity_id, reason, priority, context=None) -> str:
        ticket_id = generate_uuid()
        logger.info(
            f"[ReviewQueue] ticket={ticket_id} {entity_type}={entity_id} "
            f"reason={reason} priority={priority}"
        )
        return ticket_id
