"""Pytest fixtures for test suite."""

import tempfile
from pathlib import Path
from typing import Any, Callable

import pytest

from regtruth.core.models import AuthorityLevel, RiskTier, RuleStatus
from regtruth.lifecycle.service import RuleLifecycleService
from regtruth.storage import init_db, reset_engine, set_db_path
from regtruth.storage.records import RuleRecord, SourcePointerRecord, now_iso
from regtruth.storage.repositories import EvidenceRepository, RuleRepository

EVIDENCE_TEXT = (
    "Article 38. Value added tax is charged at the standard rate of 25% "
    "on the taxable amount of every supply of goods and services."
)
DEFAULT_QUOTE = "charged at the standard rate of 25%"


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(autouse=True)
def temp_database():
    """Use a temporary database for each test."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        temp_path = Path(f.name)

    set_db_path(temp_path)
    init_db()
    yield temp_path

    reset_engine()
    try:
        temp_path.unlink()
    except OSError:
        pass


# =============================================================================
# Collaborator fakes
# =============================================================================


class RecordingAuditSink:
    """Audit sink that keeps events in memory."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    def record(self, action, entity_type, entity_id, metadata=None) -> None:
        self.events.append({
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "metadata": metadata or {},
        })

    @property
    def actions(self) -> list[str]:
        return [e["action"] for e in self.events]

    def of(self, action: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["action"] == action]


class RecordingReviewQueue:
    def __init__(self):
        self.requests: list[dict[str, Any]] = []

    def request_review(self, entity_type, entity_id, reason, priority, context=None) -> str:
        ticket_id = f"ticket-{len(self.requests) + 1}"
        self.requests.append({
            "ticket_id": ticket_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "reason": reason,
            "priority": priority,
            "context": context or {},
        })
        return ticket_id


class RecordingAlertSink:
    def __init__(self):
        self.alerts: list[dict[str, Any]] = []

    def raise_alert(self, severity, alert_type, entity_id, message, details=None) -> None:
        self.alerts.append({
            "severity": severity,
            "alert_type": alert_type,
            "entity_id": entity_id,
            "message": message,
            "details": details or {},
        })


class FakeArbitrationClient:
    """Returns a canned payload, or raises, and counts calls.

    ``response`` may be a dict or a callable taking (claim_a, claim_b).
    """

    def __init__(self, response: Any = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    def arbitrate(self, claim_a: str, claim_b: str, conflict_type: str) -> dict[str, Any]:
        self.calls.append((claim_a, claim_b, conflict_type))
        if self.error is not None:
            raise self.error
        if callable(self.response):
            return self.response(claim_a, claim_b)
        return dict(self.response)


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def review_queue() -> RecordingReviewQueue:
    return RecordingReviewQueue()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def lifecycle(audit: RecordingAuditSink) -> RuleLifecycleService:
    """Lifecycle service with an in-memory audit sink and no graph hook."""
    return RuleLifecycleService(audit=audit)


# =============================================================================
# Data factories
# =============================================================================


@pytest.fixture
def make_evidence() -> Callable[..., Any]:
    """Store a piece of evidence; defaults to the VAT article text."""

    def _make(raw_content: str = EVIDENCE_TEXT, source_name: str = "Narodne novine",
              source_hierarchy: int | None = None):
        return EvidenceRepository().add_evidence(
            raw_content, source_name=source_name, source_hierarchy=source_hierarchy
        )

    return _make


@pytest.fixture
def make_rule(make_evidence) -> Callable[..., RuleRecord]:
    """Insert a rule directly, with one source pointer unless told otherwise.

    Rules created APPROVED or PUBLISHED get an approver so that tier gates pass.
    """

    def _make(
        concept_slug: str = "pdv-standard-rate",
        value: str = "25",
        status: RuleStatus = RuleStatus.DRAFT,
        risk_tier: RiskTier = RiskTier.T2,
        authority_level: AuthorityLevel = AuthorityLevel.LAW,
        effective_from: str = "2025-01-01",
        effective_until: str | None = None,
        confidence: float = 0.95,
        applies_when: str | None = None,
        quote: str | None = DEFAULT_QUOTE,
        evidence=None,
        source_hierarchy: int | None = None,
        approved_by: str | None = None,
    ) -> RuleRecord:
        if approved_by is None and status in (RuleStatus.APPROVED, RuleStatus.PUBLISHED):
            approved_by = "reviewer@example.com"
        rule = RuleRecord(
            concept_slug=concept_slug,
            value=value,
            status=status,
            risk_tier=risk_tier,
            authority_level=authority_level,
            effective_from=effective_from,
            effective_until=effective_until,
            confidence=confidence,
            applies_when=applies_when,
            approved_by=approved_by,
            approved_at=now_iso() if approved_by else None,
        )
        RuleRepository().create_rule(rule)
        if quote is not None:
            evidence = evidence or make_evidence(source_hierarchy=source_hierarchy)
            EvidenceRepository().add_pointer(rule.id, SourcePointerRecord(
                evidence_id=evidence.id, exact_quote=quote, extracted_value=value, confidence=0.9,
            ))
        return rule

    return _make
