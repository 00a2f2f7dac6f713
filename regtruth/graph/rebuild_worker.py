"""
Graph rebuild worker.

Publishing never waits on the graph. Newly published rules are only queued
after commit and rebuilt when the queue is drained; a failed rebuild marks
the rule STALE, raises an alert and is retried with exponential backoff.
Exhausting the retries raises a critical alert and leaves the job for a human.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from pydantic import BaseModel

from regtruth.core.config import Settings, get_settings
from regtruth.core.errors import NotFoundError
from regtruth.core.interfaces import AlertSink, AuditSink, LoggingAlertSink, LoggingAuditSink
from regtruth.core.models import AlertSeverity, AuditAction, GraphStatus
from regtruth.graph.edge_builder import EdgeBuildResult, rebuild_edges_for_rule
from regtruth.storage.records import GraphRebuildJobRecord
from regtruth.storage.repositories import RebuildJobRepository, RuleRepository

logger = logging.getLogger(__name__)

JOB_PENDING = "PENDING"
JOB_DONE = "DONE"
JOB_EXHAUSTED = "EXHAUSTED"


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Seconds to wait after the given failed attempt (1-based)."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


class RebuildOutcome(BaseModel):
    rule_id: str
    success: bool
    result: EdgeBuildResult | None = None
    error: str | None = None
    attempts: int = 1
    retryable: bool = True


class RetryRunResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    exhausted: int = 0


class GraphRebuildWorker:
    """Rebuilds graph edges for published rules and drains the retry queue.

    Args:
        alerts: Alert sink for failures and exhaustion
        audit: Audit sink for rejected edges and failed rebuilds
        settings: Retry and staleness settings
        rebuild: Edge rebuild function, replaceable in tests
    """

    def __init__(
        self,
        alerts: AlertSink | None = None,
        audit: AuditSink | None = None,
        settings: Settings | None = None,
        rebuild: Callable[..., EdgeBuildResult] = rebuild_edges_for_rule,
    ):
        self.alerts = alerts or LoggingAlertSink()
        self.audit = audit or LoggingAuditSink()
        self.settings = settings or get_settings()
        self._rebuild = rebuild
        self.rules = RuleRepository()
        self.jobs = RebuildJobRepository()

    # =========================================================================
    # Publish hook
    # =========================================================================

    def on_published(self, rule_ids: Iterable[str]) -> list[GraphRebuildJobRecord]:
        """Post-publish hook: queue each rule for rebuild and return at once.

        Graph status stays PENDING until ``run_pending`` processes the job.
        """
        jobs = [self.enqueue(rule_id) for rule_id in rule_ids]
        logger.info(f"[GraphWorker] Queued {len(jobs)} rules for rebuild")
        return jobs

    def rebuild_now(self, rule_ids: Iterable[str]) -> list[RebuildOutcome]:
        """Rebuild each rule immediately, queueing failures for retry."""
        outcomes = []
        for rule_id in rule_ids:
            outcome = self._attempt(rule_id, attempt=1)
            if not outcome.success and outcome.retryable:
                self._schedule_first_retry(rule_id, outcome.error)
            outcomes.append(outcome)
        return outcomes

    def enqueue(self, rule_id: str, delay_seconds: float = 0.0) -> GraphRebuildJobRecord:
        """Queue a rebuild unless one is already pending."""
        existing = self.jobs.get_active_job(rule_id)
        if existing is not None:
            return existing
        next_attempt = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        return self.jobs.create_job(GraphRebuildJobRecord(
            rule_id=rule_id, next_attempt_at=next_attempt.isoformat()
        ))

    # =========================================================================
    # Retry queue
    # =========================================================================

    def run_pending(self, now: datetime | None = None, limit: int = 50) -> RetryRunResult:
        """Process due jobs once; call periodically."""
        now = now or datetime.now(timezone.utc)
        summary = RetryRunResult()

        for job in self.jobs.get_due_jobs(now.isoformat(), limit):
            summary.processed += 1
            attempt = job.attempts + 1
            outcome = self._attempt(job.rule_id, attempt)

            if outcome.success:
                self.jobs.update_job(job.id, JOB_DONE, attempt)
                summary.succeeded += 1
            elif not outcome.retryable or attempt >= self.settings.graph_retry_max_attempts:
                self.jobs.update_job(job.id, JOB_EXHAUSTED, attempt, last_error=outcome.error)
                self._alert_exhausted(job.rule_id, attempt, outcome.error)
                summary.exhausted += 1
            else:
                delay = backoff_delay(
                    attempt,
                    self.settings.graph_retry_base_delay_seconds,
                    self.settings.graph_retry_max_delay_seconds,
                )
                self.jobs.update_job(
                    job.id, JOB_PENDING, attempt,
                    next_attempt_at=(now + timedelta(seconds=delay)).isoformat(),
                    last_error=outcome.error,
                )
                self._alert_failed(job.rule_id, delay, outcome.error)
                logger.info(f"[GraphWorker] Attempt {attempt} for {job.rule_id} failed; next in {delay:.0f}s")
                summary.retried += 1

        return summary

    def sweep_stale(self, now: datetime | None = None) -> int:
        """Queue rules whose graph has been PENDING or STALE for too long."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self.settings.graph_stale_after_minutes)
        queued = 0
        for rule in self.rules.get_graph_stuck(cutoff.isoformat()):
            if self.jobs.get_active_job(rule.id) is None:
                self.enqueue(rule.id)
                queued += 1
        if queued:
            logger.info(f"[GraphWorker] Sweep queued {queued} stale rules")
        return queued

    # =========================================================================
    # Internals
    # =========================================================================

    def _attempt(self, rule_id: str, attempt: int) -> RebuildOutcome:
        try:
            result = self._rebuild(rule_id, self.settings)
        except NotFoundError as e:
            logger.error(f"[GraphWorker] Rule {rule_id} disappeared before rebuild")
            return RebuildOutcome(
                rule_id=rule_id, success=False, error=e.message, attempts=attempt, retryable=False
            )
        except Exception as e:
            logger.warning(f"[GraphWorker] Rebuild of {rule_id} failed (attempt {attempt}): {e}")
            self.rules.set_graph_status(rule_id, GraphStatus.STALE)
            self.audit.record(AuditAction.GRAPH_REBUILD_FAILED.value, "rule", rule_id, {
                "attempt": attempt, "error": str(e),
            })
            return RebuildOutcome(rule_id=rule_id, success=False, error=str(e), attempts=attempt)

        for edge in result.rejected_edges:
            self.audit.record(AuditAction.GRAPH_EDGE_REJECTED.value, "rule", rule_id, {
                **edge, "reason": "cycle",
            })
        if result.live:
            self.rules.set_graph_status(rule_id, GraphStatus.CURRENT)
        return RebuildOutcome(rule_id=rule_id, success=True, result=result, attempts=attempt)

    def _schedule_first_retry(self, rule_id: str, error: str | None) -> None:
        delay = backoff_delay(
            1, self.settings.graph_retry_base_delay_seconds, self.settings.graph_retry_max_delay_seconds
        )
        self._alert_failed(rule_id, delay, error)
        job = self.enqueue(rule_id, delay_seconds=delay)
        self.jobs.update_job(job.id, JOB_PENDING, max(job.attempts, 1), last_error=error)

    def _alert_failed(self, rule_id: str, delay: float, error: str | None) -> None:
        self.alerts.raise_alert(
            AlertSeverity.WARNING.value, "GRAPH_REBUILD_FAILED", rule_id,
            f"Graph rebuild failed; retrying in {delay:.0f}s", {"error": error},
        )

    def _alert_exhausted(self, rule_id: str, attempts: int, error: str | None) -> None:
        logger.error(f"[GraphWorker] Rebuild of {rule_id} exhausted after {attempts} attempts")
        self.alerts.raise_alert(
            AlertSeverity.CRITICAL.value, "GRAPH_REBUILD_EXHAUSTED", rule_id,
            f"Graph rebuild gave up after {attempts} attempts; manual intervention required",
            {"attempts": attempts, "error": error},
        )
