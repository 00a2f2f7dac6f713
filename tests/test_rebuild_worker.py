"""
Tests for the graph rebuild worker and its retry queue.
"""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from regtruth.core.config import Settings
from regtruth.core.models import AlertSeverity, AuditAction, GraphStatus, RuleStatus
from regtruth.graph.edge_builder import rebuild_edges_for_rule
from regtruth.graph.rebuild_worker import (
    JOB_DONE,
    JOB_EXHAUSTED,
    JOB_PENDING,
    GraphRebuildWorker,
    backoff_delay,
)
from regtruth.lifecycle.service import RuleLifecycleService
from regtruth.storage.repositories import RebuildJobRepository, RuleRepository

LATER = datetime.now(timezone.utc) + timedelta(days=1)


def failing_rebuild(rule_id, settings):
    raise RuntimeError("database is locked")


class FlakyRebuild:
    """Fails a set number of times, then delegates to the real rebuild."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, rule_id, settings):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")
        return rebuild_edges_for_rule(rule_id, settings)


@pytest.fixture
def settings():
    return Settings(graph_retry_max_attempts=3, graph_retry_base_delay_seconds=10)


@pytest.fixture
def make_worker(alerts, audit, settings):
    def _make(rebuild=rebuild_edges_for_rule):
        return GraphRebuildWorker(alerts=alerts, audit=audit, settings=settings, rebuild=rebuild)

    return _make


def _graph_status(rule):
    return RuleRepository().get_rule(rule.id).graph_status


def _job(rule):
    return RebuildJobRepository().get_active_job(rule.id)


class TestBackoff:
    def test_doubles_each_attempt(self):
        assert [backoff_delay(n, 30, 3600) for n in (1, 2, 3, 4)] == [30, 60, 120, 240]

    def test_capped(self):
        assert backoff_delay(12, 30, 3600) == 3600


class SlowRebuild:
    """Records calls and takes a while to finish."""

    def __init__(self, seconds=0.5):
        self.seconds = seconds
        self.calls = []

    def __call__(self, rule_id, settings):
        self.calls.append(rule_id)
        time.sleep(self.seconds)
        return rebuild_edges_for_rule(rule_id, settings)


class TestOnPublished:
    """Test the post-publish hook."""

    def test_publish_only_queues_rebuild(self, make_rule, make_worker, lifecycle):
        rule = make_rule(status=RuleStatus.APPROVED)
        rebuild = SlowRebuild()
        worker = make_worker(rebuild)
        publisher = RuleLifecycleService(audit=lifecycle.audit, post_publish=worker.on_published)

        result = publisher.publish([rule.id], "ana@example.com")

        assert result.success
        assert rebuild.calls == []
        assert _graph_status(rule) == GraphStatus.PENDING
        assert _job(rule).status == JOB_PENDING
        assert _job(rule).attempts == 0

        summary = worker.run_pending()

        assert summary.succeeded == 1
        assert rebuild.calls == [rule.id]
        assert _graph_status(rule) == GraphStatus.CURRENT
        assert _job(rule) is None

    def test_hook_returns_before_rebuild(self, make_rule, make_worker):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        rebuild = SlowRebuild(seconds=2)

        started = time.monotonic()
        jobs = make_worker(rebuild).on_published([rule.id])

        assert time.monotonic() - started < 1
        assert [job.rule_id for job in jobs] == [rule.id]
        assert rebuild.calls == []

    def test_queued_failure_marks_stale_and_alerts(self, make_rule, make_worker, alerts):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        worker = make_worker(failing_rebuild)
        worker.on_published([rule.id])

        summary = worker.run_pending()

        assert summary.retried == 1
        assert _graph_status(rule) == GraphStatus.STALE
        assert alerts.alerts[0]["alert_type"] == "GRAPH_REBUILD_FAILED"
        assert _job(rule).attempts == 1

    def test_rule_stays_published_when_graph_fails(self, make_rule, make_worker, lifecycle):
        rule = make_rule(status=RuleStatus.APPROVED)
        publisher = RuleLifecycleService(
            audit=lifecycle.audit, post_publish=make_worker(failing_rebuild).on_published
        )

        result = publisher.publish([rule.id], "ana@example.com")
        make_worker(failing_rebuild).run_pending()

        assert result.success
        stored = RuleRepository().get_rule(rule.id)
        assert stored.status == RuleStatus.PUBLISHED
        assert stored.graph_status == GraphStatus.STALE


class TestRebuildNow:
    """Test immediate rebuilds."""

    def test_success_marks_current(self, make_rule, make_worker):
        rule = make_rule(status=RuleStatus.PUBLISHED)

        outcome = make_worker().rebuild_now([rule.id])[0]

        assert outcome.success
        assert _graph_status(rule) == GraphStatus.CURRENT
        assert _job(rule) is None

    def test_failure_marks_stale_and_queues_retry(self, make_rule, make_worker, alerts, audit):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        before = datetime.now(timezone.utc)

        outcome = make_worker(failing_rebuild).rebuild_now([rule.id])[0]

        assert not outcome.success
        assert outcome.retryable
        assert _graph_status(rule) == GraphStatus.STALE
        assert alerts.alerts[0]["severity"] == AlertSeverity.WARNING.value
        assert alerts.alerts[0]["alert_type"] == "GRAPH_REBUILD_FAILED"
        assert audit.of(AuditAction.GRAPH_REBUILD_FAILED.value)[0]["metadata"]["attempt"] == 1

        job = _job(rule)
        assert job.attempts == 1
        assert job.last_error == "database is locked"
        assert datetime.fromisoformat(job.next_attempt_at) >= before + timedelta(seconds=10)

    def test_missing_rule_not_retried(self, make_worker, alerts):
        outcome = make_worker().rebuild_now(["missing"])[0]

        assert not outcome.success
        assert not outcome.retryable
        assert alerts.alerts == []
        assert RebuildJobRepository().get_active_job("missing") is None

    def test_rejected_edges_audited(self, make_rule, make_worker, audit):
        a = make_rule(concept_slug="concept-a", status=RuleStatus.PUBLISHED,
                      applies_when=json.dumps({"op": "true", "depends_on": "concept-b"}))
        b = make_rule(concept_slug="concept-b", status=RuleStatus.PUBLISHED,
                      applies_when=json.dumps({"op": "true", "depends_on": "concept-a"}))
        worker = make_worker()

        worker.rebuild_now([a.id, b.id])

        rejected = audit.of(AuditAction.GRAPH_EDGE_REJECTED.value)
        assert len(rejected) == 1
        assert rejected[0]["entity_id"] == b.id
        assert rejected[0]["metadata"]["reason"] == "cycle"


class TestRetryQueue:
    """Test draining of queued rebuilds."""

    def test_not_due_jobs_wait(self, make_rule, make_worker):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        worker = make_worker(failing_rebuild)
        worker.rebuild_now([rule.id])

        assert worker.run_pending(now=datetime.now(timezone.utc)).processed == 0

    def test_retry_succeeds(self, make_rule, make_worker):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        worker = make_worker(FlakyRebuild(failures=1))
        worker.rebuild_now([rule.id])
        job_id = _job(rule).id

        summary = worker.run_pending(now=LATER)

        assert summary.succeeded == 1
        assert RebuildJobRepository().get_job(job_id).status == JOB_DONE
        assert _graph_status(rule) == GraphStatus.CURRENT

    def test_retry_failure_backs_off(self, make_rule, make_worker):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        worker = make_worker(failing_rebuild)
        worker.rebuild_now([rule.id])

        summary = worker.run_pending(now=LATER)

        assert summary.retried == 1
        job = _job(rule)
        assert job.status == JOB_PENDING
        assert job.attempts == 2
        assert datetime.fromisoformat(job.next_attempt_at) == LATER + timedelta(seconds=20)

    def test_exhaustion_raises_critical_alert(self, make_rule, make_worker, alerts):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        worker = make_worker(failing_rebuild)
        worker.rebuild_now([rule.id])
        job_id = _job(rule).id

        worker.run_pending(now=LATER)
        summary = worker.run_pending(now=LATER + timedelta(days=1))

        assert summary.exhausted == 1
        job = RebuildJobRepository().get_job(job_id)
        assert job.status == JOB_EXHAUSTED
        assert job.attempts == 3
        critical = [a for a in alerts.alerts if a["severity"] == AlertSeverity.CRITICAL.value]
        assert critical[0]["alert_type"] == "GRAPH_REBUILD_EXHAUSTED"
        assert _graph_status(rule) == GraphStatus.STALE

    def test_enqueue_deduplicates(self, make_rule, make_worker):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        worker = make_worker()

        first = worker.enqueue(rule.id)
        second = worker.enqueue(rule.id)

        assert first.id == second.id


class TestSweep:
    """Test re-queueing of rules stuck without a current graph."""

    def test_sweep_queues_stuck_rules(self, make_rule, make_worker):
        stuck = make_rule(status=RuleStatus.PUBLISHED)
        current = make_rule(concept_slug="pdv-reduced-rate", status=RuleStatus.PUBLISHED)
        RuleRepository().set_graph_status(stuck.id, GraphStatus.PENDING)
        RuleRepository().set_graph_status(current.id, GraphStatus.CURRENT)
        worker = make_worker()

        assert worker.sweep_stale(now=datetime.now(timezone.utc)) == 0
        assert worker.sweep_stale(now=LATER) == 1
        assert worker.sweep_stale(now=LATER) == 0
        assert _job(current) is None

        worker.run_pending(now=LATER)
        assert _graph_status(stuck) == GraphStatus.CURRENT
