"""
Tests for the reviewer and structural conflict detection.
"""

import pytest

from regtruth.core.errors import InvalidTransitionError
from regtruth.core.models import (
    AuditAction,
    AuthorityLevel,
    ConflictType,
    HumanReviewReason,
    ReviewPriority,
    RiskTier,
    RuleStatus,
)
from regtruth.lifecycle.service import AUTO_APPROVE_ACTOR
from regtruth.review.conflict_detector import detect_structural_conflicts, windows_overlap
from regtruth.review.reviewer import ReviewOutcome, Reviewer
from regtruth.storage.repositories import ConflictRepository, RuleRepository

SOURCE = "narodne-novine"


@pytest.fixture
def reviewer(lifecycle, review_queue):
    return Reviewer(lifecycle=lifecycle, review_queue=review_queue)


class TestWindowsOverlap:
    def test_touching_windows_overlap(self):
        assert windows_overlap("2024-01-01", "2024-12-31", "2024-12-31", None)

    def test_disjoint_windows(self):
        assert not windows_overlap("2024-01-01", "2024-12-31", "2025-01-01", None)

    def test_open_ends_are_unbounded(self):
        assert windows_overlap(None, None, "1999-01-01", "1999-01-02")


class TestDetectStructuralConflicts:
    """Test conflict seeding against sibling rules."""

    def test_value_mismatch(self, make_rule):
        existing = make_rule(value="13")
        new = make_rule(value="25")

        seeds = detect_structural_conflicts(new, [existing, new])

        assert len(seeds) == 1
        assert seeds[0].conflict_type == ConflictType.VALUE_MISMATCH
        assert (seeds[0].existing_rule_id, seeds[0].new_rule_id) == (existing.id, new.id)

    def test_same_value_no_conflict(self, make_rule):
        assert detect_structural_conflicts(make_rule(), [make_rule()]) == []

    def test_stronger_authority_seeds_supersede(self, make_rule):
        existing = make_rule(authority_level=AuthorityLevel.GUIDANCE)
        new = make_rule(authority_level=AuthorityLevel.LAW)

        seeds = detect_structural_conflicts(new, [existing])

        assert [s.conflict_type for s in seeds] == [ConflictType.AUTHORITY_SUPERSEDE]

    def test_weaker_authority_does_not_supersede(self, make_rule):
        existing = make_rule(authority_level=AuthorityLevel.LAW)
        new = make_rule(authority_level=AuthorityLevel.PRACTICE)

        assert detect_structural_conflicts(new, [existing]) == []


class TestReviewer:
    """Test routing of new rules."""

    def test_allowlisted_rule_auto_approved(self, make_rule, reviewer, audit):
        rule = make_rule()

        result = reviewer.review(rule.id, source_slug=SOURCE)

        assert result.outcome == ReviewOutcome.AUTO_APPROVED
        assert result.decision.allowlist_version == "2026.10.1"
        stored = RuleRepository().get_rule(rule.id)
        assert stored.status == RuleStatus.APPROVED
        assert stored.approved_by == AUTO_APPROVE_ACTOR
        assert AuditAction.RULE_SUBMITTED.value in audit.actions
        assert audit.of(AuditAction.RULE_APPROVED.value)[0]["metadata"]["auto_approve"] is True

    def test_unlisted_source_needs_human(self, make_rule, reviewer, review_queue, lifecycle):
        rule = make_rule()

        result = reviewer.review(rule.id)

        assert result.outcome == ReviewOutcome.NEEDS_HUMAN_REVIEW
        assert result.review_reason == HumanReviewReason.NOT_ALLOWLISTED
        assert result.review_ticket_id == "ticket-1"
        assert review_queue.requests[0]["priority"] == ReviewPriority.NORMAL.value
        assert [r.id for r in lifecycle.rules_requiring_human_review()] == [rule.id]
        assert RuleRepository().get_rule(rule.id).status == RuleStatus.PENDING_REVIEW

    @pytest.mark.parametrize("tier,reason,priority", [
        (RiskTier.T0, HumanReviewReason.T0_RULE_APPROVAL, ReviewPriority.CRITICAL),
        (RiskTier.T1, HumanReviewReason.T1_RULE_APPROVAL, ReviewPriority.HIGH),
    ])
    def test_high_stakes_rules_go_to_humans(self, make_rule, reviewer, review_queue, tier, reason, priority):
        rule = make_rule(risk_tier=tier, confidence=0.99)

        result = reviewer.review(rule.id, source_slug=SOURCE)

        assert result.review_reason == reason
        assert review_queue.requests[0]["priority"] == priority.value

    def test_low_confidence_named(self, make_rule, reviewer):
        rule = make_rule(confidence=0.8)

        result = reviewer.review(rule.id, source_slug=SOURCE)

        assert result.review_reason == HumanReviewReason.LOW_RULE_CONFIDENCE

    def test_failed_auto_approval_falls_back_to_human(self, make_rule, reviewer, review_queue, audit):
        rule = make_rule(quote="a sentence that does not appear anywhere")

        result = reviewer.review(rule.id, source_slug=SOURCE)

        assert result.outcome == ReviewOutcome.NEEDS_HUMAN_REVIEW
        assert result.decision.allowed
        assert result.error
        assert result.review_reason == HumanReviewReason.PROVENANCE_FAILED
        assert review_queue.requests[0]["reason"] == "PROVENANCE_FAILED"
        assert AuditAction.RULE_APPROVAL_FAILED.value in audit.actions

    def test_other_approval_failure_named(self, make_rule, reviewer):
        rule = make_rule(status=RuleStatus.PENDING_REVIEW)
        RuleRepository().update_fields(rule.id, revoked_at="2025-06-01T00:00:00+00:00", revoked_reason="[OTHER]")

        result = reviewer.review(rule.id, source_slug=SOURCE)

        assert result.decision.allowed
        assert result.review_reason == HumanReviewReason.AUTO_APPROVAL_FAILED

    def test_conflicting_sibling_blocks_approval(self, make_rule, reviewer, audit):
        published = make_rule(value="13", status=RuleStatus.PUBLISHED)
        rule = make_rule(value="25")

        result = reviewer.review(rule.id, source_slug=SOURCE)

        assert result.outcome == ReviewOutcome.CONFLICTED
        conflict = ConflictRepository().get_conflict(result.conflict_ids[0])
        assert conflict.conflict_type == ConflictType.VALUE_MISMATCH.value
        assert (conflict.item_a_id, conflict.item_b_id) == (published.id, rule.id)
        assert RuleRepository().get_rule(rule.id).status == RuleStatus.PENDING_REVIEW
        assert len(audit.of(AuditAction.CONFLICT_CREATED.value)) == 1

    def test_second_review_reuses_open_conflict(self, make_rule, reviewer, audit):
        make_rule(value="13", status=RuleStatus.PUBLISHED)
        rule = make_rule(value="25")

        first = reviewer.review(rule.id, source_slug=SOURCE)
        second = reviewer.review(rule.id, source_slug=SOURCE)

        assert second.conflict_ids == first.conflict_ids
        assert len(audit.of(AuditAction.CONFLICT_CREATED.value)) == 1

    def test_draft_siblings_ignored(self, make_rule, reviewer):
        make_rule(value="13")
        rule = make_rule(value="25")

        assert reviewer.review(rule.id, source_slug=SOURCE).outcome == ReviewOutcome.AUTO_APPROVED

    def test_expired_sibling_does_not_conflict(self, make_rule, reviewer):
        make_rule(value="13", status=RuleStatus.PUBLISHED,
                  effective_from="2020-01-01", effective_until="2024-12-31")
        rule = make_rule(value="25", effective_from="2025-01-01")

        assert reviewer.review(rule.id, source_slug=SOURCE).outcome == ReviewOutcome.AUTO_APPROVED

    def test_approved_rule_cannot_be_reviewed(self, make_rule, reviewer):
        rule = make_rule(status=RuleStatus.APPROVED)

        with pytest.raises(InvalidTransitionError):
            reviewer.review(rule.id)
