"""
Tests for the rule lifecycle: transitions, approval gates, publish, revert and revocation.
"""

import pytest

from regtruth.core.errors import InvalidTransitionError
from regtruth.core.models import (
    AuditAction,
    AuthorityLevel,
    ConflictType,
    GraphStatus,
    RiskTier,
    RuleStatus,
)
from regtruth.lifecycle.service import (
    PointerProposal,
    RevocationReason,
    RuleLifecycleService,
    RuleProposal,
    is_human_actor,
)
from regtruth.lifecycle.transitions import assert_transition, is_transition_allowed
from regtruth.policy.auto_approval import AutoApprovalAllowlist
from regtruth.storage.records import ConflictRecord
from regtruth.storage.repositories import ConflictRepository, EvidenceRepository, RuleRepository

from conftest import DEFAULT_QUOTE


class TestTransitions:
    """Test the transition table."""

    @pytest.mark.parametrize("from_status,to_status", [
        (RuleStatus.DRAFT, RuleStatus.PENDING_REVIEW),
        (RuleStatus.PENDING_REVIEW, RuleStatus.APPROVED),
        (RuleStatus.PENDING_REVIEW, RuleStatus.REJECTED),
        (RuleStatus.APPROVED, RuleStatus.PUBLISHED),
        (RuleStatus.PUBLISHED, RuleStatus.DEPRECATED),
    ])
    def test_allowed(self, from_status, to_status):
        assert is_transition_allowed(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (RuleStatus.DRAFT, RuleStatus.PUBLISHED),
        (RuleStatus.DRAFT, RuleStatus.APPROVED),
        (RuleStatus.REJECTED, RuleStatus.PENDING_REVIEW),
        (RuleStatus.DEPRECATED, RuleStatus.PUBLISHED),
        (RuleStatus.PUBLISHED, RuleStatus.APPROVED),
    ])
    def test_refused(self, from_status, to_status):
        assert not is_transition_allowed(from_status, to_status)

    def test_rollback_transition_needs_bypass(self):
        assert is_transition_allowed(RuleStatus.PUBLISHED, RuleStatus.APPROVED, bypass=True)
        assert not is_transition_allowed(RuleStatus.DRAFT, RuleStatus.APPROVED, bypass=True)

    def test_assert_transition_names_rule(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            assert_transition(RuleStatus.DRAFT, RuleStatus.PUBLISHED, concept_slug="vat-rate")
        assert exc_info.value.concept_slug == "vat-rate"
        assert "DRAFT -> PUBLISHED" in exc_info.value.message

    @pytest.mark.parametrize("actor,human", [
        ("ana@example.com", True),
        ("system", False),
        ("system:auto-approve", False),
        ("agent:extractor", False),
        ("pipeline-nightly", False),
        ("", False),
        (None, False),
    ])
    def test_is_human_actor(self, actor, human):
        assert is_human_actor(actor) is human


class TestIngestion:
    """Test creating DRAFT rules from proposals."""

    def test_ingest_creates_draft_with_pointers(self, lifecycle, audit, make_evidence):
        evidence = make_evidence()
        proposal = RuleProposal(
            concept_slug="pdv-standard-rate",
            value="25",
            risk_tier=RiskTier.T2,
            authority_level=AuthorityLevel.LAW,
            effective_from="2025-01-01",
            confidence=0.95,
            applies_when={"op": "true"},
            pointers=[PointerProposal(evidence_id=evidence.id, exact_quote=DEFAULT_QUOTE)],
            exceptions=["pdv-reduced-rate"],
        )

        rule = lifecycle.ingest_proposal(proposal)

        stored = RuleRepository().get_rule(rule.id)
        assert stored.status == RuleStatus.DRAFT
        assert EvidenceRepository().count_pointers_for_rule(rule.id) == 1
        assert EvidenceRepository().get_claim_exceptions(rule.id)[0].overrides_to == "pdv-reduced-rate"
        assert audit.of(AuditAction.RULE_CREATED.value)[0]["metadata"]["pointer_count"] == 1

    def test_invalid_applies_when_rejected(self, lifecycle):
        proposal = RuleProposal(
            concept_slug="pdv-standard-rate",
            value="25",
            risk_tier=RiskTier.T2,
            authority_level=AuthorityLevel.LAW,
            effective_from="2025-01-01",
            applies_when={"op": "bogus"},
        )
        with pytest.raises(ValueError, match="pdv-standard-rate"):
            lifecycle.ingest_proposal(proposal)
        assert RuleRepository().count_rules() == 0

    def test_ingest_extraction(self, lifecycle, make_evidence):
        evidence = make_evidence()

        class Extractor:
            def extract(self, evidence_id):
                return [{
                    "concept_slug": "pdv-standard-rate",
                    "value": "25",
                    "risk_tier": "T2",
                    "authority_level": "LAW",
                    "effective_from": "2025-01-01",
                    "pointers": [{"evidence_id": evidence_id, "exact_quote": DEFAULT_QUOTE}],
                }]

        created = lifecycle.ingest_extraction(Extractor(), evidence.id)
        assert len(created) == 1


class TestApproval:
    """Test approval gates."""

    def test_human_approves_t2(self, lifecycle, audit, make_rule):
        rule = make_rule(status=RuleStatus.PENDING_REVIEW)

        result = lifecycle.approve(rule.id, "ana@example.com")

        assert result.success
        stored = RuleRepository().get_rule(rule.id)
        assert stored.status == RuleStatus.APPROVED
        assert stored.approved_by == "ana@example.com"
        assert AuditAction.RULE_APPROVED.value in audit.actions

    def test_approve_from_draft_is_invalid(self, lifecycle, make_rule):
        rule = make_rule()

        result = lifecycle.approve(rule.id, "ana@example.com")

        assert not result.success
        assert result.error_code == "invalid_transition"

    @pytest.mark.parametrize("tier", [RiskTier.T0, RiskTier.T1])
    def test_high_stakes_needs_human(self, lifecycle, audit, make_rule, tier):
        rule = make_rule(status=RuleStatus.PENDING_REVIEW, risk_tier=tier)

        result = lifecycle.approve(rule.id, "system:auto-approve")

        assert not result.success
        assert result.error_code == "tier_gate"
        assert RuleRepository().get_rule(rule.id).status == RuleStatus.PENDING_REVIEW
        assert AuditAction.RULE_APPROVAL_FAILED.value in audit.actions

    def test_t0_approved_by_human(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.PENDING_REVIEW, risk_tier=RiskTier.T0)
        assert lifecycle.approve(rule.id, "ana@example.com").success

    def test_auto_approval_rechecks_allowlist(self, make_rule, audit):
        empty = AutoApprovalAllowlist(version="empty", entries=())
        service = RuleLifecycleService(audit=audit, allowlist=empty)
        rule = make_rule(status=RuleStatus.PENDING_REVIEW)

        result = service.approve(rule.id, "system:auto-approve", source_slug="narodne-novine", auto_approve=True)

        assert not result.success
        assert result.error_code == "allowlist_denied"
        failed = audit.of(AuditAction.RULE_APPROVAL_FAILED.value)[0]
        assert failed["metadata"]["allowlist_version"] == "empty"

    def test_provenance_failure_leaves_rule_untouched(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.PENDING_REVIEW, quote="not in the evidence at all")

        result = lifecycle.approve(rule.id, "ana@example.com")

        assert not result.success
        assert result.error_code == "provenance_failed"
        assert result.concept_slug == rule.concept_slug
        assert "not in the evidence" in result.error
        assert RuleRepository().get_rule(rule.id).status == RuleStatus.PENDING_REVIEW

    def test_missing_rule(self, lifecycle):
        result = lifecycle.approve("nope", "ana@example.com")
        assert not result.success
        assert result.error_code == "not_found"

    def test_reject(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.PENDING_REVIEW)

        result = lifecycle.reject(rule.id, "ana@example.com", "wrong article")

        assert result.success
        assert RuleRepository().get_rule(rule.id).status == RuleStatus.REJECTED

    def test_review_queue_lists_flagged_rules(self, lifecycle, make_rule):
        flagged = make_rule(status=RuleStatus.PENDING_REVIEW)
        make_rule(status=RuleStatus.PENDING_REVIEW)
        lifecycle.flag_for_human_review(flagged.id, "NOT_ALLOWLISTED")

        assert [r.id for r in lifecycle.rules_requiring_human_review()] == [flagged.id]


class TestPublish:
    """Test all-or-nothing publishing."""

    def test_publish_batch(self, audit, make_rule):
        published_ids = []
        service = RuleLifecycleService(audit=audit, post_publish=published_ids.extend)
        rules = [make_rule(status=RuleStatus.APPROVED, value=str(v)) for v in (5, 13)]

        result = service.publish([r.id for r in rules], "ana@example.com")

        assert result.success
        assert result.published_count == 2
        for rule in rules:
            stored = RuleRepository().get_rule(rule.id)
            assert stored.status == RuleStatus.PUBLISHED
            assert stored.graph_status == GraphStatus.PENDING
        assert published_ids == [r.id for r in rules]
        assert len(audit.of(AuditAction.RULE_PUBLISHED.value)) == 2

    def test_one_bad_rule_aborts_batch(self, lifecycle, audit, make_rule):
        good = make_rule(status=RuleStatus.APPROVED)
        bad = make_rule(status=RuleStatus.APPROVED, concept_slug="pdv-no-source", quote=None)

        result = lifecycle.publish([good.id, bad.id], "ana@example.com")

        assert not result.success
        assert result.error_code == "missing_source_pointer"
        assert result.failed_concept_slug == "pdv-no-source"
        assert RuleRepository().get_rule(good.id).status == RuleStatus.APPROVED
        assert AuditAction.RULE_PUBLISH_FAILED.value in audit.actions

    def test_open_conflict_blocks_publish(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.APPROVED)
        other = make_rule(status=RuleStatus.PUBLISHED, value="13")
        ConflictRepository().create_conflict(ConflictRecord(
            conflict_type=ConflictType.VALUE_MISMATCH.value, item_a_id=other.id, item_b_id=rule.id,
        ))

        result = lifecycle.publish([rule.id], "ana@example.com")

        assert not result.success
        assert result.error_code == "open_conflict"

    def test_high_stakes_without_approver_blocked(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.APPROVED, risk_tier=RiskTier.T1, approved_by="")

        result = lifecycle.publish([rule.id], "ana@example.com")

        assert not result.success
        assert result.error_code == "tier_gate"

    def test_draft_cannot_be_published(self, lifecycle, make_rule):
        rule = make_rule()
        result = lifecycle.publish([rule.id], "ana@example.com")
        assert result.error_code == "invalid_transition"

    def test_empty_batch(self, lifecycle):
        assert not lifecycle.publish([], "ana@example.com").success

    def test_failing_graph_hook_does_not_undo_publish(self, audit, make_rule):
        def broken_hook(rule_ids):
            raise RuntimeError("graph down")

        service = RuleLifecycleService(audit=audit, post_publish=broken_hook)
        rule = make_rule(status=RuleStatus.APPROVED)

        assert service.publish([rule.id], "ana@example.com").success
        assert RuleRepository().get_rule(rule.id).status == RuleStatus.PUBLISHED

    def test_consumer_rules_only_published(self, lifecycle, make_rule):
        published = make_rule(status=RuleStatus.PUBLISHED)
        make_rule(status=RuleStatus.APPROVED)

        assert [r.id for r in lifecycle.get_consumer_rules()] == [published.id]


class TestRevertAndDeprecate:
    """Test moving rules out of PUBLISHED."""

    def test_revert_needs_bypass(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.PUBLISHED)

        results = lifecycle.revert_to_approved([rule.id], "ana@example.com", "mistake")

        assert not results[0].success
        assert RuleRepository().get_rule(rule.id).status == RuleStatus.PUBLISHED

    def test_revert_with_bypass(self, lifecycle, audit, make_rule):
        rule = make_rule(status=RuleStatus.PUBLISHED)

        results = lifecycle.revert_to_approved([rule.id], "ana@example.com", "mistake", bypass=True)

        assert results[0].success
        stored = RuleRepository().get_rule(rule.id)
        assert stored.status == RuleStatus.APPROVED
        assert stored.graph_status is None
        assert audit.of(AuditAction.RULE_REVERTED.value)[0]["metadata"]["success"] is True

    def test_deprecate_records_superseding_rule(self, lifecycle, make_rule):
        loser = make_rule(status=RuleStatus.PUBLISHED)

        result = lifecycle.deprecate(loser.id, superseded_by="winner-id", rationale="newer law")

        assert result.success
        stored = RuleRepository().get_rule(loser.id)
        assert stored.status == RuleStatus.DEPRECATED
        assert "winner-id" in stored.reviewer_notes


class TestRevocation:
    """Test the revocation overlay."""

    def test_revoke_published_rule(self, lifecycle, audit, make_rule):
        rule = make_rule(status=RuleStatus.PUBLISHED)

        result = lifecycle.revoke(rule.id, "ana@example.com", RevocationReason.COURT_RULING, "case 12/25")

        assert result.success
        assert result.previous_status == RuleStatus.PUBLISHED
        assert len(result.lineage.source_pointer_ids) == 1
        stored = RuleRepository().get_rule(rule.id)
        assert stored.status == RuleStatus.PUBLISHED
        assert stored.effective_status == RuleStatus.REVOKED
        assert stored.revoked_reason == "[COURT_RULING] case 12/25"
        assert lifecycle.get_consumer_rules() == []
        assert audit.of(AuditAction.RULE_REVOKED.value)[0]["metadata"]["previous_status"] == "PUBLISHED"

    def test_double_revocation_refused(self, lifecycle, audit, make_rule):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        lifecycle.revoke(rule.id, "ana@example.com", "OTHER")

        result = lifecycle.revoke(rule.id, "ana@example.com", "OTHER")

        assert not result.success
        assert result.error_code == "already_revoked"
        assert AuditAction.RULE_REVOCATION_FAILED.value in audit.actions

    def test_terminal_rule_cannot_be_revoked(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.REJECTED)
        assert lifecycle.revoke(rule.id, "ana@example.com", "OTHER").error_code == "already_revoked"

    def test_unknown_reason_rejected(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.PUBLISHED)
        with pytest.raises(ValueError):
            lifecycle.revoke(rule.id, "ana@example.com", "BECAUSE")

    def test_revoked_rule_cannot_be_approved(self, lifecycle, make_rule):
        rule = make_rule(status=RuleStatus.PENDING_REVIEW)
        lifecycle.revoke(rule.id, "ana@example.com", "DUPLICATE")

        result = lifecycle.approve(rule.id, "ana@example.com")

        assert not result.success
        assert result.error_code == "tier_gate"
