"""
Tests for versioning, content hashing, release gates and rollback.
"""

import pytest

from regtruth.core.errors import NotFoundError
from regtruth.core.models import AuditAction, AuthorityLevel, ConflictType, RiskTier, RuleStatus
from regtruth.release.content_hash import compute_release_hash
from regtruth.release.manager import ReleaseManager
from regtruth.release.versioning import compute_next_version, parse_version, release_type_for
from regtruth.storage.records import ConflictRecord, ReleaseRecord, RuleRecord, SourcePointerRecord
from regtruth.storage.repositories import (
    ConflictRepository,
    EvidenceRepository,
    ReleaseRepository,
    RuleRepository,
)

from conftest import DEFAULT_QUOTE


@pytest.fixture
def manager(lifecycle, audit):
    return ReleaseManager(lifecycle=lifecycle, audit=audit)


def _status(rule):
    return RuleRepository().get_rule(rule.id).status


def _snapshot_rule(**overrides):
    fields = {
        "concept_slug": "pdv-standard-rate",
        "value": "25",
        "risk_tier": RiskTier.T2,
        "authority_level": AuthorityLevel.LAW,
        "effective_from": "2025-01-01",
    }
    fields.update(overrides)
    return RuleRecord(**fields)


# =============================================================================
# Versioning and hashing
# =============================================================================


class TestVersioning:
    """Test tier-driven semantic versioning."""

    @pytest.mark.parametrize("previous,tiers,expected", [
        (None, [RiskTier.T3], "0.0.1"),
        ("1.2.3", ["T2", "T3"], "1.2.4"),
        ("1.2.3", ["T1", "T3"], "1.3.0"),
        ("1.2.3", ["T0", "T1"], "2.0.0"),
    ])
    def test_bump(self, previous, tiers, expected):
        assert compute_next_version(previous, tiers).version == expected

    def test_release_type(self):
        assert release_type_for(["T3", "T0"]) == "major"
        assert release_type_for([]) == "patch"

    def test_disagreeing_suggestion_is_overridden(self):
        bump = compute_next_version("1.0.0", ["T2"], suggested_version="2.0.0")
        assert bump.version == "1.0.1"
        assert bump.overridden

    def test_matching_suggestion_kept(self):
        bump = compute_next_version("1.0.0", ["T2"], suggested_version="v1.0.1")
        assert not bump.overridden

    @pytest.mark.parametrize("bad", ["1.0", "one.two.three", "1.0.0-rc1"])
    def test_parse_rejects_non_semver(self, bad):
        with pytest.raises(ValueError):
            parse_version(bad)


class TestContentHash:
    """Test that the hash follows rule meaning only."""

    def test_order_independent(self):
        a = _snapshot_rule()
        b = _snapshot_rule(concept_slug="pdv-reduced-rate", value="13")
        assert compute_release_hash([a, b]) == compute_release_hash([b, a])

    def test_applies_when_formatting_ignored(self):
        compact = _snapshot_rule(applies_when='{"op":"exists","field":"entity.vat_id"}')
        spaced = _snapshot_rule(applies_when='{ "field": "entity.vat_id", "op": "exists" }')
        assert compute_release_hash([compact]) == compute_release_hash([spaced])

    def test_timestamp_and_date_agree(self):
        assert compute_release_hash([_snapshot_rule(effective_from="2025-01-01T00:00:00+00:00")]) == \
            compute_release_hash([_snapshot_rule()])

    def test_value_change_alters_hash(self):
        assert compute_release_hash([_snapshot_rule()]) != compute_release_hash([_snapshot_rule(value="26")])

    def test_non_semantic_fields_ignored(self):
        assert compute_release_hash([_snapshot_rule(confidence=0.5, title="VAT")]) == \
            compute_release_hash([_snapshot_rule(confidence=0.99)])


# =============================================================================
# Release creation
# =============================================================================


class TestCreateRelease:
    """Test atomic release of approved rules."""

    def test_first_release(self, make_rule, manager, audit):
        rule = make_rule(status=RuleStatus.APPROVED)

        result = manager.create_release([rule.id], "ana@example.com", notes="Q1")

        assert result.success
        assert result.version == "0.0.1"
        assert result.release_type == "patch"
        assert result.audit_counts == {"t0": 0, "t1": 0, "t2": 1, "t3": 0, "total": 1}
        assert _status(rule) == RuleStatus.PUBLISHED

        stored = manager.get_release(result.release_id)
        assert stored.rule_ids == [rule.id]
        assert stored.content_hash == result.content_hash
        assert AuditAction.RELEASE_CREATED.value in audit.actions
        assert AuditAction.RULE_PUBLISHED.value in audit.actions

    def test_versions_follow_tiers(self, make_rule, manager):
        first = manager.create_release([make_rule(status=RuleStatus.APPROVED).id], "ana@example.com")
        second = manager.create_release(
            [make_rule(concept_slug="pdv-reduced-rate", status=RuleStatus.APPROVED, risk_tier=RiskTier.T1).id],
            "ana@example.com",
        )
        third = manager.create_release(
            [make_rule(concept_slug="pdv-zero-rate", status=RuleStatus.APPROVED, risk_tier=RiskTier.T0).id],
            "ana@example.com",
        )

        assert [first.version, second.version, third.version] == ["0.0.1", "0.1.0", "1.0.0"]
        assert [r.version for r in manager.list_releases()] == ["1.0.0", "0.1.0", "0.0.1"]

    def test_suggested_version_recorded(self, make_rule, manager):
        rule = make_rule(status=RuleStatus.APPROVED)

        result = manager.create_release([rule.id], "ana@example.com", suggested_version="3.0.0")

        assert result.version == "0.0.1"
        assert result.version_overridden
        assert result.suggested_version == "3.0.0"

    def test_single_source_guidance_refused(self, make_rule, manager, audit):
        rule = make_rule(status=RuleStatus.APPROVED, authority_level=AuthorityLevel.GUIDANCE)

        result = manager.create_release([rule.id], "ana@example.com")

        assert not result.success
        assert result.error_code == "evidence_strength"
        assert _status(rule) == RuleStatus.APPROVED
        assert manager.list_releases() == []
        assert AuditAction.RELEASE_FAILED.value in audit.actions

    def test_corroborated_guidance_accepted(self, make_rule, make_evidence, manager):
        rule = make_rule(status=RuleStatus.APPROVED, authority_level=AuthorityLevel.GUIDANCE)
        second_source = make_evidence(source_name="Porezna uprava")
        EvidenceRepository().add_pointer(rule.id, SourcePointerRecord(
            evidence_id=second_source.id, exact_quote=DEFAULT_QUOTE, extracted_value="25", confidence=0.9,
        ))

        assert manager.create_release([rule.id], "ana@example.com").success

    def test_open_conflict_blocks_release(self, make_rule, manager):
        rule = make_rule(status=RuleStatus.APPROVED)
        other = make_rule(value="13", status=RuleStatus.PUBLISHED)
        ConflictRepository().create_conflict(ConflictRecord(
            conflict_type=ConflictType.VALUE_MISMATCH.value, item_a_id=other.id, item_b_id=rule.id,
        ))

        result = manager.create_release([rule.id], "ana@example.com")

        assert result.error_code == "open_conflict"
        assert result.failed_concept_slug == "pdv-standard-rate"

    def test_one_bad_rule_aborts_batch(self, make_rule, manager):
        good = make_rule(status=RuleStatus.APPROVED)
        draft = make_rule(concept_slug="pdv-reduced-rate")

        result = manager.create_release([good.id, draft.id], "ana@example.com")

        assert not result.success
        assert result.error_code == "invalid_transition"
        assert _status(good) == RuleStatus.APPROVED

    def test_empty_batch(self, manager):
        assert not manager.create_release([], "ana@example.com").success

    def test_unknown_release(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_release("missing")


# =============================================================================
# Rollback
# =============================================================================


class TestRollback:
    """Test rollback of the most recent release."""

    @pytest.fixture
    def two_releases(self, make_rule, manager):
        a = make_rule(status=RuleStatus.APPROVED)
        b = make_rule(concept_slug="pdv-reduced-rate", value="13", status=RuleStatus.APPROVED)
        first = manager.create_release([a.id], "ana@example.com")
        second = manager.create_release([b.id], "ana@example.com")
        return a, b, first, second

    def test_rollback_latest(self, two_releases, manager, audit):
        a, b, _, second = two_releases

        result = manager.rollback_release(second.release_id, "ana@example.com")

        assert result.success
        assert result.reverted_rule_ids == [b.id]
        assert _status(b) == RuleStatus.APPROVED
        assert _status(a) == RuleStatus.PUBLISHED
        assert manager.get_release(second.release_id).rule_ids == []
        assert AuditAction.RELEASE_ROLLED_BACK.value in audit.actions
        assert audit.of(AuditAction.RULE_REVERTED.value)[0]["entity_id"] == b.id

    def test_only_latest_can_roll_back(self, two_releases, manager, audit):
        a, _, first, _ = two_releases

        result = manager.rollback_release(first.release_id, "ana@example.com")

        assert not result.success
        assert result.error_code == "rollback_not_allowed"
        assert "0.0.2" in result.error
        assert _status(a) == RuleStatus.PUBLISHED
        assert AuditAction.RELEASE_ROLLBACK_FAILED.value in audit.actions

    def test_dry_run_writes_nothing(self, two_releases, manager, audit):
        _, b, _, second = two_releases
        actions_before = list(audit.actions)

        result = manager.rollback_release(second.release_id, "ana@example.com", dry_run=True)

        assert result.success
        assert result.dry_run
        assert result.reverted_rule_ids == [b.id]
        assert _status(b) == RuleStatus.PUBLISHED
        assert audit.actions == actions_before

    def test_rules_in_previous_release_kept(self, make_rule, manager):
        shared = make_rule(status=RuleStatus.APPROVED)
        first = manager.create_release([shared.id], "ana@example.com")
        added = make_rule(concept_slug="pdv-reduced-rate", value="13", status=RuleStatus.PUBLISHED)
        latest = ReleaseRepository().create_release(ReleaseRecord(
            version="0.0.2", release_type="patch", content_hash="x", rule_count=2,
            rule_ids=[shared.id, added.id],
        ))

        plan = manager.validate_rollback(latest.id)
        result = manager.rollback_release(latest.id, "ana@example.com")

        assert plan.valid
        assert plan.rules_to_keep == [shared.id]
        assert result.reverted_rule_ids == [added.id]
        assert _status(shared) == RuleStatus.PUBLISHED
        assert manager.get_release(first.release_id).rule_ids == [shared.id]

    def test_second_rollback_has_nothing_to_do(self, two_releases, manager):
        _, _, _, second = two_releases
        manager.rollback_release(second.release_id, "ana@example.com")

        result = manager.rollback_release(second.release_id, "ana@example.com")

        assert not result.success
        assert "No rules in PUBLISHED state" in result.error

    def test_unknown_release_rollback(self, manager):
        result = manager.rollback_release("missing", "ana@example.com")
        assert result.error_code == "not_found"

        dry = manager.rollback_release("missing", "ana@example.com", dry_run=True)
        assert dry.error_code == "not_found"

    def test_semver_ordering_not_lexical(self):
        repo = ReleaseRepository()
        for version in ("0.9.0", "0.10.0", "0.2.0"):
            repo.create_release(ReleaseRecord(
                version=version, release_type="minor", content_hash=version, rule_count=0,
            ))

        assert repo.get_latest().version == "0.10.0"
