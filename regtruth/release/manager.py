"""
Release and rollback manager.

A release publishes a batch of APPROVED rules as one versioned bundle. The
gates, the status flip and the release row are written in one serializable
transaction, so a batch is either fully released or not at all. Only the
most recent release can be rolled back.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from regtruth.core.config import Settings, get_settings
from regtruth.core.errors import (
    NotFoundError,
    RegTruthError,
    RollbackNotAllowedError,
    TransientError,
)
from regtruth.core.interfaces import AuditSink
from regtruth.core.models import AuditAction, RuleStatus, RuleStatusResult
from regtruth.lifecycle.service import RuleLifecycleService
from regtruth.release.content_hash import compute_release_hash
from regtruth.release.gates import check_release_gates
from regtruth.release.versioning import compute_next_version
from regtruth.storage.database import transaction
from regtruth.storage.records import ReleaseRecord, RuleRecord
from regtruth.storage.repositories import (
    ConflictRepository,
    EvidenceRepository,
    ReleaseRepository,
    RuleRepository,
)

logger = logging.getLogger(__name__)


class ReleaseResult(BaseModel):
    success: bool
    release_id: str | None = None
    version: str | None = None
    release_type: str | None = None
    content_hash: str | None = None
    rule_count: int = 0
    audit_counts: dict[str, int] = Field(default_factory=dict)
    suggested_version: str | None = None
    version_overridden: bool = False
    results: list[RuleStatusResult] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    failed_concept_slug: str | None = None


class RollbackValidation(BaseModel):
    valid: bool
    release_id: str
    version: str | None = None
    rules_to_revert: list[str] = Field(default_factory=list)
    rules_to_keep: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class RollbackResult(BaseModel):
    success: bool
    release_id: str
    version: str | None = None
    dry_run: bool = False
    reverted_rule_ids: list[str] = Field(default_factory=list)
    kept_rule_ids: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    error_code: str | None = None


def count_tiers(rules: Iterable[RuleRecord]) -> dict[str, int]:
    counts = Counter(rule.risk_tier.value.lower() for rule in rules)
    audit_counts = {tier: counts.get(tier, 0) for tier in ("t0", "t1", "t2", "t3")}
    audit_counts["total"] = sum(audit_counts.values())
    return audit_counts


class ReleaseManager:
    def __init__(
        self,
        lifecycle: RuleLifecycleService | None = None,
        audit: AuditSink | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.lifecycle = lifecycle or RuleLifecycleService(audit=audit, settings=self.settings)
        self.audit = audit or self.lifecycle.audit
        self.releases = ReleaseRepository()

    # =========================================================================
    # Queries
    # =========================================================================

    def list_releases(self) -> list[ReleaseRecord]:
        return self.releases.list_releases()

    def get_release(self, release_id: str) -> ReleaseRecord:
        release = self.releases.get_release(release_id)
        if release is None:
            raise NotFoundError("Release", release_id)
        return release

    # =========================================================================
    # Release
    # =========================================================================

    def create_release(
        self,
        rule_ids: Iterable[str],
        actor: str,
        suggested_version: str | None = None,
        notes: str | None = None,
    ) -> ReleaseResult:
        """Publish a batch of APPROVED rules as a new release.

        The version is always computed from the batch's risk tiers; a
        disagreeing ``suggested_version`` is recorded and overridden.
        """
        ids = list(dict.fromkeys(rule_ids))
        if not ids:
            return ReleaseResult(success=False, error="No rules to release")

        try:
            self.lifecycle.validate_for_publish(ids)
            with transaction(self.settings.transaction_timeout_ms) as conn:
                rule_repo = RuleRepository(conn)
                rules = [RuleLifecycleService._require_rule(rule_repo, rule_id) for rule_id in ids]
                check_release_gates(rules, EvidenceRepository(conn), ConflictRepository(conn))
                published = self.lifecycle.publish_within(conn, ids)

                releases = ReleaseRepository(conn)
                latest = releases.get_latest()
                bump = compute_next_version(
                    latest.version if latest else None,
                    [rule.risk_tier for rule in rules],
                    suggested_version,
                )
                release = releases.create_release(ReleaseRecord(
                    version=bump.version,
                    release_type=bump.release_type,
                    content_hash=compute_release_hash(rules),
                    rule_count=len(rules),
                    audit_counts=count_tiers(rules),
                    released_by=actor,
                    notes=notes,
                    rule_ids=ids,
                ))
        except RegTruthError as e:
            return self._release_failed(ids, actor, suggested_version, e)
        except SQLAlchemyError as e:
            error = TransientError(f"Release transaction failed: {e}")
            self._release_failed(ids, actor, suggested_version, error)
            raise error from e

        self.lifecycle.after_publish(published, actor, source=f"release:{release.version}")
        self.audit.record(AuditAction.RELEASE_CREATED.value, "release", release.id, {
            "actor": actor,
            "version": release.version,
            "release_type": release.release_type,
            "content_hash": release.content_hash,
            "rule_ids": ids,
            "audit_counts": release.audit_counts,
            "suggested_version": suggested_version,
            "version_overridden": bump.overridden,
        })
        logger.info(f"[Release] {release.version} ({release.release_type}) with {len(ids)} rules by {actor}")
        return ReleaseResult(
            success=True,
            release_id=release.id,
            version=release.version,
            release_type=release.release_type,
            content_hash=release.content_hash,
            rule_count=release.rule_count,
            audit_counts=release.audit_counts,
            suggested_version=suggested_version,
            version_overridden=bump.overridden,
            results=published,
        )

    def _release_failed(
        self,
        ids: list[str],
        actor: str,
        suggested_version: str | None,
        error: RegTruthError,
    ) -> ReleaseResult:
        logger.warning(f"[Release] Release of {len(ids)} rules aborted: {error.message}")
        self.audit.record(AuditAction.RELEASE_FAILED.value, "rule_batch", ",".join(ids), {
            "actor": actor,
            "rule_ids": ids,
            "suggested_version": suggested_version,
            "error": error.to_dict(),
        })
        return ReleaseResult(
            success=False,
            suggested_version=suggested_version,
            error=error.message,
            error_code=error.code,
            failed_concept_slug=error.concept_slug,
        )

    # =========================================================================
    # Rollback
    # =========================================================================

    def validate_rollback(self, release_id: str) -> RollbackValidation:
        return self._plan_rollback(ReleaseRepository(), RuleRepository(), release_id)

    @staticmethod
    def _plan_rollback(
        releases: ReleaseRepository,
        rules: RuleRepository,
        release_id: str,
    ) -> RollbackValidation:
        release = releases.get_release(release_id)
        if release is None:
            raise NotFoundError("Release", release_id)

        plan = RollbackValidation(valid=False, release_id=release.id, version=release.version)
        latest = releases.get_latest()
        if latest is None or latest.id != release.id:
            plan.errors.append(
                f"Only the most recent release ({latest.version if latest else 'none'}) "
                f"can be rolled back, not {release.version}"
            )

        previous = releases.get_previous(release)
        previous_ids = set(previous.rule_ids) if previous else set()
        for rule_id in release.rule_ids:
            rule = rules.get_rule(rule_id)
            if rule is None or rule.status != RuleStatus.PUBLISHED:
                status = rule.status.value if rule else "missing"
                plan.warnings.append(f"Rule {rule_id} is {status}, skipping")
                continue
            if rule_id in previous_ids:
                plan.rules_to_keep.append(rule_id)
            else:
                plan.rules_to_revert.append(rule_id)

        if not plan.rules_to_revert and not plan.rules_to_keep:
            plan.errors.append("No rules in PUBLISHED state to rollback")

        plan.valid = not plan.errors
        return plan

    def rollback_release(
        self,
        release_id: str,
        actor: str,
        dry_run: bool = False,
        reason: str = "release rollback",
    ) -> RollbackResult:
        """Roll back the most recent release.

        Rules first introduced by this release revert to APPROVED and are
        disconnected from it; rules also in the preceding release stay
        PUBLISHED. ``dry_run`` reports the same outcome without writing.
        """
        if dry_run:
            try:
                plan = self.validate_rollback(release_id)
            except RegTruthError as e:
                return RollbackResult(
                    success=False, release_id=release_id, dry_run=True,
                    error=e.message, error_code=e.code,
                )
            return RollbackResult(
                success=plan.valid,
                release_id=release_id,
                version=plan.version,
                dry_run=True,
                reverted_rule_ids=plan.rules_to_revert,
                kept_rule_ids=plan.rules_to_keep,
                warnings=plan.warnings,
                error="; ".join(plan.errors) or None,
                error_code=RollbackNotAllowedError.code if plan.errors else None,
            )

        try:
            with transaction(self.settings.transaction_timeout_ms) as conn:
                releases = ReleaseRepository(conn)
                rule_repo = RuleRepository(conn)
                plan = self._plan_rollback(releases, rule_repo, release_id)
                if not plan.valid:
                    raise RollbackNotAllowedError(
                        "; ".join(plan.errors), details=plan.model_dump()
                    )
                reverted = RuleLifecycleService.revert_within(
                    rule_repo, plan.rules_to_revert, bypass=True
                )
                releases.disconnect_rules(release_id, plan.rules_to_revert)
        except RegTruthError as e:
            logger.warning(f"[Release] Rollback of {release_id} refused: {e.message}")
            self.audit.record(AuditAction.RELEASE_ROLLBACK_FAILED.value, "release", release_id, {
                "actor": actor, "reason": reason, "error": e.to_dict(),
            })
            return RollbackResult(
                success=False, release_id=release_id, error=e.message, error_code=e.code,
            )

        for result in reverted:
            self.audit.record(AuditAction.RULE_REVERTED.value, "rule", result.rule_id, {
                "actor": actor, "reason": reason, "success": True,
                "concept_slug": result.concept_slug, "release_id": release_id,
            })
        self.audit.record(AuditAction.RELEASE_ROLLED_BACK.value, "release", release_id, {
            "actor": actor,
            "reason": reason,
            "version": plan.version,
            "reverted_rule_ids": plan.rules_to_revert,
            "kept_rule_ids": plan.rules_to_keep,
            "warnings": plan.warnings,
        })
        logger.info(
            f"[Release] Rolled back {plan.version}: {len(plan.rules_to_revert)} reverted, "
            f"{len(plan.rules_to_keep)} kept"
        )
        return RollbackResult(
            success=True,
            release_id=release_id,
            version=plan.version,
            reverted_rule_ids=plan.rules_to_revert,
            kept_rule_ids=plan.rules_to_keep,
            warnings=plan.warnings,
        )
