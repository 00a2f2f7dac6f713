"""
Reviewer: routes a freshly ingested rule to auto-approval, conflict
resolution or a human.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, Field

from regtruth.core.config import Settings, get_settings
from regtruth.core.errors import InvalidTransitionError, ProvenanceError
from regtruth.core.interfaces import HumanReviewQueue, LoggingReviewQueue
from regtruth.core.models import (
    AuditAction,
    HumanReviewReason,
    ReviewPriority,
    RiskTier,
    RuleStatus,
)
from regtruth.lifecycle.service import AUTO_APPROVE_ACTOR, RuleLifecycleService
from regtruth.policy.auto_approval import (
    AutoApprovalAllowlist,
    AutoApprovalDecision,
    is_auto_approval_allowed,
)
from regtruth.review.conflict_detector import detect_structural_conflicts
from regtruth.storage.records import ConflictRecord, RuleRecord
from regtruth.storage.repositories import ConflictRepository

logger = logging.getLogger(__name__)

_SIBLING_STATUSES = (RuleStatus.PENDING_REVIEW, RuleStatus.APPROVED, RuleStatus.PUBLISHED)


class ReviewOutcome(str, Enum):
    AUTO_APPROVED = "auto_approved"
    NEEDS_HUMAN_REVIEW = "needs_human_review"
    CONFLICTED = "conflicted"


class ReviewResult(BaseModel):
    rule_id: str
    concept_slug: str
    outcome: ReviewOutcome
    conflict_ids: list[str] = Field(default_factory=list)
    review_reason: HumanReviewReason | None = None
    review_ticket_id: str | None = None
    decision: AutoApprovalDecision | None = None
    error: str | None = None


def human_review_reason(rule: RuleRecord, min_confidence: float) -> HumanReviewReason:
    if rule.risk_tier == RiskTier.T0:
        return HumanReviewReason.T0_RULE_APPROVAL
    if rule.risk_tier == RiskTier.T1:
        return HumanReviewReason.T1_RULE_APPROVAL
    if (rule.confidence or 0.0) < min_confidence:
        return HumanReviewReason.LOW_RULE_CONFIDENCE
    return HumanReviewReason.NOT_ALLOWLISTED


def approval_failure_reason(error_code: str | None) -> HumanReviewReason:
    if error_code == ProvenanceError.code:
        return HumanReviewReason.PROVENANCE_FAILED
    return HumanReviewReason.AUTO_APPROVAL_FAILED


def rule_review_priority(rule: RuleRecord) -> ReviewPriority:
    if rule.risk_tier == RiskTier.T0:
        return ReviewPriority.CRITICAL
    if rule.risk_tier == RiskTier.T1:
        return ReviewPriority.HIGH
    return ReviewPriority.NORMAL


class Reviewer:
    def __init__(
        self,
        lifecycle: RuleLifecycleService | None = None,
        review_queue: HumanReviewQueue | None = None,
        settings: Settings | None = None,
        allowlist: AutoApprovalAllowlist | None = None,
    ):
        self.settings = settings or get_settings()
        self.lifecycle = lifecycle or RuleLifecycleService(settings=self.settings)
        self.review_queue = review_queue or LoggingReviewQueue()
        self.allowlist = allowlist or self.lifecycle.allowlist
        self.conflicts = ConflictRepository()

    def review(self, rule_id: str, source_slug: str | None = None) -> ReviewResult:
        rule = self.lifecycle.get_rule(rule_id)

        if rule.status == RuleStatus.DRAFT:
            submitted = self.lifecycle.submit_for_review(rule_id)
            if not submitted.success:
                raise InvalidTransitionError(
                    rule.status.value, RuleStatus.PENDING_REVIEW.value,
                    rule_id=rule.id, concept_slug=rule.concept_slug,
                )
            rule = self.lifecycle.get_rule(rule_id)
        elif rule.status != RuleStatus.PENDING_REVIEW:
            raise InvalidTransitionError(
                rule.status.value, RuleStatus.PENDING_REVIEW.value,
                rule_id=rule.id, concept_slug=rule.concept_slug,
            )

        conflict_ids = self._open_conflicts(rule)
        if conflict_ids:
            logger.info(f"[Reviewer] {rule.concept_slug} ({rule.id}) has {len(conflict_ids)} open conflicts")
            return ReviewResult(
                rule_id=rule.id,
                concept_slug=rule.concept_slug,
                outcome=ReviewOutcome.CONFLICTED,
                conflict_ids=conflict_ids,
            )

        decision = is_auto_approval_allowed(
            source_slug=source_slug,
            concept_slug=rule.concept_slug,
            authority_level=rule.authority_level,
            risk_tier=rule.risk_tier,
            confidence=rule.confidence,
            allowlist=self.allowlist,
        )
        error = None
        reason = human_review_reason(rule, self.settings.rule_min_confidence)
        if decision.allowed:
            approved = self.lifecycle.approve(
                rule.id, AUTO_APPROVE_ACTOR, source_slug=source_slug, auto_approve=True
            )
            if approved.success:
                return ReviewResult(
                    rule_id=rule.id,
                    concept_slug=rule.concept_slug,
                    outcome=ReviewOutcome.AUTO_APPROVED,
                    decision=decision,
                )
            error = approved.error
            reason = approval_failure_reason(approved.error_code)
            logger.warning(f"[Reviewer] Auto-approval of {rule.concept_slug} failed: {error}")

        self.lifecycle.flag_for_human_review(rule.id, reason.value)
        ticket_id = self.review_queue.request_review(
            "rule", rule.id, reason.value, rule_review_priority(rule).value, {
                "concept_slug": rule.concept_slug,
                "risk_tier": rule.risk_tier.value,
                "decision": decision.reason,
                "error": error,
            },
        )
        return ReviewResult(
            rule_id=rule.id,
            concept_slug=rule.concept_slug,
            outcome=ReviewOutcome.NEEDS_HUMAN_REVIEW,
            review_reason=reason,
            review_ticket_id=ticket_id,
            decision=decision,
            error=error,
        )

    def _open_conflicts(self, rule: RuleRecord) -> list[str]:
        """Seed conflicts against live siblings; returns ids of the unresolved ones."""
        siblings = self.lifecycle.rules.get_by_concept(rule.concept_slug, statuses=_SIBLING_STATUSES)
        conflict_ids = []
        for seed in detect_structural_conflicts(rule, siblings):
            existing = self.conflicts.find_open_between(
                seed.existing_rule_id, seed.new_rule_id, seed.conflict_type.value
            )
            if existing is not None:
                conflict_ids.append(existing.id)
                continue
            conflict = self.conflicts.create_conflict(ConflictRecord(
                conflict_type=seed.conflict_type.value,
                item_a_id=seed.existing_rule_id,
                item_b_id=seed.new_rule_id,
                description=seed.reason,
            ))
            self.lifecycle.audit.record(AuditAction.CONFLICT_CREATED.value, "conflict", conflict.id, {
                "conflict_type": seed.conflict_type.value,
                "item_a_id": seed.existing_rule_id,
                "item_b_id": seed.new_rule_id,
                "concept_slug": rule.concept_slug,
            })
            conflict_ids.append(conflict.id)
        return conflict_ids
