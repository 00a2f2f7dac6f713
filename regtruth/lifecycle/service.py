"""
Rule lifecycle service.

The only component that changes a rule's status. Every status write is
checked against the transition table, every gate failure names the rule's
concept slug, and every destructive operation emits an audit event on both
success and failure. Audit events are emitted after commit.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable, Iterable

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from regtruth.core.config import Settings, get_settings
from regtruth.core.errors import (
    AllowlistError,
    DuplicateRevocationError,
    NotFoundError,
    RegTruthError,
    TierGateError,
    TransientError,
)
from regtruth.core.interfaces import AuditSink, ExtractionClient, LoggingAuditSink
from regtruth.core.models import (
    AuditAction,
    AuthorityLevel,
    GraphStatus,
    PublishRulesResult,
    RiskTier,
    RuleStatus,
    RuleStatusResult,
)
from regtruth.dsl.applies_when import validate_applies_when
from regtruth.lifecycle.transitions import TERMINAL_STATUSES, assert_transition
from regtruth.policy.auto_approval import AutoApprovalAllowlist, is_auto_approval_allowed
from regtruth.provenance.validator import ProvenanceValidator
from regtruth.release.gates import check_no_open_conflicts, check_source_pointers, check_tier_approval
from regtruth.storage.database import transaction
from regtruth.storage.records import RuleRecord, SourcePointerRecord, now_iso
from regtruth.storage.repositories import (
    ConflictRepository,
    EdgeRepository,
    EvidenceRepository,
    RuleRepository,
)

logger = logging.getLogger(__name__)

AUTO_APPROVE_ACTOR = "system:auto-approve"
_SYSTEM_ACTOR_PREFIXES = ("system", "agent:", "pipeline")


def is_human_actor(actor: str | None) -> bool:
    """Pipeline and agent identities are not humans."""
    if not actor:
        return False
    return not actor.lower().startswith(_SYSTEM_ACTOR_PREFIXES)


class RevocationReason(str, Enum):
    SOURCE_WITHDRAWN = "SOURCE_WITHDRAWN"
    EXTRACTION_ERROR = "EXTRACTION_ERROR"
    LEGAL_CHANGE = "LEGAL_CHANGE"
    COURT_RULING = "COURT_RULING"
    DUPLICATE = "DUPLICATE"
    OTHER = "OTHER"


class RuleLineage(BaseModel):
    source_pointer_ids: list[str] = Field(default_factory=list)
    evidence_ids: list[str] = Field(default_factory=list)
    superseded_rule_ids: list[str] = Field(default_factory=list)


class RevocationResult(BaseModel):
    success: bool
    rule_id: str
    previous_status: RuleStatus | None = None
    lineage: RuleLineage = Field(default_factory=RuleLineage)
    error: str | None = None
    error_code: str | None = None


class PointerProposal(BaseModel):
    evidence_id: str
    exact_quote: str
    extracted_value: str | None = None
    confidence: float = 0.0


class RuleProposal(BaseModel):
    """Rule-shaped proposal produced by the extraction collaborator."""
    concept_slug: str
    value: str
    value_type: str = "text"
    risk_tier: RiskTier
    authority_level: AuthorityLevel
    effective_from: str
    effective_until: str | None = None
    confidence: float = 0.0
    title: str | None = None
    applies_when: dict[str, Any] | None = None
    pointers: list[PointerProposal] = Field(default_factory=list)
    exceptions: list[str] = Field(default_factory=list)  # concept slugs this rule overrides


class RuleLifecycleService:
    """Owns rule status transitions and their hard gates.

    Args:
        audit: Audit sink, defaults to logging
        settings: Settings, defaults to the cached application settings
        post_publish: Called with published rule ids after the publish commit
        allowlist: Auto-approval allowlist override
    """

    def __init__(
        self,
        audit: AuditSink | None = None,
        settings: Settings | None = None,
        post_publish: Callable[[list[str]], None] | None = None,
        allowlist: AutoApprovalAllowlist | None = None,
    ):
        self.audit = audit or LoggingAuditSink()
        self.settings = settings or get_settings()
        self.post_publish = post_publish
        self.allowlist = allowlist
        self.rules = RuleRepository()

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest_proposal(self, proposal: RuleProposal) -> RuleRecord:
        """Create a DRAFT rule with its source pointers and claim exceptions."""
        applies_when = None
        if proposal.applies_when is not None:
            errors = validate_applies_when(proposal.applies_when)
            if errors:
                raise ValueError(f"Rule {proposal.concept_slug}: {errors[0]}")
            applies_when = json.dumps(proposal.applies_when, sort_keys=True)

        rule = RuleRecord(
            concept_slug=proposal.concept_slug,
            title=proposal.title,
            value=proposal.value,
            value_type=proposal.value_type,
            applies_when=applies_when,
            risk_tier=proposal.risk_tier,
            authority_level=proposal.authority_level,
            effective_from=proposal.effective_from,
            effective_until=proposal.effective_until,
            confidence=proposal.confidence,
        )
        with transaction(self.settings.transaction_timeout_ms) as conn:
            RuleRepository(conn).create_rule(rule)
            evidence = EvidenceRepository(conn)
            for pointer in proposal.pointers:
                evidence.add_pointer(rule.id, SourcePointerRecord(
                    evidence_id=pointer.evidence_id,
                    exact_quote=pointer.exact_quote,
                    extracted_value=pointer.extracted_value,
                    confidence=pointer.confidence,
                ))
            for target in proposal.exceptions:
                evidence.add_claim_exception(rule.id, target)

        self.audit.record(AuditAction.RULE_CREATED.value, "rule", rule.id, {
            "concept_slug": rule.concept_slug,
            "risk_tier": rule.risk_tier.value,
            "pointer_count": len(proposal.pointers),
        })
        return rule

    def ingest_extraction(self, client: ExtractionClient, evidence_id: str) -> list[RuleRecord]:
        """Ingest every proposal the extractor returns for one evidence document."""
        created = []
        for raw in client.extract(evidence_id):
            proposal = RuleProposal.model_validate(raw)
            created.append(self.ingest_proposal(proposal))
        logger.info(f"[Lifecycle] Ingested {len(created)} proposals from evidence {evidence_id}")
        return created

    # =========================================================================
    # Queries
    # =========================================================================

    def get_rule(self, rule_id: str) -> RuleRecord:
        rule = self.rules.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("Rule", rule_id, rule_id=rule_id)
        return rule

    def rules_requiring_human_review(self) -> list[RuleRecord]:
        return self.rules.get_requiring_review()

    def get_consumer_rules(self, concept_slug: str | None = None) -> list[RuleRecord]:
        """Published, non-revoked rules. Graph data may still be PENDING."""
        return self.rules.get_published(concept_slug)

    # =========================================================================
    # Review transitions
    # =========================================================================

    def submit_for_review(self, rule_id: str, actor: str = "system") -> RuleStatusResult:
        return self._simple_transition(
            rule_id, RuleStatus.PENDING_REVIEW, actor, AuditAction.RULE_SUBMITTED
        )

    def flag_for_human_review(self, rule_id: str, reason: str) -> None:
        """Record why a PENDING_REVIEW rule needs a human."""
        self.rules.update_fields(rule_id, review_reason=reason)

    def reject(self, rule_id: str, actor: str, reason: str) -> RuleStatusResult:
        return self._simple_transition(
            rule_id, RuleStatus.REJECTED, actor, AuditAction.RULE_REJECTED,
            extra={"reviewer_notes": json.dumps({"rejected_reason": reason})},
            metadata={"reason": reason},
        )

    def approve(
        self,
        rule_id: str,
        actor: str,
        source_slug: str | None = None,
        auto_approve: bool = False,
    ) -> RuleStatusResult:
        """Approve a PENDING_REVIEW rule.

        In auto-approval mode the allowlist is consulted again here, whatever
        an earlier eligibility check concluded. T0/T1 rules need a human actor.
        Provenance is validated last; on failure nothing about the rule changes.
        """
        rule = self.rules.get_rule(rule_id)
        if rule is None:
            return _failure(NotFoundError("Rule", rule_id, rule_id=rule_id), rule_id)

        metadata: dict[str, Any] = {"actor": actor, "auto_approve": auto_approve}
        try:
            assert_transition(
                rule.status, RuleStatus.APPROVED,
                rule_id=rule.id, concept_slug=rule.concept_slug,
            )
            if rule.is_revoked:
                raise TierGateError(
                    f"Rule {rule.concept_slug} is revoked", rule_id=rule.id, concept_slug=rule.concept_slug
                )

            if auto_approve:
                decision = is_auto_approval_allowed(
                    source_slug=source_slug,
                    concept_slug=rule.concept_slug,
                    authority_level=rule.authority_level,
                    risk_tier=rule.risk_tier,
                    confidence=rule.confidence,
                    allowlist=self.allowlist,
                )
                metadata["allowlist_version"] = decision.allowlist_version
                if not decision.allowed:
                    raise AllowlistError(
                        f"Auto-approval denied for {rule.concept_slug}: {decision.reason}",
                        rule_id=rule.id, concept_slug=rule.concept_slug,
                        details=decision.model_dump(),
                    )
            if rule.risk_tier.is_high_stakes and (auto_approve or not is_human_actor(actor)):
                raise TierGateError(
                    f"{rule.risk_tier.value} rule {rule.concept_slug} requires approval by a human",
                    rule_id=rule.id, concept_slug=rule.concept_slug,
                )

            ProvenanceValidator(EvidenceRepository()).require_valid(rule)

            approved_at = now_iso()
            with transaction(self.settings.transaction_timeout_ms) as conn:
                repo = RuleRepository(conn)
                current = repo.get_rule(rule.id)
                assert_transition(
                    current.status, RuleStatus.APPROVED,
                    rule_id=rule.id, concept_slug=rule.concept_slug,
                )
                repo.set_status(
                    rule.id, RuleStatus.APPROVED,
                    approved_by=actor, approved_at=approved_at, review_reason=None,
                )
        except RegTruthError as e:
            logger.warning(f"[Lifecycle] Approval of {rule.concept_slug} ({rule.id}) failed: {e.message}")
            self.audit.record(AuditAction.RULE_APPROVAL_FAILED.value, "rule", rule.id, {
                **metadata, "concept_slug": rule.concept_slug, "error": e.to_dict(),
            })
            return _failure(e, rule.id, rule.concept_slug, rule.status)

        self.audit.record(AuditAction.RULE_APPROVED.value, "rule", rule.id, {
            **metadata, "concept_slug": rule.concept_slug, "risk_tier": rule.risk_tier.value,
        })
        logger.info(f"[Lifecycle] Approved {rule.concept_slug} ({rule.id}) by {actor}")
        return RuleStatusResult(
            success=True,
            rule_id=rule.id,
            concept_slug=rule.concept_slug,
            previous_status=rule.status,
            new_status=RuleStatus.APPROVED,
        )

    # =========================================================================
    # Publish
    # =========================================================================

    def publish(self, rule_ids: Iterable[str], actor: str, source: str = "manual") -> PublishRulesResult:
        """Publish a batch of APPROVED rules, all or nothing.

        Provenance is re-validated for every rule before the serializable
        transaction opens; the transaction re-checks status, pointers, open
        conflicts and tier approvals. Any failure leaves every rule untouched.
        Graph rebuild runs after commit and never undoes a publish.
        """
        ids = list(dict.fromkeys(rule_ids))
        if not ids:
            return PublishRulesResult(success=False, errors=["No rules to publish"])

        try:
            self.validate_for_publish(ids)
            with transaction(self.settings.transaction_timeout_ms) as conn:
                results = self.publish_within(conn, ids)
        except RegTruthError as e:
            return self._publish_failed(ids, actor, source, e)
        except SQLAlchemyError as e:
            error = TransientError(f"Publish transaction failed: {e}")
            self._publish_failed(ids, actor, source, error)
            raise error from e

        return self.after_publish(results, actor, source)

    def validate_for_publish(self, rule_ids: list[str]) -> list[RuleRecord]:
        """Gate and provenance checks ahead of the publish transaction."""
        rules = []
        for rule_id in rule_ids:
            rule = self._require_rule(self.rules, rule_id)
            self._check_publish_gates(rule, EvidenceRepository(), ConflictRepository())
            ProvenanceValidator(EvidenceRepository()).require_valid(rule)
            rules.append(rule)
        return rules

    def publish_within(self, conn, rule_ids: list[str]) -> list[RuleStatusResult]:
        """Re-check gates and flip rules to PUBLISHED inside a caller-owned transaction."""
        repo = RuleRepository(conn)
        evidence = EvidenceRepository(conn)
        conflicts = ConflictRepository(conn)
        stamped_at = now_iso()
        results = []
        for rule_id in rule_ids:
            rule = self._require_rule(repo, rule_id)
            self._check_publish_gates(rule, evidence, conflicts)
            repo.set_status(
                rule.id, RuleStatus.PUBLISHED,
                graph_status=GraphStatus.PENDING, graph_status_at=stamped_at,
            )
            results.append(RuleStatusResult(
                success=True,
                rule_id=rule.id,
                concept_slug=rule.concept_slug,
                previous_status=rule.status,
                new_status=RuleStatus.PUBLISHED,
            ))
        return results

    def after_publish(
        self, results: list[RuleStatusResult], actor: str, source: str
    ) -> PublishRulesResult:
        """Audit a committed publish and hand the rules to the graph hook."""
        for result in results:
            self.audit.record(AuditAction.RULE_PUBLISHED.value, "rule", result.rule_id, {
                "actor": actor, "source": source, "concept_slug": result.concept_slug,
            })
        logger.info(f"[Lifecycle] Published {len(results)} rules ({source}) by {actor}")

        ids = [r.rule_id for r in results]
        if self.post_publish is not None:
            try:
                self.post_publish(ids)
            except Exception:
                # Publish is committed; graph state is repaired by the sweep
                logger.exception(f"[Lifecycle] Post-publish graph hook failed for {ids}")

        return PublishRulesResult(success=True, published_count=len(results), results=results)

    def _check_publish_gates(
        self,
        rule: RuleRecord,
        evidence: EvidenceRepository,
        conflicts: ConflictRepository,
    ) -> None:
        assert_transition(
            rule.status, RuleStatus.PUBLISHED, rule_id=rule.id, concept_slug=rule.concept_slug
        )
        if rule.is_revoked:
            raise TierGateError(
                f"Rule {rule.concept_slug} is revoked", rule_id=rule.id, concept_slug=rule.concept_slug
            )
        check_source_pointers(rule, evidence)
        check_no_open_conflicts(rule, conflicts)
        check_tier_approval(rule)

    def _publish_failed(
        self, ids: list[str], actor: str, source: str, error: RegTruthError
    ) -> PublishRulesResult:
        logger.warning(f"[Lifecycle] Publish batch of {len(ids)} aborted: {error.message}")
        self.audit.record(AuditAction.RULE_PUBLISH_FAILED.value, "rule_batch", ",".join(ids), {
            "actor": actor, "source": source, "rule_ids": ids, "error": error.to_dict(),
        })
        return PublishRulesResult(
            success=False,
            errors=[error.message],
            failed_concept_slug=error.concept_slug,
            error_code=error.code,
        )

    # =========================================================================
    # Rollback, deprecation, revocation
    # =========================================================================

    def revert_to_approved(
        self,
        rule_ids: Iterable[str],
        actor: str,
        reason: str,
        bypass: bool = False,
    ) -> list[RuleStatusResult]:
        """Move PUBLISHED rules back to APPROVED. Rollback only.

        Without ``bypass`` the transition is refused like any other illegal one.
        """
        ids = list(rule_ids)
        try:
            with transaction(self.settings.transaction_timeout_ms) as conn:
                results = self.revert_within(RuleRepository(conn), ids, bypass=bypass)
        except RegTruthError as e:
            for rule_id in ids:
                self.audit.record(AuditAction.RULE_REVERTED.value, "rule", rule_id, {
                    "actor": actor, "reason": reason, "success": False, "error": e.to_dict(),
                })
            return [_failure(e, rule_id) for rule_id in ids]

        for result in results:
            self.audit.record(AuditAction.RULE_REVERTED.value, "rule", result.rule_id, {
                "actor": actor, "reason": reason, "success": True,
                "concept_slug": result.concept_slug,
            })
        return results

    @staticmethod
    def revert_within(
        repo: RuleRepository, rule_ids: list[str], bypass: bool
    ) -> list[RuleStatusResult]:
        """Revert inside a caller-owned transaction; the caller emits audit events."""
        results = []
        for rule_id in rule_ids:
            rule = RuleLifecycleService._require_rule(repo, rule_id)
            assert_transition(
                rule.status, RuleStatus.APPROVED, bypass=bypass,
                rule_id=rule.id, concept_slug=rule.concept_slug,
            )
            repo.set_status(rule.id, RuleStatus.APPROVED, graph_status=None, graph_status_at=None)
            results.append(RuleStatusResult(
                success=True,
                rule_id=rule.id,
                concept_slug=rule.concept_slug,
                previous_status=rule.status,
                new_status=RuleStatus.APPROVED,
            ))
        return results

    def deprecate(
        self,
        rule_id: str,
        superseded_by: str,
        rationale: str,
        conflict_id: str | None = None,
        actor: str = "system:arbiter",
    ) -> RuleStatusResult:
        """Deprecate a rule that lost a conflict, recording who superseded it."""
        note = {
            "deprecated_reason": "conflict_resolution",
            "conflict_id": conflict_id,
            "superseded_by": superseded_by,
            "rationale": rationale,
        }
        return self._simple_transition(
            rule_id, RuleStatus.DEPRECATED, actor, AuditAction.RULE_DEPRECATED,
            extra={"reviewer_notes": json.dumps(note)},
            metadata=note,
        )

    def revoke(
        self,
        rule_id: str,
        actor: str,
        reason: RevocationReason | str,
        detail: str = "",
    ) -> RevocationResult:
        """Stamp the revocation overlay, keeping the prior status for audit."""
        reason = RevocationReason(reason)
        revoked_reason = f"[{reason.value}] {detail}".strip()

        rule = self.rules.get_rule(rule_id)
        try:
            if rule is None:
                raise NotFoundError("Rule", rule_id, rule_id=rule_id)
            with transaction(self.settings.transaction_timeout_ms) as conn:
                repo = RuleRepository(conn)
                current = repo.get_rule(rule_id)
                if current.is_revoked:
                    raise DuplicateRevocationError(
                        f"Rule {rule_id} is already revoked",
                        rule_id=rule_id, concept_slug=current.concept_slug,
                    )
                if current.status in TERMINAL_STATUSES:
                    raise DuplicateRevocationError(
                        f"Rule {rule_id} is {current.status.value} and cannot be revoked",
                        rule_id=rule_id, concept_slug=current.concept_slug,
                    )
                repo.update_fields(rule_id, revoked_at=now_iso(), revoked_reason=revoked_reason)
                lineage = self._lineage(conn, rule_id)
        except RegTruthError as e:
            logger.warning(f"[Lifecycle] Revocation of {rule_id} refused: {e.message}")
            self.audit.record(AuditAction.RULE_REVOCATION_FAILED.value, "rule", rule_id, {
                "actor": actor, "reason": reason.value, "error": e.to_dict(),
            })
            return RevocationResult(
                success=False,
                rule_id=rule_id,
                previous_status=rule.status if rule else None,
                error=e.message,
                error_code=e.code,
            )

        self.audit.record(AuditAction.RULE_REVOKED.value, "rule", rule_id, {
            "actor": actor,
            "reason": reason.value,
            "detail": detail,
            "previous_status": current.status.value,
            "lineage": {
                "source_pointer_count": len(lineage.source_pointer_ids),
                "evidence_count": len(lineage.evidence_ids),
                "superseded_rule_count": len(lineage.superseded_rule_ids),
            },
        })
        logger.info(f"[Lifecycle] Revoked {rule_id} (reason: {reason.value}) by {actor}")
        return RevocationResult(
            success=True, rule_id=rule_id, previous_status=current.status, lineage=lineage
        )

    @staticmethod
    def _lineage(conn, rule_id: str) -> RuleLineage:
        pointers = EvidenceRepository(conn).get_pointers_for_rule(rule_id)
        superseded = EdgeRepository(conn).get_outgoing(rule_id, "SUPERSEDES")
        return RuleLineage(
            source_pointer_ids=[p.id for p in pointers],
            evidence_ids=sorted({p.evidence_id for p in pointers}),
            superseded_rule_ids=[e.to_rule_id for e in superseded],
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _require_rule(repo: RuleRepository, rule_id: str) -> RuleRecord:
        rule = repo.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("Rule", rule_id, rule_id=rule_id)
        return rule

    def _simple_transition(
        self,
        rule_id: str,
        to_status: RuleStatus,
        actor: str,
        action: AuditAction,
        extra: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RuleStatusResult:
        try:
            with transaction(self.settings.transaction_timeout_ms) as conn:
                repo = RuleRepository(conn)
                rule = self._require_rule(repo, rule_id)
                assert_transition(
                    rule.status, to_status, rule_id=rule.id, concept_slug=rule.concept_slug
                )
                repo.set_status(rule.id, to_status, **(extra or {}))
        except RegTruthError as e:
            self.audit.record(action.value, "rule", rule_id, {
                **(metadata or {}), "actor": actor, "success": False, "error": e.to_dict(),
            })
            return _failure(e, rule_id, e.concept_slug)

        self.audit.record(action.value, "rule", rule_id, {
            **(metadata or {}), "actor": actor, "success": True,
            "concept_slug": rule.concept_slug, "previous_status": rule.status.value,
        })
        return RuleStatusResult(
            success=True,
            rule_id=rule_id,
            concept_slug=rule.concept_slug,
            previous_status=rule.status,
            new_status=to_status,
        )


def _failure(
    error: RegTruthError,
    rule_id: str,
    concept_slug: str | None = None,
    previous_status: RuleStatus | None = None,
) -> RuleStatusResult:
    return RuleStatusResult(
        success=False,
        rule_id=rule_id,
        concept_slug=concept_slug or error.concept_slug,
        previous_status=previous_status,
        error=error.message,
        error_code=error.code,
        details=error.details,
    )
