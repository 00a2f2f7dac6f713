"""
Conflict resolution pipeline.

A conflict between two rules passes through up to three automated steps:

1. Deterministic resolution (authority, source hierarchy, effective date)
2. Precedent matching against earlier resolutions of the same concept
3. Model arbitration, overlaid with hard escalation criteria

Anything the pipeline cannot settle safely is escalated to a human. T0/T1
pairs are always escalated; automated verdicts for them are attached as
recommendations only. Conflicts between values in the source data itself
are never auto-resolved.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from regtruth.arbitration.agent_cache import ArbiterOutputCache, run_arbitration
from regtruth.arbitration.deterministic import (
    RuleForResolution,
    _as_date,
    get_authority_score,
    try_deterministic_resolution,
)
from regtruth.arbitration.precedent import PrecedentMatcher, pick_winner_by_strategy
from regtruth.arbitration.schemas import AgentError, AgentOk, ArbiterOutput
from regtruth.core.config import Settings, get_settings
from regtruth.core.errors import (
    IrreconcilableStateError,
    NotFoundError,
    TierGateError,
    TransientError,
)
from regtruth.core.interfaces import (
    ArbitrationClient,
    AuditSink,
    HumanReviewQueue,
    LoggingReviewQueue,
)
from regtruth.core.models import (
    AuditAction,
    ConflictStatus,
    ConflictType,
    HumanReviewReason,
    Resolution,
    ResolutionMethod,
    ReviewPriority,
    RiskTier,
)
from regtruth.lifecycle.service import RuleLifecycleService, is_human_actor
from regtruth.storage.database import transaction
from regtruth.storage.records import ConflictRecord, ResolutionAuditRecord, RuleRecord
from regtruth.storage.repositories import ConflictRepository, EvidenceRepository

logger = logging.getLogger(__name__)

# Ordered: the first matching criterion names the escalation.
_ESCALATION_REASONS = {
    "both_t0": HumanReviewReason.CONFLICT_BOTH_T0,
    "low_confidence": HumanReviewReason.ARBITER_LOW_CONFIDENCE,
    "equal_authority": HumanReviewReason.CONFLICT_EQUAL_AUTHORITY,
    "low_rule_confidence": HumanReviewReason.LOW_RULE_CONFIDENCE,
    "equal_dates": HumanReviewReason.CONFLICT_UNRESOLVABLE,
}


class ConflictOutcome(BaseModel):
    """What the pipeline did with one conflict."""
    conflict_id: str
    resolution: Resolution
    method: ResolutionMethod | None = None
    strategy: str | None = None
    winner_id: str | None = None
    loser_id: str | None = None
    confidence: float | None = None
    escalated: bool = False
    escalation_reason: HumanReviewReason | None = None
    rationale: str = ""
    recommendation: dict[str, Any] | None = None
    review_ticket_id: str | None = None
    loser_deprecated: bool | None = None


class BatchResult(BaseModel):
    processed: int = 0
    resolved: int = 0
    escalated: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


def check_escalation_criteria(
    output: ArbiterOutput,
    rule_a: RuleRecord,
    rule_b: RuleRecord,
    min_confidence: float = 0.8,
    rule_min_confidence: float = 0.85,
) -> list[str]:
    """Return every escalation criterion the model verdict trips, in priority order."""
    tripped = set()

    if output.confidence < min_confidence:
        tripped.add("low_confidence")
    if rule_a.risk_tier == RiskTier.T0 and rule_b.risk_tier == RiskTier.T0:
        tripped.add("both_t0")
    if (
        get_authority_score(rule_a.authority_level) == get_authority_score(rule_b.authority_level)
        and output.resolution_strategy == "hierarchy"
    ):
        tripped.add("equal_authority")
    if (
        _as_date(rule_a.effective_from) == _as_date(rule_b.effective_from)
        and output.resolution_strategy == "temporal"
    ):
        tripped.add("equal_dates")
    if (rule_a.confidence or 0.0) < rule_min_confidence or (rule_b.confidence or 0.0) < rule_min_confidence:
        tripped.add("low_rule_confidence")

    return [key for key in _ESCALATION_REASONS if key in tripped]


def review_priority(rule_a: RuleRecord, rule_b: RuleRecord) -> ReviewPriority:
    if rule_a.risk_tier == RiskTier.T0 and rule_b.risk_tier == RiskTier.T0:
        return ReviewPriority.CRITICAL
    if rule_a.risk_tier.is_high_stakes or rule_b.risk_tier.is_high_stakes:
        return ReviewPriority.HIGH
    return ReviewPriority.NORMAL


def format_claim(rule: RuleRecord, evidence: EvidenceRepository) -> str:
    """Summarise a rule and its quotes for the arbitration model."""
    sources = []
    for pointer in evidence.get_pointers_for_rule(rule.id):
        record = evidence.get_evidence(pointer.evidence_id)
        source_name = (record.source_name if record else None) or "Unknown"
        sources.append(f'"{pointer.exact_quote}" (from {source_name}, confidence: {pointer.confidence})')

    return "\n".join([
        f"Rule ID: {rule.id}",
        f"Rule: {rule.title or rule.concept_slug}",
        f"Value: {rule.value} ({rule.value_type})",
        f"Authority Level: {rule.authority_level.value}",
        f"Risk Tier: {rule.risk_tier.value}",
        f"Effective: {rule.effective_from} to {rule.effective_until or 'indefinite'}",
        f"Applies When: {rule.applies_when or 'always'}",
        f"Source Evidence: {'; '.join(sources) or 'none'}",
    ])


class ArbitrationOrchestrator:
    """Runs conflicts through the resolution pipeline.

    Args:
        lifecycle: Used to read rules and to deprecate losers
        client: Model arbitration client; without one, step 3 escalates
        audit: Audit sink, defaults to the lifecycle's
        review_queue: Human review queue
        settings: Thresholds and batch size
        cache: Arbitration output cache
        matcher: Precedent matcher
    """

    def __init__(
        self,
        lifecycle: RuleLifecycleService | None = None,
        client: ArbitrationClient | None = None,
        audit: AuditSink | None = None,
        review_queue: HumanReviewQueue | None = None,
        settings: Settings | None = None,
        cache: ArbiterOutputCache | None = None,
        matcher: PrecedentMatcher | None = None,
    ):
        self.settings = settings or get_settings()
        self.lifecycle = lifecycle or RuleLifecycleService(audit=audit, settings=self.settings)
        self.client = client
        self.audit = audit or self.lifecycle.audit
        self.review_queue = review_queue or LoggingReviewQueue()
        self.cache = cache or ArbiterOutputCache(
            self.settings.agent_cache_schema_version, self.settings.agent_cache_max_size
        )
        self.conflicts = ConflictRepository()
        self.evidence = EvidenceRepository()
        self.matcher = matcher or PrecedentMatcher(self.conflicts, self.settings)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_conflict(self, conflict_id: str) -> ConflictRecord:
        conflict = self.conflicts.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)
        return conflict

    def get_pending_conflicts(self, limit: int | None = None) -> list[ConflictRecord]:
        """OPEN conflicts, oldest first."""
        return self.conflicts.get_open_conflicts(limit)

    # =========================================================================
    # Pipeline
    # =========================================================================

    def resolve_conflict(self, conflict_id: str) -> ConflictOutcome:
        conflict = self.get_conflict(conflict_id)
        if conflict.status != ConflictStatus.OPEN:
            raise IrreconcilableStateError(
                f"Conflict {conflict_id} is {conflict.status.value}, not OPEN",
                details={"conflict_id": conflict_id},
            )

        if conflict.conflict_type == ConflictType.SOURCE_CONFLICT.value:
            return self._handle_source_conflict(conflict)

        rule_a = self.lifecycle.get_rule(conflict.item_a_id)
        rule_b = self.lifecycle.get_rule(conflict.item_b_id)
        high_stakes = rule_a.risk_tier.is_high_stakes or rule_b.risk_tier.is_high_stakes
        pair_a = RuleForResolution.from_record(
            rule_a, self.evidence.get_source_hierarchy_for_rule(rule_a.id)
        )
        pair_b = RuleForResolution.from_record(
            rule_b, self.evidence.get_source_hierarchy_for_rule(rule_b.id)
        )

        # Step 1
        deterministic = try_deterministic_resolution(pair_a, pair_b)
        if deterministic.resolved:
            if deterministic.recommendation_only:
                return self._escalate(
                    conflict, rule_a, rule_b,
                    self._tier_reason(rule_a, rule_b),
                    deterministic.reason,
                    recommendation={"method": ResolutionMethod.DETERMINISTIC.value, **deterministic.model_dump()},
                )
            return self._apply(
                conflict, rule_a, rule_b, deterministic.winner,
                ResolutionMethod.DETERMINISTIC, deterministic.strategy, 1.0, deterministic.reason,
            )

        # Step 2
        recommendation = None
        tier = min(rule_a.risk_tier, rule_b.risk_tier, key=lambda t: t.rank)
        precedent = self.matcher.find_precedent(rule_a.concept_slug, conflict.conflict_type, tier)
        if precedent.found:
            winner = pick_winner_by_strategy(precedent.winner_strategy, pair_a, pair_b)
            if precedent.can_auto_apply and winner is not None:
                return self._apply(
                    conflict, rule_a, rule_b, winner.id,
                    ResolutionMethod.PRECEDENT, precedent.winner_strategy,
                    precedent.agreement_percentage / 100, precedent.reason,
                )
            recommendation = {
                "method": ResolutionMethod.PRECEDENT.value,
                "winner": winner.id if winner else None,
                **precedent.model_dump(),
            }

        # Step 3
        if self.client is None:
            return self._escalate(
                conflict, rule_a, rule_b, HumanReviewReason.CONFLICT_UNRESOLVABLE,
                "No automated step could resolve the conflict", recommendation=recommendation,
            )

        result = run_arbitration(
            self.client,
            format_claim(rule_a, self.evidence),
            format_claim(rule_b, self.evidence),
            conflict.conflict_type,
            cache=self.cache,
        )
        if isinstance(result, AgentError):
            raise TransientError(
                f"Arbitration call failed for conflict {conflict.id}: {result.error}",
                details={"conflict_id": conflict.id},
            )
        if not isinstance(result, AgentOk):
            return self._escalate(
                conflict, rule_a, rule_b, HumanReviewReason.CONFLICT_UNRESOLVABLE,
                f"Arbitration output failed schema validation: {'; '.join(result.errors)}",
                recommendation=recommendation,
            )

        output = result.output
        verdict = {"method": ResolutionMethod.MODEL.value, **output.model_dump()}

        if output.winning_item_id not in (rule_a.id, rule_b.id):
            return self._escalate(
                conflict, rule_a, rule_b, HumanReviewReason.CONFLICT_UNRESOLVABLE,
                f"Arbiter named no valid winner ({output.winning_item_id!r})",
                recommendation=verdict, confidence=output.confidence,
            )

        criteria = check_escalation_criteria(
            output, rule_a, rule_b,
            self.settings.arbitration_min_confidence, self.settings.rule_min_confidence,
        )
        if criteria:
            return self._escalate(
                conflict, rule_a, rule_b, _ESCALATION_REASONS[criteria[0]],
                f"Escalation criteria met: {', '.join(criteria)}",
                recommendation=verdict, confidence=output.confidence,
            )
        if high_stakes:
            return self._escalate(
                conflict, rule_a, rule_b, self._tier_reason(rule_a, rule_b),
                "T0/T1 conflicts are never auto-resolved",
                recommendation=verdict, confidence=output.confidence,
            )
        if output.requires_human_review:
            return self._escalate(
                conflict, rule_a, rule_b, HumanReviewReason.CONFLICT_UNRESOLVABLE,
                output.human_review_reason or "Arbiter requested human review",
                recommendation=verdict, confidence=output.confidence,
            )

        return self._apply(
            conflict, rule_a, rule_b, output.winning_item_id,
            ResolutionMethod.MODEL, output.resolution_strategy, output.confidence, output.rationale,
        )

    def resolve_by_human(
        self,
        conflict_id: str,
        winner_id: str,
        actor: str,
        rationale: str,
        strategy: str = "human_decision",
    ) -> ConflictOutcome:
        """Record a reviewer's decision on an OPEN or ESCALATED conflict."""
        conflict = self.get_conflict(conflict_id)
        if not is_human_actor(actor):
            raise TierGateError(
                f"Conflict {conflict_id} can only be decided by a human, got {actor!r}",
                details={"conflict_id": conflict_id, "actor": actor},
            )
        if conflict.status == ConflictStatus.RESOLVED:
            raise IrreconcilableStateError(
                f"Conflict {conflict_id} is already resolved",
                details={"conflict_id": conflict_id},
            )
        if conflict.conflict_type == ConflictType.SOURCE_CONFLICT.value:
            raise IrreconcilableStateError(
                f"Conflict {conflict_id} is between source values; resolve it on the rule",
                details={"conflict_id": conflict_id},
            )

        rule_a = self.lifecycle.get_rule(conflict.item_a_id)
        rule_b = self.lifecycle.get_rule(conflict.item_b_id)
        if winner_id not in (rule_a.id, rule_b.id):
            raise IrreconcilableStateError(
                f"Rule {winner_id} is not part of conflict {conflict_id}",
                rule_id=winner_id,
                details={"conflict_id": conflict_id},
            )
        return self._apply(
            conflict, rule_a, rule_b, winner_id, ResolutionMethod.HUMAN,
            strategy, 1.0, rationale, actor=actor,
        )

    def run_batch(self, limit: int | None = None) -> BatchResult:
        """Resolve pending conflicts one at a time; a failing conflict does not stop the sweep."""
        limit = limit if limit is not None else self.settings.arbiter_batch_limit
        result = BatchResult()

        for conflict in self.get_pending_conflicts(limit):
            result.processed += 1
            try:
                outcome = self.resolve_conflict(conflict.id)
            except Exception as e:
                result.failed += 1
                result.errors.append(f"{conflict.id}: {e}")
                logger.warning(f"[Arbiter] Conflict {conflict.id} failed: {e}")
                continue
            if outcome.escalated:
                result.escalated += 1
            else:
                result.resolved += 1

        logger.info(
            f"[Arbiter] Batch done: {result.processed} processed, {result.resolved} resolved, "
            f"{result.escalated} escalated, {result.failed} failed"
        )
        return result

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _apply(
        self,
        conflict: ConflictRecord,
        rule_a: RuleRecord,
        rule_b: RuleRecord,
        winner_id: str,
        method: ResolutionMethod,
        strategy: str,
        confidence: float,
        rationale: str,
        actor: str | None = None,
    ) -> ConflictOutcome:
        resolution = Resolution.RULE_A_PREVAILS if winner_id == rule_a.id else Resolution.RULE_B_PREVAILS
        loser_id = rule_b.id if winner_id == rule_a.id else rule_a.id
        resolved_by = actor or f"system:{method.value}"
        payload = {
            "resolution": resolution.value,
            "method": method.value,
            "strategy": strategy,
            "winner_id": winner_id,
            "loser_id": loser_id,
            "rationale": rationale,
        }

        with transaction(self.settings.transaction_timeout_ms) as conn:
            repo = ConflictRepository(conn)
            current = repo.get_conflict(conflict.id)
            if current.status == ConflictStatus.RESOLVED:
                raise IrreconcilableStateError(
                    f"Conflict {conflict.id} was resolved concurrently",
                    details={"conflict_id": conflict.id},
                )
            repo.resolve(conflict.id, payload, confidence, resolved_by)
            repo.append_resolution_audit(ResolutionAuditRecord(
                conflict_id=conflict.id,
                concept_slug=rule_a.concept_slug,
                conflict_type=conflict.conflict_type,
                resolution_strategy=strategy,
                method=method.value,
                resolution=resolution.value,
                winner_id=winner_id,
                loser_id=loser_id,
                confidence=confidence,
                rationale=rationale,
            ))

        deprecated = self.lifecycle.deprecate(
            loser_id, superseded_by=winner_id, rationale=rationale,
            conflict_id=conflict.id, actor=resolved_by,
        )
        if not deprecated.success:
            logger.warning(
                f"[Arbiter] Conflict {conflict.id} resolved but loser {loser_id} "
                f"was not deprecated: {deprecated.error}"
            )

        self.audit.record(AuditAction.CONFLICT_RESOLVED.value, "conflict", conflict.id, {
            **payload, "confidence": confidence, "resolved_by": resolved_by,
            "loser_deprecated": deprecated.success,
        })
        logger.info(f"[Arbiter] Conflict {conflict.id}: {resolution.value} via {method.value}/{strategy}")
        return ConflictOutcome(
            conflict_id=conflict.id,
            resolution=resolution,
            method=method,
            strategy=strategy,
            winner_id=winner_id,
            loser_id=loser_id,
            confidence=confidence,
            rationale=rationale,
            loser_deprecated=deprecated.success,
        )

    def _escalate(
        self,
        conflict: ConflictRecord,
        rule_a: RuleRecord | None,
        rule_b: RuleRecord | None,
        reason: HumanReviewReason,
        message: str,
        recommendation: dict[str, Any] | None = None,
        confidence: float | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ConflictOutcome:
        resolution = {
            "resolution": Resolution.ESCALATE_TO_HUMAN.value,
            "reason": message,
            "recommendation": recommendation,
            **(extra or {}),
        }
        with transaction(self.settings.transaction_timeout_ms) as conn:
            ConflictRepository(conn).escalate(conflict.id, reason.value, resolution, confidence)

        priority = (
            review_priority(rule_a, rule_b) if rule_a and rule_b else ReviewPriority.NORMAL
        )
        ticket_id = self.review_queue.request_review(
            "conflict", conflict.id, reason.value, priority.value, {
                "conflict_type": conflict.conflict_type,
                "message": message,
                "item_a_id": conflict.item_a_id,
                "item_b_id": conflict.item_b_id,
                "recommendation": recommendation,
            },
        )
        self.audit.record(AuditAction.CONFLICT_ESCALATED.value, "conflict", conflict.id, {
            "reason": reason.value,
            "message": message,
            "priority": priority.value,
            "review_ticket_id": ticket_id,
        })
        logger.info(f"[Arbiter] Conflict {conflict.id} escalated ({reason.value}): {message}")
        return ConflictOutcome(
            conflict_id=conflict.id,
            resolution=Resolution.ESCALATE_TO_HUMAN,
            escalated=True,
            escalation_reason=reason,
            confidence=confidence,
            rationale=message,
            recommendation=recommendation,
            review_ticket_id=ticket_id,
        )

    def _handle_source_conflict(self, conflict: ConflictRecord) -> ConflictOutcome:
        """Contradictory values inside source data always go to a human."""
        pointer_ids = conflict.metadata.get("source_pointer_ids") or []
        pointers = [p for p in (self.evidence.get_pointer(pid) for pid in pointer_ids) if p]

        if len(pointers) < 2:
            with transaction(self.settings.transaction_timeout_ms) as conn:
                ConflictRepository(conn).resolve(conflict.id, {
                    "strategy": "auto_resolved",
                    "rationale": "Insufficient pointers for conflict",
                })
            self.audit.record(AuditAction.CONFLICT_RESOLVED.value, "conflict", conflict.id, {
                "strategy": "auto_resolved", "pointer_count": len(pointers),
            })
            return ConflictOutcome(
                conflict_id=conflict.id,
                resolution=Resolution.ESCALATE_TO_HUMAN,
                strategy="auto_resolved",
                rationale="Insufficient pointers for conflict",
            )

        summary = []
        for pointer in pointers:
            record = self.evidence.get_evidence(pointer.evidence_id)
            summary.append({
                "id": pointer.id,
                "value": pointer.extracted_value,
                "source": record.source_name if record else None,
                "confidence": pointer.confidence,
            })
        return self._escalate(
            conflict, None, None, HumanReviewReason.SOURCE_CONFLICT,
            "Conflicting values found in source data",
            extra={"source_pointer_ids": pointer_ids, "pointer_summary": summary},
        )

    @staticmethod
    def _tier_reason(rule_a: RuleRecord, rule_b: RuleRecord) -> HumanReviewReason:
        if rule_a.risk_tier == RiskTier.T0 and rule_b.risk_tier == RiskTier.T0:
            return HumanReviewReason.CONFLICT_BOTH_T0
        return HumanReviewReason.CONFLICT_HIGH_STAKES


__all__ = [
    "ArbitrationOrchestrator",
    "BatchResult",
    "ConflictOutcome",
    "check_escalation_criteria",
    "format_claim",
    "review_priority",
]
