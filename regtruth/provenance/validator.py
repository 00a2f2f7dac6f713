"""
Provenance validation for rules.

A rule is only as good as the quotes behind it: every source pointer must
be found in its evidence, with the match quality the rule's tier demands.
The outcome of every check is written back onto the pointer.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from regtruth.core.errors import ProvenanceError
from regtruth.core.interfaces import EvidenceStore
from regtruth.core.models import MatchType
from regtruth.provenance.quote_matcher import (
    find_quote_in_evidence,
    is_match_type_acceptable_for_tier,
    quote_preview,
    verify_offset_invariant,
)
from regtruth.storage.records import RuleRecord
from regtruth.storage.repositories.evidence_repo import EvidenceRepository

logger = logging.getLogger(__name__)

NO_POINTERS_ERROR = "Rule has no source pointers"


class PointerValidation(BaseModel):
    pointer_id: str
    evidence_id: str
    valid: bool
    match_type: MatchType
    start: int | None = None
    end: int | None = None
    error: str | None = None
    audit_note: str | None = None
    quote_preview: str = ""


class RuleProvenanceResult(BaseModel):
    rule_id: str
    concept_slug: str
    valid: bool
    pointers: list[PointerValidation] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def failures(self) -> list[PointerValidation]:
        return [p for p in self.pointers if not p.valid]


class ProvenanceValidator:
    """Validates and records provenance for a rule's source pointers.

    Args:
        pointers: Repository used to read pointers and persist match outcomes
        evidence_store: Where raw evidence is read from, defaults to ``pointers``
    """

    def __init__(
        self,
        pointers: EvidenceRepository,
        evidence_store: EvidenceStore | None = None,
    ):
        self._pointers = pointers
        self._evidence = evidence_store or pointers

    def validate_rule(self, rule: RuleRecord) -> RuleProvenanceResult:
        pointers = self._pointers.get_pointers_for_rule(rule.id)
        if not pointers:
            logger.warning(f"[Provenance] Rule {rule.concept_slug} ({rule.id}) has no source pointers")
            return RuleProvenanceResult(
                rule_id=rule.id,
                concept_slug=rule.concept_slug,
                valid=False,
                errors=[NO_POINTERS_ERROR],
            )

        results = []
        for pointer in pointers:
            preview = quote_preview(pointer.exact_quote)
            evidence = self._evidence.get_evidence(pointer.evidence_id)
            if evidence is None:
                self._pointers.record_match(pointer.id, MatchType.NOT_FOUND, None, None)
                results.append(PointerValidation(
                    pointer_id=pointer.id,
                    evidence_id=pointer.evidence_id,
                    valid=False,
                    match_type=MatchType.NOT_FOUND,
                    error=f"Evidence {pointer.evidence_id} not found",
                    quote_preview=preview,
                ))
                continue

            match = find_quote_in_evidence(
                evidence.raw_content, pointer.exact_quote, evidence.content_hash
            )
            # Always persist, including explicit NULL offsets for not_found
            self._pointers.record_match(pointer.id, match.match_type, match.start, match.end)

            acceptance = is_match_type_acceptable_for_tier(match.match_type, rule.risk_tier)
            error = None if acceptance.acceptable else acceptance.reason
            if (
                acceptance.acceptable
                and rule.risk_tier.is_high_stakes
                and not verify_offset_invariant(
                    evidence.raw_content, pointer.exact_quote, match.start, match.end
                )
            ):
                error = "Exact match offsets do not reproduce the quote"

            audit_note = None
            if match.match_type == MatchType.NORMALIZED and error is None:
                audit_note = acceptance.reason
                logger.info(
                    f"[Provenance] Normalized match accepted for {rule.concept_slug} "
                    f"pointer {pointer.id}"
                )

            results.append(PointerValidation(
                pointer_id=pointer.id,
                evidence_id=pointer.evidence_id,
                valid=error is None,
                match_type=match.match_type,
                start=match.start,
                end=match.end,
                error=error,
                audit_note=audit_note,
                quote_preview=preview,
            ))

        valid = all(r.valid for r in results)
        if not valid:
            logger.warning(
                f"[Provenance] Rule {rule.concept_slug} ({rule.id}) failed validation:\n"
                + format_provenance_errors(results)
            )
        return RuleProvenanceResult(
            rule_id=rule.id,
            concept_slug=rule.concept_slug,
            valid=valid,
            pointers=results,
            errors=[r.error for r in results if r.error],
        )

    def require_valid(self, rule: RuleRecord) -> RuleProvenanceResult:
        """Validate and raise ProvenanceError on failure."""
        result = self.validate_rule(rule)
        if not result.valid:
            detail = format_provenance_errors(result.pointers) or "\n".join(result.errors)
            raise ProvenanceError(
                f"Provenance validation failed for {rule.concept_slug}:\n{detail}",
                rule_id=rule.id,
                concept_slug=rule.concept_slug,
                details={"pointers": [p.model_dump(mode="json") for p in result.failures],
                         "errors": result.errors},
            )
        return result


def format_provenance_errors(pointers: list[PointerValidation]) -> str:
    """One line per failing pointer, with a preview of the unmatched quote."""
    return "\n".join(
        f'- Pointer {p.pointer_id}: {p.error} (quote: "{p.quote_preview}...")'
        for p in pointers
        if not p.valid
    )
