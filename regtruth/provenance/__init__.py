"""Provenance: proving each rule traces to a quotation in its evidence."""

from regtruth.provenance.quote_matcher import (
    QuoteMatch,
    find_quote_in_evidence,
    is_match_type_acceptable_for_tier,
    normalize_for_match,
    validate_quote_in_evidence,
    verify_offset_invariant,
)
from regtruth.provenance.validator import (
    ProvenanceValidator,
    RuleProvenanceResult,
    format_provenance_errors,
)

__all__ = [
    "ProvenanceValidator",
    "QuoteMatch",
    "RuleProvenanceResult",
    "find_quote_in_evidence",
    "format_provenance_errors",
    "is_match_type_acceptable_for_tier",
    "normalize_for_match",
    "validate_quote_in_evidence",
    "verify_offset_invariant",
]
