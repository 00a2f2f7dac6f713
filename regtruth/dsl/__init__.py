"""Applies-when predicate form."""

from regtruth.dsl.applies_when import (
    Predicate,
    Reference,
    evaluate_applies_when,
    extract_references,
    parse_applies_when,
    validate_applies_when,
)

__all__ = [
    "Predicate",
    "Reference",
    "evaluate_applies_when",
    "extract_references",
    "parse_applies_when",
    "validate_applies_when",
]
