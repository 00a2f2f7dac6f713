"""
Error taxonomy for the truth layer.

Four families, each handled differently by callers:

- NotFoundError: terminal, reported, never retried.
- PolicyGateError: a hard gate refused the operation. Always names the
  offending rule or pointer and aborts the enclosing transaction.
- TransientError: infrastructure hiccup. Only graph rebuilds retry these.
- IrreconcilableStateError: a logically impossible request (cycle, double
  revocation, non-latest rollback, illegal transition). Rejected outright.
"""

from __future__ import annotations

from typing import Any


class RegTruthError(Exception):
    """Base class for all truth-layer errors."""

    code = "regtruth_error"

    def __init__(
        self,
        message: str,
        *,
        rule_id: str | None = None,
        concept_slug: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.rule_id = rule_id
        self.concept_slug = concept_slug
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Machine-readable form for API responses and audit metadata."""
        return {
            "code": self.code,
            "message": self.message,
            "rule_id": self.rule_id,
            "concept_slug": self.concept_slug,
            "details": self.details,
        }


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(RegTruthError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str, **kwargs: Any):
        super().__init__(f"{entity_type} not found: {entity_id}", **kwargs)
        self.entity_type = entity_type
        self.entity_id = entity_id


# =============================================================================
# Policy gates
# =============================================================================


class PolicyGateError(RegTruthError):
    code = "policy_gate"


class ProvenanceError(PolicyGateError):
    code = "provenance_failed"


class AllowlistError(PolicyGateError):
    code = "allowlist_denied"


class OpenConflictError(PolicyGateError):
    code = "open_conflict"


class MissingPointerError(PolicyGateError):
    code = "missing_source_pointer"


class TierGateError(PolicyGateError):
    code = "tier_gate"


class EvidenceStrengthError(PolicyGateError):
    code = "evidence_strength"


# =============================================================================
# Transient infrastructure
# =============================================================================


class TransientError(RegTruthError):
    code = "transient"


# =============================================================================
# Irreconcilable states
# =============================================================================


class IrreconcilableStateError(RegTruthError):
    code = "irreconcilable_state"


class InvalidTransitionError(IrreconcilableStateError):
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str, **kwargs: Any):
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed", **kwargs)
        self.from_status = from_status
        self.to_status = to_status


class CycleDetectedError(IrreconcilableStateError):
    code = "cycle_detected"

    def __init__(self, from_id: str, to_id: str, relation: str):
        super().__init__(
            f"Adding {relation} edge {from_id} -> {to_id} would create a cycle",
            rule_id=from_id,
            details={"from_id": from_id, "to_id": to_id, "relation": relation},
        )
        self.from_id = from_id
        self.to_id = to_id
        self.relation = relation


class DuplicateRevocationError(IrreconcilableStateError):
    code = "already_revoked"


class RollbackNotAllowedError(IrreconcilableStateError):
    code = "rollback_not_allowed"
