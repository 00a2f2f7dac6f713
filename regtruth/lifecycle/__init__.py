"""Rule lifecycle: the state machine and its hard gates."""

from regtruth.lifecycle.service import (
    AUTO_APPROVE_ACTOR,
    PointerProposal,
    RevocationReason,
    RevocationResult,
    RuleLifecycleService,
    RuleProposal,
    is_human_actor,
)
from regtruth.lifecycle.transitions import (
    ALLOWED_TRANSITIONS,
    assert_transition,
    is_transition_allowed,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AUTO_APPROVE_ACTOR",
    "PointerProposal",
    "RevocationReason",
    "RevocationResult",
    "RuleLifecycleService",
    "RuleProposal",
    "assert_transition",
    "is_human_actor",
    "is_transition_allowed",
]
