"""Allowed rule status transitions."""

from __future__ import annotations

from regtruth.core.errors import InvalidTransitionError
from regtruth.core.models import RuleStatus

ALLOWED_TRANSITIONS: dict[RuleStatus, frozenset[RuleStatus]] = {
    RuleStatus.DRAFT: frozenset({RuleStatus.PENDING_REVIEW}),
    RuleStatus.PENDING_REVIEW: frozenset({
        RuleStatus.APPROVED,
        RuleStatus.REJECTED,
        RuleStatus.DEPRECATED,
    }),
    RuleStatus.APPROVED: frozenset({RuleStatus.PUBLISHED, RuleStatus.DEPRECATED}),
    RuleStatus.PUBLISHED: frozenset({RuleStatus.DEPRECATED}),
    RuleStatus.DEPRECATED: frozenset(),
    RuleStatus.REJECTED: frozenset(),
}

# Reachable only with an explicit bypass flag (release rollback)
BYPASS_TRANSITIONS: frozenset[tuple[RuleStatus, RuleStatus]] = frozenset({
    (RuleStatus.PUBLISHED, RuleStatus.APPROVED),
})

TERMINAL_STATUSES: frozenset[RuleStatus] = frozenset({RuleStatus.REJECTED, RuleStatus.DEPRECATED})


def is_transition_allowed(
    from_status: RuleStatus,
    to_status: RuleStatus,
    bypass: bool = False,
) -> bool:
    if to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
        return True
    return bypass and (from_status, to_status) in BYPASS_TRANSITIONS


def assert_transition(
    from_status: RuleStatus,
    to_status: RuleStatus,
    bypass: bool = False,
    rule_id: str | None = None,
    concept_slug: str | None = None,
) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not is_transition_allowed(from_status, to_status, bypass):
        raise InvalidTransitionError(
            from_status.value, to_status.value, rule_id=rule_id, concept_slug=concept_slug
        )
