"""Conflict resolution: deterministic rules, precedent, model arbitration, escalation."""

from regtruth.arbitration.agent_cache import ArbiterOutputCache, run_arbitration
from regtruth.arbitration.deterministic import (
    DeterministicResolution,
    RuleForResolution,
    get_authority_score,
    try_deterministic_resolution,
)
from regtruth.arbitration.orchestrator import (
    ArbitrationOrchestrator,
    BatchResult,
    ConflictOutcome,
    check_escalation_criteria,
)
from regtruth.arbitration.precedent import (
    PrecedentMatch,
    PrecedentMatcher,
    evaluate_precedents,
    pick_winner_by_strategy,
)
from regtruth.arbitration.schemas import AgentError, AgentOk, AgentSchemaInvalid, ArbiterOutput

__all__ = [
    "AgentError",
    "AgentOk",
    "AgentSchemaInvalid",
    "ArbiterOutput",
    "ArbiterOutputCache",
    "ArbitrationOrchestrator",
    "BatchResult",
    "ConflictOutcome",
    "DeterministicResolution",
    "PrecedentMatch",
    "PrecedentMatcher",
    "RuleForResolution",
    "check_escalation_criteria",
    "evaluate_precedents",
    "get_authority_score",
    "pick_winner_by_strategy",
    "run_arbitration",
    "try_deterministic_resolution",
]
