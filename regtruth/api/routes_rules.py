"""Rule lifecycle endpoints."""

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query
from pydantic import BaseModel

from regtruth.api.deps import get_lifecycle, get_reviewer, get_worker, raise_for_failure
from regtruth.api.models import (
    ApproveRuleRequest,
    PublishRulesRequest,
    RejectRuleRequest,
    RevertRulesRequest,
    RevokeRuleRequest,
    ReviewRuleRequest,
    RuleResponse,
)
from regtruth.core.models import PublishRulesResult, RuleStatusResult
from regtruth.lifecycle.service import RevocationResult, RuleProposal
from regtruth.review.reviewer import ReviewResult

router = APIRouter(prefix="/rules", tags=["Rules"])


class RuleListResponse(BaseModel):
    rules: list[RuleResponse]
    total: int


# =============================================================================
# Queries
# =============================================================================


@router.get("", response_model=RuleListResponse)
async def list_rules(concept_slug: str | None = Query(None)) -> RuleListResponse:
    """Published, non-revoked rules for downstream consumers."""
    rules = [RuleResponse.from_record(r) for r in get_lifecycle().get_consumer_rules(concept_slug)]
    return RuleListResponse(rules=rules, total=len(rules))


@router.get("/review-queue", response_model=RuleListResponse)
async def review_queue() -> RuleListResponse:
    rules = [RuleResponse.from_record(r) for r in get_lifecycle().rules_requiring_human_review()]
    return RuleListResponse(rules=rules, total=len(rules))


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: str) -> RuleResponse:
    return RuleResponse.from_record(get_lifecycle().get_rule(rule_id))


# =============================================================================
# Transitions
# =============================================================================


@router.post("", response_model=RuleResponse, status_code=201)
async def ingest_rule(proposal: RuleProposal) -> RuleResponse:
    """Create a DRAFT rule from an extraction proposal."""
    try:
        rule = get_lifecycle().ingest_proposal(proposal)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return RuleResponse.from_record(rule)


@router.post("/{rule_id}/review", response_model=ReviewResult)
async def review_rule(rule_id: str, request: ReviewRuleRequest) -> ReviewResult:
    return get_reviewer().review(rule_id, request.source_slug)


@router.post("/{rule_id}/approve", response_model=RuleStatusResult)
async def approve_rule(rule_id: str, request: ApproveRuleRequest) -> RuleStatusResult:
    result = get_lifecycle().approve(rule_id, request.actor)
    raise_for_failure(result.success, result.error, result.error_code, rule_id=rule_id)
    return result


@router.post("/{rule_id}/reject", response_model=RuleStatusResult)
async def reject_rule(rule_id: str, request: RejectRuleRequest) -> RuleStatusResult:
    result = get_lifecycle().reject(rule_id, request.actor, request.reason)
    raise_for_failure(result.success, result.error, result.error_code, rule_id=rule_id)
    return result


@router.post("/publish", response_model=PublishRulesResult)
async def publish_rules(
    request: PublishRulesRequest, background_tasks: BackgroundTasks
) -> PublishRulesResult:
    """Publish atomically; graph rebuilds run after the response is sent."""
    result = get_lifecycle().publish(request.rule_ids, request.actor)
    raise_for_failure(
        result.success,
        "; ".join(result.errors) or None,
        result.error_code,
        concept_slug=result.failed_concept_slug,
    )
    background_tasks.add_task(get_worker().run_pending)
    return result


@router.post("/revert", response_model=list[RuleStatusResult])
async def revert_rules(request: RevertRulesRequest) -> list[RuleStatusResult]:
    """Move PUBLISHED rules back to APPROVED outside a release rollback."""
    results = get_lifecycle().revert_to_approved(request.rule_ids, request.actor, request.reason)
    for result in results:
        raise_for_failure(result.success, result.error, result.error_code, rule_id=result.rule_id)
    return results


@router.post("/{rule_id}/revoke", response_model=RevocationResult)
async def revoke_rule(rule_id: str, request: RevokeRuleRequest) -> RevocationResult:
    result = get_lifecycle().revoke(rule_id, request.actor, request.reason, request.detail)
    raise_for_failure(result.success, result.error, result.error_code, rule_id=rule_id)
    return result
