"""Conflict resolution endpoints."""

from fastapi import APIRouter, Query
from pydantic import BaseModel

from regtruth.api.deps import get_orchestrator
from regtruth.api.models import ConflictResponse, HumanDecisionRequest
from regtruth.arbitration.orchestrator import BatchResult, ConflictOutcome

router = APIRouter(prefix="/conflicts", tags=["Conflicts"])


class ConflictListResponse(BaseModel):
    conflicts: list[ConflictResponse]
    total: int


@router.get("", response_model=ConflictListResponse)
async def list_pending_conflicts(limit: int | None = Query(None, ge=1)) -> ConflictListResponse:
    conflicts = [
        ConflictResponse.from_record(c) for c in get_orchestrator().get_pending_conflicts(limit)
    ]
    return ConflictListResponse(conflicts=conflicts, total=len(conflicts))


@router.get("/{conflict_id}", response_model=ConflictResponse)
async def get_conflict(conflict_id: str) -> ConflictResponse:
    return ConflictResponse.from_record(get_orchestrator().get_conflict(conflict_id))


@router.post("/{conflict_id}/resolve", response_model=ConflictOutcome)
async def resolve_conflict(conflict_id: str) -> ConflictOutcome:
    """Run the automatic pipeline; the conflict may come back escalated."""
    return get_orchestrator().resolve_conflict(conflict_id)


@router.post("/{conflict_id}/decide", response_model=ConflictOutcome)
async def decide_conflict(conflict_id: str, request: HumanDecisionRequest) -> ConflictOutcome:
    return get_orchestrator().resolve_by_human(
        conflict_id, request.winner_id, request.actor, request.rationale, request.strategy
    )


@router.post("/batch", response_model=BatchResult)
async def run_batch(limit: int | None = Query(None, ge=1)) -> BatchResult:
    return get_orchestrator().run_batch(limit)
