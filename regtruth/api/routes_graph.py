"""Reference graph endpoints."""

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from regtruth.api.deps import get_worker
from regtruth.core.models import EdgeRelation
from regtruth.graph.cycle_detection import AcyclicityReport, find_path, validate_graph_acyclicity
from regtruth.graph.edge_builder import EdgeTrace, build_edge_trace
from regtruth.graph.rebuild_worker import RebuildOutcome, RetryRunResult

router = APIRouter(prefix="/graph", tags=["Graph"])


class PathResponse(BaseModel):
    source_id: str
    target_id: str
    relation: EdgeRelation | None
    path: list[str] | None


class SweepResponse(BaseModel):
    queued: int


@router.get("/rules/{rule_id}/trace", response_model=EdgeTrace)
async def get_trace(rule_id: str) -> EdgeTrace:
    return build_edge_trace(rule_id)


@router.get("/acyclicity", response_model=AcyclicityReport)
async def check_acyclicity() -> AcyclicityReport:
    return validate_graph_acyclicity()


@router.get("/path", response_model=PathResponse)
async def get_path(
    source_id: str = Query(...),
    target_id: str = Query(...),
    relation: EdgeRelation | None = Query(None),
) -> PathResponse:
    path = find_path(source_id, target_id, relation)
    return PathResponse(source_id=source_id, target_id=target_id, relation=relation, path=path)


@router.post("/rules/{rule_id}/rebuild", response_model=RebuildOutcome)
async def rebuild_rule(rule_id: str) -> RebuildOutcome:
    """Rebuild now; a retryable failure is queued like a post-publish one."""
    outcomes = get_worker().rebuild_now([rule_id])
    outcome = outcomes[0]
    if not outcome.success and not outcome.retryable:
        raise HTTPException(status_code=404, detail=outcome.error)
    return outcome


@router.post("/retry", response_model=RetryRunResult)
async def run_retries(limit: int = Query(50, ge=1)) -> RetryRunResult:
    return get_worker().run_pending(limit=limit)


@router.post("/sweep", response_model=SweepResponse)
async def sweep_stale() -> SweepResponse:
    return SweepResponse(queued=get_worker().sweep_stale())
