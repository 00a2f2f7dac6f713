"""Release and rollback endpoints."""

from fastapi import APIRouter, BackgroundTasks
from pydantic import BaseModel

from regtruth.api.deps import get_release_manager, get_worker, raise_for_failure
from regtruth.api.models import CreateReleaseRequest, ReleaseResponse, RollbackRequest
from regtruth.release.manager import ReleaseResult, RollbackResult, RollbackValidation

router = APIRouter(prefix="/releases", tags=["Releases"])


class ReleaseListResponse(BaseModel):
    releases: list[ReleaseResponse]
    total: int


@router.get("", response_model=ReleaseListResponse)
async def list_releases() -> ReleaseListResponse:
    """Releases, newest version first."""
    releases = [ReleaseResponse.from_record(r) for r in get_release_manager().list_releases()]
    return ReleaseListResponse(releases=releases, total=len(releases))


@router.get("/{release_id}", response_model=ReleaseResponse)
async def get_release(release_id: str) -> ReleaseResponse:
    return ReleaseResponse.from_record(get_release_manager().get_release(release_id))


@router.post("", response_model=ReleaseResult, status_code=201)
async def create_release(
    request: CreateReleaseRequest, background_tasks: BackgroundTasks
) -> ReleaseResult:
    result = get_release_manager().create_release(
        request.rule_ids, request.actor, request.suggested_version, request.notes
    )
    raise_for_failure(
        result.success, result.error, result.error_code, concept_slug=result.failed_concept_slug
    )
    background_tasks.add_task(get_worker().run_pending)
    return result


@router.get("/{release_id}/rollback", response_model=RollbackValidation)
async def validate_rollback(release_id: str) -> RollbackValidation:
    return get_release_manager().validate_rollback(release_id)


@router.post("/{release_id}/rollback", response_model=RollbackResult)
async def rollback_release(release_id: str, request: RollbackRequest) -> RollbackResult:
    result = get_release_manager().rollback_release(
        release_id, request.actor, dry_run=request.dry_run, reason=request.reason
    )
    raise_for_failure(result.success, result.error, result.error_code, release_id=release_id)
    return result
