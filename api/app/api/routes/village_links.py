from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.config import Settings, get_settings
from app.core.security import get_human_principal
from app.schemas.village_links import (
    AuditEntryOut,
    AutoLinkOut,
    AutoLinkRequest,
    BulkImportErrorOut,
    BulkImportOut,
    BulkImportRequest,
    CommitOut,
    CommitRequest,
    ItemType,
    LinkCountsOut,
    LinkJobDetailOut,
    LinkJobOut,
    LinkListOut,
    LinkOut,
    LinkPatchRequest,
    LinkUpsertRequest,
    PurgeCacheOut,
    PurgeCacheRequest,
    RollbackOut,
    RollbackRequest,
    SuggestionOut,
    UnlinkOut,
)
from app.services.cache_purge import get_cache_purge_notifier
from app.services.link_jobs import LinkScanRateLimitedError, get_link_job_runner
from app.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def _require(principal, scopes: set[str]) -> None:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("/auto-link", response_model=AutoLinkOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_auto_link(
    payload: AutoLinkRequest,
    principal=Depends(get_human_principal),
    runner=Depends(get_link_job_runner),
    settings: Settings = Depends(get_settings),
) -> AutoLinkOut:
    _require(principal, {"links:write"})

    try:
        job = await runner.trigger(
            village_id=payload.village_id,
            mode=payload.mode,
            radius_meters=(
                payload.radius_meters
                if payload.radius_meters is not None
                else settings.scan_default_radius_meters
            ),
            limit=payload.limit if payload.limit is not None else settings.scan_default_limit,
            actor_user_id=principal.actor_id,
        )
    except LinkScanRateLimitedError as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return AutoLinkOut(job_id=job["id"], status=job["status"])


@router.get("/jobs", response_model=list[LinkJobOut])
async def list_link_jobs(
    principal=Depends(get_human_principal),
    runner=Depends(get_link_job_runner),
    village_id: str = Query(min_length=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> list[LinkJobOut]:
    _require(principal, {"links:read"})

    try:
        rows = await runner.list_jobs(village_id=village_id, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return [LinkJobOut(**row) for row in rows]


@router.get("/jobs/{job_id}", response_model=LinkJobDetailOut)
async def get_link_job(
    job_id: str,
    principal=Depends(get_human_principal),
    runner=Depends(get_link_job_runner),
) -> LinkJobDetailOut:
    _require(principal, {"links:read"})

    try:
        job, suggestions = await runner.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return LinkJobDetailOut(
        job=LinkJobOut(**job),
        suggestions=[SuggestionOut(**row) for row in suggestions],
    )


@router.post("/commit", response_model=CommitOut)
async def commit_suggestions(
    payload: CommitRequest,
    principal=Depends(get_human_principal),
    runner=Depends(get_link_job_runner),
) -> CommitOut:
    _require(principal, {"links:write"})

    try:
        result = await runner.commit(
            job_id=payload.job_id,
            suggestion_ids=payload.suggestion_ids,
            actor_user_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return CommitOut(committed_count=result.committed_count, errors=result.errors)


@router.post("/bulk-import", response_model=BulkImportOut)
async def bulk_import_links(
    payload: BulkImportRequest,
    principal=Depends(get_human_principal),
    runner=Depends(get_link_job_runner),
) -> BulkImportOut:
    _require(principal, {"links:write"})

    result = await runner.bulk_import(
        village_id=payload.village_id,
        items=payload.items,
        actor_user_id=principal.actor_id,
    )
    return BulkImportOut(
        success_count=result.success_count,
        errors=[BulkImportErrorOut(row=error.row, error=error.error) for error in result.errors],
    )


@router.post("/rollback", response_model=RollbackOut)
async def rollback_audit_entry(
    payload: RollbackRequest,
    principal=Depends(get_human_principal),
    runner=Depends(get_link_job_runner),
) -> RollbackOut:
    _require(principal, {"links:rollback"})

    try:
        entry = await runner.rollback(
            audit_id=payload.audit_id,
            reason=payload.reason,
            actor_user_id=principal.actor_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return RollbackOut(success=True, message="Rollback completed", audit_entry=AuditEntryOut(**entry))


@router.post("/purge", response_model=PurgeCacheOut)
async def purge_village_cache(
    payload: PurgeCacheRequest,
    principal=Depends(get_human_principal),
    notifier=Depends(get_cache_purge_notifier),
) -> PurgeCacheOut:
    _require(principal, {"cache:purge"})

    outcome = await notifier.request_purge(village_slug=payload.village_slug, actor_user_id=principal.actor_id)
    return PurgeCacheOut(success=outcome.success, message=outcome.message)


@router.get("/links", response_model=LinkListOut)
async def list_village_links(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    village_id: str = Query(min_length=1),
    include_unlinked: bool = Query(default=False),
) -> LinkListOut:
    _require(principal, {"links:read"})

    try:
        rows = await repository.list_links(village_id=village_id, include_unlinked=include_unlinked)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    counts = LinkCountsOut()
    for row in rows:
        if row["status"] == "linked":
            setattr(counts, row["item_type"], getattr(counts, row["item_type"]) + 1)
    return LinkListOut(links=[LinkOut(**row) for row in rows], counts=counts)


@router.put("/links", response_model=LinkOut)
async def link_item(
    payload: LinkUpsertRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> LinkOut:
    _require(principal, {"links:write"})

    try:
        row = await repository.upsert_link(
            village_id=payload.village_id,
            item_type=payload.item_type,
            item_id=payload.item_id,
            promote=payload.promote,
            priority=payload.priority,
            actor_user_id=principal.actor_id,
            reason=payload.reason,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return LinkOut(**row)


@router.patch("/links/{village_id}/{item_type}/{item_id}", response_model=LinkOut)
async def patch_link(
    village_id: str,
    item_type: ItemType,
    item_id: str,
    payload: LinkPatchRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> LinkOut:
    _require(principal, {"links:write"})

    try:
        row = await repository.update_link(
            village_id=village_id,
            item_type=item_type,
            item_id=item_id,
            promote=payload.promote,
            priority=payload.priority,
            status=payload.status,
            actor_user_id=principal.actor_id,
            reason=payload.reason,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return LinkOut(**row)


@router.delete("/links/{village_id}/{item_type}/{item_id}", response_model=UnlinkOut)
async def unlink_item(
    village_id: str,
    item_type: ItemType,
    item_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    reason: str | None = Query(default=None),
) -> UnlinkOut:
    _require(principal, {"links:write"})

    try:
        row = await repository.unlink_link(
            village_id=village_id,
            item_type=item_type,
            item_id=item_id,
            actor_user_id=principal.actor_id,
            reason=reason,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return UnlinkOut(success=True, link=LinkOut(**row) if row else None)


@router.get("/audit", response_model=list[AuditEntryOut])
async def list_audit_entries(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    village_id: str = Query(min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[AuditEntryOut]:
    _require(principal, {"links:read"})

    try:
        rows = await repository.list_audit_entries(village_id=village_id, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return [AuditEntryOut(**row) for row in rows]
