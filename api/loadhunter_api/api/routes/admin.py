from fastapi import APIRouter, Depends, HTTPException, Query, status

from loadhunter_api.core.security import get_human_principal
from loadhunter_api.schemas.admin import (
    ArchiveOut,
    ArchiveRequest,
    CursorAdvanceRequest,
    CursorOut,
    DedupMetricsOut,
    LeaderElectionMetricsOut,
    QueueMetricsOut,
    ReapOut,
)
from loadhunter_api.schemas.matches import BackfillOut
from loadhunter_api.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("/queue", response_model=QueueMetricsOut)
async def get_queue_metrics(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> QueueMetricsOut:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        metrics = await repository.get_queue_metrics()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueMetricsOut(**metrics)


@router.get("/dedup", response_model=DedupMetricsOut)
async def get_dedup_metrics(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> DedupMetricsOut:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        metrics = await repository.get_dedup_metrics()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DedupMetricsOut(**metrics)


@router.get("/leader-election", response_model=LeaderElectionMetricsOut)
async def get_leader_election_metrics(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    window_hours: int = Query(default=24, ge=1, le=720),
) -> LeaderElectionMetricsOut:
    try:
        principal.require_scopes({"admin:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        metrics = await repository.get_leader_election_metrics(window_hours=window_hours)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return LeaderElectionMetricsOut(**metrics)


@router.post("/queue/reap", response_model=ReapOut)
async def reap_stale_items(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ReapOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        result = await repository.reap_stale_items(limit=limit, actor_type="human", actor_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ReapOut(**result)


@router.post("/archive", response_model=ArchiveOut)
async def archive_terminal_items(
    payload: ArchiveRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ArchiveOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.archive_terminal_items(
            retention_hours=payload.retention_hours,
            batch_size=payload.batch_size,
            max_batches=payload.max_batches,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ArchiveOut(**result)


@router.post("/tenants/{tenant_id}/backfill", response_model=BackfillOut)
async def run_initial_backfill(
    tenant_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> BackfillOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        result = await repository.run_initial_backfill(
            tenant_id=tenant_id,
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return BackfillOut(**result)


@router.post("/cursors/{scope_key}/advance", response_model=CursorOut)
async def advance_cursor(
    scope_key: str,
    payload: CursorAdvanceRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> CursorOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        result = await repository.advance_cursor(
            scope_key=scope_key,
            position=payload.position,
            actor_type="human",
            actor_id=principal.actor_id,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CursorOut(**result)
