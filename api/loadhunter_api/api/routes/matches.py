from fastapi import APIRouter, Depends, HTTPException, Query, status

from loadhunter_api.core.security import get_human_principal
from loadhunter_api.schemas.matches import ActiveMatchOut, MatchActionOut, MatchActionRequest, MatchOut
from loadhunter_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[ActiveMatchOut])
async def list_active_matches(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ActiveMatchOut]:
    try:
        principal.require_scopes({"matches:read"})
        tenant_id = principal.require_tenant()
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_active_matches(tenant_id=tenant_id, limit=limit, offset=offset)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ActiveMatchOut(**row) for row in rows]


@router.get("/{match_id}/actions", response_model=list[MatchActionOut])
async def list_match_actions(
    match_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[MatchActionOut]:
    try:
        principal.require_scopes({"matches:read"})
        tenant_id = principal.require_tenant()
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_match_actions(
            tenant_id=tenant_id,
            match_id=match_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [MatchActionOut(**row) for row in rows]


@router.post("/{match_id}/actions", response_model=MatchOut)
async def apply_match_action(
    match_id: str,
    payload: MatchActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> MatchOut:
    try:
        principal.require_scopes({"matches:write"})
        tenant_id = principal.require_tenant()
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.apply_match_action(
            tenant_id=tenant_id,
            match_id=match_id,
            action=payload.action,
            actor_id=principal.actor_id,
            reason=payload.reason,
            notes=payload.notes,
            bid_rate=payload.bid_rate,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return MatchOut(**row)
