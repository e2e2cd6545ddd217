from fastapi import APIRouter, Depends, HTTPException, status

from loadhunter_api.core.security import get_human_principal
from loadhunter_api.schemas.matches import HuntPlanEnabledPatchRequest, HuntPlanOut
from loadhunter_api.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.patch("/{plan_id}", response_model=HuntPlanOut)
async def patch_hunt_plan_enabled(
    plan_id: str,
    payload: HuntPlanEnabledPatchRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HuntPlanOut:
    try:
        principal.require_scopes({"hunt_plans:write"})
        tenant_id = principal.require_tenant()
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.set_hunt_plan_enabled(
            tenant_id=tenant_id,
            plan_id=plan_id,
            enabled=payload.enabled,
            actor_id=principal.actor_id,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return HuntPlanOut(**row)
