from fastapi import APIRouter, Depends, HTTPException, status

from loadhunter_api.core.security import get_machine_principal
from loadhunter_api.schemas.admin import MaintenanceOut
from loadhunter_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("/run", response_model=MaintenanceOut)
async def run_maintenance(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> MaintenanceOut:
    try:
        principal.require_scopes({"maintenance:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.run_maintenance(actor_type="machine", actor_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MaintenanceOut(**result)
