from fastapi import APIRouter, Depends, HTTPException, status

from loadhunter_api.core.security import get_machine_principal
from loadhunter_api.core.telemetry import annotate_current_span
from loadhunter_api.schemas.broker_checks import (
    BrokerCheckDetailOut,
    DecisionOut,
    DecisionRequest,
    FanOutRequest,
    LeaderOut,
    LeaderRequest,
)
from loadhunter_api.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("/leader", response_model=LeaderOut)
async def become_leader(
    payload: LeaderRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> LeaderOut:
    try:
        principal.require_scopes({"broker:check"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.try_become_leader(
            tenant_id=payload.tenant_id,
            broker_key=payload.broker_key,
            leader_id=payload.leader_id,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    annotate_current_span(broker_check_id=result["id"], is_leader=result["is_leader"], took_over=result["took_over"])
    return LeaderOut(**result)


@router.post("/{check_id}/decision", response_model=DecisionOut)
async def record_decision(
    check_id: str,
    payload: DecisionRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> DecisionOut:
    try:
        principal.require_scopes({"broker:check"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.record_broker_decision(
            check_id=check_id,
            leader_id=payload.leader_id,
            status=payload.status,
            match_ids=payload.match_ids,
            raw_response=payload.raw_response,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return DecisionOut(**result)


@router.post("/{check_id}/fan-out", response_model=DecisionOut)
async def fan_out_decision(
    check_id: str,
    payload: FanOutRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> DecisionOut:
    try:
        principal.require_scopes({"broker:check"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.fan_out_broker_decision(check_id=check_id, match_ids=payload.match_ids)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return DecisionOut(**result)


@router.get("/{check_id}", response_model=BrokerCheckDetailOut)
async def get_broker_check(
    check_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> BrokerCheckDetailOut:
    try:
        principal.require_scopes({"broker:check"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.get_broker_check(check_id=check_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return BrokerCheckDetailOut(**result)
