from fastapi import APIRouter, Depends, HTTPException, status

from loadhunter_api.core.security import get_machine_principal
from loadhunter_api.core.telemetry import annotate_current_span
from loadhunter_api.schemas.queue import (
    ClaimOut,
    ClaimRequest,
    CompletedMatchOut,
    CompleteOut,
    CompleteRequest,
    EnqueueOut,
    EnqueueRequest,
    FailRequest,
    QueueItemOut,
)
from loadhunter_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("/items", response_model=EnqueueOut)
async def enqueue_item(
    payload: EnqueueRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> EnqueueOut:
    try:
        principal.require_scopes({"queue:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.enqueue_item(
            source_message_id=payload.source_message_id,
            tenant_id=payload.tenant_id,
            thread_id=payload.thread_id,
            payload_url=payload.payload_url,
            payload=payload.payload,
            queued_at=payload.queued_at,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    annotate_current_span(queue_item_id=result["item_id"], enqueue_created=result["created"])
    return EnqueueOut(**result)


@router.post("/claim", response_model=ClaimOut)
async def claim_items(
    payload: ClaimRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> ClaimOut:
    required = {"queue:claim", "queue:reconcile"} if payload.backlog else {"queue:claim"}
    try:
        principal.require_scopes(required)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.claim_items(
            worker_id=payload.worker_id,
            batch_size=payload.batch_size,
            backlog=payload.backlog,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    annotate_current_span(claimed=len(result["items"]), backlog=payload.backlog)
    return ClaimOut(**result)


@router.post("/items/{item_id}/complete", response_model=CompleteOut)
async def complete_item(
    item_id: str,
    payload: CompleteRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> CompleteOut:
    try:
        principal.require_scopes({"queue:claim"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.complete_item(
            item_id=item_id,
            claim_token=payload.claim_token,
            parsed=payload.parsed,
            pickup_lat=payload.pickup_lat,
            pickup_lng=payload.pickup_lng,
            received_at=payload.received_at,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    load = result["load"] or {}
    annotate_current_span(
        queue_item_id=item_id,
        dedup_outcome=result["dedup_outcome"],
        match_count=len(result["matches"]),
    )
    return CompleteOut(
        item=QueueItemOut(**result["item"]),
        already_completed=result["already_completed"],
        load_id=load.get("id"),
        load_seq=load.get("load_seq"),
        broker_key=load.get("broker_key"),
        dedup_outcome=result["dedup_outcome"],
        matches=[CompletedMatchOut(**match) for match in result["matches"]],
    )


@router.post("/items/{item_id}/fail", response_model=QueueItemOut)
async def fail_item(
    item_id: str,
    payload: FailRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> QueueItemOut:
    try:
        principal.require_scopes({"queue:claim"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.fail_item(
            item_id=item_id,
            claim_token=payload.claim_token,
            error=payload.error,
            permanent=payload.permanent,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return QueueItemOut(**row)
