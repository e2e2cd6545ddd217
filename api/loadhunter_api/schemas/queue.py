from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

QueueItemStatus = Literal["pending", "processing", "done", "failed"]
DedupOutcome = Literal["new", "duplicate", "ineligible"]


class EnqueueRequest(BaseModel):
    source_message_id: str = Field(min_length=1)
    tenant_id: str | None = None
    thread_id: str | None = None
    payload_url: str | None = None
    payload: dict[str, Any] | None = None
    queued_at: datetime | None = None


class EnqueueOut(BaseModel):
    item_id: str
    created: bool
    status: QueueItemStatus


class ClaimRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    batch_size: int = Field(default=10, ge=1, le=1000)
    backlog: bool = False


class QueueItemOut(BaseModel):
    id: str
    tenant_id: str | None = None
    source_message_id: str
    thread_id: str | None = None
    payload_url: str | None = None
    payload: dict[str, Any] | None = None
    status: QueueItemStatus
    attempts: int
    queued_at: datetime
    claimed_at: datetime | None = None
    claim_token: str | None = None
    claimed_by: str | None = None
    processed_at: datetime | None = None
    last_error: str | None = None


class ClaimedQueueItemOut(QueueItemOut):
    lease_seconds: int
    lease_expires_at: datetime


class ReapCountsOut(BaseModel):
    requeued: int = 0
    failed: int = 0


class ClaimOut(BaseModel):
    items: list[ClaimedQueueItemOut] = Field(default_factory=list)
    reaped: ReapCountsOut = Field(default_factory=ReapCountsOut)


class CompleteRequest(BaseModel):
    claim_token: str = Field(min_length=1)
    parsed: dict[str, Any]
    pickup_lat: float | None = Field(default=None, ge=-90, le=90)
    pickup_lng: float | None = Field(default=None, ge=-180, le=180)
    received_at: datetime | None = None


class CompletedMatchOut(BaseModel):
    id: str
    hunt_plan_id: str
    vehicle_id: str
    distance_miles: float | None = None
    match_score: float


class CompleteOut(BaseModel):
    item: QueueItemOut
    already_completed: bool
    load_id: str | None = None
    load_seq: int | None = None
    broker_key: str | None = None
    dedup_outcome: DedupOutcome | None = None
    matches: list[CompletedMatchOut] = Field(default_factory=list)


class FailRequest(BaseModel):
    claim_token: str = Field(min_length=1)
    error: str = Field(min_length=1, max_length=2000)
    permanent: bool = False
