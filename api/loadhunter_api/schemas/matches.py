from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

MatchStatus = Literal["undecided", "active", "skipped", "bid", "waitlist"]
MatchActionType = Literal["activate", "skip", "bid", "waitlist", "deactivate", "note"]
DeactivationReason = Literal["superseded", "expired", "manual"]


class MatchOut(BaseModel):
    id: str
    load_item_id: str
    hunt_plan_id: str
    vehicle_id: str
    tenant_id: str
    distance_miles: float | None = None
    match_score: float
    match_status: MatchStatus
    is_active: bool
    deactivated_reason: str | None = None
    bid_rate: float | None = None
    matched_at: datetime
    updated_at: datetime


class ActiveMatchOut(MatchOut):
    received_at: datetime
    expires_at: datetime | None = None
    source_message_id: str
    broker_key: str | None = None
    fingerprint: str | None = None
    parsed_data: dict[str, Any] = Field(default_factory=dict)
    duplicate_count: int = 0


class MatchActionRequest(BaseModel):
    action: MatchActionType
    reason: DeactivationReason | None = None
    notes: str | None = Field(default=None, max_length=4000)
    bid_rate: float | None = Field(default=None, ge=0)


class MatchActionOut(BaseModel):
    id: int
    match_id: str
    actor_type: str
    actor_id: str | None = None
    action_type: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class BackfillOut(BaseModel):
    tenant_id: str
    performed: bool
    loads_scanned: int
    matches_created: int
    floor_position: int


class HuntPlanEnabledPatchRequest(BaseModel):
    enabled: bool


class HuntPlanOut(BaseModel):
    id: str
    tenant_id: str
    vehicle_id: str
    name: str
    enabled: bool
    vehicle_sizes: list[str] = Field(default_factory=list)
    hunt_lat: float | None = None
    hunt_lng: float | None = None
    pickup_radius_miles: float | None = None
    load_capacity_lbs: float | None = None
    cooldown_seconds_min: int | None = None
    updated_at: datetime
    backfill: BackfillOut | None = None
