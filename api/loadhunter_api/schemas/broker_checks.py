from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

BrokerCheckStatus = Literal["pending", "approved", "denied", "unknown", "error"]
BrokerDecisionStatus = Literal["approved", "denied", "unknown", "error"]


class LeaderRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    broker_key: str = Field(min_length=1)
    leader_id: str = Field(min_length=1)


class BrokerCheckOut(BaseModel):
    id: str
    tenant_id: str
    broker_key: str
    window_start: datetime
    status: BrokerCheckStatus
    leader_id: str | None = None
    claimed_at: datetime | None = None
    decided_at: datetime | None = None
    contender_count: int
    takeover_count: int
    raw_response: dict[str, Any] | None = None


class LeaderOut(BrokerCheckOut):
    is_leader: bool
    took_over: bool = False


class DecisionRequest(BaseModel):
    leader_id: str = Field(min_length=1)
    status: BrokerDecisionStatus
    match_ids: list[str] = Field(default_factory=list)
    raw_response: dict[str, Any] | None = None


class FanOutRequest(BaseModel):
    match_ids: list[str] = Field(default_factory=list, min_length=1)


class DecisionOut(BrokerCheckOut):
    fanned_out: int = 0


class BrokerCheckDetailOut(BrokerCheckOut):
    fan_out_count: int = 0
