from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any


def _as_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def lease_expired(item: dict[str, Any], now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = _as_datetime(item.get("lease_expires_at"))
    if lease is None:
        return False
    return lease <= now


def should_abandon(item: dict[str, Any], now: datetime | None = None) -> bool:
    """A claimed item whose lease already ran out belongs to the reaper, not to us."""
    return item.get("status") == "processing" and lease_expired(item, now=now)


def leader_claim_expired(check: dict[str, Any], *, lease_seconds: int, now: datetime | None = None) -> bool:
    if check.get("status") != "pending":
        return False
    claimed_at = _as_datetime(check.get("claimed_at"))
    if claimed_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return claimed_at + timedelta(seconds=lease_seconds) <= now
