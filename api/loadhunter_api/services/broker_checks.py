from __future__ import annotations

from datetime import datetime, timezone

BROKER_CHECK_STATUSES = {"pending", "approved", "denied", "unknown", "error"}
BROKER_DECISION_STATUSES = BROKER_CHECK_STATUSES - {"pending"}


def decision_window_start(at: datetime, window_minutes: int) -> datetime:
    """Start of the fixed UTC bucket of ``window_minutes`` that contains ``at``."""
    window_seconds = max(1, window_minutes) * 60
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    epoch_seconds = int(at.astimezone(timezone.utc).timestamp())
    bucket = epoch_seconds - (epoch_seconds % window_seconds)
    return datetime.fromtimestamp(bucket, tz=timezone.utc)
