from datetime import datetime, timedelta, timezone

from loadhunter_worker.jobs.leases import lease_expired, leader_claim_expired, should_abandon


def test_should_abandon_when_lease_expired() -> None:
    now = datetime.now(timezone.utc)
    item = {"status": "processing", "lease_expires_at": (now - timedelta(seconds=5)).isoformat()}
    assert should_abandon(item, now=now)


def test_should_not_abandon_when_not_processing() -> None:
    now = datetime.now(timezone.utc)
    item = {"status": "done", "lease_expires_at": (now - timedelta(seconds=5)).isoformat()}
    assert not should_abandon(item, now=now)


def test_lease_expired_accepts_zulu_suffix_and_missing_lease() -> None:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert lease_expired({"lease_expires_at": "2026-03-01T11:59:00Z"}, now=now)
    assert not lease_expired({"lease_expires_at": "2026-03-01T12:01:00Z"}, now=now)
    assert not lease_expired({}, now=now)


def test_leader_claim_expired_only_for_stale_pending_checks() -> None:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    stale = {"status": "pending", "claimed_at": (now - timedelta(seconds=300)).isoformat()}
    fresh = {"status": "pending", "claimed_at": (now - timedelta(seconds=30)).isoformat()}
    decided = {"status": "approved", "claimed_at": (now - timedelta(seconds=300)).isoformat()}

    assert leader_claim_expired(stale, lease_seconds=120, now=now)
    assert not leader_claim_expired(fresh, lease_seconds=120, now=now)
    assert not leader_claim_expired(decided, lease_seconds=120, now=now)
    assert leader_claim_expired({"status": "pending"}, lease_seconds=120, now=now)
