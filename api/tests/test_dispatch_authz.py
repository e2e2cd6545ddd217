from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import loadhunter_api.core.security as security
from loadhunter_api.core.config import get_settings
from loadhunter_api.main import app
from loadhunter_api.services.lifecycle import MatchTransitionError, plan_match_action
from loadhunter_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    get_repository,
)

TENANT_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
TENANT_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
MATCH_ID = "11111111-1111-1111-1111-111111111111"
PLAN_ID = "22222222-2222-2222-2222-222222222222"


class FakeDispatchRepository:
    def __init__(self) -> None:
        now = datetime.now(timezone.utc)
        self.matches: dict[str, dict[str, Any]] = {
            MATCH_ID: {
                "id": MATCH_ID,
                "load_item_id": "33333333-3333-3333-3333-333333333333",
                "hunt_plan_id": PLAN_ID,
                "vehicle_id": "44444444-4444-4444-4444-444444444444",
                "tenant_id": TENANT_A,
                "distance_miles": 31.02,
                "match_score": 44.6,
                "match_status": "undecided",
                "is_active": True,
                "deactivated_reason": None,
                "bid_rate": None,
                "matched_at": now,
                "updated_at": now,
            }
        }
        self.actions: list[dict[str, Any]] = []
        self.backfill_calls: list[str] = []

    async def list_active_matches(self, *, tenant_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = [
            {
                **match,
                "received_at": match["matched_at"],
                "expires_at": None,
                "source_message_id": "msg-1",
                "broker_key": "mc:123456",
                "fingerprint": "f" * 64,
                "parsed_data": {"origin_city": "Dallas"},
                "duplicate_count": 0,
            }
            for match in self.matches.values()
            if match["tenant_id"] == tenant_id and match["is_active"]
        ]
        return rows[offset : offset + limit]

    async def list_match_actions(
        self,
        *,
        tenant_id: str,
        match_id: str,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        match = self.matches.get(match_id)
        if not match or match["tenant_id"] != tenant_id:
            raise RepositoryNotFoundError("match not found")
        rows = [row for row in self.actions if row["match_id"] == match_id]
        return rows[offset : offset + limit]

    async def apply_match_action(
        self,
        *,
        tenant_id: str,
        match_id: str,
        action: str,
        actor_id: str,
        reason: str | None = None,
        notes: str | None = None,
        bid_rate: float | None = None,
    ) -> dict[str, Any]:
        match = self.matches.get(match_id)
        if not match or match["tenant_id"] != tenant_id:
            raise RepositoryNotFoundError("match not found")
        try:
            change = plan_match_action(
                current_status=match["match_status"],
                is_active=match["is_active"],
                action=action,
                reason=reason,
            )
        except MatchTransitionError as exc:
            raise RepositoryConflictError(str(exc)) from exc
        if change.changed:
            match["match_status"] = change.to_status
            match["is_active"] = change.is_active
            match["deactivated_reason"] = change.deactivated_reason
            if bid_rate is not None:
                match["bid_rate"] = bid_rate
        if change.changed or action == "note":
            self.actions.append(
                {
                    "id": len(self.actions) + 1,
                    "match_id": match_id,
                    "actor_type": "human",
                    "actor_id": actor_id,
                    "action_type": action,
                    "details": {"from_status": change.from_status, "to_status": change.to_status},
                    "created_at": datetime.now(timezone.utc),
                }
            )
        return match

    async def set_hunt_plan_enabled(
        self,
        *,
        tenant_id: str,
        plan_id: str,
        enabled: bool,
        actor_id: str,
    ) -> dict[str, Any]:
        if plan_id != PLAN_ID or tenant_id != TENANT_A:
            raise RepositoryNotFoundError("hunt plan not found")
        backfill = None
        if enabled:
            self.backfill_calls.append(tenant_id)
            backfill = {
                "tenant_id": tenant_id,
                "performed": len(self.backfill_calls) == 1,
                "loads_scanned": 2,
                "matches_created": 1,
                "floor_position": 10,
            }
        return {
            "id": PLAN_ID,
            "tenant_id": tenant_id,
            "vehicle_id": "44444444-4444-4444-4444-444444444444",
            "name": "Dallas sprinter",
            "enabled": enabled,
            "vehicle_sizes": ["sprinter"],
            "hunt_lat": 32.7767,
            "hunt_lng": -96.797,
            "pickup_radius_miles": 150.0,
            "load_capacity_lbs": 3500.0,
            "cooldown_seconds_min": None,
            "updated_at": datetime.now(timezone.utc),
            "backfill": backfill,
        }

    async def get_queue_metrics(self) -> dict[str, Any]:
        return {
            "pending": 4,
            "processing": 1,
            "done": 10,
            "failed": 2,
            "depth": 5,
            "backlog_pending": 1,
            "stale_processing": 0,
            "archived": 100,
            "oldest_pending_age_seconds": 42.0,
            "oldest_processing_age_seconds": 3.5,
        }

    async def get_dedup_metrics(self) -> dict[str, Any]:
        return {
            "unique_content": 3,
            "total_receipts": 5,
            "duplicate_receipts": 2,
            "max_receipt_count": 3,
            "reuse_rate": 0.4,
            "receipt_count_distribution": {"1": 2, "2": 0, "3_5": 1, "6_10": 0, "gt_10": 0},
            "ineligible_by_reason": {"missing_pickup_date": 1},
        }

    async def reap_stale_items(self, *, limit: int, actor_type: str, actor_id: str | None) -> dict[str, int]:
        return {"requeued": 2, "failed": 1}


@pytest.fixture
def dispatch_client(monkeypatch: pytest.MonkeyPatch) -> tuple[TestClient, FakeDispatchRepository]:
    os.environ["LH_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["LH_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    fake_repo = FakeDispatchRepository()
    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as client:
        yield client, fake_repo

    app.dependency_overrides.clear()
    os.environ.pop("LH_SUPABASE_URL", None)
    os.environ.pop("LH_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _dispatcher(tenant_id: str | None = TENANT_A) -> dict[str, Any]:
    app_metadata: dict[str, Any] = {"role": "dispatcher"}
    if tenant_id:
        app_metadata["tenant_id"] = tenant_id
    return {"id": "dispatcher-1", "app_metadata": app_metadata}


def test_matches_require_bearer_token(dispatch_client) -> None:
    client, _ = dispatch_client
    response = client.get("/matches")
    assert response.status_code == 401


def test_matches_deny_plain_user(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = dispatch_client
    _mock_supabase_user(monkeypatch, {"id": "user-1", "app_metadata": {"tenant_id": TENANT_A}})

    response = client.get("/matches", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403


def test_matches_require_tenant_binding(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher(tenant_id=None))

    response = client.get("/matches", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403
    assert "tenant" in response.json()["detail"]


def test_matches_are_scoped_to_the_callers_tenant(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher())
    response = client.get("/matches", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    body = response.json()
    assert [row["id"] for row in body] == [MATCH_ID]
    assert body[0]["duplicate_count"] == 0

    _mock_supabase_user(monkeypatch, _dispatcher(tenant_id=TENANT_B))
    response = client.get("/matches", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    assert response.json() == []


def test_match_action_bid_then_conflict(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, fake_repo = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher())

    response = client.post(
        f"/matches/{MATCH_ID}/actions",
        json={"action": "bid", "bid_rate": 1850.0},
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 200
    assert response.json()["match_status"] == "bid"
    assert response.json()["bid_rate"] == 1850.0

    response = client.post(
        f"/matches/{MATCH_ID}/actions",
        json={"action": "activate"},
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 409

    response = client.get(f"/matches/{MATCH_ID}/actions", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    assert [row["action_type"] for row in response.json()] == ["bid"]
    assert len(fake_repo.actions) == 1


def test_match_action_rejects_unknown_action(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher())

    response = client.post(
        f"/matches/{MATCH_ID}/actions",
        json={"action": "archive"},
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 422


def test_match_action_in_other_tenant_is_not_found(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher(tenant_id=TENANT_B))

    response = client.post(
        f"/matches/{MATCH_ID}/actions",
        json={"action": "skip"},
        headers={"Authorization": "Bearer token"},
    )
    assert response.status_code == 404


def test_enabling_hunt_plan_runs_backfill_once(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, fake_repo = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher())

    first = client.patch(f"/hunt-plans/{PLAN_ID}", json={"enabled": True}, headers={"Authorization": "Bearer token"})
    second = client.patch(f"/hunt-plans/{PLAN_ID}", json={"enabled": True}, headers={"Authorization": "Bearer token"})

    assert first.status_code == 200
    assert first.json()["backfill"]["performed"] is True
    assert second.json()["backfill"]["performed"] is False
    assert fake_repo.backfill_calls == [TENANT_A, TENANT_A]


def test_disabling_hunt_plan_skips_backfill(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, fake_repo = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher())

    response = client.patch(f"/hunt-plans/{PLAN_ID}", json={"enabled": False}, headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    assert response.json()["backfill"] is None
    assert fake_repo.backfill_calls == []


def test_admin_metrics_deny_dispatcher(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = dispatch_client
    _mock_supabase_user(monkeypatch, _dispatcher())

    for path in ("/admin/queue", "/admin/dedup"):
        response = client.get(path, headers={"Authorization": "Bearer token"})
        assert response.status_code == 403


def test_admin_metrics_allow_admin(dispatch_client, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = dispatch_client
    _mock_supabase_user(monkeypatch, {"id": "admin-1", "app_metadata": {"role": "admin"}})

    queue = client.get("/admin/queue", headers={"Authorization": "Bearer token"})
    dedup = client.get("/admin/dedup", headers={"Authorization": "Bearer token"})
    reap = client.post("/admin/queue/reap", headers={"Authorization": "Bearer token"})

    assert queue.status_code == 200
    assert queue.json()["depth"] == 5
    assert dedup.status_code == 200
    assert dedup.json()["receipt_count_distribution"]["3_5"] == 1
    assert reap.json() == {"requeued": 2, "failed": 1}


def test_role_resolution_uses_only_app_metadata() -> None:
    principal = security._principal_for_user(
        {
            "id": "user-1",
            "app_metadata": {},
            "user_metadata": {"role": "admin", "tenant_id": TENANT_A},
        }
    )
    assert principal.role == "user"
    assert principal.scopes == set()
    assert principal.tenant_id is None


def test_role_resolution_supports_app_metadata_roles_array() -> None:
    assert security._resolve_human_role({"roles": ["user", "admin"]}) == "admin"
    assert security._resolve_human_role({"roles": ["dispatcher"]}) == "dispatcher"
    assert security._resolve_human_role({"roles": ["viewer"]}) == "user"


def test_tenant_resolution_trims_app_metadata_value() -> None:
    principal = security._principal_for_user(
        {"id": "dispatcher-1", "app_metadata": {"role": "dispatcher", "tenant_id": f" {TENANT_A} "}}
    )
    assert principal.tenant_id == TENANT_A
    assert "matches:write" in principal.scopes
