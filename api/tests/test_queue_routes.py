from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from loadhunter_api.main import app
from loadhunter_api.services.repository import (
    MachineCredentialRecord,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    get_repository,
)

WORKER_HEADERS = {"X-Module-Id": "worker-1", "X-API-Key": "worker-key"}
CONNECTOR_HEADERS = {"X-Module-Id": "connector-1", "X-API-Key": "connector-key"}
ITEM_ID = "55555555-5555-5555-5555-555555555555"
CHECK_ID = "66666666-6666-6666-6666-666666666666"
TENANT_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"


def _queue_item(**overrides: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    item: dict[str, Any] = {
        "id": ITEM_ID,
        "tenant_id": TENANT_ID,
        "source_message_id": "msg-1",
        "thread_id": None,
        "payload_url": "s3://bucket/msg-1.eml",
        "payload": None,
        "status": "processing",
        "attempts": 1,
        "queued_at": now,
        "claimed_at": now,
        "claim_token": "token-1",
        "claimed_by": "worker-1",
        "processed_at": None,
        "last_error": None,
    }
    item.update(overrides)
    return item


def _broker_check(**overrides: Any) -> dict[str, Any]:
    check: dict[str, Any] = {
        "id": CHECK_ID,
        "tenant_id": TENANT_ID,
        "broker_key": "mc:123456",
        "window_start": datetime(2025, 3, 14, 10, tzinfo=timezone.utc),
        "status": "pending",
        "leader_id": "worker-1",
        "claimed_at": datetime.now(timezone.utc),
        "decided_at": None,
        "contender_count": 1,
        "takeover_count": 0,
        "raw_response": None,
    }
    check.update(overrides)
    return check


class FakeQueueRepository:
    def __init__(self) -> None:
        self.enqueued: dict[str, dict[str, Any]] = {}
        self.claim_calls: list[dict[str, Any]] = []
        self.item = _queue_item()
        self.check = _broker_check()

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        scopes = {
            "worker-1": ["queue:claim", "broker:check", "maintenance:write"],
            "connector-1": ["queue:write"],
        }.get(module_id)
        if scopes is None:
            return []
        key = "worker-key" if module_id == "worker-1" else "connector-key"
        return [
            MachineCredentialRecord(
                module_db_id=f"db-{module_id}",
                module_id=module_id,
                scopes=scopes,
                key_hash=hashlib.sha256(key.encode("utf-8")).hexdigest(),
            )
        ]

    async def enqueue_item(self, *, source_message_id: str, tenant_id: str | None = None, **_: Any) -> dict[str, Any]:
        key = f"{tenant_id}:{source_message_id}"
        if key in self.enqueued:
            return {"item_id": self.enqueued[key]["id"], "created": False, "status": "pending"}
        self.enqueued[key] = {"id": f"item-{len(self.enqueued) + 1}"}
        return {"item_id": self.enqueued[key]["id"], "created": True, "status": "pending"}

    async def claim_items(self, *, worker_id: str, batch_size: int, backlog: bool = False) -> dict[str, Any]:
        self.claim_calls.append({"worker_id": worker_id, "batch_size": batch_size, "backlog": backlog})
        item = dict(self.item)
        item["lease_seconds"] = 900
        item["lease_expires_at"] = item["claimed_at"] + timedelta(seconds=900)
        return {"items": [item], "reaped": {"requeued": 1, "failed": 0}}

    async def complete_item(self, *, item_id: str, claim_token: str, parsed: dict[str, Any], **_: Any) -> dict[str, Any]:
        if item_id != ITEM_ID:
            raise RepositoryNotFoundError("queue item not found")
        if claim_token != self.item["claim_token"]:
            raise RepositoryConflictError("claim lease lost")
        self.item.update({"status": "done", "processed_at": datetime.now(timezone.utc), "claim_token": None})
        return {
            "item": self.item,
            "already_completed": False,
            "load": {"id": "load-1", "load_seq": 7},
            "dedup_outcome": "new",
            "matches": [
                {
                    "id": "match-1",
                    "hunt_plan_id": "plan-1",
                    "vehicle_id": "vehicle-1",
                    "distance_miles": 31.02,
                    "match_score": 44.6,
                }
            ],
        }

    async def fail_item(self, *, item_id: str, claim_token: str, error: str, permanent: bool) -> dict[str, Any]:
        if claim_token != self.item["claim_token"]:
            raise RepositoryConflictError("claim lease lost")
        status = "failed" if permanent else "pending"
        self.item.update({"status": status, "last_error": error, "claim_token": None, "claimed_at": None})
        return self.item

    async def try_become_leader(self, *, tenant_id: str, broker_key: str, leader_id: str) -> dict[str, Any]:
        is_leader = leader_id == self.check["leader_id"]
        if not is_leader:
            self.check["contender_count"] += 1
        return {**self.check, "is_leader": is_leader, "took_over": False}

    async def record_broker_decision(
        self,
        *,
        check_id: str,
        leader_id: str,
        status: str,
        match_ids: list[str],
        raw_response: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if leader_id != self.check["leader_id"]:
            raise RepositoryForbiddenError("only the current leader may record the decision")
        self.check.update({"status": status, "decided_at": datetime.now(timezone.utc), "raw_response": raw_response})
        return {**self.check, "fanned_out": len(match_ids)}

    async def get_broker_check(self, *, check_id: str) -> dict[str, Any]:
        if check_id != CHECK_ID:
            raise RepositoryNotFoundError("broker check not found")
        return {**self.check, "fan_out_count": 2}

    async def run_maintenance(self, *, actor_type: str, actor_id: str | None) -> dict[str, int]:
        return {"requeued": 0, "failed": 0, "expired_matches": 3, "floors_advanced": 1, "archived": 10}


@pytest.fixture
def queue_client() -> tuple[TestClient, FakeQueueRepository]:
    fake_repo = FakeQueueRepository()
    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as client:
        yield client, fake_repo

    app.dependency_overrides.clear()


def test_machine_routes_require_module_headers(queue_client) -> None:
    client, _ = queue_client
    response = client.post("/queue/claim", json={"worker_id": "w1"})
    assert response.status_code == 401


def test_machine_routes_reject_wrong_key(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        "/queue/claim",
        json={"worker_id": "w1"},
        headers={"X-Module-Id": "worker-1", "X-API-Key": "nope"},
    )
    assert response.status_code == 401


def test_enqueue_is_idempotent_per_source_message(queue_client) -> None:
    client, _ = queue_client
    body = {"tenant_id": TENANT_ID, "source_message_id": "msg-1", "payload_url": "s3://bucket/msg-1.eml"}

    first = client.post("/queue/items", json=body, headers=CONNECTOR_HEADERS)
    second = client.post("/queue/items", json=body, headers=CONNECTOR_HEADERS)

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.json()["created"] is False
    assert second.json()["item_id"] == first.json()["item_id"]


def test_enqueue_requires_queue_write_scope(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        "/queue/items",
        json={"source_message_id": "msg-1", "payload_url": "s3://x"},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 403


def test_claim_returns_lease_and_reap_counts(queue_client) -> None:
    client, fake_repo = queue_client
    response = client.post("/queue/claim", json={"worker_id": "w1", "batch_size": 5}, headers=WORKER_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["items"][0]["claim_token"] == "token-1"
    assert body["items"][0]["lease_seconds"] == 900
    assert body["reaped"] == {"requeued": 1, "failed": 0}
    assert fake_repo.claim_calls == [{"worker_id": "w1", "batch_size": 5, "backlog": False}]


def test_backlog_claim_requires_reconcile_scope(queue_client) -> None:
    client, fake_repo = queue_client
    response = client.post("/queue/claim", json={"worker_id": "w1", "backlog": True}, headers=WORKER_HEADERS)
    assert response.status_code == 403
    assert fake_repo.claim_calls == []


def test_complete_reports_dedup_and_matches(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        f"/queue/items/{ITEM_ID}/complete",
        json={"claim_token": "token-1", "parsed": {"origin_city": "Dallas"}, "pickup_lat": 32.7, "pickup_lng": -96.8},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["item"]["status"] == "done"
    assert body["dedup_outcome"] == "new"
    assert body["load_seq"] == 7
    assert body["matches"][0]["id"] == "match-1"


def test_complete_with_stale_token_conflicts(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        f"/queue/items/{ITEM_ID}/complete",
        json={"claim_token": "token-0", "parsed": {}},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 409


def test_complete_rejects_out_of_range_coordinates(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        f"/queue/items/{ITEM_ID}/complete",
        json={"claim_token": "token-1", "parsed": {}, "pickup_lat": 123.0},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 422


def test_transient_fail_returns_item_to_pending(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        f"/queue/items/{ITEM_ID}/fail",
        json={"claim_token": "token-1", "error": "extractor_timeout"},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["last_error"] == "extractor_timeout"


def test_permanent_fail_is_terminal(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        f"/queue/items/{ITEM_ID}/fail",
        json={"claim_token": "token-1", "error": "not_a_load", "permanent": True},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "failed"


def test_leader_and_follower_views(queue_client) -> None:
    client, _ = queue_client
    body = {"tenant_id": TENANT_ID, "broker_key": "mc:123456"}

    leader = client.post("/broker-checks/leader", json={**body, "leader_id": "worker-1"}, headers=WORKER_HEADERS)
    follower = client.post("/broker-checks/leader", json={**body, "leader_id": "worker-2"}, headers=WORKER_HEADERS)

    assert leader.json()["is_leader"] is True
    assert follower.json()["is_leader"] is False
    assert follower.json()["id"] == leader.json()["id"]
    assert follower.json()["contender_count"] == 2


def test_only_leader_records_decision(queue_client) -> None:
    client, _ = queue_client
    denied = client.post(
        f"/broker-checks/{CHECK_ID}/decision",
        json={"leader_id": "worker-2", "status": "approved"},
        headers=WORKER_HEADERS,
    )
    recorded = client.post(
        f"/broker-checks/{CHECK_ID}/decision",
        json={"leader_id": "worker-1", "status": "approved", "match_ids": ["m1", "m2"]},
        headers=WORKER_HEADERS,
    )

    assert denied.status_code == 403
    assert recorded.status_code == 200
    assert recorded.json()["status"] == "approved"
    assert recorded.json()["fanned_out"] == 2


def test_decision_rejects_pending_status(queue_client) -> None:
    client, _ = queue_client
    response = client.post(
        f"/broker-checks/{CHECK_ID}/decision",
        json={"leader_id": "worker-1", "status": "pending"},
        headers=WORKER_HEADERS,
    )
    assert response.status_code == 422


def test_get_broker_check(queue_client) -> None:
    client, _ = queue_client
    found = client.get(f"/broker-checks/{CHECK_ID}", headers=WORKER_HEADERS)
    missing = client.get("/broker-checks/77777777-7777-7777-7777-777777777777", headers=WORKER_HEADERS)

    assert found.status_code == 200
    assert found.json()["fan_out_count"] == 2
    assert missing.status_code == 404


def test_maintenance_run(queue_client) -> None:
    client, _ = queue_client
    allowed = client.post("/maintenance/run", headers=WORKER_HEADERS)
    denied = client.post("/maintenance/run", headers=CONNECTOR_HEADERS)

    assert allowed.status_code == 200
    assert allowed.json()["expired_matches"] == 3
    assert denied.status_code == 403
