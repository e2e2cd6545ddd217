from __future__ import annotations

from typing import Any

import httpx


class LeaseLostError(RuntimeError):
    """The API rejected a complete/fail call because this worker no longer holds the claim."""


class QueueClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def _post(self, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}{path}", json=payload or {}, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def claim_items(self, *, worker_id: str, batch_size: int, backlog: bool = False) -> dict[str, Any]:
        return await self._post(
            "/queue/claim",
            {"worker_id": worker_id, "batch_size": batch_size, "backlog": backlog},
        )

    async def complete_item(
        self,
        item_id: str,
        *,
        claim_token: str,
        parsed: dict[str, Any],
        pickup_lat: float | None = None,
        pickup_lng: float | None = None,
    ) -> dict[str, Any]:
        body = {
            "claim_token": claim_token,
            "parsed": parsed,
            "pickup_lat": pickup_lat,
            "pickup_lng": pickup_lng,
        }
        return await self._post_claimed(f"/queue/items/{item_id}/complete", body)

    async def fail_item(self, item_id: str, *, claim_token: str, error: str, permanent: bool) -> dict[str, Any]:
        body = {"claim_token": claim_token, "error": error, "permanent": permanent}
        return await self._post_claimed(f"/queue/items/{item_id}/fail", body)

    async def _post_claimed(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}{path}", json=payload, headers=self.headers)
            if response.status_code == httpx.codes.CONFLICT:
                raise LeaseLostError(_error_detail(response, "claim lease lost"))
            response.raise_for_status()
            return response.json()

    async def become_leader(self, *, tenant_id: str, broker_key: str, leader_id: str) -> dict[str, Any]:
        return await self._post(
            "/broker-checks/leader",
            {"tenant_id": tenant_id, "broker_key": broker_key, "leader_id": leader_id},
        )

    async def record_decision(
        self,
        check_id: str,
        *,
        leader_id: str,
        status: str,
        match_ids: list[str],
        raw_response: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body = {
            "leader_id": leader_id,
            "status": status,
            "match_ids": match_ids,
            "raw_response": raw_response,
        }
        return await self._post(f"/broker-checks/{check_id}/decision", body)

    async def fan_out(self, check_id: str, *, match_ids: list[str]) -> dict[str, Any]:
        return await self._post(f"/broker-checks/{check_id}/fan-out", {"match_ids": match_ids})

    async def get_broker_check(self, check_id: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/broker-checks/{check_id}", headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def run_maintenance(self) -> dict[str, Any]:
        return await self._post("/maintenance/run")


def _error_detail(response: httpx.Response, default: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return default
    if isinstance(payload, dict) and isinstance(payload.get("detail"), str):
        return payload["detail"]
    return default
