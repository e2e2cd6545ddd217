from __future__ import annotations

import logging
from typing import Any

import httpx

CREDIT_STATUSES = {"approved", "denied", "unknown"}

logger = logging.getLogger(__name__)


class CreditCheckClient:
    def __init__(
        self,
        url: str | None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def check(self, *, broker_key: str, parsed: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Return ``(status, raw_response)``; provider failures become status ``error``."""
        if not self.url:
            return "unknown", {"reason": "credit_check_not_configured"}

        body = {
            "broker_key": broker_key,
            "mc_number": parsed.get("mc_number"),
            "broker_company": parsed.get("broker_company") or parsed.get("broker_name"),
            "broker_email": parsed.get("broker_email"),
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                    response = await temp_client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("credit check failed broker_key=%s error=%s", broker_key, exc.__class__.__name__)
            return "error", {"error": exc.__class__.__name__}

        if response.status_code != 200:
            return "error", {"status_code": response.status_code}
        try:
            data = response.json()
        except ValueError:
            return "error", {"error": "invalid_json"}
        if not isinstance(data, dict):
            return "error", {"error": "invalid_payload"}

        status = data.get("status")
        if status not in CREDIT_STATUSES:
            return "unknown", data
        return status, data
