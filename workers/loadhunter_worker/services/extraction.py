"""Client for the structured-extraction collaborator.

The extractor receives one queue item (inline payload or a payload URL) and answers
either ``{"fields": {...}}`` with the parsed load or ``{"error": "<reason_code>"}``
when the message is not a usable load. Extraction errors are permanent unless the
extractor marks them ``"retryable": true``; transport failures and 5xx/429
responses are transient.
"""

from __future__ import annotations

from typing import Any

import httpx

TRANSIENT_STATUS_CODES = {408, 429}


class ExtractionError(Exception):
    def __init__(self, reason_code: str, *, permanent: bool) -> None:
        super().__init__(reason_code)
        self.reason_code = reason_code
        self.permanent = permanent


class ExtractorClient:
    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def extract(self, item: dict[str, Any]) -> dict[str, Any]:
        payload = item.get("payload")
        payload_url = _as_text(item.get("payload_url"))
        if payload is None and payload_url is None:
            raise ExtractionError("missing_payload", permanent=True)

        body = {
            "item_id": item.get("id"),
            "source_message_id": item.get("source_message_id"),
            "tenant_id": item.get("tenant_id"),
            "payload": payload,
            "payload_url": payload_url,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                    response = await temp_client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            raise ExtractionError(f"extractor_unavailable:{exc.__class__.__name__}", permanent=False) from exc

        if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
            raise ExtractionError(f"extractor_status_{response.status_code}", permanent=False)
        if response.status_code >= 400:
            raise ExtractionError(f"extractor_rejected_{response.status_code}", permanent=True)

        try:
            data = response.json()
        except ValueError as exc:
            raise ExtractionError("invalid_extractor_response", permanent=True) from exc
        if not isinstance(data, dict):
            raise ExtractionError("invalid_extractor_response", permanent=True)

        error = _as_text(data.get("error"))
        if error:
            raise ExtractionError(error, permanent=not bool(data.get("retryable")))

        fields = data.get("fields")
        if not isinstance(fields, dict) or not fields:
            raise ExtractionError("empty_extraction", permanent=True)
        return fields


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
