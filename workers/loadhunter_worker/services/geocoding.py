from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


def pickup_query(parsed: dict[str, Any]) -> str | None:
    """Free-text origin query: ``"City, ST 12345"``, or whatever parts are present."""
    city = _as_text(parsed.get("origin_city"))
    state = _as_text(parsed.get("origin_state"))
    postal = _as_text(parsed.get("origin_zip"))

    locality = ", ".join(part for part in (city, state.upper() if state else None) if part)
    query = " ".join(part for part in (locality, postal) if part)
    return query or None


class GeocoderClient:
    """Best-effort geocoder; any failure yields ``None`` so the load is stored without coordinates."""

    def __init__(
        self,
        url: str | None,
        *,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def geocode(self, query: str | None) -> tuple[float, float] | None:
        if not self.url or not query:
            return None

        try:
            if self._client is not None:
                response = await self._client.get(self.url, params={"q": query})
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                    response = await temp_client.get(self.url, params={"q": query})
        except httpx.HTTPError as exc:
            logger.warning("geocoder request failed query=%r error=%s", query, exc.__class__.__name__)
            return None

        if response.status_code != 200:
            logger.info("geocoder returned status=%s query=%r", response.status_code, query)
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None

        lat = _as_float(data.get("lat"))
        lng = _as_float(data.get("lng"))
        if lat is None or lng is None:
            return None
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            return None
        return lat, lng


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
