"""Canonical load payloads and content fingerprints.

The fingerprint is a SHA-256 over the key-sorted JSON of the canonical payload.
The payload embeds ``fingerprint_version``, so bumping the version whenever the
canonicalization rules change keeps fingerprints from different rule sets
disjoint.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

FINGERPRINT_VERSION = 1

_MMDDYY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_COMMA_DECIMAL_RE = re.compile(r",(\d{2})$")
_NON_NUMERIC_RE = re.compile(r"[^0-9.-]")
_NON_INTEGER_RE = re.compile(r"[^0-9-]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_TRUE_TOKENS = {"true", "yes", "1"}
_FALSE_TOKENS = {"false", "no", "0"}


@dataclass(slots=True)
class FingerprintResult:
    fingerprint: str
    fingerprint_version: int
    canonical_payload: dict[str, Any]
    dedup_eligible: bool
    ineligible_reason: str | None
    size_bytes: int


def normalize_text(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def normalize_upper(value: Any) -> str | None:
    text = normalize_text(value)
    return text.upper() if text else None


def normalize_lower(value: Any) -> str | None:
    text = normalize_text(value)
    return text.lower() if text else None


def normalize_decimal(value: Any) -> float | None:
    """Parse a number and round it to two decimals (half away from zero)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        candidate = _COMMA_DECIMAL_RE.sub(r".\1", candidate)
        candidate = _NON_NUMERIC_RE.sub("", candidate.replace(",", ""))
        if candidate in {"", "-", "."}:
            return None
        try:
            parsed = float(candidate)
        except ValueError:
            return None
    else:
        return None

    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return math.copysign(math.floor(abs(parsed) * 100 + 0.5) / 100, parsed)


def normalize_integer(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        return math.floor(value)
    if isinstance(value, str):
        cleaned = _NON_INTEGER_RE.sub("", value)
        try:
            return int(cleaned)
        except ValueError:
            return None
    return None


def normalize_date(value: Any) -> str | None:
    """Normalize ``MM/DD/YY``, ``MM/DD/YYYY`` or ISO-prefixed dates to ``YYYY-MM-DD``."""
    text = normalize_text(value)
    if text is None:
        return None

    us_match = _MMDDYY_RE.match(text)
    if us_match:
        month, day, year = us_match.groups()
        if len(year) == 2:
            year = f"19{year}" if int(year) > 50 else f"20{year}"
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"

    iso_match = _ISO_DATE_RE.match(text)
    if iso_match:
        return "-".join(iso_match.groups())
    return None


def normalize_flag(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    return None


def normalize_stops(value: Any) -> list[dict[str, Any]] | None:
    if not isinstance(value, list) or not value:
        return None
    stops: list[dict[str, Any]] = []
    for index, stop in enumerate(value):
        stop = stop if isinstance(stop, dict) else {}
        stops.append(
            {
                "sequence": index,
                "city": normalize_text(stop.get("city")),
                "state": normalize_upper(stop.get("state")),
                "zip": normalize_text(stop.get("zip")),
                "type": normalize_lower(stop.get("type")),
                "date": normalize_date(stop.get("date")),
                "time": normalize_text(stop.get("time")),
            }
        )
    return stops


CANONICAL_FIELDS: dict[str, Callable[[Any], Any]] = {
    "broker_name": normalize_text,
    "broker_company": normalize_text,
    "broker_email": normalize_lower,
    "broker_phone": normalize_text,
    "broker_address": normalize_text,
    "broker_city": normalize_text,
    "broker_state": normalize_upper,
    "broker_zip": normalize_text,
    "broker_fax": normalize_text,
    "mc_number": normalize_text,
    "order_number": normalize_text,
    "order_number_secondary": normalize_text,
    "customer": normalize_text,
    "origin_city": normalize_text,
    "origin_state": normalize_upper,
    "origin_zip": normalize_text,
    "destination_city": normalize_text,
    "destination_state": normalize_upper,
    "destination_zip": normalize_text,
    "miles": normalize_decimal,
    "loaded_miles": normalize_decimal,
    "weight": normalize_decimal,
    "pieces": normalize_integer,
    "rate": normalize_decimal,
    "posted_amount": normalize_decimal,
    "pickup_date": normalize_date,
    "pickup_time": normalize_text,
    "delivery_date": normalize_date,
    "delivery_time": normalize_text,
    "expires_at": normalize_text,
    "vehicle_type": normalize_lower,
    "load_type": normalize_lower,
    "length": normalize_decimal,
    "width": normalize_decimal,
    "height": normalize_decimal,
    "dimensions": normalize_text,
    "hazmat": normalize_flag,
    "team_required": normalize_flag,
    "stackable": normalize_flag,
    "dock_level": normalize_flag,
    "stops": normalize_stops,
    "stop_count": normalize_integer,
    "commodity": normalize_text,
    "special_instructions": normalize_text,
    "notes": normalize_text,
}


def build_canonical_payload(parsed: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {"fingerprint_version": FINGERPRINT_VERSION}
    for field, normalizer in CANONICAL_FIELDS.items():
        payload[field] = normalizer(parsed.get(field))
    return payload


def check_dedup_eligibility(canonical: dict[str, Any]) -> str | None:
    """Return the ineligibility reason, or ``None`` when the payload may be deduplicated."""
    if not (canonical.get("origin_city") and canonical.get("origin_state")):
        return "missing_origin_location"
    if not (canonical.get("destination_city") and canonical.get("destination_state")):
        return "missing_destination_location"
    if not any(canonical.get(field) for field in ("broker_company", "broker_name", "broker_email", "mc_number")):
        return "missing_broker_identity"
    if not canonical.get("pickup_date"):
        return "missing_pickup_date"
    return None


def serialize_canonical_payload(canonical: dict[str, Any]) -> str:
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_fingerprint(parsed: dict[str, Any]) -> FingerprintResult:
    canonical = build_canonical_payload(parsed)
    serialized = serialize_canonical_payload(canonical)
    encoded = serialized.encode("utf-8")
    reason = check_dedup_eligibility(canonical)
    return FingerprintResult(
        fingerprint=hashlib.sha256(encoded).hexdigest(),
        fingerprint_version=FINGERPRINT_VERSION,
        canonical_payload=canonical,
        dedup_eligible=reason is None,
        ineligible_reason=reason,
        size_bytes=len(encoded),
    )


def broker_key_for(parsed: dict[str, Any]) -> str | None:
    """Broker identity used to key credit checks: MC number digits, else a slug of company/name/email."""
    mc_number = normalize_text(parsed.get("mc_number"))
    if mc_number:
        digits = re.sub(r"\D", "", mc_number)
        if digits:
            return f"mc:{digits}"

    for field in ("broker_company", "broker_name", "broker_email"):
        text = normalize_lower(parsed.get(field))
        if text:
            slug = _NON_ALNUM_RE.sub("-", text).strip("-")
            if slug:
                return f"name:{slug}"
    return None
