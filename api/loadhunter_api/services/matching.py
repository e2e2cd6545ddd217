from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

EARTH_RADIUS_MILES = 3959.0
DEFAULT_PICKUP_RADIUS_MILES = 200.0
SCORE_DISTANCE_SCALE_MILES = 25.0
NON_GEOGRAPHIC_BASE_SCORE = 50.0
VEHICLE_SIZE_BONUS = 5.0
_VEHICLE_FAMILIES = ("cargo", "sprinter", "straight")
_VEHICLE_TOKEN_RE = re.compile(r"[^a-z-]")

DistanceFn = Callable[[float, float, float, float], float]


@dataclass(slots=True)
class HuntPlanSnapshot:
    plan_id: str
    tenant_id: str
    vehicle_id: str
    vehicle_sizes: list[str]
    hunt_lat: float | None
    hunt_lng: float | None
    pickup_radius_miles: float | None
    load_capacity_lbs: float | None

    @property
    def is_geographic(self) -> bool:
        return self.hunt_lat is not None and self.hunt_lng is not None


@dataclass(slots=True)
class LoadSnapshot:
    load_id: str
    tenant_id: str | None
    pickup_lat: float | None
    pickup_lng: float | None
    vehicle_type: str | None
    weight: float | None

    @property
    def has_coordinates(self) -> bool:
        return self.pickup_lat is not None and self.pickup_lng is not None


@dataclass(slots=True)
class MatchDecision:
    plan_id: str
    matched: bool
    reason: str | None
    distance_miles: float | None = None
    score: float | None = None


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def normalize_vehicle_size(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _VEHICLE_TOKEN_RE.sub("", value.lower())


def vehicle_size_matches(load_vehicle_type: str | None, plan_sizes: list[str]) -> bool:
    """Fuzzy vehicle size check; an unconstrained plan or an unknown load type passes."""
    load_token = normalize_vehicle_size(load_vehicle_type)
    plan_tokens = [token for token in (normalize_vehicle_size(size) for size in plan_sizes) if token]
    if not plan_tokens or not load_token:
        return True

    for plan_token in plan_tokens:
        if load_token == plan_token or plan_token in load_token or load_token in plan_token:
            return True
        if any(family in load_token and family in plan_token for family in _VEHICLE_FAMILIES):
            return True
    return False


def compute_match_score(distance_miles: float | None, *, vehicle_constrained: bool) -> float:
    """Strictly decreasing in distance; plans without geography score a flat base."""
    if distance_miles is None:
        score = NON_GEOGRAPHIC_BASE_SCORE
    else:
        score = 100.0 / (1.0 + max(distance_miles, 0.0) / SCORE_DISTANCE_SCALE_MILES)
    if vehicle_constrained:
        score += VEHICLE_SIZE_BONUS
    return round(score, 4)


def evaluate_plan(
    load: LoadSnapshot,
    plan: HuntPlanSnapshot,
    *,
    default_radius_miles: float = DEFAULT_PICKUP_RADIUS_MILES,
    distance_fn: DistanceFn = haversine_miles,
) -> MatchDecision:
    if not load.tenant_id:
        return MatchDecision(plan_id=plan.plan_id, matched=False, reason="missing_tenant")
    if plan.tenant_id != load.tenant_id:
        return MatchDecision(plan_id=plan.plan_id, matched=False, reason="tenant_mismatch")

    distance: float | None = None
    if plan.is_geographic:
        if not load.has_coordinates:
            return MatchDecision(plan_id=plan.plan_id, matched=False, reason="missing_coordinates")
        distance = distance_fn(load.pickup_lat, load.pickup_lng, plan.hunt_lat, plan.hunt_lng)
        radius = plan.pickup_radius_miles if plan.pickup_radius_miles else default_radius_miles
        if distance > radius:
            return MatchDecision(
                plan_id=plan.plan_id,
                matched=False,
                reason="outside_radius",
                distance_miles=round(distance, 2),
            )

    if not vehicle_size_matches(load.vehicle_type, plan.vehicle_sizes):
        return MatchDecision(plan_id=plan.plan_id, matched=False, reason="vehicle_size_mismatch")

    if plan.load_capacity_lbs and load.weight and load.weight > 0 and load.weight > plan.load_capacity_lbs:
        return MatchDecision(plan_id=plan.plan_id, matched=False, reason="over_capacity")

    vehicle_constrained = bool(load.vehicle_type) and any(normalize_vehicle_size(size) for size in plan.vehicle_sizes)
    return MatchDecision(
        plan_id=plan.plan_id,
        matched=True,
        reason=None,
        distance_miles=round(distance, 2) if distance is not None else None,
        score=compute_match_score(distance, vehicle_constrained=vehicle_constrained),
    )


def evaluate_plans(
    load: LoadSnapshot,
    plans: list[HuntPlanSnapshot],
    *,
    default_radius_miles: float = DEFAULT_PICKUP_RADIUS_MILES,
    distance_fn: DistanceFn = haversine_miles,
) -> list[MatchDecision]:
    return [
        evaluate_plan(load, plan, default_radius_miles=default_radius_miles, distance_fn=distance_fn)
        for plan in plans
    ]
