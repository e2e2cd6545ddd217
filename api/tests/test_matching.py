import pytest

from loadhunter_api.services.matching import (
    HuntPlanSnapshot,
    LoadSnapshot,
    compute_match_score,
    evaluate_plan,
    evaluate_plans,
    haversine_miles,
    vehicle_size_matches,
)

DALLAS = (32.7767, -96.7970)
FORT_WORTH = (32.7555, -97.3308)
HOUSTON = (29.7604, -95.3698)


def _plan(**overrides: object) -> HuntPlanSnapshot:
    values: dict[str, object] = {
        "plan_id": "plan-1",
        "tenant_id": "tenant-a",
        "vehicle_id": "vehicle-1",
        "vehicle_sizes": [],
        "hunt_lat": DALLAS[0],
        "hunt_lng": DALLAS[1],
        "pickup_radius_miles": 100.0,
        "load_capacity_lbs": None,
    }
    values.update(overrides)
    return HuntPlanSnapshot(**values)


def _load(**overrides: object) -> LoadSnapshot:
    values: dict[str, object] = {
        "load_id": "load-1",
        "tenant_id": "tenant-a",
        "pickup_lat": FORT_WORTH[0],
        "pickup_lng": FORT_WORTH[1],
        "vehicle_type": None,
        "weight": None,
    }
    values.update(overrides)
    return LoadSnapshot(**values)


def test_haversine_dallas_to_houston() -> None:
    assert haversine_miles(*DALLAS, *HOUSTON) == pytest.approx(225, abs=5)
    assert haversine_miles(*DALLAS, *DALLAS) == 0


def test_load_inside_radius_matches_with_distance() -> None:
    decision = evaluate_plan(_load(), _plan())
    assert decision.matched is True
    assert decision.distance_miles == pytest.approx(31, abs=2)
    assert decision.score is not None


def test_load_outside_radius_is_rejected() -> None:
    decision = evaluate_plan(_load(pickup_lat=HOUSTON[0], pickup_lng=HOUSTON[1]), _plan())
    assert decision.matched is False
    assert decision.reason == "outside_radius"


def test_default_radius_applies_when_plan_has_none() -> None:
    houston = _load(pickup_lat=HOUSTON[0], pickup_lng=HOUSTON[1])
    assert evaluate_plan(houston, _plan(pickup_radius_miles=None)).reason == "outside_radius"
    assert evaluate_plan(houston, _plan(pickup_radius_miles=None), default_radius_miles=250).matched is True


def test_geographic_plan_skips_load_without_coordinates() -> None:
    decision = evaluate_plan(_load(pickup_lat=None, pickup_lng=None), _plan())
    assert decision.matched is False
    assert decision.reason == "missing_coordinates"


def test_non_geographic_plan_accepts_load_without_coordinates() -> None:
    decision = evaluate_plan(_load(pickup_lat=None, pickup_lng=None), _plan(hunt_lat=None, hunt_lng=None))
    assert decision.matched is True
    assert decision.distance_miles is None
    assert decision.score == 50.0


def test_tenant_isolation() -> None:
    assert evaluate_plan(_load(tenant_id="tenant-b"), _plan()).reason == "tenant_mismatch"
    assert evaluate_plan(_load(tenant_id=None), _plan()).reason == "missing_tenant"


def test_vehicle_size_fuzzy_matching() -> None:
    assert vehicle_size_matches("Sprinter Van", ["sprinter"]) is True
    assert vehicle_size_matches("26ft Straight Truck", ["straight-truck"]) is True
    assert vehicle_size_matches("cargo van", ["Cargo Van"]) is True
    assert vehicle_size_matches("flatbed", ["sprinter"]) is False
    assert vehicle_size_matches(None, ["sprinter"]) is True
    assert vehicle_size_matches("flatbed", []) is True


def test_vehicle_mismatch_and_capacity_rejections() -> None:
    assert evaluate_plan(_load(vehicle_type="flatbed"), _plan(vehicle_sizes=["sprinter"])).reason == (
        "vehicle_size_mismatch"
    )
    assert evaluate_plan(_load(weight=4000.0), _plan(load_capacity_lbs=3500.0)).reason == "over_capacity"
    assert evaluate_plan(_load(weight=3000.0), _plan(load_capacity_lbs=3500.0)).matched is True


def test_score_strictly_decreases_with_distance() -> None:
    scores = [compute_match_score(distance, vehicle_constrained=False) for distance in (0, 10, 50, 150)]
    assert scores == sorted(scores, reverse=True)
    assert len(set(scores)) == len(scores)
    assert compute_match_score(10, vehicle_constrained=True) > compute_match_score(10, vehicle_constrained=False)


def test_evaluate_plans_accepts_injected_distance_function() -> None:
    plans = [_plan(plan_id="near"), _plan(plan_id="far", pickup_radius_miles=5.0)]
    decisions = evaluate_plans(_load(), plans, distance_fn=lambda *_: 10.0)
    assert [(decision.plan_id, decision.matched) for decision in decisions] == [("near", True), ("far", False)]
