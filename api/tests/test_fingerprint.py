from loadhunter_api.services.fingerprint import (
    FINGERPRINT_VERSION,
    broker_key_for,
    build_canonical_payload,
    check_dedup_eligibility,
    compute_fingerprint,
    normalize_date,
    normalize_decimal,
    normalize_flag,
    normalize_integer,
)


def _load(**overrides: object) -> dict[str, object]:
    parsed: dict[str, object] = {
        "broker_company": "Acme Logistics",
        "broker_email": "Dispatch@Acme.example",
        "mc_number": "MC-123456",
        "origin_city": "Dallas",
        "origin_state": "tx",
        "destination_city": "Memphis",
        "destination_state": "TN",
        "pickup_date": "03/14/25",
        "weight": "1,250.5",
        "rate": 1800,
        "vehicle_type": "Sprinter Van",
    }
    parsed.update(overrides)
    return parsed


def test_normalize_decimal_rounds_half_away_from_zero() -> None:
    assert normalize_decimal("1,250.5") == 1250.5
    assert normalize_decimal("2.125") == 2.13
    assert normalize_decimal("12,50") == 12.5
    assert normalize_decimal(-2.125) == -2.13
    assert normalize_decimal("n/a") is None
    assert normalize_decimal(True) is None


def test_normalize_integer_and_flag() -> None:
    assert normalize_integer("12 pcs") == 12
    assert normalize_integer(3.9) == 3
    assert normalize_flag("YES") is True
    assert normalize_flag("0") is False
    assert normalize_flag("maybe") is None


def test_normalize_date_handles_two_digit_years_and_iso() -> None:
    assert normalize_date("3/4/25") == "2025-03-04"
    assert normalize_date("12/31/99") == "1999-12-31"
    assert normalize_date("2025-03-14T08:00:00Z") == "2025-03-14"
    assert normalize_date("next tuesday") is None


def test_whitespace_and_case_variants_share_a_fingerprint() -> None:
    first = compute_fingerprint(_load())
    second = compute_fingerprint(
        _load(
            broker_company="  Acme Logistics ",
            broker_email="dispatch@acme.example",
            origin_state="TX",
            pickup_date="2025-03-14",
            weight=1250.5,
            rate="1800.00",
        )
    )
    assert first.fingerprint == second.fingerprint
    assert first.fingerprint_version == FINGERPRINT_VERSION


def test_material_changes_produce_distinct_fingerprints() -> None:
    base = compute_fingerprint(_load())
    assert compute_fingerprint(_load(rate=1900)).fingerprint != base.fingerprint
    assert compute_fingerprint(_load(destination_city="Nashville")).fingerprint != base.fingerprint


def test_fields_outside_the_canonical_set_are_ignored() -> None:
    base = compute_fingerprint(_load())
    noisy = compute_fingerprint(_load(email_subject="FW: load available", raw_body="..."))
    assert noisy.fingerprint == base.fingerprint


def test_canonical_payload_embeds_version() -> None:
    canonical = build_canonical_payload(_load())
    assert canonical["fingerprint_version"] == FINGERPRINT_VERSION
    assert canonical["origin_state"] == "TX"
    assert canonical["broker_email"] == "dispatch@acme.example"


def test_eligibility_reasons_follow_required_fields() -> None:
    assert check_dedup_eligibility(build_canonical_payload(_load(origin_city=None))) == "missing_origin_location"
    assert (
        check_dedup_eligibility(build_canonical_payload(_load(destination_state=" "))) == "missing_destination_location"
    )
    assert (
        check_dedup_eligibility(
            build_canonical_payload(_load(broker_company=None, broker_email=None, mc_number=None))
        )
        == "missing_broker_identity"
    )
    assert check_dedup_eligibility(build_canonical_payload(_load(pickup_date="ASAP"))) == "missing_pickup_date"
    assert check_dedup_eligibility(build_canonical_payload(_load())) is None


def test_ineligible_payload_still_gets_a_fingerprint() -> None:
    result = compute_fingerprint(_load(pickup_date=None))
    assert result.dedup_eligible is False
    assert result.ineligible_reason == "missing_pickup_date"
    assert len(result.fingerprint) == 64
    assert result.size_bytes > 0


def test_broker_key_prefers_mc_number() -> None:
    assert broker_key_for(_load()) == "mc:123456"
    assert broker_key_for(_load(mc_number=None)) == "name:acme-logistics"
    assert broker_key_for({"broker_email": "Ops@Freight.example"}) == "name:ops-freight-example"
    assert broker_key_for({}) is None
