import pytest

from loadhunter_api.services.lifecycle import MatchTransitionError, plan_match_action


def test_undecided_match_can_be_bid() -> None:
    change = plan_match_action(current_status="undecided", is_active=True, action="bid")
    assert change.changed is True
    assert change.to_status == "bid"
    assert change.is_active is True


def test_bid_is_terminal_for_status_actions() -> None:
    with pytest.raises(MatchTransitionError):
        plan_match_action(current_status="bid", is_active=True, action="activate")


def test_skipped_match_can_be_reactivated_but_not_bid() -> None:
    assert plan_match_action(current_status="skipped", is_active=True, action="activate").to_status == "active"
    with pytest.raises(MatchTransitionError):
        plan_match_action(current_status="skipped", is_active=True, action="bid")


def test_same_status_request_is_a_noop() -> None:
    change = plan_match_action(current_status="waitlist", is_active=True, action="waitlist")
    assert change.changed is False
    assert change.to_status == "waitlist"


def test_deactivate_keeps_status_and_defaults_reason() -> None:
    change = plan_match_action(current_status="active", is_active=True, action="deactivate")
    assert change.changed is True
    assert change.is_active is False
    assert change.to_status == "active"
    assert change.deactivated_reason == "manual"


def test_deactivating_inactive_match_is_a_noop() -> None:
    change = plan_match_action(current_status="active", is_active=False, action="deactivate", reason="superseded")
    assert change.changed is False


def test_inactive_match_rejects_status_actions() -> None:
    with pytest.raises(MatchTransitionError, match="inactive"):
        plan_match_action(current_status="undecided", is_active=False, action="activate")


def test_note_never_changes_state() -> None:
    change = plan_match_action(current_status="bid", is_active=False, action="note")
    assert change.changed is False
    assert change.to_status == "bid"


def test_unknown_action_and_reason_are_rejected() -> None:
    with pytest.raises(MatchTransitionError):
        plan_match_action(current_status="undecided", is_active=True, action="archive")
    with pytest.raises(MatchTransitionError):
        plan_match_action(current_status="undecided", is_active=True, action="deactivate", reason="bored")
