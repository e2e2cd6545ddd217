from __future__ import annotations

from dataclasses import dataclass

DEACTIVATION_REASONS = {"superseded", "expired", "manual"}
STATUS_BY_ACTION: dict[str, str] = {
    "activate": "active",
    "skip": "skipped",
    "bid": "bid",
    "waitlist": "waitlist",
}
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "undecided": {"active", "skipped", "bid", "waitlist"},
    "active": {"skipped", "bid", "waitlist"},
    "waitlist": {"active", "skipped", "bid"},
    "skipped": {"active"},
    "bid": set(),
}


class MatchTransitionError(ValueError):
    """Raised when a match action is not allowed from the current state."""


@dataclass(slots=True)
class LifecycleChange:
    action: str
    from_status: str
    to_status: str
    is_active: bool
    deactivated_reason: str | None
    changed: bool


def plan_match_action(
    *,
    current_status: str,
    is_active: bool,
    action: str,
    reason: str | None = None,
) -> LifecycleChange:
    """Resolve a dispatcher or system action against the match state machine.

    ``note`` never changes state. ``deactivate`` clears ``is_active`` and keeps the
    status. Status actions on an inactive match are rejected; asking for the
    current status again is a no-op (``changed`` is false).
    """
    if current_status not in ALLOWED_TRANSITIONS:
        raise MatchTransitionError(f"unknown match status: {current_status}")

    if action == "note":
        return LifecycleChange(
            action=action,
            from_status=current_status,
            to_status=current_status,
            is_active=is_active,
            deactivated_reason=None,
            changed=False,
        )

    if action == "deactivate":
        normalized_reason = reason or "manual"
        if normalized_reason not in DEACTIVATION_REASONS:
            raise MatchTransitionError(f"invalid deactivation reason: {normalized_reason}")
        return LifecycleChange(
            action=action,
            from_status=current_status,
            to_status=current_status,
            is_active=False,
            deactivated_reason=normalized_reason,
            changed=is_active,
        )

    to_status = STATUS_BY_ACTION.get(action)
    if to_status is None:
        raise MatchTransitionError(f"unknown match action: {action}")
    if not is_active:
        raise MatchTransitionError("match is inactive")
    if to_status == current_status:
        return LifecycleChange(
            action=action,
            from_status=current_status,
            to_status=to_status,
            is_active=True,
            deactivated_reason=None,
            changed=False,
        )
    if to_status not in ALLOWED_TRANSITIONS[current_status]:
        raise MatchTransitionError(f"invalid match transition: {current_status} -> {to_status}")
    return LifecycleChange(
        action=action,
        from_status=current_status,
        to_status=to_status,
        is_active=True,
        deactivated_reason=None,
        changed=True,
    )
