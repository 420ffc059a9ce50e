"""Finite state machine governing draft status transitions."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from .exceptions import InvalidTransitionError


class DraftStatus(str, Enum):
    COLLECTING = "COLLECTING"
    WAIT_CONFIRM = "WAIT_CONFIRM"
    SUBMITTED = "SUBMITTED"
    SUBMIT_FAILED = "SUBMIT_FAILED"


ACTIVE_STATUSES: FrozenSet[DraftStatus] = frozenset(
    {DraftStatus.COLLECTING, DraftStatus.WAIT_CONFIRM, DraftStatus.SUBMIT_FAILED}
)
TERMINAL_STATES: FrozenSet[DraftStatus] = frozenset({DraftStatus.SUBMITTED})

# Staying in place is always allowed for active states: a turn may add
# nothing, or a retry may fail again.
_TRANSITIONS: Dict[DraftStatus, FrozenSet[DraftStatus]] = {
    DraftStatus.COLLECTING: frozenset(
        {
            DraftStatus.COLLECTING,
            DraftStatus.WAIT_CONFIRM,
            DraftStatus.SUBMITTED,
            DraftStatus.SUBMIT_FAILED,
        }
    ),
    DraftStatus.WAIT_CONFIRM: frozenset(
        {
            DraftStatus.WAIT_CONFIRM,
            DraftStatus.COLLECTING,
            DraftStatus.SUBMITTED,
            DraftStatus.SUBMIT_FAILED,
        }
    ),
    DraftStatus.SUBMIT_FAILED: frozenset(
        {
            DraftStatus.SUBMIT_FAILED,
            DraftStatus.WAIT_CONFIRM,
            DraftStatus.COLLECTING,
            DraftStatus.SUBMITTED,
        }
    ),
    DraftStatus.SUBMITTED: frozenset(),
}


def is_terminal_state(status: DraftStatus | str) -> bool:
    return DraftStatus(status) in TERMINAL_STATES


def can_transition(current: DraftStatus | str, target: DraftStatus | str) -> bool:
    """Return ``True`` when moving from ``current`` to ``target`` is allowed."""

    return DraftStatus(target) in _TRANSITIONS[DraftStatus(current)]


def apply_transition(current: DraftStatus | str, target: DraftStatus | str) -> DraftStatus:
    """Validate a transition and return the resulting status."""

    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move draft from '{DraftStatus(current).value}' to '{DraftStatus(target).value}'"
        )
    return DraftStatus(target)


__all__ = [
    "DraftStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATES",
    "apply_transition",
    "can_transition",
    "is_terminal_state",
]
