"""
Opening flow status transitions.

Statuses only move forward: executing -> settling -> finalised, with settling
skipped when the maker order is already closed at finalise time.
"""

from __future__ import annotations

import logging

from state.models import FlowStatus

logger = logging.getLogger(__name__)


# Valid state transitions: {from_state: set[valid_to_states]}
_VALID_TRANSITIONS: dict[FlowStatus, set[FlowStatus]] = {
    FlowStatus.EXECUTING: {FlowStatus.SETTLING, FlowStatus.FINALISED},
    FlowStatus.SETTLING: {FlowStatus.FINALISED},
    FlowStatus.FINALISED: set(),  # Terminal state
}


def can_transition_to(from_state: FlowStatus, to_state: FlowStatus) -> bool:
    """
    Check if a status transition is valid.

    Raises:
        ValueError: If from_state or to_state is not a FlowStatus
    """
    if not isinstance(from_state, FlowStatus):
        raise ValueError(f"Invalid from_state: {from_state}")
    if not isinstance(to_state, FlowStatus):
        raise ValueError(f"Invalid to_state: {to_state}")

    return to_state in _VALID_TRANSITIONS.get(from_state, set())


def transition_to(from_state: FlowStatus, to_state: FlowStatus) -> FlowStatus:
    """
    Perform a status transition, returning the new status.

    Raises:
        ValueError: If transition is invalid
    """
    if not can_transition_to(from_state, to_state):
        raise ValueError(
            f"Invalid status transition: {from_state.value} -> {to_state.value}"
        )
    logger.debug("Status transition: %s -> %s", from_state.value, to_state.value)
    return to_state


def is_terminal_status(status: FlowStatus) -> bool:
    return not _VALID_TRANSITIONS.get(status)
