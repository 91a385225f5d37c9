# Overview: State machine for serialized units (tools, meters, equipment).

"""
Serialized Unit Lifecycle

STATE MACHINE:
    available -> assigned -> in_use
        ^           |          |
        |<----------+----------+
    available <-> maintenance
    any non-retired state -> retired (terminal)

    available:   on the shelf, can be issued
    assigned:    issued to a job, not yet in the field
    in_use:      in the field on a job
    maintenance: out for service, cannot be issued
    retired:     written off, never changes again

RULES:
1. Only 'available' units can be issued
2. Returns bring assigned/in_use units back to 'available'
3. 'retired' is terminal
4. Same-state edits are no-ops for the status on non-retired units
"""

from __future__ import annotations
from typing import Literal

from ..models.inventory import UNIT_STATUSES


UnitStatus = Literal["available", "assigned", "in_use", "maintenance", "retired"]

TRANSITIONS = {
    ("available", "assigned"),
    ("available", "maintenance"),
    ("available", "retired"),
    ("assigned", "in_use"),
    ("assigned", "available"),
    ("assigned", "retired"),
    ("in_use", "available"),
    ("in_use", "maintenance"),
    ("in_use", "retired"),
    ("maintenance", "available"),
    ("maintenance", "retired"),
}


class InvalidTransitionError(ValueError):
    """Raised when a serialized unit is moved along an edge the state machine forbids."""
    code = "invalid_transition"
    http_status = 409


def validate_status(status: str) -> None:
    if status not in UNIT_STATUSES:
        raise InvalidTransitionError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(UNIT_STATUSES))}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    validate_status(from_status)
    validate_status(to_status)

    if from_status == to_status:
        return from_status != "retired"

    return (from_status, to_status) in TRANSITIONS


def transition(unit, to_status: str) -> bool:
    """
    Move unit to to_status.

    Returns True if the status changed, False for a same-state no-op.
    Raises InvalidTransitionError for any edge not in TRANSITIONS.
    """
    from_status = unit.status
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(
            f"Cannot move unit {unit.serial_number} from {from_status} to {to_status}"
        )
    if from_status == to_status:
        return False
    unit.status = to_status
    return True
