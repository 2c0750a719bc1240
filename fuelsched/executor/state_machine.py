"""Partition lifecycle state machine.

Canonical lifecycle:
idle <-> in_flight -> retired -> released
retired -> idle (refuelled after a failed slice)

Notes:
- `in_flight` means a resumable call is parked between a suspension and the
  poll that resolves it. At most one call is in flight per partition.
- `retired` partitions left the scheduling ring but stay instantiated.
- `released` is terminal: context, instance and module are freed.
"""

from __future__ import annotations

from dataclasses import dataclass

from fuelsched.errors import ConflictError


IDLE = "idle"
IN_FLIGHT = "in_flight"
RETIRED = "retired"
RELEASED = "released"

_TERMINAL_STATES = {RELEASED}

# Allowed transitions excluding no-op transitions.
_ALLOWED: dict[str, set[str]] = {
    IDLE: {IN_FLIGHT, RETIRED, RELEASED},
    IN_FLIGHT: {IDLE, RETIRED, RELEASED},
    RETIRED: {IDLE, RELEASED},
    RELEASED: set(),
}


@dataclass(frozen=True)
class TransitionRequest:
    partition_id: int
    current_state: str
    new_state: str


def is_terminal(state: str) -> bool:
    return state in _TERMINAL_STATES


def is_runnable(state: str) -> bool:
    return state in (IDLE, IN_FLIGHT)


def apply_transition(req: TransitionRequest) -> str:
    """Return the state a partition moves to, or raise ConflictError."""
    if req.new_state == req.current_state:
        return req.current_state

    if is_terminal(req.current_state):
        raise ConflictError(
            f"Partition is {req.current_state}; cannot transition to {req.new_state}",
            partition_id=req.partition_id,
        )

    allowed = _ALLOWED.get(req.current_state)
    if allowed is None or req.new_state not in allowed:
        raise ConflictError(
            f"Invalid partition state transition: {req.current_state} -> {req.new_state}",
            partition_id=req.partition_id,
        )
    return req.new_state
