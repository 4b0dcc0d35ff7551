"""Poll-cycle state machine enforced by the sequential processor."""

from enum import Enum


class CycleState(str, Enum):
    IDLE = "IDLE"
    PEEK = "PEEK"
    PROCESS = "PROCESS"
    SUCCESS = "SUCCESS"
    RETRIABLE_FAILURE = "RETRIABLE_FAILURE"
    RATE_LIMITED = "RATE_LIMITED"


ALLOWED_TRANSITIONS: dict[CycleState, set[CycleState]] = {
    CycleState.IDLE: {CycleState.PEEK},
    # An empty queue goes straight back to idle.
    CycleState.PEEK: {CycleState.PROCESS, CycleState.IDLE},
    CycleState.PROCESS: {CycleState.SUCCESS, CycleState.RETRIABLE_FAILURE, CycleState.RATE_LIMITED},
    CycleState.SUCCESS: {CycleState.IDLE},
    CycleState.RETRIABLE_FAILURE: {CycleState.IDLE},
    CycleState.RATE_LIMITED: {CycleState.IDLE},
}

TERMINAL_OUTCOMES = frozenset({CycleState.SUCCESS, CycleState.RETRIABLE_FAILURE, CycleState.RATE_LIMITED})


def validate_transition(current: CycleState, new: CycleState) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current.value} -> {new.value}")
