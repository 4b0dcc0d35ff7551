"""Unit tests for poll-cycle state-machine guardrails."""

import pytest

from invoicemailer.common.state_machine import CycleState, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition(CycleState.PEEK, CycleState.PROCESS)


@pytest.mark.parametrize(
    "outcome",
    [CycleState.SUCCESS, CycleState.RETRIABLE_FAILURE, CycleState.RATE_LIMITED],
)
def test_every_outcome_returns_to_idle(outcome):
    validate_transition(CycleState.PROCESS, outcome)
    validate_transition(outcome, CycleState.IDLE)


def test_empty_queue_goes_back_to_idle():
    validate_transition(CycleState.PEEK, CycleState.IDLE)


def test_invalid_transition():
    """Skipping the peek would process without looking at the queue."""

    with pytest.raises(ValueError):
        validate_transition(CycleState.IDLE, CycleState.PROCESS)
