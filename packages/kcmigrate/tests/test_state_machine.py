"""
Tests for the step state machine
"""

import pytest

from kcmigrate import StepResult, StepState, parse_version
from kcmigrate.planner import VersionStep
from kcmigrate.state_machine import VALID_TRANSITIONS, can_transition, is_terminal_state


@pytest.fixture
def result():
    step = VersionStep(ordinal=1, from_version=parse_version("16.1.1"), to_version=parse_version("18.0"))
    return StepResult(step=step)


def test_happy_path(result):
    """The forward path visits every state once and ends terminal."""
    for state in [
        StepState.BACKING_UP,
        StepState.DEPLOYING,
        StepState.HEALTH_CHECKING,
        StepState.SMOKE_TESTING,
        StepState.COMMITTED,
    ]:
        result.transition(state)

    assert result.state == StepState.COMMITTED
    assert result.is_terminal
    assert result.ended_at is not None
    assert [h["to"] for h in result.history] == [
        "backing_up", "deploying", "health_checking", "smoke_testing", "committed",
    ]


def test_transition_returns_previous(result):
    assert result.transition(StepState.BACKING_UP) == StepState.PENDING


@pytest.mark.parametrize("path", [
    [StepState.COMMITTED],
    [StepState.DEPLOYING],
    [StepState.BACKING_UP, StepState.HEALTH_CHECKING],
    [StepState.BACKING_UP, StepState.ROLLING_BACK],
    [StepState.BACKING_UP, StepState.DEPLOYING, StepState.COMMITTED],
    [StepState.BACKING_UP, StepState.DEPLOYING, StepState.FAILED],
])
def test_required_states_cannot_be_skipped(result, path):
    """Skipping a state, or rolling back without a backup, is rejected."""
    *allowed, rejected = path
    for state in allowed:
        result.transition(state)

    with pytest.raises(ValueError, match="Invalid transition"):
        result.transition(rejected)


def test_failure_after_deploy_goes_through_rollback(result):
    result.transition(StepState.BACKING_UP)
    result.transition(StepState.DEPLOYING)
    result.transition(StepState.HEALTH_CHECKING)
    result.transition(StepState.ROLLING_BACK)
    result.transition(StepState.FAILED)

    assert result.is_terminal


def test_terminal_states_have_no_exits():
    for state in StepState:
        if is_terminal_state(state):
            assert VALID_TRANSITIONS[state] == set()
    assert not can_transition(StepState.FAILED, StepState.PENDING)
    assert not can_transition(StepState.COMMITTED, StepState.ROLLING_BACK)


def test_to_dict(result):
    result.transition(StepState.BACKING_UP)
    data = result.to_dict()

    assert data["ordinal"] == 1
    assert data["to_version"] == "18.0"
    assert data["state"] == "backing_up"
    assert data["artifact"] is None
