"""
Step State Machine - Lifecycle of one version step

State Flow:
    PENDING → BACKING_UP → DEPLOYING → HEALTH_CHECKING → SMOKE_TESTING → COMMITTED

Failure Flow:
    BACKING_UP → FAILED                      (no backup, nothing to roll back)
    DEPLOYING | HEALTH_CHECKING | SMOKE_TESTING → ROLLING_BACK → FAILED
    PENDING → FAILED                         (run lease lost before backup)

Philosophy:
- No transition skips a required state
- COMMITTED and FAILED are terminal
- ROLLING_BACK only exists once a verified backup does
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from .planner import VersionStep


class StepState(Enum):
    """Version step states."""
    PENDING = "pending"
    BACKING_UP = "backing_up"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    SMOKE_TESTING = "smoke_testing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


VALID_TRANSITIONS: Dict[StepState, Set[StepState]] = {
    StepState.PENDING: {StepState.BACKING_UP, StepState.FAILED},
    StepState.BACKING_UP: {StepState.DEPLOYING, StepState.FAILED},
    StepState.DEPLOYING: {StepState.HEALTH_CHECKING, StepState.ROLLING_BACK},
    StepState.HEALTH_CHECKING: {StepState.SMOKE_TESTING, StepState.ROLLING_BACK},
    StepState.SMOKE_TESTING: {StepState.COMMITTED, StepState.ROLLING_BACK},
    StepState.ROLLING_BACK: {StepState.FAILED},
    StepState.COMMITTED: set(),
    StepState.FAILED: set(),
}

TERMINAL_STATES = {StepState.COMMITTED, StepState.FAILED}


def can_transition(from_state: StepState, to_state: StepState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def is_terminal_state(state: StepState) -> bool:
    return state in TERMINAL_STATES


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StepResult:
    """
    Outcome of one attempted step.

    Created when the step begins, finalized at COMMITTED or FAILED, never
    deleted. `rolled_back` records whether the failure path ran a rollback.
    """
    step: VersionStep
    state: StepState = StepState.PENDING
    started_at: str = field(default_factory=_now)
    ended_at: Optional[str] = None
    error: Optional[Dict] = None
    artifact: Optional[object] = None  # BackupArtifact once backed up
    rolled_back: bool = False
    history: List[Dict] = field(default_factory=list)

    @property
    def ordinal(self) -> int:
        return self.step.ordinal

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)

    def transition(self, to_state: StepState, reason: str = "") -> StepState:
        """
        Move to a new state.

        Returns:
            The previous state

        Raises:
            ValueError: If the transition is not allowed
        """
        if not can_transition(self.state, to_state):
            raise ValueError(f"Invalid transition: {self.state.value} → {to_state.value}")

        previous = self.state
        self.history.append({
            "from": previous.value,
            "to": to_state.value,
            "reason": reason,
            "at": _now(),
        })
        self.state = to_state
        if is_terminal_state(to_state):
            self.ended_at = _now()
        return previous

    def to_dict(self) -> Dict:
        return {
            **self.step.to_dict(),
            "state": self.state.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "rolled_back": self.rolled_back,
            "artifact": self.artifact.to_dict() if self.artifact else None,
        }
