"""
State machine for an enhancement session.

Idle -> Analyzing -> AwaitingUserInput -> Persisting -> Regenerating
     -> Synthesizing -> Rescoring -> Idle

Error is reachable from every non-Idle stage. Acknowledging an error returns
to AwaitingUserInput, or to Idle when the failure happened before any
analysis existed. Cancellation is only legal from AwaitingUserInput.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Optional

from brain_console.domain.exceptions import InvalidTransitionError


class WorkflowStage(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    AWAITING_USER_INPUT = "awaiting_user_input"
    PERSISTING = "persisting"
    REGENERATING = "regenerating"
    SYNTHESIZING = "synthesizing"
    RESCORING = "rescoring"
    ERROR = "error"


STAGE_LABELS: Dict[WorkflowStage, str] = {
    WorkflowStage.IDLE: "Idle",
    WorkflowStage.ANALYZING: "Analyzing profile...",
    WorkflowStage.AWAITING_USER_INPUT: "Waiting for answers",
    WorkflowStage.PERSISTING: "Saving answers and files...",
    WorkflowStage.REGENERATING: "Regenerating cards...",
    WorkflowStage.SYNTHESIZING: "Synthesizing knowledge...",
    WorkflowStage.RESCORING: "Recalculating completion...",
    WorkflowStage.ERROR: "Error",
}

# Stages during which the session may not be closed.
LOCKED_STAGES: FrozenSet[WorkflowStage] = frozenset(
    {
        WorkflowStage.PERSISTING,
        WorkflowStage.REGENERATING,
        WorkflowStage.SYNTHESIZING,
        WorkflowStage.RESCORING,
    }
)

ALLOWED_TRANSITIONS: Dict[WorkflowStage, FrozenSet[WorkflowStage]] = {
    WorkflowStage.IDLE: frozenset({WorkflowStage.ANALYZING}),
    WorkflowStage.ANALYZING: frozenset({WorkflowStage.AWAITING_USER_INPUT, WorkflowStage.ERROR}),
    WorkflowStage.AWAITING_USER_INPUT: frozenset(
        {WorkflowStage.PERSISTING, WorkflowStage.ANALYZING, WorkflowStage.IDLE}
    ),
    WorkflowStage.PERSISTING: frozenset({WorkflowStage.REGENERATING, WorkflowStage.ERROR}),
    WorkflowStage.REGENERATING: frozenset({WorkflowStage.SYNTHESIZING, WorkflowStage.ERROR}),
    WorkflowStage.SYNTHESIZING: frozenset({WorkflowStage.RESCORING, WorkflowStage.ERROR}),
    WorkflowStage.RESCORING: frozenset({WorkflowStage.IDLE, WorkflowStage.ERROR}),
    WorkflowStage.ERROR: frozenset({WorkflowStage.AWAITING_USER_INPUT, WorkflowStage.IDLE}),
}


@dataclass(frozen=True)
class WorkflowFailure:
    stage: WorkflowStage
    message: str


@dataclass(frozen=True)
class SessionState:
    stage: WorkflowStage = WorkflowStage.IDLE
    failure: Optional[WorkflowFailure] = None
    has_analysis: bool = False

    @property
    def can_close(self) -> bool:
        return self.stage not in LOCKED_STAGES and self.stage is not WorkflowStage.ANALYZING

    @property
    def display_stage(self) -> WorkflowStage:
        """Stage shown to progress UI; frozen on the failing stage while in Error."""
        if self.stage is WorkflowStage.ERROR and self.failure is not None:
            return self.failure.stage
        return self.stage

    @property
    def display_label(self) -> str:
        return STAGE_LABELS[self.display_stage]


def transition(state: SessionState, target: WorkflowStage, *, failure: Optional[WorkflowFailure] = None) -> SessionState:
    allowed = ALLOWED_TRANSITIONS.get(state.stage, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(state.stage, target)
    if target is WorkflowStage.ERROR:
        if failure is None:
            raise ValueError("Entering the error stage requires a failure")
        return replace(state, stage=target, failure=failure)
    if target is WorkflowStage.AWAITING_USER_INPUT:
        return replace(state, stage=target, failure=None, has_analysis=True)
    if target is WorkflowStage.IDLE:
        return SessionState()
    return replace(state, stage=target, failure=None)


def acknowledge(state: SessionState) -> SessionState:
    if state.stage is not WorkflowStage.ERROR:
        raise InvalidTransitionError(state.stage, WorkflowStage.AWAITING_USER_INPUT)
    target = WorkflowStage.AWAITING_USER_INPUT if state.has_analysis else WorkflowStage.IDLE
    return transition(state, target)
