"""Allowed task state transitions."""

from __future__ import annotations

from tryon_studio.orchestrator.errors import InvalidStateTransition
from tryon_studio.orchestrator.models import TaskState

_ALLOWED: dict[TaskState, frozenset[TaskState]] = {
    TaskState.CREATED: frozenset(
        {TaskState.PROCESSING, TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED},
    ),
    TaskState.PROCESSING: frozenset(
        {TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED},
    ),
    # FAILED -> CREATED is reachable only through the explicit retry operation.
    TaskState.FAILED: frozenset({TaskState.CREATED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}


def can_transition(state_from: TaskState, state_to: TaskState) -> bool:
    return state_to in _ALLOWED[state_from]


def assert_transition(state_from: TaskState, state_to: TaskState) -> None:
    """Raise InvalidStateTransition when the edge is not in the lifecycle graph."""

    if not can_transition(state_from, state_to):
        raise InvalidStateTransition(
            f"Task cannot move from {state_from.value} to {state_to.value}.",
        )


def sources_for(state_to: TaskState) -> frozenset[TaskState]:
    """All states from which ``state_to`` may be entered."""

    return frozenset(source for source, targets in _ALLOWED.items() if state_to in targets)
