"""Managed process lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    RUNNING ──┬──> EXITED
              │
              ├──> FAILED      (exit status could not be determined)
              │
              └──> TERMINATING ──┬──> KILLED
                                 ├──> EXITED   (exited on its own first)
                                 └──> FAILED
"""
from __future__ import annotations

from .models import ProcessState

VALID_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.RUNNING: {
        ProcessState.TERMINATING,
        ProcessState.EXITED,
        ProcessState.FAILED,
    },
    ProcessState.TERMINATING: {
        ProcessState.KILLED,
        ProcessState.EXITED,
        ProcessState.FAILED,
    },
    ProcessState.EXITED: set(),
    ProcessState.KILLED: set(),
    ProcessState.FAILED: set(),
}

TERMINAL_STATES = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)


def validate_transition(current: ProcessState, target: ProcessState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
