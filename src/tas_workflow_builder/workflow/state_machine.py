"""Explicit status machines for executions and steps.

Every status change goes through `transition_execution` / `transition_step` so an
illegal jump (for example `succeeded -> running`) fails loudly instead of silently
corrupting persisted state.
"""

from __future__ import annotations

from enum import Enum


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_EXECUTION_TRANSITIONS[self]


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_STEP_TRANSITIONS[self]


ALLOWED_EXECUTION_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMED_OUT,
    },
    ExecutionStatus.SUCCEEDED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
    ExecutionStatus.TIMED_OUT: set(),
}

ALLOWED_STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {
        StepStatus.RUNNING,
        StepStatus.SKIPPED,
        StepStatus.CANCELLED,
    },
    StepStatus.RUNNING: {
        StepStatus.SUCCEEDED,
        StepStatus.FAILED,
        StepStatus.RETRYING,
        StepStatus.CANCELLED,
    },
    StepStatus.RETRYING: {
        StepStatus.RUNNING,
        StepStatus.FAILED,
        StepStatus.CANCELLED,
    },
    StepStatus.SUCCEEDED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
    StepStatus.CANCELLED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def transition_execution(*, current: ExecutionStatus, to: ExecutionStatus) -> ExecutionStatus:
    if to not in ALLOWED_EXECUTION_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(
            f"Illegal execution transition: {current.value} -> {to.value}"
        )
    return to


def transition_step(*, current: StepStatus, to: StepStatus) -> StepStatus:
    if to not in ALLOWED_STEP_TRANSITIONS.get(current, set()):
        raise IllegalTransitionError(f"Illegal step transition: {current.value} -> {to.value}")
    return to
