"""Errors shared by the service, the CLI and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel


class ValidationIssue(BaseModel):
    """A single problem found in a workflow definition."""

    path: str
    message: str
    severity: Literal["error", "warning"] = "error"

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class WorkflowValidationError(ValueError):
    """Raised when a workflow definition (or its inputs) cannot be accepted."""

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = issues
        summary = "; ".join(str(i) for i in issues if i.severity == "error")
        super().__init__(summary or "Invalid workflow definition")


@dataclass(eq=False)
class WorkflowNotFound(Exception):
    workflow_id: str

    def __str__(self) -> str:
        return f"Workflow not found: {self.workflow_id}"


@dataclass(eq=False)
class ExecutionNotFound(Exception):
    execution_id: str

    def __str__(self) -> str:
        return f"Execution not found: {self.execution_id}"


@dataclass(eq=False)
class WorkflowAlreadyExists(Exception):
    """Raised when a workflow with the same name already exists in the space."""

    space: str
    name: str
    existing_id: str = field(default="")

    def __str__(self) -> str:
        return f"Workflow {self.name!r} already exists in space {self.space!r}"


@dataclass(eq=False)
class ExecutionNotCancellable(Exception):
    execution_id: str
    status: str

    def __str__(self) -> str:
        return f"Execution {self.execution_id} is {self.status} and cannot be cancelled"


@dataclass(eq=False)
class BackendUnavailable(Exception):
    backend: str
    reason: str

    def __str__(self) -> str:
        return f"Execution backend {self.backend!r} is unavailable: {self.reason}"


@dataclass(eq=False)
class SpaceMismatch(Exception):
    """Raised when a caller scoped to one space touches another space's record."""

    expected: str
    actual: str

    def __str__(self) -> str:
        return f"Record belongs to space {self.actual!r}, not {self.expected!r}"
