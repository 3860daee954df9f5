"""Workflow definition schema and YAML loading.

A workflow is a named list of steps. Steps run in order; a step's output is
visible to later steps as `steps.<name>.output`. Two composite step types exist:

- `parallel`: runs its child `steps` concurrently
- `conditional`: runs `then` or `else` depending on `condition`

Example:

    name: document-summary
    description: Fetch a document and summarise it
    inputs:
      url: {type: string, required: true}
    steps:
      - name: fetch
        type: http
        url: ${{ inputs.url }}
      - name: summarise
        type: llm
        prompt: "Summarise: ${{ steps.fetch.output.body }}"
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tas_workflow_builder.errors import ValidationIssue, WorkflowValidationError

NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"

COMPOSITE_STEP_TYPES = frozenset({"action", "parallel", "conditional"})

InputType = Literal["string", "number", "integer", "boolean", "object", "array", "any"]


class RetryPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=1, ge=1, le=20)
    delay_seconds: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=60.0, ge=0)

    def delay_before(self, attempt: int) -> float:
        """Delay to wait before `attempt` (2-based; the first attempt never waits)."""

        if attempt <= 1:
            return 0.0
        delay = self.delay_seconds * (self.backoff_factor ** (attempt - 2))
        return min(delay, self.max_delay_seconds)


class InputSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: InputType = "any"
    required: bool = False
    default: Any = None
    description: str = ""


class StepDefinition(BaseModel):
    """One step of a workflow.

    Keys the schema does not know are kept (`model_extra`) and merged into the
    action parameters, so `url: ...` next to `type: http` works like
    `with: {url: ...}`.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(pattern=NAME_PATTERN, max_length=63)
    type: str = "action"
    action: str | None = None
    description: str = ""

    params: dict[str, Any] = Field(default_factory=dict, alias="with")
    when: str | None = None

    timeout_seconds: float | None = Field(default=None, gt=0)
    retry: RetryPolicy | None = None
    on_error: Literal["fail", "continue"] = "fail"

    # parallel
    steps: list[StepDefinition] = Field(default_factory=list)
    max_concurrency: int | None = Field(default=None, ge=1)

    # conditional
    condition: str | None = None
    then: list[StepDefinition] = Field(default_factory=list)
    else_: list[StepDefinition] = Field(default_factory=list, alias="else")

    @model_validator(mode="after")
    def _normalise_action_shorthand(self) -> StepDefinition:
        # `type: http` is shorthand for `type: action, action: http`.
        if self.type not in COMPOSITE_STEP_TYPES:
            if self.action is None:
                self.action = self.type
            self.type = "action"
        return self

    def resolved_params(self) -> dict[str, Any]:
        """Explicit `with:` parameters, overlaid on free-form step keys."""

        extra = dict(self.model_extra or {})
        return {**extra, **self.params}

    def children(self) -> list[StepDefinition]:
        if self.type == "parallel":
            return list(self.steps)
        if self.type == "conditional":
            return [*self.then, *self.else_]
        return []

    def to_yaml_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.type != "action":
            out["type"] = self.type
        elif self.action:
            out["action"] = self.action
        if self.description:
            out["description"] = self.description
        params = self.resolved_params()
        if params:
            out["with"] = params
        for key in ("when", "timeout_seconds", "condition", "max_concurrency"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.retry is not None:
            out["retry"] = self.retry.model_dump()
        if self.on_error != "fail":
            out["on_error"] = self.on_error
        if self.steps:
            out["steps"] = [s.to_yaml_dict() for s in self.steps]
        if self.then:
            out["then"] = [s.to_yaml_dict() for s in self.then]
        if self.else_:
            out["else"] = [s.to_yaml_dict() for s in self.else_]
        return out


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=NAME_PATTERN, max_length=63)
    description: str = ""
    version: str = "1"
    space: str = Field(default="default", pattern=NAME_PATTERN, max_length=63)

    inputs: dict[str, InputSpec] = Field(default_factory=dict)
    steps: list[StepDefinition] = Field(min_length=1)
    outputs: dict[str, Any] = Field(default_factory=dict)

    timeout_seconds: float | None = Field(default=None, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    labels: dict[str, str] = Field(default_factory=dict)

    def iter_steps(self) -> Iterator[StepDefinition]:
        """All steps, depth-first, in execution order."""

        def _walk(steps: list[StepDefinition]) -> Iterator[StepDefinition]:
            for step in steps:
                yield step
                yield from _walk(step.children())

        yield from _walk(self.steps)

    def step_names(self) -> list[str]:
        return [s.name for s in self.iter_steps()]

    def to_yaml_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.description:
            out["description"] = self.description
        out["version"] = self.version
        out["space"] = self.space
        if self.inputs:
            out["inputs"] = {
                k: v.model_dump(exclude_defaults=True) for k, v in self.inputs.items()
            }
        if self.timeout_seconds is not None:
            out["timeout_seconds"] = self.timeout_seconds
        if self.retry != RetryPolicy():
            out["retry"] = self.retry.model_dump()
        if self.labels:
            out["labels"] = dict(self.labels)
        out["steps"] = [s.to_yaml_dict() for s in self.steps]
        if self.outputs:
            out["outputs"] = dict(self.outputs)
        return out


def _issues_from_pydantic(error: ValidationError) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for err in error.errors():
        path = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        issues.append(ValidationIssue(path=path, message=err.get("msg", "invalid value")))
    return issues


def parse_workflow(data: object) -> WorkflowDefinition:
    """Build a definition from already-decoded YAML/JSON data."""

    if not isinstance(data, dict):
        raise WorkflowValidationError(
            [ValidationIssue(path="<root>", message="Workflow must be a mapping")]
        )
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise WorkflowValidationError(_issues_from_pydantic(e)) from e


def load_workflow_yaml(text: str) -> WorkflowDefinition:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise WorkflowValidationError(
            [ValidationIssue(path="<yaml>", message=f"Invalid YAML: {e}")]
        ) from e
    return parse_workflow(data)


def load_workflow_file(path: Path) -> WorkflowDefinition:
    return load_workflow_yaml(path.read_text(encoding="utf-8"))


def dump_workflow_yaml(definition: WorkflowDefinition) -> str:
    return yaml.safe_dump(
        definition.to_yaml_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False
    )
