"""Static checks on a parsed workflow definition.

Schema-level problems (types, required keys) are caught by pydantic when the
definition is parsed. This module checks what pydantic cannot see: name
uniqueness, action registration, expression syntax and data-flow ordering.
"""

from __future__ import annotations

from tas_workflow_builder.errors import ValidationIssue, WorkflowValidationError
from tas_workflow_builder.workflow.actions import ActionRegistry
from tas_workflow_builder.workflow.definition import StepDefinition, WorkflowDefinition
from tas_workflow_builder.workflow.expressions import (
    ExpressionError,
    find_expressions,
    referenced_roots,
    referenced_steps,
)

KNOWN_ROOTS = frozenset({"inputs", "steps", "workflow", "env", "true", "false", "null", "none"})


class _Checker:
    def __init__(self, definition: WorkflowDefinition, registry: ActionRegistry) -> None:
        self.definition = definition
        self.registry = registry
        self.issues: list[ValidationIssue] = []
        self.used_inputs: set[str] = set()
        self.all_names = set(definition.step_names())

    def error(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(path=path, message=message))

    def warning(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(path=path, message=message, severity="warning"))

    def check_unique_names(self) -> None:
        seen: set[str] = set()
        for step in self.definition.iter_steps():
            if step.name in seen:
                self.error(f"steps.{step.name}", f"Duplicate step name: {step.name}")
            seen.add(step.name)

    def check_expression(self, path: str, expr: str, visible: set[str]) -> None:
        try:
            roots = referenced_roots(expr)
            steps = referenced_steps(expr)
        except ExpressionError as e:
            self.error(path, str(e))
            return

        for root in sorted(roots - KNOWN_ROOTS):
            self.error(path, f"Unknown name {root!r} in expression")
        if "inputs" in roots:
            # Coarse: any reference to `inputs` counts as using every input named in it.
            self.used_inputs.update(i for i in self.definition.inputs if i in expr)
        for name in sorted(steps):
            if name not in self.all_names:
                self.error(path, f"Reference to unknown step {name!r}")
            elif name not in visible:
                self.error(path, f"Step {name!r} is referenced before it runs")

    def check_steps(self, steps: list[StepDefinition], path: str, visible: set[str]) -> set[str]:
        """Check a sequential list of steps; returns the names visible after it."""

        current = set(visible)
        for idx, step in enumerate(steps):
            step_path = f"{path}[{idx}]({step.name})"
            self.check_step(step, step_path, current)
            current.add(step.name)
            current.update(s.name for s in _descendants(step))
        return current

    def check_step(self, step: StepDefinition, path: str, visible: set[str]) -> None:
        if step.when:
            self.check_expression(f"{path}.when", step.when, visible)

        if step.type == "action":
            if not step.action:
                self.error(path, "Action step requires an 'action'")
            elif not self.registry.has(step.action):
                self.error(path, f"Unknown action {step.action!r}")
            for expr in find_expressions(step.resolved_params()):
                self.check_expression(f"{path}.with", expr, visible)
            if step.on_error == "continue" and step.timeout_seconds is None:
                self.warning(path, "on_error=continue without timeout_seconds")
            return

        if step.type == "parallel":
            if not step.steps:
                self.error(path, "Parallel step requires child 'steps'")
            for idx, child in enumerate(step.steps):
                # Siblings run concurrently and cannot see each other's output.
                self.check_step(child, f"{path}.steps[{idx}]({child.name})", visible)
            return

        if step.type == "conditional":
            if not step.condition:
                self.error(path, "Conditional step requires a 'condition'")
            else:
                self.check_expression(f"{path}.condition", step.condition, visible)
            if not step.then:
                self.error(path, "Conditional step requires a 'then' branch")
            self.check_steps(step.then, f"{path}.then", visible)
            self.check_steps(step.else_, f"{path}.else", visible)

    def check_outputs(self, visible: set[str]) -> None:
        for key, value in self.definition.outputs.items():
            for expr in find_expressions(value):
                self.check_expression(f"outputs.{key}", expr, visible)

    def run(self) -> list[ValidationIssue]:
        self.check_unique_names()
        visible = self.check_steps(self.definition.steps, "steps", set())
        self.check_outputs(visible)
        for name in sorted(set(self.definition.inputs) - self.used_inputs):
            self.warning(f"inputs.{name}", "Input is never referenced")
        return self.issues


def _descendants(step: StepDefinition) -> list[StepDefinition]:
    out: list[StepDefinition] = []
    for child in step.children():
        out.append(child)
        out.extend(_descendants(child))
    return out


def validate_workflow(
    definition: WorkflowDefinition, registry: ActionRegistry
) -> list[ValidationIssue]:
    return _Checker(definition, registry).run()


def ensure_valid(definition: WorkflowDefinition, registry: ActionRegistry) -> list[ValidationIssue]:
    """Raise on errors; return the (warning-only) issue list otherwise."""

    issues = validate_workflow(definition, registry)
    if any(i.severity == "error" for i in issues):
        raise WorkflowValidationError(issues)
    return issues
