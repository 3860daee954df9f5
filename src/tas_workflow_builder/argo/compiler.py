"""Compile a workflow definition into an Argo `Workflow` manifest.

Layout of the generated manifest:

- one `steps` template (`main`); each top-level step is one sequential group
- a `parallel` step becomes a single group with one entry per child
- a `conditional` step becomes a condition-evaluation entry followed by its branch
  steps, guarded with Argo `when` clauses on the evaluation result
- every action step gets its own container template running
  `tas-workflow run-step` in the step image, carrying the step's retry policy
  and timeout

Step specs (action, parameters, `when`) are passed base64-encoded so that the
`${{ ... }}` templates inside them are not touched by Argo's own `{{ ... }}`
substitution. The run-time context handed to each container is assembled by Argo
from the workflow `inputs` parameter and the stdout (`outputs.result`) of the
steps the spec references.
"""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass, field
from typing import Any

from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.workflow.definition import RetryPolicy, StepDefinition, WorkflowDefinition
from tas_workflow_builder.workflow.expressions import (
    find_expressions,
    referenced_steps,
    strip_template,
)

API_VERSION = "argoproj.io/v1alpha1"
LABEL_PREFIX = "tas.tributary.ai"
SPACE_LABEL = f"{LABEL_PREFIX}/space"
WORKFLOW_LABEL = f"{LABEL_PREFIX}/workflow"
EXECUTION_LABEL = f"{LABEL_PREFIX}/execution-id"
STEP_NAMES_ANNOTATION = f"{LABEL_PREFIX}/step-names"

_INVALID_DNS_CHARS = re.compile(r"[^a-z0-9-]+")


class ArgoCompileError(ValueError):
    pass


def dns_name(name: str, *, max_length: int = 63) -> str:
    """Lowercase RFC 1123 label derived from a step or workflow name."""

    label = _INVALID_DNS_CHARS.sub("-", name.lower()).strip("-")
    return (label or "step")[:max_length].rstrip("-")


def encode_spec(spec: dict[str, Any]) -> str:
    raw = json.dumps(spec, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_spec(value: str) -> dict[str, Any]:
    decoded = json.loads(base64.b64decode(value.encode("ascii")).decode("utf-8"))
    if not isinstance(decoded, dict):
        raise ValueError("Step spec must decode to a JSON object")
    return decoded


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _duration(seconds: float) -> str:
    return f"{_number(seconds)}s"


def retry_strategy(policy: RetryPolicy) -> dict[str, Any] | None:
    if policy.max_attempts <= 1:
        return None
    return {
        "limit": str(policy.max_attempts - 1),
        "retryPolicy": "Always",
        "backoff": {
            "duration": _duration(policy.delay_seconds),
            "factor": _number(policy.backoff_factor),
            "maxDuration": _duration(policy.max_delay_seconds),
        },
    }


@dataclass
class _Compiler:
    definition: WorkflowDefinition
    settings: WorkflowBuilderSettings
    execution_id: str
    templates: list[dict[str, Any]] = field(default_factory=list)
    groups: list[list[dict[str, Any]]] = field(default_factory=list)
    argo_names: dict[str, str] = field(default_factory=dict)

    def argo_name(self, step_name: str) -> str:
        existing = self.argo_names.get(step_name)
        if existing is not None:
            return existing
        base = dns_name(step_name, max_length=50)
        candidate = base
        taken = set(self.argo_names.values())
        n = 2
        while candidate in taken:
            candidate = f"{base}-{n}"
            n += 1
        self.argo_names[step_name] = candidate
        return candidate

    def output_fragment(self, step: StepDefinition) -> str:
        """JSON text (with Argo placeholders) that evaluates to `step`'s output.

        Only action and condition steps have a node of their own. A parallel
        block's output is rebuilt from its children; a condition step prints a
        bare `then`/`else` and has to be quoted.
        """

        result = f"{{{{steps.{self.argo_name(step.name)}.outputs.result}}}}"
        if step.type == "action":
            return result
        if step.type == "conditional":
            return f'{{"branch": "{result}"}}'
        children = ", ".join(
            f"{json.dumps(child.name)}: {self.output_fragment(child)}" for child in step.steps
        )
        return f"{{{children}}}"

    def context_parameter(self, step: StepDefinition, extra_exprs: list[str]) -> str:
        exprs = find_expressions(step.resolved_params()) + extra_exprs
        if step.when:
            exprs.append(step.when)
        refs: set[str] = set()
        for expr in exprs:
            refs |= referenced_steps(expr)

        steps_by_name = {s.name: s for s in self.definition.iter_steps()}
        steps_part = ", ".join(
            f'{json.dumps(name)}: {{"output": {self.output_fragment(steps_by_name[name])}}}'
            for name in sorted(refs)
            if name in steps_by_name
        )
        workflow_part = json.dumps(
            {
                "name": self.definition.name,
                "space": self.definition.space,
                "execution_id": self.execution_id,
            }
        )
        return (
            '{"inputs": {{workflow.parameters.inputs}}, '
            f'"steps": {{{steps_part}}}, "workflow": {workflow_part}}}'
        )

    def container(self, args: list[str]) -> dict[str, Any]:
        env = [{"name": "LOG_FORMAT", "value": "json"}]
        for key, value in (
            ("TAS_LLM_ROUTER_URL", self.settings.tas_llm_router_url),
            ("TAS_MCP_SERVER_URL", self.settings.tas_mcp_server_url),
        ):
            if value:
                env.append({"name": key, "value": value})
        return {
            "image": self.settings.argo_step_image,
            "command": ["tas-workflow", "run-step"],
            "args": args,
            "env": env,
        }

    def run_step_args(self, step: StepDefinition) -> list[str]:
        return [
            "--step",
            step.name,
            "--space",
            self.definition.space,
            "--spec-b64",
            "{{inputs.parameters.spec}}",
            "--context",
            "{{inputs.parameters.context}}",
        ]

    def action_template(self, step: StepDefinition) -> dict[str, Any]:
        name = f"step-{self.argo_name(step.name)}"
        template: dict[str, Any] = {
            "name": name,
            "inputs": {"parameters": [{"name": "spec"}, {"name": "context"}]},
            "container": self.container(self.run_step_args(step)),
        }
        strategy = retry_strategy(step.retry or self.definition.retry)
        if strategy is not None:
            template["retryStrategy"] = strategy
        timeout = step.timeout_seconds or self.settings.default_step_timeout_seconds
        template["activeDeadlineSeconds"] = max(1, int(timeout))
        self.templates.append(template)
        return template

    def entry(
        self,
        step: StepDefinition,
        template: str,
        spec: dict[str, Any],
        context: str,
        guard: str | None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "name": self.argo_name(step.name),
            "template": template,
            "arguments": {
                "parameters": [
                    {"name": "spec", "value": encode_spec(spec)},
                    {"name": "context", "value": context},
                ]
            },
        }
        if guard:
            entry["when"] = guard
        if step.on_error == "continue":
            entry["continueOn"] = {"failed": True}
        return entry

    def action_entry(self, step: StepDefinition, guard: str | None) -> dict[str, Any]:
        assert step.action is not None
        template = self.action_template(step)
        spec: dict[str, Any] = {"action": step.action, "params": step.resolved_params()}
        if step.when:
            spec["when"] = step.when
        return self.entry(step, template["name"], spec, self.context_parameter(step, []), guard)

    def compile_sequence(self, steps: list[StepDefinition], guard: str | None) -> None:
        for step in steps:
            self.compile_step(step, guard)

    def compile_step(self, step: StepDefinition, guard: str | None) -> None:
        if step.type == "action":
            self.groups.append([self.action_entry(step, guard)])
            return

        if step.type == "parallel":
            group: list[dict[str, Any]] = []
            for child in self._flatten_parallel(step):
                group.append(self.action_entry(child, guard))
            self.groups.append(group)
            return

        # conditional
        assert step.condition is not None
        condition_template = self.condition_template(step)
        spec: dict[str, Any] = {"condition": step.condition}
        if step.when:
            spec["when"] = step.when
        context = self.context_parameter(step, [step.condition])
        self.groups.append([self.entry(step, condition_template, spec, context, guard)])

        result = f"{{{{steps.{self.argo_name(step.name)}.outputs.result}}}}"
        self.compile_sequence(step.then, _and(guard, f"{result} == then"))
        self.compile_sequence(step.else_, _and(guard, f"{result} == else"))

    def condition_template(self, step: StepDefinition) -> str:
        name = f"cond-{self.argo_name(step.name)}"
        self.templates.append(
            {
                "name": name,
                "inputs": {"parameters": [{"name": "spec"}, {"name": "context"}]},
                "container": self.container(self.run_step_args(step)),
                "activeDeadlineSeconds": 60,
            }
        )
        return name

    def _flatten_parallel(self, step: StepDefinition) -> list[StepDefinition]:
        out: list[StepDefinition] = []
        for child in step.steps:
            child = _inherit(step, child)
            if child.type == "action":
                out.append(child)
            elif child.type == "parallel":
                out.extend(self._flatten_parallel(child))
            else:
                raise ArgoCompileError(
                    f"Step {child.name!r}: conditional steps inside a parallel block "
                    "are not supported by the Argo backend"
                )
        return out

    def manifest(self, inputs: dict[str, Any]) -> dict[str, Any]:
        # Reserve names in execution order so references resolve consistently.
        for name in self.definition.step_names():
            self.argo_name(name)
        self.compile_sequence(self.definition.steps, None)

        main = {"name": "main", "steps": self.groups}
        spec: dict[str, Any] = {
            "entrypoint": "main",
            "arguments": {
                "parameters": [
                    {"name": "inputs", "value": json.dumps(inputs, ensure_ascii=False)}
                ]
            },
            "templates": [main, *self.templates],
        }
        if self.settings.argo_service_account:
            spec["serviceAccountName"] = self.settings.argo_service_account
        if self.definition.timeout_seconds is not None:
            spec["activeDeadlineSeconds"] = max(1, int(self.definition.timeout_seconds))

        labels = dict(self.definition.labels)
        labels.update(
            {
                SPACE_LABEL: dns_name(self.definition.space),
                WORKFLOW_LABEL: dns_name(self.definition.name),
                EXECUTION_LABEL: self.execution_id,
            }
        )
        metadata: dict[str, Any] = {
            "generateName": f"{dns_name(self.definition.name, max_length=56)}-",
            "namespace": self.settings.argo_namespace,
            "labels": labels,
            "annotations": {
                STEP_NAMES_ANNOTATION: json.dumps(
                    {argo: name for name, argo in self.argo_names.items()}, sort_keys=True
                ),
            },
        }
        if self.definition.description:
            metadata["annotations"][f"{LABEL_PREFIX}/description"] = self.definition.description

        return {"apiVersion": API_VERSION, "kind": "Workflow", "metadata": metadata, "spec": spec}


def _and(guard: str | None, clause: str) -> str:
    return f"({guard}) && ({clause})" if guard else clause


def compile_workflow(
    definition: WorkflowDefinition,
    inputs: dict[str, Any],
    *,
    settings: WorkflowBuilderSettings,
    execution_id: str,
) -> dict[str, Any]:
    compiler = _Compiler(definition=definition, settings=settings, execution_id=execution_id)
    return compiler.manifest(inputs)


def _inherit(parent: StepDefinition, child: StepDefinition) -> StepDefinition:
    """Push a parallel block's `when` and `on_error` down onto a child.

    Argo has no node for the block itself, so its guard has to travel with each
    child entry.
    """

    updates: dict[str, Any] = {}
    if parent.when:
        when = strip_template(parent.when)
        updates["when"] = f"({when}) and ({strip_template(child.when)})" if child.when else when
    if parent.on_error == "continue":
        updates["on_error"] = "continue"
    return child.model_copy(update=updates) if updates else child
