"""Translate Argo workflow status into execution and step records."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from tas_workflow_builder.argo.compiler import STEP_NAMES_ANNOTATION
from tas_workflow_builder.workflow.definition import StepDefinition, WorkflowDefinition
from tas_workflow_builder.workflow.executor import StepRecord
from tas_workflow_builder.workflow.state_machine import ExecutionStatus, StepStatus

_PHASE_TO_EXECUTION: dict[str, ExecutionStatus] = {
    "": ExecutionStatus.PENDING,
    "Pending": ExecutionStatus.PENDING,
    "Running": ExecutionStatus.RUNNING,
    "Succeeded": ExecutionStatus.SUCCEEDED,
    "Failed": ExecutionStatus.FAILED,
    "Error": ExecutionStatus.FAILED,
}

_PHASE_TO_STEP: dict[str, StepStatus] = {
    "Pending": StepStatus.PENDING,
    "Running": StepStatus.RUNNING,
    "Succeeded": StepStatus.SUCCEEDED,
    "Failed": StepStatus.FAILED,
    "Error": StepStatus.FAILED,
    "Skipped": StepStatus.SKIPPED,
    "Omitted": StepStatus.SKIPPED,
}

# Node types that represent one workflow step (retry wrappers included).
_STEP_NODE_TYPES = {"Pod", "Retry", "Skipped", "Container"}


@dataclass(frozen=True, slots=True)
class ArgoExecutionStatus:
    status: ExecutionStatus
    message: str
    steps: dict[str, StepRecord] = field(default_factory=dict)
    started_at: str | None = None
    finished_at: str | None = None


def execution_status(phase: str, message: str) -> ExecutionStatus:
    status = _PHASE_TO_EXECUTION.get(phase, ExecutionStatus.RUNNING)
    if status is ExecutionStatus.FAILED:
        lowered = message.lower()
        if "deadline" in lowered:
            return ExecutionStatus.TIMED_OUT
        if "stopped with strategy" in lowered or "terminated" in lowered:
            return ExecutionStatus.CANCELLED
    return status


def _parse_result(raw: object) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _step_names(workflow: dict[str, Any]) -> dict[str, str]:
    annotations = workflow.get("metadata", {}).get("annotations") or {}
    raw = annotations.get(STEP_NAMES_ANNOTATION)
    if not isinstance(raw, str):
        return {}
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return {str(k): str(v) for k, v in mapping.items()} if isinstance(mapping, dict) else {}


def _aggregate(children: list[StepRecord]) -> StepStatus:
    statuses = {c.status for c in children}
    if not children or statuses <= {StepStatus.PENDING}:
        return StepStatus.PENDING
    if StepStatus.RUNNING in statuses or StepStatus.PENDING in statuses:
        return StepStatus.RUNNING
    if StepStatus.FAILED in statuses:
        return StepStatus.FAILED
    if statuses <= {StepStatus.SKIPPED}:
        return StepStatus.SKIPPED
    return StepStatus.SUCCEEDED


def _fill_parallel(step: StepDefinition, records: dict[str, StepRecord]) -> None:
    for child in step.children():
        _fill_parallel(child, records)
    if step.type != "parallel":
        return
    children = [records[c.name] for c in step.steps if c.name in records]
    record = records.setdefault(step.name, StepRecord.from_step(step))
    record.status = _aggregate(children)
    record.output = {c.name: c.output for c in children}


def read_argo_status(
    workflow: dict[str, Any], definition: WorkflowDefinition
) -> ArgoExecutionStatus:
    status_obj: dict[str, Any] = workflow.get("status") or {}
    phase = str(status_obj.get("phase") or "")
    message = str(status_obj.get("message") or "")

    by_argo_name = _step_names(workflow)
    steps_by_name = {s.name: s for s in definition.iter_steps()}
    records: dict[str, StepRecord] = {
        name: StepRecord.from_step(step) for name, step in steps_by_name.items()
    }

    nodes: dict[str, Any] = status_obj.get("nodes") or {}
    for node in nodes.values():
        if not isinstance(node, dict) or node.get("type") not in _STEP_NODE_TYPES:
            continue
        display = str(node.get("displayName") or "")
        step_name = by_argo_name.get(display)
        if step_name is None or step_name not in records:
            continue
        record = records[step_name]
        # A Retry node summarises its pods; prefer it over the individual attempts.
        if record.attempts and node.get("type") != "Retry":
            continue
        record.status = _PHASE_TO_STEP.get(str(node.get("phase") or ""), StepStatus.PENDING)
        record.started_at = node.get("startedAt")
        record.finished_at = node.get("finishedAt")
        record.error = node.get("message") if record.status is StepStatus.FAILED else None
        children = node.get("children") or []
        record.attempts = len(children) if node.get("type") == "Retry" else 1
        outputs = node.get("outputs") or {}
        result = _parse_result(outputs.get("result"))
        if steps_by_name[step_name].type == "conditional":
            result = {"branch": result if result in ("then", "else") else None}
        record.output = result

    for step in definition.steps:
        _fill_parallel(step, records)

    return ArgoExecutionStatus(
        status=execution_status(phase, message),
        message=message,
        steps=records,
        started_at=status_obj.get("startedAt"),
        finished_at=status_obj.get("finishedAt"),
    )
