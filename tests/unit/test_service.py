from __future__ import annotations

from typing import Any
from unittest.mock import Mock

import pytest

from tas_workflow_builder.argo.client import ArgoError, ArgoLogEntry
from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.errors import (
    BackendUnavailable,
    ExecutionNotCancellable,
    SpaceMismatch,
    WorkflowValidationError,
)
from tas_workflow_builder.service import WorkflowService
from tas_workflow_builder.store import ExecutionRecord
from tas_workflow_builder.workflow.actions import ActionRegistry
from tas_workflow_builder.workflow.definition import WorkflowDefinition, parse_workflow
from tas_workflow_builder.workflow.state_machine import ExecutionStatus, StepStatus


def _definition(steps: list[dict[str, Any]] | None = None, **extra: Any) -> WorkflowDefinition:
    return parse_workflow(
        {
            "name": "greet",
            "space": "acme",
            "inputs": {"who": {"type": "string", "default": "world"}},
            "steps": steps
            or [{"name": "hello", "action": "echo", "with": {"msg": "hi ${{ inputs.who }}"}}],
            "outputs": {"message": "${{ steps.hello.output.msg }}"},
            **extra,
        }
    )


def _argo_mock(phase: str = "Running") -> Mock:
    argo = Mock()
    argo.namespace = "argo"
    argo.submit.return_value = {"metadata": {"name": "greet-abc12"}, "status": {"phase": phase}}
    return argo


@pytest.fixture
def service(settings: WorkflowBuilderSettings, registry: ActionRegistry) -> WorkflowService:
    return WorkflowService(settings=settings, registry=registry)


def test_local_execution_waits_for_result(service: WorkflowService) -> None:
    workflow = service.create_workflow(_definition())

    record = service.execute(workflow.id, {"who": "Ada"}, wait=True)

    assert record.status is ExecutionStatus.SUCCEEDED
    assert record.backend == "local"
    assert record.outputs == {"message": "hi Ada"}
    assert record.steps["hello"].status is StepStatus.SUCCEEDED
    assert record.started_at and record.finished_at

    kinds = [e["kind"] for e in service.get_logs(record.id)]
    assert kinds[0] == "execution_started"
    assert kinds[-1] == "execution_finished"


def test_background_execution_can_be_cancelled(service: WorkflowService) -> None:
    workflow = service.create_workflow(
        _definition([{"name": "nap", "action": "delay", "seconds": 5}], outputs={})
    )

    started = service.execute(workflow.id)
    assert started.status is ExecutionStatus.PENDING
    assert started.steps["nap"].status is StepStatus.PENDING

    service.cancel_execution(started.id)
    finished = service.wait_for_execution(started.id, timeout=5)

    assert finished.status is ExecutionStatus.CANCELLED
    messages = [e["message"] for e in service.get_logs(started.id)]
    assert "Cancellation requested" in messages


def test_cancel_of_finished_execution_is_rejected(service: WorkflowService) -> None:
    workflow = service.create_workflow(_definition())
    record = service.execute(workflow.id, wait=True)

    with pytest.raises(ExecutionNotCancellable):
        service.cancel_execution(record.id)


def test_failed_step_marks_execution_failed(service: WorkflowService) -> None:
    workflow = service.create_workflow(
        _definition([{"name": "bad", "action": "fail", "message": "nope"}], outputs={})
    )

    record = service.execute(workflow.id, wait=True)

    assert record.status is ExecutionStatus.FAILED
    assert record.error == "Step bad failed: nope"
    assert service.list_executions(status=ExecutionStatus.FAILED)[0].id == record.id


def test_invalid_definition_is_not_stored(service: WorkflowService) -> None:
    with pytest.raises(WorkflowValidationError):
        service.create_workflow(_definition([{"name": "x", "action": "missing"}], outputs={}))

    assert service.list_workflows() == []


def test_space_scoping(service: WorkflowService) -> None:
    workflow = service.create_workflow(_definition())

    assert service.get_workflow(workflow.id, space="acme").id == workflow.id
    with pytest.raises(SpaceMismatch):
        service.get_workflow(workflow.id, space="other")
    with pytest.raises(SpaceMismatch):
        service.execute(workflow.id, space="other")
    with pytest.raises(SpaceMismatch):
        service.update_workflow(workflow.id, _definition(space="other"), space="acme")


def test_update_workflow_bumps_revision(service: WorkflowService) -> None:
    workflow = service.create_workflow(_definition())

    updated = service.update_workflow(workflow.id, _definition(description="v2"))

    assert updated.revision == 2
    assert service.get_workflow(workflow.id).description == "v2"


def test_argo_backend_requires_configuration(service: WorkflowService) -> None:
    workflow = service.create_workflow(_definition())

    with pytest.raises(BackendUnavailable):
        service.execute(workflow.id, backend="argo")
    assert service.list_executions() == []


def test_argo_submission_and_refresh(
    settings: WorkflowBuilderSettings, registry: ActionRegistry
) -> None:
    argo = _argo_mock()
    service = WorkflowService(settings=settings, registry=registry, argo=argo)
    workflow = service.create_workflow(_definition())

    record = service.execute(workflow.id, {"who": "Ada"}, backend="argo")

    assert record.status is ExecutionStatus.RUNNING
    assert record.argo_workflow_name == "greet-abc12"
    manifest = argo.submit.call_args.args[0]
    assert manifest["kind"] == "Workflow"
    assert manifest["metadata"]["labels"]["tas.tributary.ai/execution-id"] == record.id

    argo.get.return_value = {
        "metadata": {"name": "greet-abc12"},
        "status": {"phase": "Succeeded", "finishedAt": "2025-01-01T00:01:00Z"},
    }
    refreshed = service.get_execution(record.id)

    argo.get.assert_called_once_with("greet-abc12")
    assert refreshed.status is ExecutionStatus.SUCCEEDED
    assert refreshed.finished_at == "2025-01-01T00:01:00Z"


def test_argo_submission_failure_is_recorded(
    settings: WorkflowBuilderSettings, registry: ActionRegistry
) -> None:
    argo = _argo_mock()
    argo.submit.side_effect = ArgoError("forbidden", status_code=403)
    service = WorkflowService(settings=settings, registry=registry, argo=argo)
    workflow = service.create_workflow(_definition())

    with pytest.raises(ArgoError):
        service.execute(workflow.id, backend="argo")

    (record,) = service.list_executions()
    assert record.status is ExecutionStatus.FAILED
    assert "forbidden" in (record.error or "")


def test_argo_cancel_and_logs(settings: WorkflowBuilderSettings, registry: ActionRegistry) -> None:
    argo = _argo_mock()
    argo.logs.return_value = [ArgoLogEntry(pod_name="greet-abc12-1", content="hello from pod")]
    service = WorkflowService(settings=settings, registry=registry, argo=argo)
    workflow = service.create_workflow(_definition())
    record = service.execute(workflow.id, backend="argo")

    cancelled = service.cancel_execution(record.id)
    entries = service.get_logs(record.id)

    argo.terminate.assert_called_once_with("greet-abc12")
    assert cancelled.status is ExecutionStatus.CANCELLED
    assert entries[-1] == {
        "offset": len(entries) - 1,
        "kind": "pod_log",
        "level": "info",
        "message": "hello from pod",
        "data": {"pod": "greet-abc12-1"},
    }


def test_argo_log_errors_are_not_fatal(
    settings: WorkflowBuilderSettings, registry: ActionRegistry
) -> None:
    argo = _argo_mock()
    argo.logs.side_effect = ArgoError("gone", status_code=404)
    service = WorkflowService(settings=settings, registry=registry, argo=argo)
    workflow = service.create_workflow(_definition())
    record = service.execute(workflow.id, backend="argo")

    entries = service.get_logs(record.id)

    assert all(e["kind"] != "pod_log" for e in entries)


def test_recover_interrupted_fails_orphaned_runs(service: WorkflowService) -> None:
    service.executions.create(
        ExecutionRecord(
            id="orphan",
            workflow_id="w",
            workflow_name="greet",
            space="acme",
            status=ExecutionStatus.RUNNING,
            created_at="2025-01-01T00:00:00",
        )
    )

    assert service.recover_interrupted() == 1

    record = service.get_execution("orphan")
    assert record.status is ExecutionStatus.FAILED
    assert record.error == "Interrupted by service restart"
    assert service.recover_interrupted() == 0


def test_argo_logs_are_paged_with_pod_lines(
    settings: WorkflowBuilderSettings, registry: ActionRegistry
) -> None:
    argo = _argo_mock()
    argo.logs.return_value = [
        ArgoLogEntry(pod_name="greet-abc12-1", content=f"line {i}") for i in range(10)
    ]
    service = WorkflowService(settings=settings, registry=registry, argo=argo)
    workflow = service.create_workflow(_definition())
    record = service.execute(workflow.id, backend="argo")
    stored = len(service.logs.read(record.id))

    first = service.get_logs(record.id, limit=2)
    tail = service.get_logs(record.id, since=stored + 8)

    assert len(first) == 2
    assert [e["offset"] for e in first] == [0, 1]
    assert [e["message"] for e in tail] == ["line 8", "line 9"]
    assert [e["offset"] for e in tail] == [stored + 8, stored + 9]


def test_argo_refresh_uses_definition_snapshot(
    settings: WorkflowBuilderSettings, registry: ActionRegistry
) -> None:
    argo = _argo_mock()
    service = WorkflowService(settings=settings, registry=registry, argo=argo)
    workflow = service.create_workflow(_definition())
    record = service.execute(workflow.id, backend="argo")
    service.delete_workflow(workflow.id)
    argo.get.return_value = {
        "metadata": {"name": "greet-abc12"},
        "status": {"phase": "Succeeded", "finishedAt": "2025-01-01T00:01:00Z"},
    }

    refreshed = service.get_execution(record.id)

    assert record.definition is not None
    assert record.definition["name"] == "greet"
    assert refreshed.status is ExecutionStatus.SUCCEEDED
    assert set(refreshed.steps) == {"hello"}
