"""Workflow service: the single entry point used by the HTTP API and the CLI.

Business rules live here (space scoping, validation before persistence, backend
selection, status bookkeeping). Transport concerns stay in `server/`.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from tas_workflow_builder.argo.client import ArgoClient, ArgoError
from tas_workflow_builder.argo.compiler import ArgoCompileError, compile_workflow
from tas_workflow_builder.argo.status import read_argo_status
from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.errors import (
    BackendUnavailable,
    ExecutionNotCancellable,
    SpaceMismatch,
    ValidationIssue,
)
from tas_workflow_builder.store import (
    ExecutionLogStore,
    ExecutionRecord,
    ExecutionStore,
    WorkflowRecord,
    WorkflowStore,
)
from tas_workflow_builder.workflow.actions import ActionRegistry, default_registry
from tas_workflow_builder.workflow.definition import WorkflowDefinition
from tas_workflow_builder.workflow.events import ExecutionEvent
from tas_workflow_builder.workflow.executor import (
    ExecutionResult,
    StepRecord,
    WorkflowExecutor,
    resolve_inputs,
)
from tas_workflow_builder.workflow.state_machine import (
    ExecutionStatus,
    IllegalTransitionError,
    StepStatus,
    transition_execution,
)
from tas_workflow_builder.workflow.validation import ensure_valid, validate_workflow

logger = logging.getLogger(__name__)

Backend = Literal["local", "argo"]

_EVENT_STEP_STATUS: dict[str, StepStatus] = {
    "step_started": StepStatus.RUNNING,
    "step_retrying": StepStatus.RETRYING,
    "step_succeeded": StepStatus.SUCCEEDED,
    "step_failed": StepStatus.FAILED,
    "step_skipped": StepStatus.SKIPPED,
    "step_cancelled": StepStatus.CANCELLED,
}


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def _advance(current: ExecutionStatus, to: ExecutionStatus) -> ExecutionStatus:
    """Move to `to`, passing through RUNNING when a backend skipped reporting it."""

    if current is to:
        return current
    try:
        return transition_execution(current=current, to=to)
    except IllegalTransitionError:
        if current is ExecutionStatus.PENDING:
            running = transition_execution(current=current, to=ExecutionStatus.RUNNING)
            return transition_execution(current=running, to=to)
        raise


@dataclass
class _LocalRun:
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None


class WorkflowService:
    def __init__(
        self,
        *,
        settings: WorkflowBuilderSettings,
        registry: ActionRegistry | None = None,
        workflows: WorkflowStore | None = None,
        executions: ExecutionStore | None = None,
        logs: ExecutionLogStore | None = None,
        argo: ArgoClient | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or default_registry()
        self.workflows = workflows or WorkflowStore(settings.workflows_state_file)
        self.executions = executions or ExecutionStore(settings.executions_state_file)
        self.logs = logs or ExecutionLogStore(settings.logs_dir)
        self.argo = argo
        if self.argo is None and settings.argo_enabled:
            self.argo = ArgoClient(
                base_url=settings.argo_server_url,
                namespace=settings.argo_namespace,
                token=settings.argo_token,
                verify_tls=settings.argo_verify_tls,
                timeout=settings.argo_request_timeout_seconds,
            )
        self.executor = WorkflowExecutor(self.registry, settings)
        self._runs: dict[str, _LocalRun] = {}
        self._runs_lock = threading.Lock()

    def close(self) -> None:
        if self.argo is not None:
            self.argo.close()

    # ------------------------------------------------------------------ workflows

    def validate(self, definition: WorkflowDefinition) -> list[ValidationIssue]:
        return validate_workflow(definition, self.registry)

    def create_workflow(self, definition: WorkflowDefinition) -> WorkflowRecord:
        ensure_valid(definition, self.registry)
        record = self.workflows.create(definition)
        logger.info(
            "Workflow created",
            extra={"workflow_id": record.id, "workflow": record.name, "space": record.space},
        )
        return record

    def update_workflow(
        self, workflow_id: str, definition: WorkflowDefinition, *, space: str | None = None
    ) -> WorkflowRecord:
        self.get_workflow(workflow_id, space=space)
        if space is not None and definition.space != space:
            raise SpaceMismatch(expected=space, actual=definition.space)
        ensure_valid(definition, self.registry)
        record = self.workflows.update(workflow_id, definition)
        logger.info(
            "Workflow updated", extra={"workflow_id": record.id, "revision": record.revision}
        )
        return record

    def get_workflow(self, workflow_id: str, *, space: str | None = None) -> WorkflowRecord:
        record = self.workflows.get(workflow_id)
        _check_space(space, record.space)
        return record

    def list_workflows(self, *, space: str | None = None) -> list[WorkflowRecord]:
        return self.workflows.list(space=space)

    def delete_workflow(self, workflow_id: str, *, space: str | None = None) -> None:
        self.get_workflow(workflow_id, space=space)
        self.workflows.delete(workflow_id)
        logger.info("Workflow deleted", extra={"workflow_id": workflow_id})

    def compile_argo(
        self, workflow_id: str, inputs: dict[str, Any] | None = None, *, space: str | None = None
    ) -> dict[str, Any]:
        record = self.get_workflow(workflow_id, space=space)
        definition = record.to_definition()
        if inputs:
            resolved = resolve_inputs(definition, inputs)
        else:
            # Preview without inputs: defaults only, required inputs stay unset.
            resolved = {name: spec.default for name, spec in definition.inputs.items()}
        return compile_workflow(
            definition, resolved, settings=self.settings, execution_id="preview"
        )

    # ------------------------------------------------------------------ executions

    def execute(
        self,
        workflow_id: str,
        inputs: dict[str, Any] | None = None,
        *,
        backend: Backend | None = None,
        wait: bool = False,
        space: str | None = None,
    ) -> ExecutionRecord:
        workflow = self.get_workflow(workflow_id, space=space)
        definition = workflow.to_definition()
        resolved = resolve_inputs(definition, inputs or {})
        chosen: Backend = backend or self.settings.execution_backend
        if chosen == "argo" and self.argo is None:
            raise BackendUnavailable(backend="argo", reason="ARGO_SERVER_URL is not configured")

        record = self.executions.create(
            ExecutionRecord(
                id=uuid.uuid4().hex,
                workflow_id=workflow.id,
                workflow_name=workflow.name,
                space=workflow.space,
                backend=chosen,
                inputs=resolved,
                steps={s.name: StepRecord.from_step(s) for s in definition.iter_steps()},
                created_at=_utc_iso_now(),
                definition=definition.model_dump(mode="json", by_alias=True),
            )
        )
        logger.info(
            "Execution created",
            extra={"execution_id": record.id, "workflow": workflow.name, "backend": chosen},
        )

        if chosen == "argo":
            return self._submit_argo(record, definition)
        return self._start_local(record, definition, wait=wait)

    def _start_local(
        self, record: ExecutionRecord, definition: WorkflowDefinition, *, wait: bool
    ) -> ExecutionRecord:
        run = _LocalRun()
        with self._runs_lock:
            self._runs[record.id] = run

        if wait:
            self._run_local(record.id, definition, run.cancel_event)
            return self.executions.get(record.id)

        thread = threading.Thread(
            target=self._run_local,
            name=f"execution-{record.id}",
            daemon=True,
            args=(record.id, definition, run.cancel_event),
        )
        run.thread = thread
        thread.start()
        return record

    def _run_local(
        self, execution_id: str, definition: WorkflowDefinition, cancel_event: threading.Event
    ) -> None:
        try:
            record = self.executions.get(execution_id)
            if cancel_event.is_set():
                self._finish(execution_id, ExecutionStatus.CANCELLED, error="Execution cancelled")
                return
            self.executions.mutate(
                execution_id,
                lambda r: r.model_copy(
                    update={
                        "status": _advance(r.status, ExecutionStatus.RUNNING),
                        "started_at": _utc_iso_now(),
                    }
                ),
            )
            result = self.executor.run(
                definition,
                record.inputs,
                execution_id=execution_id,
                on_event=lambda event: self._record_event(execution_id, event),
                cancel_event=cancel_event,
            )
            self._store_result(execution_id, result)
        except Exception as e:
            logger.exception("Local execution failed", extra={"execution_id": execution_id})
            self._finish(execution_id, ExecutionStatus.FAILED, error=str(e))
        finally:
            with self._runs_lock:
                self._runs.pop(execution_id, None)

    def _record_event(self, execution_id: str, event: ExecutionEvent) -> None:
        self.logs.append(execution_id, event)
        status = _EVENT_STEP_STATUS.get(event.kind)
        if status is None or event.step is None:
            return
        step_name = event.step

        def apply(record: ExecutionRecord) -> ExecutionRecord:
            steps = dict(record.steps)
            current = steps.get(step_name)
            if current is None:
                return record
            steps[step_name] = current.model_copy(update={"status": status})
            return record.model_copy(update={"steps": steps})

        self.executions.mutate(execution_id, apply)

    def _store_result(self, execution_id: str, result: ExecutionResult) -> None:
        self.executions.mutate(
            execution_id,
            lambda r: r.model_copy(
                update={
                    "status": _advance(r.status, result.status),
                    "steps": result.steps,
                    "outputs": result.outputs,
                    "error": result.error,
                    "started_at": r.started_at or result.started_at,
                    "finished_at": result.finished_at,
                }
            ),
        )

    def _finish(self, execution_id: str, status: ExecutionStatus, *, error: str) -> None:
        def apply(record: ExecutionRecord) -> ExecutionRecord:
            if record.status.is_terminal:
                return record
            return record.model_copy(
                update={
                    "status": _advance(record.status, status),
                    "error": error,
                    "finished_at": _utc_iso_now(),
                }
            )

        self.executions.mutate(execution_id, apply)

    def _submit_argo(
        self, record: ExecutionRecord, definition: WorkflowDefinition
    ) -> ExecutionRecord:
        assert self.argo is not None
        try:
            manifest = compile_workflow(
                definition, record.inputs, settings=self.settings, execution_id=record.id
            )
            created = self.argo.submit(manifest)
        except (ArgoCompileError, ArgoError) as e:
            self._finish(record.id, ExecutionStatus.FAILED, error=str(e))
            self.logs.append(
                record.id,
                ExecutionEvent(kind="execution_finished", message=str(e), level="error"),
            )
            raise

        argo_name = str(created.get("metadata", {}).get("name") or "")
        self.logs.append(
            record.id,
            ExecutionEvent(
                kind="execution_started",
                message=f"Submitted to Argo as {argo_name}",
                data={"argo_workflow": argo_name, "namespace": self.argo.namespace},
            ),
        )
        return self._apply_argo_status(
            self.executions.update(record.id, argo_workflow_name=argo_name), created, definition
        )

    def _apply_argo_status(
        self,
        record: ExecutionRecord,
        argo_workflow: dict[str, Any],
        definition: WorkflowDefinition,
    ) -> ExecutionRecord:
        status = read_argo_status(argo_workflow, definition)

        def apply(current: ExecutionRecord) -> ExecutionRecord:
            if current.status.is_terminal:
                return current
            update: dict[str, Any] = {
                "status": _advance(current.status, status.status),
                "steps": status.steps,
                "started_at": status.started_at or current.started_at,
                "finished_at": status.finished_at,
            }
            if status.status in (
                ExecutionStatus.FAILED,
                ExecutionStatus.TIMED_OUT,
                ExecutionStatus.CANCELLED,
            ):
                update["error"] = status.message or status.status.value
            return current.model_copy(update=update)

        return self.executions.mutate(record.id, apply)

    def get_execution(
        self, execution_id: str, *, refresh: bool = True, space: str | None = None
    ) -> ExecutionRecord:
        record = self.executions.get(execution_id)
        _check_space(space, record.space)
        if (
            refresh
            and record.backend == "argo"
            and record.argo_workflow_name
            and not record.status.is_terminal
            and self.argo is not None
        ):
            if record.definition is not None:
                definition = WorkflowDefinition.model_validate(record.definition)
            else:
                definition = self.workflows.get(record.workflow_id).to_definition()
            argo_workflow = self.argo.get(record.argo_workflow_name)
            record = self._apply_argo_status(record, argo_workflow, definition)
        return record

    def list_executions(
        self,
        *,
        workflow_id: str | None = None,
        space: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[ExecutionRecord]:
        return self.executions.list(workflow_id=workflow_id, space=space, status=status)

    def cancel_execution(self, execution_id: str, *, space: str | None = None) -> ExecutionRecord:
        record = self.get_execution(execution_id, refresh=False, space=space)
        if record.status.is_terminal:
            raise ExecutionNotCancellable(execution_id=execution_id, status=record.status.value)

        if record.backend == "argo":
            if self.argo is None:
                raise BackendUnavailable(backend="argo", reason="ARGO_SERVER_URL is not configured")
            if record.argo_workflow_name:
                self.argo.terminate(record.argo_workflow_name)
            self._finish(execution_id, ExecutionStatus.CANCELLED, error="Execution cancelled")
        else:
            with self._runs_lock:
                run = self._runs.get(execution_id)
            if run is not None:
                run.cancel_event.set()
            else:
                # No live run in this process (for example after a restart).
                self._finish(execution_id, ExecutionStatus.CANCELLED, error="Execution cancelled")

        self.logs.append(
            execution_id,
            ExecutionEvent(kind="log", message="Cancellation requested", level="warning"),
        )
        logger.info("Execution cancellation requested", extra={"execution_id": execution_id})
        return self.executions.get(execution_id)

    def wait_for_execution(
        self, execution_id: str, timeout: float | None = None
    ) -> ExecutionRecord:
        """Block until a local execution's worker thread is done."""

        with self._runs_lock:
            run = self._runs.get(execution_id)
        if run is not None and run.thread is not None:
            run.thread.join(timeout=timeout)
        return self.executions.get(execution_id)

    def get_logs(
        self,
        execution_id: str,
        *,
        since: int = 0,
        limit: int | None = None,
        space: str | None = None,
    ) -> list[dict[str, Any]]:
        """Execution events, followed by Argo pod logs for Argo executions.

        `since` and `limit` page over the merged list; pod entries continue the
        offsets of the stored events.
        """

        record = self.get_execution(execution_id, refresh=False, space=space)
        if record.backend != "argo" or not record.argo_workflow_name or self.argo is None:
            return self.logs.read(execution_id, since=since, limit=limit)

        entries = self.logs.read(execution_id)
        try:
            pod_logs = self.argo.logs(record.argo_workflow_name)
        except ArgoError as e:
            logger.warning(
                "Could not fetch Argo logs",
                extra={"execution_id": execution_id, "error": str(e)},
            )
            pod_logs = []
        next_offset = entries[-1]["offset"] + 1 if entries else 0
        for n, entry in enumerate(pod_logs):
            entries.append(
                {
                    "offset": next_offset + n,
                    "kind": "pod_log",
                    "level": "info",
                    "message": entry.content,
                    "data": {"pod": entry.pod_name},
                }
            )
        entries = [e for e in entries if e["offset"] >= since]
        return entries if limit is None else entries[:limit]

    def recover_interrupted(self) -> int:
        """Fail local executions that were running when the process stopped."""

        count = 0
        for record in self.executions.list():
            if record.backend != "local" or record.status.is_terminal:
                continue
            with self._runs_lock:
                live = record.id in self._runs
            if live:
                continue
            self._finish(
                record.id, ExecutionStatus.FAILED, error="Interrupted by service restart"
            )
            count += 1
        if count:
            logger.warning("Marked interrupted executions as failed", extra={"count": count})
        return count


def _check_space(expected: str | None, actual: str) -> None:
    if expected is not None and expected != actual:
        raise SpaceMismatch(expected=expected, actual=actual)


__all__ = ["Backend", "WorkflowService"]
