"""In-process workflow execution engine.

The executor walks a `WorkflowDefinition`:

- top-level steps run in order, each seeing earlier outputs via `steps.<name>`
- `parallel` children run on a bounded thread pool
- `conditional` steps run exactly one branch (or none)
- every action attempt runs on its own worker thread so it can be timed out
- failed attempts are retried per the step's `RetryPolicy`

Step failures never escape as exceptions. They are recorded on the step and,
unless the step says `on_error: continue`, stop the workflow.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.errors import ValidationIssue, WorkflowValidationError
from tas_workflow_builder.workflow.actions import (
    Action,
    ActionContext,
    ActionRegistry,
    ActionResult,
    UnknownActionError,
)
from tas_workflow_builder.workflow.definition import InputSpec, StepDefinition, WorkflowDefinition
from tas_workflow_builder.workflow.events import EventSink, ExecutionEvent, discard_event
from tas_workflow_builder.workflow.expressions import (
    ExpressionError,
    evaluate_condition,
    render,
)
from tas_workflow_builder.workflow.state_machine import (
    ExecutionStatus,
    StepStatus,
    transition_step,
)

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class StepTimeoutError(TimeoutError):
    pass


class StepCancelledError(RuntimeError):
    pass


class StepRecord(BaseModel):
    name: str
    type: str = "action"
    action: str | None = None
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    output: Any = None
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @classmethod
    def from_step(cls, step: StepDefinition) -> StepRecord:
        return cls(name=step.name, type=step.type, action=step.action)


class ExecutionResult(BaseModel):
    execution_id: str
    status: ExecutionStatus
    steps: dict[str, StepRecord] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: str
    finished_at: str


_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def _matches_type(spec: InputSpec, value: object) -> bool:
    if spec.type == "any" or value is None:
        return True
    if spec.type in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, _TYPE_CHECKS[spec.type])


def resolve_inputs(definition: WorkflowDefinition, inputs: dict[str, Any]) -> dict[str, Any]:
    """Apply defaults and check required/typed inputs.

    Undeclared inputs are passed through untouched.
    """

    issues: list[ValidationIssue] = []
    resolved = dict(inputs)
    for name, spec in definition.inputs.items():
        if name not in resolved or resolved[name] is None:
            if spec.default is not None:
                resolved[name] = spec.default
            elif spec.required:
                issues.append(ValidationIssue(path=f"inputs.{name}", message="Input is required"))
                continue
            else:
                resolved[name] = None
        if not _matches_type(spec, resolved[name]):
            issues.append(
                ValidationIssue(path=f"inputs.{name}", message=f"Expected {spec.type}")
            )
    if issues:
        raise WorkflowValidationError(issues)
    return resolved


class _Run:
    """Mutable state of one execution, shared by the worker threads."""

    def __init__(
        self,
        *,
        definition: WorkflowDefinition,
        inputs: dict[str, Any],
        execution_id: str,
        on_event: EventSink,
        cancel_event: threading.Event,
    ) -> None:
        self.definition = definition
        self.execution_id = execution_id
        self.on_event = on_event
        self.cancel_event = cancel_event
        self.lock = threading.Lock()
        self.records = {s.name: StepRecord.from_step(s) for s in definition.iter_steps()}
        self.step_context: dict[str, dict[str, Any]] = {}
        self.inputs = inputs
        self.error: str | None = None
        self.timed_out = False
        self.deadline = (
            time.monotonic() + definition.timeout_seconds
            if definition.timeout_seconds is not None
            else None
        )

    def context(self) -> dict[str, Any]:
        with self.lock:
            steps = dict(self.step_context)
        return {
            "inputs": self.inputs,
            "steps": steps,
            "workflow": {
                "name": self.definition.name,
                "space": self.definition.space,
                "execution_id": self.execution_id,
            },
            "env": {},
        }

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def interrupted(self) -> bool:
        if self.cancel_event.is_set():
            return True
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            self.timed_out = True
            self.cancel_event.set()
            return True
        return False

    def emit(
        self,
        kind: str,
        message: str,
        *,
        step: str | None = None,
        level: str = "info",
        data: dict[str, object] | None = None,
    ) -> None:
        event = ExecutionEvent(kind=kind, message=message, step=step, level=level, data=data or {})
        logger.log(
            _LOG_LEVELS.get(level.lower(), logging.INFO),
            message,
            extra={"execution_id": self.execution_id, "step": step, "event": kind},
        )
        try:
            self.on_event(event)
        except Exception:
            logger.exception(
                "Execution event sink failed", extra={"execution_id": self.execution_id}
            )

    def set_status(self, name: str, to: StepStatus, **updates: Any) -> StepRecord:
        with self.lock:
            record = self.records[name]
            record.status = transition_step(current=record.status, to=to)
            for key, value in updates.items():
                setattr(record, key, value)
            if to is StepStatus.RUNNING and record.started_at is None:
                record.started_at = _utc_iso_now()
            if to.is_terminal:
                record.finished_at = _utc_iso_now()
                self.step_context[name] = {
                    "status": record.status.value,
                    "output": record.output,
                    "error": record.error,
                    "attempts": record.attempts,
                }
            return record

    def fail(self, message: str) -> None:
        with self.lock:
            if self.error is None:
                self.error = message


class WorkflowExecutor:
    def __init__(self, registry: ActionRegistry, settings: WorkflowBuilderSettings) -> None:
        self._registry = registry
        self._settings = settings

    def run(
        self,
        definition: WorkflowDefinition,
        inputs: dict[str, Any] | None = None,
        *,
        execution_id: str | None = None,
        on_event: EventSink = discard_event,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult:
        resolved = resolve_inputs(definition, inputs or {})
        run = _Run(
            definition=definition,
            inputs=resolved,
            execution_id=execution_id or uuid.uuid4().hex,
            on_event=on_event,
            cancel_event=cancel_event or threading.Event(),
        )

        started_at = _utc_iso_now()
        run.emit(
            "execution_started",
            f"Workflow {definition.name} started",
            data={"steps": len(run.records)},
        )

        completed = self._run_sequence(run, definition.steps)

        if run.timed_out:
            status = ExecutionStatus.TIMED_OUT
            run.fail(f"Workflow exceeded timeout of {definition.timeout_seconds}s")
        elif run.cancel_event.is_set() and not completed:
            status = ExecutionStatus.CANCELLED
            run.fail("Execution cancelled")
        elif not completed:
            status = ExecutionStatus.FAILED
        else:
            status = ExecutionStatus.SUCCEEDED

        outputs: dict[str, Any] = {}
        if status is ExecutionStatus.SUCCEEDED and definition.outputs:
            try:
                outputs = render(definition.outputs, run.context())
            except ExpressionError as e:
                status = ExecutionStatus.FAILED
                run.fail(f"Failed to render workflow outputs: {e}")

        for name, record in run.records.items():
            if record.status is StepStatus.PENDING:
                run.set_status(name, StepStatus.CANCELLED)

        level = "info" if status is ExecutionStatus.SUCCEEDED else "error"
        run.emit(
            "execution_finished",
            f"Workflow {definition.name} finished: {status.value}",
            level=level,
            data={"status": status.value, **({"error": run.error} if run.error else {})},
        )
        return ExecutionResult(
            execution_id=run.execution_id,
            status=status,
            steps={k: v.model_copy() for k, v in run.records.items()},
            outputs=outputs,
            error=run.error,
            started_at=started_at,
            finished_at=_utc_iso_now(),
        )

    def _run_sequence(self, run: _Run, steps: list[StepDefinition]) -> bool:
        for step in steps:
            if run.interrupted():
                return False
            if not self._run_step(run, step):
                return False
        return True

    def _run_step(self, run: _Run, step: StepDefinition) -> bool:
        """Run one step of any type; False means the workflow must stop."""

        if step.when:
            try:
                should_run = evaluate_condition(step.when, run.context())
            except ExpressionError as e:
                return self._fail_before_start(run, step, f"Invalid 'when' condition: {e}")
            if not should_run:
                self._skip(run, step, "Condition is false")
                return True

        if step.type == "parallel":
            ok = self._run_parallel(run, step)
        elif step.type == "conditional":
            ok = self._run_conditional(run, step)
        else:
            ok = self._run_action(run, step)

        if ok:
            return True
        record = run.records[step.name]
        if record.status is StepStatus.CANCELLED:
            return False
        if step.on_error == "continue":
            run.emit(
                "log",
                f"Step {step.name} failed; continuing (on_error=continue)",
                step=step.name,
                level="warning",
            )
            return True
        run.fail(f"Step {step.name} failed: {record.error}")
        return False

    def _fail_before_start(self, run: _Run, step: StepDefinition, message: str) -> bool:
        run.set_status(step.name, StepStatus.RUNNING)
        run.set_status(step.name, StepStatus.FAILED, error=message)
        run.emit("step_failed", message, step=step.name, level="error")
        if step.on_error == "continue":
            return True
        run.fail(f"Step {step.name} failed: {message}")
        return False

    def _mark_failed(self, run: _Run, step: StepDefinition, message: str) -> bool:
        run.set_status(step.name, StepStatus.RUNNING)
        run.set_status(step.name, StepStatus.FAILED, error=message)
        run.emit("step_failed", message, step=step.name, level="error")
        return False

    def _skip(self, run: _Run, step: StepDefinition, reason: str) -> None:
        run.set_status(step.name, StepStatus.SKIPPED, output=None)
        run.emit("step_skipped", f"Step {step.name} skipped: {reason}", step=step.name)
        for child in step.children():
            if run.records[child.name].status is StepStatus.PENDING:
                self._skip(run, child, f"parent {step.name} skipped")

    def _run_action(self, run: _Run, step: StepDefinition) -> bool:
        policy = step.retry or run.definition.retry
        timeout = step.timeout_seconds or self._settings.default_step_timeout_seconds
        if step.action is None:
            return self._mark_failed(run, step, "Action step requires an 'action'")

        try:
            action = self._registry.get(step.action)
        except UnknownActionError as e:
            return self._mark_failed(run, step, str(e))

        run.set_status(step.name, StepStatus.RUNNING)
        run.emit("step_started", f"Step {step.name} started", step=step.name)

        error = "Step failed"
        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_before(attempt)
                run.set_status(step.name, StepStatus.RETRYING)
                run.emit(
                    "step_retrying",
                    f"Step {step.name} retrying in {delay:.2f}s (attempt {attempt}/"
                    f"{policy.max_attempts}): {error}",
                    step=step.name,
                    level="warning",
                    data={"attempt": attempt, "delay_seconds": delay},
                )
                if run.cancel_event.wait(timeout=delay) or run.interrupted():
                    return self._cancel(run, step)
                run.set_status(step.name, StepStatus.RUNNING)

            with run.lock:
                run.records[step.name].attempts = attempt

            try:
                params = render(step.resolved_params(), run.context())
            except ExpressionError as e:
                # Template errors are deterministic; retrying cannot help.
                error = f"Failed to render parameters: {e}"
                break

            ctx = ActionContext(
                execution_id=run.execution_id,
                step_name=step.name,
                space=run.definition.space,
                attempt=attempt,
                settings=self._settings,
                log=self._step_logger(run, step.name),
                cancelled=run.cancel_event,
            )
            try:
                result = self._attempt(run, action, params, ctx, timeout)
            except StepCancelledError:
                return self._cancel(run, step)
            except StepTimeoutError as e:
                error = str(e)
                if run.timed_out:
                    return self._cancel(run, step)
                continue
            except Exception as e:
                if run.cancel_event.is_set():
                    return self._cancel(run, step)
                error = f"{type(e).__name__}: {e}"
                continue

            if not result.ok and run.cancel_event.is_set():
                return self._cancel(run, step)
            if result.ok:
                run.set_status(step.name, StepStatus.SUCCEEDED, output=result.output)
                suffix = f": {result.message}" if result.message else ""
                run.emit(
                    "step_succeeded",
                    f"Step {step.name} succeeded{suffix}",
                    step=step.name,
                    data={"attempts": attempt},
                )
                return True
            error = result.message or "Action reported failure"
            with run.lock:
                run.records[step.name].output = result.output

        run.set_status(step.name, StepStatus.FAILED, error=error)
        run.emit("step_failed", f"Step {step.name} failed: {error}", step=step.name, level="error")
        return False

    def _attempt(
        self,
        run: _Run,
        action: Action,
        params: dict[str, Any],
        ctx: ActionContext,
        timeout: float,
    ) -> ActionResult:
        future: Future[ActionResult] = Future()

        def target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(action.execute(params, ctx))
            except Exception as e:
                future.set_exception(e)

        worker = threading.Thread(
            target=target,
            name=f"step-{ctx.step_name}-{ctx.attempt}",
            daemon=True,
        )
        worker.start()

        limit = time.monotonic() + timeout
        while True:
            if future.done():
                return future.result()
            if run.cancel_event.is_set() and not run.timed_out:
                raise StepCancelledError(ctx.step_name)
            if run.interrupted():
                raise StepTimeoutError(f"Workflow deadline reached during step {ctx.step_name}")
            now = time.monotonic()
            if now >= limit:
                # The worker thread is abandoned; a late result is ignored.
                raise StepTimeoutError(f"Step {ctx.step_name} timed out after {timeout}s")
            future_wait = min(_POLL_SECONDS, limit - now)
            try:
                return future.result(timeout=future_wait)
            except TimeoutError:
                continue

    def _cancel(self, run: _Run, step: StepDefinition) -> bool:
        run.set_status(step.name, StepStatus.CANCELLED, error="Cancelled")
        run.emit("step_cancelled", f"Step {step.name} cancelled", step=step.name, level="warning")
        return False

    def _run_parallel(self, run: _Run, step: StepDefinition) -> bool:
        run.set_status(step.name, StepStatus.RUNNING)
        run.emit(
            "step_started",
            f"Parallel step {step.name} started ({len(step.steps)} branches)",
            step=step.name,
        )
        limit = step.max_concurrency or self._settings.executor_max_parallelism
        workers = max(1, min(limit, len(step.steps)))

        def run_child(child: StepDefinition) -> bool:
            if run.interrupted():
                return False
            return self._run_step(run, child)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"par-{step.name}") as pool:
            results = list(pool.map(run_child, step.steps))

        output = {child.name: run.records[child.name].output for child in step.steps}
        if run.interrupted():
            return self._cancel(run, step)
        if all(results):
            run.set_status(step.name, StepStatus.SUCCEEDED, output=output)
            run.emit("step_succeeded", f"Parallel step {step.name} succeeded", step=step.name)
            return True
        failed = [c.name for c, ok in zip(step.steps, results, strict=True) if not ok]
        error = f"Branches failed: {', '.join(failed)}"
        run.set_status(step.name, StepStatus.FAILED, output=output, error=error)
        run.emit(
            "step_failed",
            f"Parallel step {step.name} failed: {error}",
            step=step.name,
            level="error",
        )
        return False

    def _run_conditional(self, run: _Run, step: StepDefinition) -> bool:
        if step.condition is None:
            return self._mark_failed(run, step, "Conditional step requires a 'condition'")
        run.set_status(step.name, StepStatus.RUNNING)
        try:
            chosen = evaluate_condition(step.condition, run.context())
        except ExpressionError as e:
            error = f"Invalid condition: {e}"
            run.set_status(step.name, StepStatus.FAILED, error=error)
            run.emit("step_failed", error, step=step.name, level="error")
            return False

        branch_name = "then" if chosen else ("else" if step.else_ else None)
        branch = step.then if chosen else step.else_
        skipped = step.else_ if chosen else step.then
        for child in skipped:
            self._skip(run, child, f"branch not taken by {step.name}")

        run.emit(
            "step_started",
            f"Conditional step {step.name} took branch {branch_name or 'none'}",
            step=step.name,
            data={"branch": branch_name},
        )
        ok = self._run_sequence(run, branch)
        output = {"branch": branch_name}
        if ok:
            run.set_status(step.name, StepStatus.SUCCEEDED, output=output)
            run.emit("step_succeeded", f"Conditional step {step.name} succeeded", step=step.name)
            return True
        if run.interrupted():
            return self._cancel(run, step)
        run.set_status(
            step.name, StepStatus.FAILED, output=output, error=f"Branch {branch_name} failed"
        )
        run.emit(
            "step_failed", f"Conditional step {step.name} failed", step=step.name, level="error"
        )
        return False

    @staticmethod
    def _step_logger(run: _Run, step_name: str) -> Callable[..., None]:
        def log(message: str, level: str = "info", **fields: object) -> None:
            run.emit("log", message, step=step_name, level=level, data=dict(fields))

        return log
