"""Unit tests for the in-process workflow executor."""

from __future__ import annotations

import threading
import time
from typing import Any

import pytest

from tas_workflow_builder.errors import WorkflowValidationError
from tas_workflow_builder.workflow.actions import ActionContext, ActionRegistry, ActionResult
from tas_workflow_builder.workflow.definition import WorkflowDefinition, parse_workflow
from tas_workflow_builder.workflow.events import ExecutionEvent
from tas_workflow_builder.workflow.executor import WorkflowExecutor
from tas_workflow_builder.workflow.state_machine import ExecutionStatus, StepStatus

FAST_RETRY = {"delay_seconds": 0.01, "backoff_factor": 1.0, "max_delay_seconds": 0.01}


class Flaky:
    """Fails `failures` times, then succeeds with the attempt number."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        self.calls += 1
        if self.calls <= self.failures:
            return ActionResult(ok=False, message=f"flaky failure {self.calls}")
        return ActionResult(ok=True, output={"attempt": ctx.attempt})


def _wf(steps: list[dict[str, Any]], **extra: Any) -> WorkflowDefinition:
    return parse_workflow({"name": "wf", "steps": steps, **extra})


def test_data_passes_between_sequential_steps(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {"name": "first", "action": "set", "values": {"n": "${{ inputs.n * 2 }}"}},
            {"name": "second", "action": "echo", "with": {"got": "${{ steps.first.output.n }}"}},
        ],
        inputs={"n": {"type": "integer", "default": 21}},
        outputs={"answer": "${{ steps.second.output.got }}"},
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.SUCCEEDED
    assert result.steps["second"].output == {"got": 42}
    assert result.outputs == {"answer": 42}
    assert result.steps["first"].attempts == 1


def test_missing_required_input_raises(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [{"name": "a", "action": "noop"}], inputs={"url": {"type": "string", "required": True}}
    )

    with pytest.raises(WorkflowValidationError) as exc:
        executor.run(definition, {})

    assert exc.value.issues[0].path == "inputs.url"


def test_when_false_skips_step(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {"name": "maybe", "action": "noop", "when": "${{ inputs.go }}"},
            {"name": "always", "action": "noop"},
        ],
        inputs={"go": {"type": "boolean", "default": False}},
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.SUCCEEDED
    assert result.steps["maybe"].status is StepStatus.SKIPPED
    assert result.steps["maybe"].attempts == 0
    assert result.steps["always"].status is StepStatus.SUCCEEDED


@pytest.mark.parametrize(("value", "taken", "skipped"), [(5, "big", "small"), (1, "small", "big")])
def test_conditional_picks_branch(
    executor: WorkflowExecutor, value: int, taken: str, skipped: str
) -> None:
    definition = _wf(
        [
            {
                "name": "check",
                "type": "conditional",
                "condition": "inputs.value > 3",
                "then": [{"name": "big", "action": "noop"}],
                "else": [{"name": "small", "action": "noop"}],
            }
        ]
    )

    result = executor.run(definition, {"value": value})

    assert result.status is ExecutionStatus.SUCCEEDED
    assert result.steps[taken].status is StepStatus.SUCCEEDED
    assert result.steps[skipped].status is StepStatus.SKIPPED
    assert result.steps["check"].output == {"branch": "then" if taken == "big" else "else"}


def test_conditional_without_else_runs_nothing(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {
                "name": "check",
                "type": "conditional",
                "condition": "false",
                "then": [{"name": "never", "action": "noop"}],
            }
        ]
    )

    result = executor.run(definition)

    assert result.steps["check"].output == {"branch": None}
    assert result.steps["never"].status is StepStatus.SKIPPED


def test_parallel_children_run_concurrently(
    registry: ActionRegistry, executor: WorkflowExecutor
) -> None:
    barrier = threading.Barrier(3, timeout=2)

    @registry.action("meet")
    def meet(params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        barrier.wait()
        return ActionResult(ok=True, output=ctx.step_name)

    definition = _wf(
        [
            {
                "name": "fan",
                "type": "parallel",
                "steps": [{"name": f"child-{i}", "action": "meet"} for i in range(3)],
            },
            {"name": "join", "action": "echo", "with": {"all": "${{ steps.fan.output }}"}},
        ]
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.SUCCEEDED
    expected = {"child-0": "child-0", "child-1": "child-1", "child-2": "child-2"}
    assert result.steps["fan"].output == expected
    assert result.steps["join"].output == {"all": expected}


def test_retry_until_success(registry: ActionRegistry, executor: WorkflowExecutor) -> None:
    flaky = Flaky(failures=2)
    registry.register("flaky", flaky)
    events: list[ExecutionEvent] = []
    definition = _wf(
        [{"name": "a", "action": "flaky", "retry": {"max_attempts": 3, **FAST_RETRY}}]
    )

    result = executor.run(definition, on_event=events.append)

    assert result.status is ExecutionStatus.SUCCEEDED
    assert result.steps["a"].attempts == 3
    assert result.steps["a"].output == {"attempt": 3}
    assert [e.kind for e in events].count("step_retrying") == 2


def test_retry_exhausted_fails(registry: ActionRegistry, executor: WorkflowExecutor) -> None:
    registry.register("flaky", Flaky(failures=5))
    definition = _wf(
        [{"name": "a", "action": "flaky", "retry": {"max_attempts": 2, **FAST_RETRY}}]
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.FAILED
    assert result.steps["a"].attempts == 2
    assert result.steps["a"].error == "flaky failure 2"
    assert result.error == "Step a failed: flaky failure 2"


def test_step_timeout(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [{"name": "slow", "action": "delay", "seconds": 5, "timeout_seconds": 0.2}]
    )

    started = time.monotonic()
    result = executor.run(definition)

    assert time.monotonic() - started < 3
    assert result.status is ExecutionStatus.FAILED
    assert result.steps["slow"].status is StepStatus.FAILED
    assert "timed out" in (result.steps["slow"].error or "")


def test_workflow_deadline_times_out(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {"name": "slow", "action": "delay", "seconds": 5},
            {"name": "after", "action": "noop"},
        ],
        timeout_seconds=0.3,
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.TIMED_OUT
    assert result.steps["slow"].status is StepStatus.CANCELLED
    assert result.steps["after"].status is StepStatus.CANCELLED


def test_on_error_fail_cancels_remaining_steps(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {"name": "bad", "action": "fail", "message": "nope"},
            {"name": "later", "action": "noop"},
        ]
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.FAILED
    assert result.steps["bad"].status is StepStatus.FAILED
    assert result.steps["later"].status is StepStatus.CANCELLED


def test_on_error_continue_lets_execution_succeed(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {"name": "bad", "action": "boom", "on_error": "continue"},
            {"name": "later", "action": "echo", "with": {"prev": "${{ steps.bad.status }}"}},
        ]
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.SUCCEEDED
    assert result.steps["bad"].error == "RuntimeError: boom"
    assert result.steps["later"].output == {"prev": "failed"}


def test_parallel_child_failure_fails_parallel(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {
                "name": "fan",
                "type": "parallel",
                "steps": [
                    {"name": "ok", "action": "noop"},
                    {"name": "bad", "action": "fail"},
                ],
            }
        ]
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.FAILED
    assert result.steps["ok"].status is StepStatus.SUCCEEDED
    assert result.steps["fan"].status is StepStatus.FAILED
    assert result.steps["fan"].error == "Branches failed: bad"


def test_cancel_event_stops_execution(executor: WorkflowExecutor) -> None:
    cancel = threading.Event()
    definition = _wf(
        [
            {"name": "wait", "action": "delay", "seconds": 5},
            {"name": "after", "action": "noop"},
        ]
    )
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        result = executor.run(definition, cancel_event=cancel)
    finally:
        timer.cancel()

    assert result.status is ExecutionStatus.CANCELLED
    assert result.steps["wait"].status is StepStatus.CANCELLED
    assert result.steps["after"].status is StepStatus.CANCELLED


def test_events_describe_the_run(executor: WorkflowExecutor) -> None:
    events: list[ExecutionEvent] = []
    definition = _wf([{"name": "say", "action": "log", "message": "hello"}])

    executor.run(definition, execution_id="exec1", on_event=events.append)

    kinds = [e.kind for e in events]
    assert kinds[0] == "execution_started"
    assert kinds[-1] == "execution_finished"
    assert "step_succeeded" in kinds
    assert any(e.kind == "log" and e.message == "hello" and e.step == "say" for e in events)


def test_render_error_is_not_retried(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {
                "name": "a",
                "action": "echo",
                "with": {"x": "${{ inputs.n / 0 }}"},
                "retry": {"max_attempts": 3, **FAST_RETRY},
            }
        ]
    )

    result = executor.run(definition, {"n": 1})

    assert result.status is ExecutionStatus.FAILED
    assert result.steps["a"].attempts == 1
    assert (result.steps["a"].error or "").startswith("Failed to render parameters")


def test_arithmetic_overflow_fails_the_step(executor: WorkflowExecutor) -> None:
    definition = _wf([{"name": "a", "action": "echo", "with": {"x": "${{ int(float('inf')) }}"}}])

    result = executor.run(definition)

    assert result.status is ExecutionStatus.FAILED
    assert result.steps["a"].status is StepStatus.FAILED
    assert "cannot convert float infinity" in (result.steps["a"].error or "")


def test_unvalidated_steps_fail_instead_of_raising(executor: WorkflowExecutor) -> None:
    definition = _wf(
        [
            {"name": "no-action", "on_error": "continue"},
            {"name": "no-condition", "type": "conditional"},
        ]
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.FAILED
    assert result.steps["no-action"].error == "Action step requires an 'action'"
    assert result.steps["no-condition"].error == "Conditional step requires a 'condition'"


class Gauge:
    """Records the peak number of overlapping calls."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self.lock:
            self.active -= 1
        return ActionResult(ok=True)


@pytest.mark.parametrize(("max_concurrency", "expected_peak"), [(1, 1), (2, 2)])
def test_parallel_respects_max_concurrency(
    registry: ActionRegistry,
    executor: WorkflowExecutor,
    max_concurrency: int,
    expected_peak: int,
) -> None:
    gauge = Gauge()
    registry.register("gauge", gauge)
    definition = _wf(
        [
            {
                "name": "fan",
                "type": "parallel",
                "max_concurrency": max_concurrency,
                "steps": [{"name": f"b{i}", "action": "gauge"} for i in range(4)],
            }
        ]
    )

    result = executor.run(definition)

    assert result.status is ExecutionStatus.SUCCEEDED
    assert 1 <= gauge.peak <= expected_peak
