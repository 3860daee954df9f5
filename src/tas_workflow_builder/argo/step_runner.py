"""Container-side entry point for compiled Argo workflows.

Each Argo pod runs `tas-workflow run-step`, which lands here. The step's result is
written to stdout as JSON; Argo captures it as `outputs.result` and hands it to
later steps. Everything else goes to stderr through logging.

Argo owns retries and timeouts on this backend, so a step runs exactly one
attempt per pod.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any

from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.workflow.actions import ActionContext, ActionRegistry
from tas_workflow_builder.workflow.expressions import ExpressionError, evaluate_condition, render

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepRunOutcome:
    ok: bool
    stdout: str
    message: str = ""


def _log_from_step(step_name: str) -> Any:
    def log(message: str, level: str = "info", **fields: object) -> None:
        logger.log(
            getattr(logging, level.upper(), logging.INFO),
            message,
            extra={"step": step_name, **fields},
        )

    return log


def run_step(
    *,
    step_name: str,
    space: str,
    spec: dict[str, Any],
    context: dict[str, Any],
    settings: WorkflowBuilderSettings,
    registry: ActionRegistry,
    attempt: int = 1,
) -> StepRunOutcome:
    """Run one step from its decoded spec.

    Spec shapes:
      - `{"action": ..., "params": {...}, "when": ...}` for action steps
      - `{"condition": ..., "when": ...}` for conditional steps; prints `then`,
        `else` or `none`
    """

    context.setdefault("inputs", {})
    context.setdefault("steps", {})
    context.setdefault("env", {})

    try:
        when = spec.get("when")
        if when and not evaluate_condition(str(when), context):
            logger.info("Step skipped: condition is false", extra={"step": step_name})
            if "condition" in spec:
                return StepRunOutcome(ok=True, stdout="none", message="skipped")
            return StepRunOutcome(ok=True, stdout="null", message="skipped")

        if "condition" in spec:
            branch = "then" if evaluate_condition(str(spec["condition"]), context) else "else"
            return StepRunOutcome(ok=True, stdout=branch, message=f"branch {branch}")

        params = render(spec.get("params") or {}, context)
    except ExpressionError as e:
        return StepRunOutcome(ok=False, stdout="", message=str(e))

    action_name = spec.get("action")
    if not isinstance(action_name, str) or not registry.has(action_name):
        return StepRunOutcome(ok=False, stdout="", message=f"Unknown action: {action_name}")

    workflow_ctx = context.get("workflow") or {}
    ctx = ActionContext(
        execution_id=str(workflow_ctx.get("execution_id") or ""),
        step_name=step_name,
        space=space,
        attempt=attempt,
        settings=settings,
        log=_log_from_step(step_name),
        cancelled=threading.Event(),
    )
    try:
        result = registry.get(action_name).execute(params, ctx)
    except Exception as e:
        logger.exception("Action raised", extra={"step": step_name, "action": action_name})
        return StepRunOutcome(ok=False, stdout="", message=f"{type(e).__name__}: {e}")
    stdout = json.dumps(result.output, ensure_ascii=False, default=str)
    return StepRunOutcome(ok=result.ok, stdout=stdout, message=result.message)
