"""Workflow domain: definitions, validation, actions and the local executor.

The engine is deterministic in its control flow. Actions are the only place
where the outside world (HTTP, the LLM router, MCP tools) is touched.
"""

from tas_workflow_builder.workflow.actions import (
    ActionContext,
    ActionRegistry,
    ActionResult,
    default_registry,
)
from tas_workflow_builder.workflow.definition import (
    RetryPolicy,
    StepDefinition,
    WorkflowDefinition,
    dump_workflow_yaml,
    load_workflow_file,
    load_workflow_yaml,
    parse_workflow,
)
from tas_workflow_builder.workflow.executor import ExecutionResult, StepRecord, WorkflowExecutor
from tas_workflow_builder.workflow.state_machine import ExecutionStatus, StepStatus
from tas_workflow_builder.workflow.validation import ensure_valid, validate_workflow

__all__ = [
    "ActionContext",
    "ActionRegistry",
    "ActionResult",
    "ExecutionResult",
    "ExecutionStatus",
    "RetryPolicy",
    "StepDefinition",
    "StepRecord",
    "StepStatus",
    "WorkflowDefinition",
    "WorkflowExecutor",
    "default_registry",
    "dump_workflow_yaml",
    "ensure_valid",
    "load_workflow_file",
    "load_workflow_yaml",
    "parse_workflow",
    "validate_workflow",
]
