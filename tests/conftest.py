"""Test configuration and fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.store import ExecutionLogStore, ExecutionStore, WorkflowStore
from tas_workflow_builder.workflow.actions import (
    ActionContext,
    ActionRegistry,
    ActionResult,
    default_registry,
)
from tas_workflow_builder.workflow.executor import WorkflowExecutor


@pytest.fixture
def settings(tmp_path: Path) -> WorkflowBuilderSettings:
    """Settings isolated from the developer's environment and `.env`."""
    return WorkflowBuilderSettings(
        _env_file=None,
        state_path=tmp_path / "state",
        execution_backend="local",
        executor_max_parallelism=4,
        default_step_timeout_seconds=5.0,
        argo_server_url="",
        argo_service_account="",
        tas_llm_router_url="",
        tas_mcp_server_url="",
    )


@pytest.fixture
def registry() -> ActionRegistry:
    """Built-in actions plus a couple of deterministic helpers."""
    reg = default_registry()

    @reg.action("echo")
    def echo(params: dict[str, object], ctx: ActionContext) -> ActionResult:
        return ActionResult(ok=True, output=params)

    @reg.action("boom")
    def boom(params: dict[str, object], ctx: ActionContext) -> ActionResult:
        raise RuntimeError("boom")

    return reg


@pytest.fixture
def executor(registry: ActionRegistry, settings: WorkflowBuilderSettings) -> WorkflowExecutor:
    return WorkflowExecutor(registry, settings)


@pytest.fixture
def workflow_store(settings: WorkflowBuilderSettings) -> WorkflowStore:
    return WorkflowStore(settings.workflows_state_file)


@pytest.fixture
def execution_store(settings: WorkflowBuilderSettings) -> ExecutionStore:
    return ExecutionStore(settings.executions_state_file)


@pytest.fixture
def log_store(settings: WorkflowBuilderSettings) -> ExecutionLogStore:
    return ExecutionLogStore(settings.logs_dir)
