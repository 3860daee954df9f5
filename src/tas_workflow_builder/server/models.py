"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from tas_workflow_builder.errors import ValidationIssue


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    backend: str
    argo: bool


class ExecuteRequest(BaseModel):
    inputs: dict[str, Any] = Field(default_factory=dict)
    backend: Literal["local", "argo"] | None = None
    wait: bool = False


class ValidationResponse(BaseModel):
    valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)


class LogsResponse(BaseModel):
    execution_id: str
    entries: list[dict[str, Any]] = Field(default_factory=list)
