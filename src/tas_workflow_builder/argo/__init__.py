"""Argo Workflows backend: manifest compilation, REST client and status mapping."""

from tas_workflow_builder.argo.client import ArgoClient, ArgoError, ArgoLogEntry
from tas_workflow_builder.argo.compiler import ArgoCompileError, compile_workflow
from tas_workflow_builder.argo.status import ArgoExecutionStatus, read_argo_status

__all__ = [
    "ArgoClient",
    "ArgoCompileError",
    "ArgoError",
    "ArgoExecutionStatus",
    "ArgoLogEntry",
    "compile_workflow",
    "read_argo_status",
]
