"""FastAPI app factory.

Endpoints are thin wrappers over `WorkflowService`; domain errors are turned
into HTTP status codes in one place (`_domain_errors`).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from tas_workflow_builder import __version__
from tas_workflow_builder.argo.client import ArgoError
from tas_workflow_builder.argo.compiler import ArgoCompileError
from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.errors import (
    BackendUnavailable,
    ExecutionNotCancellable,
    ExecutionNotFound,
    SpaceMismatch,
    WorkflowAlreadyExists,
    WorkflowNotFound,
    WorkflowValidationError,
)
from tas_workflow_builder.server.models import (
    ExecuteRequest,
    HealthResponse,
    LogsResponse,
    ValidationResponse,
)
from tas_workflow_builder.service import WorkflowService
from tas_workflow_builder.store import ExecutionRecord, WorkflowRecord
from tas_workflow_builder.workflow.definition import (
    WorkflowDefinition,
    dump_workflow_yaml,
    load_workflow_yaml,
    parse_workflow,
)
from tas_workflow_builder.workflow.state_machine import ExecutionStatus

logger = logging.getLogger(__name__)


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (WorkflowNotFound, ExecutionNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except SpaceMismatch as e:
        raise HTTPException(status_code=403, detail=str(e)) from e
    except (WorkflowAlreadyExists, ExecutionNotCancellable) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except WorkflowValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "message": str(e),
                "issues": [i.model_dump() for i in e.issues],
            },
        ) from e
    except ArgoCompileError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except BackendUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except ArgoError as e:
        logger.warning("Argo request failed", extra={"error": str(e)})
        raise HTTPException(status_code=502, detail=str(e)) from e


def _definition_from_body(payload: Any) -> WorkflowDefinition:
    """Accept either a JSON definition or `{"yaml": "<document>"}`."""

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    yaml_text = payload.get("yaml")
    if isinstance(yaml_text, str) and len(payload) == 1:
        return load_workflow_yaml(yaml_text)
    return parse_workflow(payload)


def _scope(space: str | None, header_space: str | None) -> str | None:
    if space and header_space and space != header_space:
        raise HTTPException(
            status_code=403, detail=f"X-TAS-Space {header_space!r} cannot list space {space!r}"
        )
    return space or header_space


def create_app(
    settings: WorkflowBuilderSettings | None = None,
    service: WorkflowService | None = None,
) -> FastAPI:
    settings = settings or WorkflowBuilderSettings()
    service = service or WorkflowService(settings=settings)

    app = FastAPI(
        title="TAS Workflow Builder",
        version=__version__,
        description="Define, validate and execute multi-step workflows for TAS spaces.",
    )

    # Expose settings/service for request handlers and tests that want them.
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    service.recover_interrupted()

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(
            version=__version__,
            backend=settings.execution_backend,
            argo=service.argo is not None,
        )

    @app.get("/actions", response_model=list[str])
    def list_actions() -> list[str]:
        return service.registry.names()

    # ------------------------------------------------------------------ workflows

    @app.post("/workflows/validate", response_model=ValidationResponse)
    def validate_workflow(payload: Any = Body(...)) -> ValidationResponse:
        try:
            definition = _definition_from_body(payload)
        except WorkflowValidationError as e:
            return ValidationResponse(valid=False, issues=e.issues)
        issues = service.validate(definition)
        return ValidationResponse(
            valid=not any(i.severity == "error" for i in issues), issues=issues
        )

    @app.post("/workflows", response_model=WorkflowRecord, status_code=201)
    def create_workflow(
        payload: Any = Body(...), x_tas_space: str | None = Header(default=None)
    ) -> WorkflowRecord:
        with _domain_errors():
            definition = _definition_from_body(payload)
            if x_tas_space and definition.space != x_tas_space:
                raise SpaceMismatch(expected=x_tas_space, actual=definition.space)
            return service.create_workflow(definition)

    @app.get("/workflows", response_model=list[WorkflowRecord])
    def list_workflows(
        space: str | None = Query(default=None),
        x_tas_space: str | None = Header(default=None),
    ) -> list[WorkflowRecord]:
        return service.list_workflows(space=_scope(space, x_tas_space))

    @app.get("/workflows/{workflow_id}", response_model=WorkflowRecord)
    def get_workflow(
        workflow_id: str, x_tas_space: str | None = Header(default=None)
    ) -> WorkflowRecord:
        with _domain_errors():
            return service.get_workflow(workflow_id, space=x_tas_space)

    @app.put("/workflows/{workflow_id}", response_model=WorkflowRecord)
    def update_workflow(
        workflow_id: str,
        payload: Any = Body(...),
        x_tas_space: str | None = Header(default=None),
    ) -> WorkflowRecord:
        with _domain_errors():
            definition = _definition_from_body(payload)
            return service.update_workflow(workflow_id, definition, space=x_tas_space)

    @app.delete("/workflows/{workflow_id}", status_code=204)
    def delete_workflow(
        workflow_id: str, x_tas_space: str | None = Header(default=None)
    ) -> Response:
        with _domain_errors():
            service.delete_workflow(workflow_id, space=x_tas_space)
        return Response(status_code=204)

    @app.get("/workflows/{workflow_id}/yaml", response_class=PlainTextResponse)
    def get_workflow_yaml(
        workflow_id: str, x_tas_space: str | None = Header(default=None)
    ) -> PlainTextResponse:
        with _domain_errors():
            record = service.get_workflow(workflow_id, space=x_tas_space)
        return PlainTextResponse(
            dump_workflow_yaml(record.to_definition()), media_type="text/yaml"
        )

    @app.get("/workflows/{workflow_id}/argo")
    def get_workflow_argo(
        workflow_id: str, x_tas_space: str | None = Header(default=None)
    ) -> dict[str, Any]:
        with _domain_errors():
            return service.compile_argo(workflow_id, space=x_tas_space)

    @app.post(
        "/workflows/{workflow_id}/execute", response_model=ExecutionRecord, status_code=202
    )
    def execute_workflow(
        workflow_id: str,
        req: ExecuteRequest | None = None,
        x_tas_space: str | None = Header(default=None),
    ) -> ExecutionRecord:
        req = req or ExecuteRequest()
        with _domain_errors():
            return service.execute(
                workflow_id,
                req.inputs,
                backend=req.backend,
                wait=req.wait,
                space=x_tas_space,
            )

    @app.get("/workflows/{workflow_id}/executions", response_model=list[ExecutionRecord])
    def list_workflow_executions(
        workflow_id: str, x_tas_space: str | None = Header(default=None)
    ) -> list[ExecutionRecord]:
        with _domain_errors():
            service.get_workflow(workflow_id, space=x_tas_space)
        return service.list_executions(workflow_id=workflow_id)

    # ------------------------------------------------------------------ executions

    @app.get("/executions", response_model=list[ExecutionRecord])
    def list_executions(
        status: ExecutionStatus | None = Query(default=None),
        space: str | None = Query(default=None),
        x_tas_space: str | None = Header(default=None),
    ) -> list[ExecutionRecord]:
        return service.list_executions(space=_scope(space, x_tas_space), status=status)

    @app.get("/executions/{execution_id}", response_model=ExecutionRecord)
    def get_execution(
        execution_id: str, x_tas_space: str | None = Header(default=None)
    ) -> ExecutionRecord:
        with _domain_errors():
            return service.get_execution(execution_id, space=x_tas_space)

    @app.post("/executions/{execution_id}/cancel", response_model=ExecutionRecord)
    def cancel_execution(
        execution_id: str, x_tas_space: str | None = Header(default=None)
    ) -> ExecutionRecord:
        with _domain_errors():
            return service.cancel_execution(execution_id, space=x_tas_space)

    @app.get("/executions/{execution_id}/logs", response_model=LogsResponse)
    def get_execution_logs(
        execution_id: str,
        since: int = Query(default=0, ge=0),
        limit: int | None = Query(default=None, ge=1, le=1000),
        x_tas_space: str | None = Header(default=None),
    ) -> LogsResponse:
        with _domain_errors():
            entries = service.get_logs(
                execution_id, since=since, limit=limit, space=x_tas_space
            )
        return LogsResponse(execution_id=execution_id, entries=entries)

    return app
