"""Configuration for the workflow builder service.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

The service can start without Argo or TAS endpoints configured. Features that
need them check at request time and fail with a clear error.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowBuilderSettings(BaseSettings):
    """Settings for the API server, the local executor and the Argo backend.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `WorkflowBuilderSettings(_env_file=path_to_env)`.
    """

    server_host: str = Field(default="0.0.0.0", validation_alias="SERVER_HOST")
    server_port: int = Field(default=8083, validation_alias="SERVER_PORT", ge=1, le=65535)

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        validation_alias="LOG_FORMAT",
        description="'json' for structured logs, 'text' for local development",
    )

    state_path: Path = Field(
        default=Path("workflow_state"),
        validation_alias="WORKFLOW_STATE_PATH",
        description="Directory where workflows, executions and execution logs are persisted",
    )

    # Accepted for compatibility with the platform's shared environment. Persistence
    # is file-backed; see WORKFLOW_STATE_PATH.
    database_url: str = Field(default="", validation_alias="DATABASE_URL")

    execution_backend: Literal["local", "argo"] = Field(
        default="local",
        validation_alias="EXECUTION_BACKEND",
        description="Backend used when an execute request does not name one",
    )
    executor_max_parallelism: int = Field(
        default=4,
        validation_alias="EXECUTOR_MAX_PARALLELISM",
        ge=1,
        le=64,
        description="Upper bound on concurrently running children of a parallel step",
    )
    default_step_timeout_seconds: float = Field(
        default=300.0,
        validation_alias="DEFAULT_STEP_TIMEOUT_SECONDS",
        gt=0,
        description="Per-attempt timeout for steps that do not declare one",
    )

    argo_server_url: str = Field(
        default="",
        validation_alias="ARGO_SERVER_URL",
        description="Argo Server base URL, e.g. https://argo-server.argo:2746",
    )
    argo_namespace: str = Field(default="argo", validation_alias="ARGO_NAMESPACE")
    argo_token: str = Field(default="", validation_alias="ARGO_TOKEN")
    argo_verify_tls: bool = Field(default=True, validation_alias="ARGO_VERIFY_TLS")
    argo_service_account: str = Field(default="", validation_alias="ARGO_SERVICE_ACCOUNT")
    argo_step_image: str = Field(
        default="ghcr.io/tributary-ai/tas-workflow-builder:latest",
        validation_alias="ARGO_STEP_IMAGE",
        description="Container image that provides the `tas-workflow run-step` entry point",
    )
    argo_request_timeout_seconds: float = Field(
        default=30.0, validation_alias="ARGO_REQUEST_TIMEOUT_SECONDS", gt=0
    )

    tas_llm_router_url: str = Field(default="", validation_alias="TAS_LLM_ROUTER_URL")
    tas_mcp_server_url: str = Field(default="", validation_alias="TAS_MCP_SERVER_URL")
    tas_api_key: str = Field(default="", validation_alias="TAS_API_KEY")

    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        validation_alias="CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", extra="ignore", populate_by_name=True
    )

    @field_validator("argo_server_url", "tas_llm_router_url", "tas_mcp_server_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def argo_enabled(self) -> bool:
        return bool(self.argo_server_url)

    @property
    def workflows_state_file(self) -> Path:
        """Path where workflow definitions are persisted."""

        return self.state_path / "workflows.json"

    @property
    def executions_state_file(self) -> Path:
        """Path where execution records are persisted."""

        return self.state_path / "executions.json"

    @property
    def logs_dir(self) -> Path:
        """Directory holding one JSON-lines log file per execution."""

        return self.state_path / "logs"
