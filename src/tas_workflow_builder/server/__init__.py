"""FastAPI server adapter for tas-workflow-builder.

Design intent:
- Keep business logic in `tas_workflow_builder.service` and `tas_workflow_builder.workflow`
- Keep server-specific concerns (routing, CORS, status codes) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from tas_workflow_builder.server.app import create_app
