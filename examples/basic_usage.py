#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the workflow builder components directly:

* load settings from `.env`
* store a workflow definition from a YAML file
* run it with the local executor and wait for the result

The workflow file and its inputs are passed as arguments.
"""

from __future__ import annotations

import argparse
import json
from collections.abc import Sequence
from pathlib import Path

from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.errors import WorkflowAlreadyExists, WorkflowValidationError
from tas_workflow_builder.logging import configure_logging
from tas_workflow_builder.service import WorkflowService
from tas_workflow_builder.workflow.definition import load_workflow_file


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Store and run a workflow (programmatic example).")
    parser.add_argument(
        "--file",
        type=Path,
        default=Path(__file__).with_name("document_summary.yaml"),
        help="Workflow YAML file",
    )
    parser.add_argument("--inputs", default="{}", help='Inputs as JSON, e.g. \'{"url": "..."}\'')
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = WorkflowBuilderSettings()
    configure_logging(settings.log_level, settings.log_format)

    service = WorkflowService(settings=settings)

    try:
        definition = load_workflow_file(args.file)
        workflow = service.create_workflow(definition)
    except WorkflowValidationError as exc:
        for issue in exc.issues:
            print(f"{issue.severity}: {issue}")
        return 1
    except WorkflowAlreadyExists as exc:
        print(str(exc))
        workflow = service.get_workflow(exc.existing_id)

    execution = service.execute(workflow.id, json.loads(args.inputs), wait=True)

    print(f"Execution {execution.id}: {execution.status.value}")
    print(json.dumps(execution.outputs, indent=2, ensure_ascii=False))
    print(f"Persisted to: {settings.executions_state_file}")
    return 0 if execution.error is None else 1


if __name__ == "__main__":
    raise SystemExit(main())
