"""CLI entrypoint (`tas-workflow`).

Subcommands cover local authoring (validate, run, compile), the API server,
Argo submission, and the `run-step` entry point used inside Argo pods.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from tas_workflow_builder import __version__
from tas_workflow_builder.argo.client import ArgoClient, ArgoError
from tas_workflow_builder.argo.compiler import ArgoCompileError, compile_workflow, decode_spec
from tas_workflow_builder.argo.step_runner import run_step
from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.errors import WorkflowValidationError
from tas_workflow_builder.logging import configure_logging
from tas_workflow_builder.workflow.actions import default_registry
from tas_workflow_builder.workflow.definition import load_workflow_file
from tas_workflow_builder.workflow.executor import WorkflowExecutor, resolve_inputs
from tas_workflow_builder.workflow.state_machine import ExecutionStatus
from tas_workflow_builder.workflow.validation import ensure_valid, validate_workflow

logger = logging.getLogger(__name__)


def _parse_input_pairs(pairs: list[str]) -> dict[str, Any]:
    """Parse `--input key=value` pairs; values are read as YAML scalars."""

    inputs: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --input {pair!r}; expected key=value")
        inputs[key.strip()] = yaml.safe_load(raw) if raw else ""
    return inputs


def _collect_inputs(args: argparse.Namespace) -> dict[str, Any]:
    inputs: dict[str, Any] = {}
    if args.inputs_json:
        loaded = json.loads(args.inputs_json)
        if not isinstance(loaded, dict):
            raise ValueError("--inputs-json must be a JSON object")
        inputs.update(loaded)
    inputs.update(_parse_input_pairs(args.input or []))
    return inputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tas-workflow",
        description="TAS Workflow Builder: define, validate and run multi-step workflows",
    )
    parser.add_argument(
        "--version", action="version", version=f"tas-workflow-builder {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API server")
    serve.add_argument("--host", default=None, help="Bind address (defaults to SERVER_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (defaults to SERVER_PORT)")

    validate = subparsers.add_parser("validate", help="Validate a workflow YAML file")
    validate.add_argument("file", help="Path to the workflow YAML file")

    def add_inputs(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--input",
            action="append",
            metavar="KEY=VALUE",
            help="Workflow input (repeatable); the value is parsed as YAML",
        )
        sub.add_argument(
            "--inputs-json", default=None, help="Workflow inputs as a JSON object"
        )

    run = subparsers.add_parser("run", help="Run a workflow file with the local executor")
    run.add_argument("file", help="Path to the workflow YAML file")
    add_inputs(run)

    compile_ = subparsers.add_parser("compile", help="Print the Argo Workflow manifest as YAML")
    compile_.add_argument("file", help="Path to the workflow YAML file")
    add_inputs(compile_)

    submit = subparsers.add_parser("submit", help="Compile a workflow and submit it to Argo")
    submit.add_argument("file", help="Path to the workflow YAML file")
    add_inputs(submit)

    run_step_parser = subparsers.add_parser(
        "run-step",
        help="Run one compiled step (entry point for Argo step containers)",
    )
    run_step_parser.add_argument("--step", required=True, help="Workflow step name")
    run_step_parser.add_argument("--space", default="default", help="TAS space")
    run_step_parser.add_argument(
        "--spec-b64", required=True, help="Base64-encoded JSON step spec"
    )
    run_step_parser.add_argument(
        "--context", default="{}", help="Evaluation context as a JSON object"
    )

    subparsers.add_parser("actions", help="List registered actions")

    return parser


def _print_issues(issues: list[Any]) -> None:
    for issue in issues:
        print(f"{issue.severity}: {issue}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = WorkflowBuilderSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your environment / .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    stream = sys.stdout if args.command == "serve" else sys.stderr
    configure_logging(settings.log_level, settings.log_format, stream=stream)
    registry = default_registry()

    try:
        if args.command == "serve":
            import uvicorn

            from tas_workflow_builder.server import create_app

            uvicorn.run(
                create_app(settings),
                host=args.host or settings.server_host,
                port=args.port or settings.server_port,
                log_config=None,
            )
            return 0

        if args.command == "actions":
            for name in registry.names():
                print(name)
            return 0

        if args.command == "run-step":
            context = json.loads(args.context)
            if not isinstance(context, dict):
                raise ValueError("--context must be a JSON object")
            outcome = run_step(
                step_name=args.step,
                space=args.space,
                spec=decode_spec(args.spec_b64),
                context=context,
                settings=settings,
                registry=registry,
            )
            if not outcome.ok:
                logger.error(
                    "Step failed", extra={"step": args.step, "error": outcome.message}
                )
                return 1
            print(outcome.stdout)
            return 0

        definition = load_workflow_file(Path(args.file))

        if args.command == "validate":
            issues = validate_workflow(definition, registry)
            _print_issues(issues)
            if any(i.severity == "error" for i in issues):
                return 1
            print(f"Workflow {definition.name!r} is valid ({len(definition.step_names())} steps)")
            return 0

        ensure_valid(definition, registry)
        inputs = _collect_inputs(args)

        if args.command == "run":
            result = WorkflowExecutor(registry, settings).run(definition, inputs)
            print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False))
            return 0 if result.status is ExecutionStatus.SUCCEEDED else 1

        manifest = compile_workflow(
            definition,
            resolve_inputs(definition, inputs),
            settings=settings,
            execution_id="cli",
        )

        if args.command == "compile":
            print(yaml.safe_dump(manifest, sort_keys=False), end="")
            return 0

        if args.command == "submit":
            if not settings.argo_enabled:
                print("ARGO_SERVER_URL is required for submit", file=sys.stderr)
                return 2
            argo = ArgoClient(
                base_url=settings.argo_server_url,
                namespace=settings.argo_namespace,
                token=settings.argo_token,
                verify_tls=settings.argo_verify_tls,
                timeout=settings.argo_request_timeout_seconds,
            )
            try:
                created = argo.submit(manifest)
            finally:
                argo.close()
            print(f"Submitted Argo workflow {created.get('metadata', {}).get('name', '')}")
            return 0

        parser.error(f"Unknown command: {args.command}")
        return 2

    except WorkflowValidationError as e:
        _print_issues(e.issues)
        return 1
    except (ArgoCompileError, ArgoError, ValueError, OSError) as e:
        logger.error("Command failed", extra={"command": args.command, "error": str(e)})
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
