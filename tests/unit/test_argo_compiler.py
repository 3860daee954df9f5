"""Unit tests for compiling workflows into Argo manifests."""

from __future__ import annotations

import json
from typing import Any

import pytest

from tas_workflow_builder.argo.compiler import (
    EXECUTION_LABEL,
    SPACE_LABEL,
    STEP_NAMES_ANNOTATION,
    ArgoCompileError,
    compile_workflow,
    decode_spec,
    dns_name,
)
from tas_workflow_builder.config import WorkflowBuilderSettings
from tas_workflow_builder.workflow.definition import parse_workflow


def _compile(settings: WorkflowBuilderSettings, data: dict[str, Any], **inputs: Any) -> dict:
    definition = parse_workflow({"name": "My_Flow", "space": "acme", **data})
    return compile_workflow(definition, inputs, settings=settings, execution_id="exec1")


def _main(manifest: dict[str, Any]) -> list[list[dict[str, Any]]]:
    return manifest["spec"]["templates"][0]["steps"]


def _param(entry: dict[str, Any], name: str) -> str:
    for p in entry["arguments"]["parameters"]:
        if p["name"] == name:
            return p["value"]
    raise KeyError(name)


def test_dns_name() -> None:
    assert dns_name("My_Flow.v2") == "my-flow-v2"
    assert dns_name("___") == "step"


def test_sequential_steps_become_separate_groups(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "timeout_seconds": 600,
            "steps": [
                {"name": "fetch", "type": "http", "url": "${{ inputs.url }}"},
                {"name": "use", "action": "noop", "with": {"body": "${{ steps.fetch.output }}"}},
            ],
        },
        url="https://example.com",
    )

    assert manifest["apiVersion"] == "argoproj.io/v1alpha1"
    assert manifest["kind"] == "Workflow"
    assert manifest["metadata"]["generateName"] == "my-flow-"
    assert manifest["metadata"]["labels"][SPACE_LABEL] == "acme"
    assert manifest["metadata"]["labels"][EXECUTION_LABEL] == "exec1"
    assert manifest["spec"]["entrypoint"] == "main"
    assert manifest["spec"]["activeDeadlineSeconds"] == 600
    assert json.loads(manifest["spec"]["arguments"]["parameters"][0]["value"]) == {
        "url": "https://example.com"
    }

    groups = _main(manifest)
    assert [[e["name"] for e in g] for g in groups] == [["fetch"], ["use"]]

    spec = decode_spec(_param(groups[0][0], "spec"))
    assert spec == {"action": "http", "params": {"url": "${{ inputs.url }}"}}
    context = _param(groups[1][0], "context")
    assert "{{workflow.parameters.inputs}}" in context
    assert '"fetch": {"output": {{steps.fetch.outputs.result}}}' in context


def test_action_template_carries_retry_and_timeout(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "steps": [
                {
                    "name": "call",
                    "action": "noop",
                    "timeout_seconds": 30,
                    "retry": {"max_attempts": 3, "delay_seconds": 2, "backoff_factor": 2},
                }
            ]
        },
    )

    template = manifest["spec"]["templates"][1]
    assert template["name"] == "step-call"
    assert template["activeDeadlineSeconds"] == 30
    assert template["retryStrategy"]["limit"] == "2"
    assert template["retryStrategy"]["backoff"] == {
        "duration": "2s",
        "factor": "2",
        "maxDuration": "60s",
    }
    container = template["container"]
    assert container["image"] == settings.argo_step_image
    assert container["command"] == ["tas-workflow", "run-step"]
    assert container["args"][:4] == ["--step", "call", "--space", "acme"]


def test_single_attempt_has_no_retry_strategy(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(settings, {"steps": [{"name": "a", "action": "noop"}]})
    assert "retryStrategy" not in manifest["spec"]["templates"][1]


def test_parallel_children_share_one_group(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "steps": [
                {
                    "name": "fan",
                    "type": "parallel",
                    "on_error": "continue",
                    "steps": [
                        {"name": "left", "action": "noop"},
                        {"name": "right", "action": "noop"},
                    ],
                },
                {"name": "join", "action": "noop"},
            ]
        },
    )

    groups = _main(manifest)
    assert [[e["name"] for e in g] for g in groups] == [["left", "right"], ["join"]]
    assert groups[0][0]["continueOn"] == {"failed": True}


def test_conditional_branches_are_guarded(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "steps": [
                {
                    "name": "check",
                    "type": "conditional",
                    "condition": "inputs.n > 1",
                    "then": [{"name": "big", "action": "noop"}],
                    "else": [{"name": "small", "action": "noop"}],
                }
            ]
        },
    )

    groups = _main(manifest)
    assert [[e["name"] for e in g] for g in groups] == [["check"], ["big"], ["small"]]
    assert groups[0][0]["template"] == "cond-check"
    assert decode_spec(_param(groups[0][0], "spec")) == {"condition": "inputs.n > 1"}
    assert groups[1][0]["when"] == "{{steps.check.outputs.result}} == then"
    assert groups[2][0]["when"] == "{{steps.check.outputs.result}} == else"


def test_step_names_annotation_maps_back(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {"steps": [{"name": "Step_One", "action": "noop"}, {"name": "step-one", "action": "noop"}]},
    )

    mapping = json.loads(manifest["metadata"]["annotations"][STEP_NAMES_ANNOTATION])
    assert mapping == {"step-one": "Step_One", "step-one-2": "step-one"}


def test_conditional_inside_parallel_is_rejected(settings: WorkflowBuilderSettings) -> None:
    with pytest.raises(ArgoCompileError):
        _compile(
            settings,
            {
                "steps": [
                    {
                        "name": "fan",
                        "type": "parallel",
                        "steps": [
                            {
                                "name": "c",
                                "type": "conditional",
                                "condition": "true",
                                "then": [{"name": "x", "action": "noop"}],
                            }
                        ],
                    }
                ]
            },
        )


def test_parallel_when_is_pushed_to_children(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "steps": [
                {
                    "name": "fan",
                    "type": "parallel",
                    "when": "${{ inputs.go }}",
                    "steps": [{"name": "a", "action": "noop", "when": "inputs.n > 1"}],
                }
            ]
        },
    )

    spec = decode_spec(_param(_main(manifest)[0][0], "spec"))
    assert spec["when"] == "(inputs.go) and (inputs.n > 1)"


def _substitute(context: str, results: dict[str, str]) -> dict[str, Any]:
    """Do Argo's `{{...}}` substitution the way the controller would, then parse."""
    text = context.replace("{{workflow.parameters.inputs}}", "{}")
    for argo_name, value in results.items():
        text = text.replace(f"{{{{steps.{argo_name}.outputs.result}}}}", value)
    return json.loads(text)


def test_parallel_output_is_rebuilt_from_children(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "steps": [
                {
                    "name": "par",
                    "type": "parallel",
                    "steps": [
                        {"name": "a", "action": "noop"},
                        {"name": "b", "action": "noop"},
                    ],
                },
                {"name": "after", "action": "noop", "with": {"x": "${{ steps.par.output.a }}"}},
            ]
        },
    )

    after = _main(manifest)[1][0]
    context = _param(after, "context")

    assert "steps.par.outputs" not in context
    parsed = _substitute(context, {"a": '{"n": 1}', "b": "null"})
    assert parsed["steps"] == {"par": {"output": {"a": {"n": 1}, "b": None}}}


def test_conditional_output_is_quoted(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "steps": [
                {
                    "name": "c",
                    "type": "conditional",
                    "condition": "true",
                    "then": [{"name": "x", "action": "noop"}],
                },
                {"name": "after", "action": "noop", "when": "steps.c.output.branch == 'then'"},
            ]
        },
    )

    after = _main(manifest)[-1][0]
    parsed = _substitute(_param(after, "context"), {"c": "then"})

    assert parsed["steps"] == {"c": {"output": {"branch": "then"}}}


def test_reserved_labels_win_over_workflow_labels(settings: WorkflowBuilderSettings) -> None:
    manifest = _compile(
        settings,
        {
            "labels": {SPACE_LABEL: "other", EXECUTION_LABEL: "forged", "team": "docs"},
            "steps": [{"name": "a", "action": "noop"}],
        },
    )

    labels = manifest["metadata"]["labels"]
    assert labels[SPACE_LABEL] == "acme"
    assert labels[EXECUTION_LABEL] == "exec1"
    assert labels["team"] == "docs"
