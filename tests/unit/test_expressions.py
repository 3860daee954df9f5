from __future__ import annotations

import pytest

from tas_workflow_builder.workflow.expressions import (
    ExpressionError,
    evaluate,
    evaluate_condition,
    find_expressions,
    referenced_steps,
    render,
)

CONTEXT = {
    "inputs": {"name": "Ada", "count": 3, "tags": ["a", "b"]},
    "steps": {"fetch": {"status": "succeeded", "output": {"body": {"items": [1, 2, 3]}}}},
    "workflow": {"name": "wf", "space": "acme", "execution_id": "e1"},
    "env": {},
}


def test_whole_template_returns_raw_value() -> None:
    assert render("${{ steps.fetch.output.body }}", CONTEXT) == {"items": [1, 2, 3]}


def test_embedded_templates_are_interpolated() -> None:
    assert render("Hello ${{ inputs.name }} x${{ inputs.count }}", CONTEXT) == "Hello Ada x3"


def test_render_recurses_into_containers() -> None:
    rendered = render({"a": ["${{ inputs.count + 1 }}"], "b": "plain"}, CONTEXT)
    assert rendered == {"a": [4], "b": "plain"}


def test_missing_keys_evaluate_to_none() -> None:
    assert evaluate("steps.missing.output", CONTEXT) is None
    assert render("value=${{ inputs.nope }}", CONTEXT) == "value="


def test_functions_and_operators() -> None:
    assert evaluate("len(steps.fetch.output.body['items'])", CONTEXT) == 3
    assert evaluate("upper(inputs.name)", CONTEXT) == "ADA"
    assert evaluate("default(inputs.nope, 'x')", CONTEXT) == "x"
    assert evaluate("inputs.count % 2", CONTEXT) == 1
    assert evaluate("inputs.tags[1]", CONTEXT) == "b"


def test_conditions() -> None:
    assert evaluate_condition("${{ inputs.count > 2 and 'a' in inputs.tags }}", CONTEXT)
    assert not evaluate_condition("steps.fetch.status != 'succeeded'", CONTEXT)
    assert evaluate_condition("not false", CONTEXT)


@pytest.mark.parametrize(
    "expr",
    [
        "__import__('os')",
        "inputs.__class__",
        "[x for x in inputs.tags]",
        "lambda: 1",
        "open('/etc/passwd')",
    ],
)
def test_unsafe_expressions_are_rejected(expr: str) -> None:
    with pytest.raises(ExpressionError):
        evaluate(expr, CONTEXT)


@pytest.mark.parametrize(
    "expr", ["inputs.count / 0", "int(float('inf'))", "int('many')", "len(inputs.count)"]
)
def test_evaluation_errors_are_wrapped(expr: str) -> None:
    with pytest.raises(ExpressionError):
        evaluate(expr, CONTEXT)


def test_referenced_steps_supports_both_access_styles() -> None:
    assert referenced_steps("steps.a.output + steps['b-c'].output") == {"a", "b-c"}


def test_find_expressions_walks_nested_values() -> None:
    found = find_expressions({"x": ["${{ inputs.a }}", {"y": "p ${{ steps.s.output }} q"}]})
    assert found == ["inputs.a", "steps.s.output"]
