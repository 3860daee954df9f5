"""Template rendering and condition evaluation.

Step parameters may embed expressions as `${{ ... }}`:

    url: https://api.example.com/items/${{ inputs.item_id }}
    body: ${{ steps.fetch.output }}

A string that is exactly one template evaluates to the raw value (a dict stays a
dict); anything else is interpolated as text.

Expressions are parsed with `ast` and evaluated by walking a small whitelist of
node types. There is no `eval`, no attribute access to real Python objects and
no calls except the helpers in `_FUNCTIONS`.
"""

from __future__ import annotations

import ast
import operator
import re
from collections.abc import Callable, Mapping
from typing import Any

TEMPLATE_RE = re.compile(r"\$\{\{\s*(.+?)\s*\}\}", re.DOTALL)

_NAME_ALIASES: dict[str, object] = {"true": True, "false": False, "null": None, "none": None}


class ExpressionError(ValueError):
    pass


def _default(value: object, fallback: object) -> object:
    return fallback if value is None else value


def _lower(value: object) -> str:
    return str(value).lower()


def _upper(value: object) -> str:
    return str(value).upper()


_FUNCTIONS: dict[str, Callable[..., object]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": _lower,
    "upper": _upper,
    "default": _default,
}

_BIN_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_CMP_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def _single_template(text: str) -> str | None:
    """Body of `text` when it is exactly one `${{ ... }}` template."""

    # The first template has to reach the end; "${{ a }}-${{ b }}" is two templates.
    match = TEMPLATE_RE.match(text)
    if match is None or match.end() != len(text):
        return None
    return match.group(1)


def strip_template(expr: str) -> str:
    """Accept both `inputs.x > 1` and `${{ inputs.x > 1 }}` for conditions."""

    text = expr.strip()
    body = _single_template(text)
    return text if body is None else body


def parse(expr: str) -> ast.Expression:
    try:
        tree = ast.parse(strip_template(expr), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression {expr!r}: {e.msg}") from e
    _check_nodes(tree, expr)
    return tree


_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Compare,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Call,
    ast.IfExp,
    *_BIN_OPS,
    *_CMP_OPS,
)


def _check_nodes(tree: ast.AST, source: str) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(
                f"Unsupported syntax in expression {source!r}: {type(node).__name__}"
            )
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"Private attribute access is not allowed: {node.attr}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise ExpressionError(f"Unknown function in expression {source!r}")
            if node.keywords:
                raise ExpressionError("Keyword arguments are not supported in expressions")


def _lookup(container: object, key: object) -> object:
    if container is None:
        return None
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, list | tuple | str) and isinstance(key, int):
        try:
            return container[key]
        except IndexError:
            return None
    return None


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]) -> None:
        self._context = context

    def eval(self, node: ast.AST) -> Any:  # noqa: A003
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id in self._context:
            return self._context[node.id]
        if node.id in _NAME_ALIASES:
            return _NAME_ALIASES[node.id]
        return None

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        return _lookup(self.eval(node.value), node.attr)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        return _lookup(self.eval(node.value), self.eval(node.slice))

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.eval(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.eval(value)
            if result:
                return result
        return result

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.eval(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS[type(node.op)]
        return op(self.eval(node.left), self.eval(node.right))

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.eval(comparator)
            if not _CMP_OPS[type(op_node)](left, right):
                return False
            left = right
        return True

    def _eval_List(self, node: ast.List) -> list[Any]:
        return [self.eval(e) for e in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> list[Any]:
        return [self.eval(e) for e in node.elts]

    def _eval_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        return {
            self.eval(k) if k is not None else None: self.eval(v)
            for k, v in zip(node.keys, node.values, strict=True)
        }

    def _eval_Call(self, node: ast.Call) -> Any:
        assert isinstance(node.func, ast.Name)
        func = _FUNCTIONS[node.func.id]
        return func(*(self.eval(a) for a in node.args))

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)


def evaluate(expr: str, context: Mapping[str, Any]) -> Any:
    tree = parse(expr)
    try:
        return _Evaluator(context).eval(tree)
    except ExpressionError:
        raise
    except (TypeError, ValueError, ArithmeticError, LookupError, RecursionError) as e:
        raise ExpressionError(f"Failed to evaluate {expr!r}: {e}") from e


def evaluate_condition(expr: str, context: Mapping[str, Any]) -> bool:
    return bool(evaluate(expr, context))


def render(value: Any, context: Mapping[str, Any]) -> Any:
    """Render templates inside strings, recursing through dicts and lists."""

    if isinstance(value, str):
        return _render_string(value, context)
    if isinstance(value, dict):
        return {k: render(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, context) for v in value]
    return value


def _render_string(text: str, context: Mapping[str, Any]) -> Any:
    whole = _single_template(text)
    if whole is not None:
        return evaluate(whole, context)

    def _sub(match: re.Match[str]) -> str:
        result = evaluate(match.group(1), context)
        return "" if result is None else str(result)

    return TEMPLATE_RE.sub(_sub, text)


def find_expressions(value: Any) -> list[str]:
    """Every `${{ ... }}` body found in a (possibly nested) parameter value."""

    found: list[str] = []
    if isinstance(value, str):
        found.extend(m.group(1) for m in TEMPLATE_RE.finditer(value))
    elif isinstance(value, dict):
        for v in value.values():
            found.extend(find_expressions(v))
    elif isinstance(value, list):
        for v in value:
            found.extend(find_expressions(v))
    return found


def referenced_roots(expr: str) -> set[str]:
    """Top-level context names an expression reads (`inputs`, `steps`, ...)."""

    tree = parse(expr)
    roots: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id not in _FUNCTIONS:
            roots.add(node.id)
    return roots


def referenced_steps(expr: str) -> set[str]:
    """Step names read through `steps.<name>` or `steps['<name>']`."""

    tree = parse(expr)
    names: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute | ast.Subscript):
            target = node.value
            if not (isinstance(target, ast.Name) and target.id == "steps"):
                continue
            if isinstance(node, ast.Attribute):
                names.add(node.attr)
            elif isinstance(node.slice, ast.Constant) and isinstance(node.slice.value, str):
                names.add(node.slice.value)
    return names
