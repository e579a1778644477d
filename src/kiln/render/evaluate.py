"""Evaluation of expression ASTs against an explicit variable binding.

Name lookups never raise: a missing name evaluates to :class:`Undefined`, which
propagates through operators until the caller turns it into a
``RenderError: undefined variable <name>``. Short-circuiting ``and``/``or`` and
the inline ``if`` only evaluate (and therefore only record) the branches they take.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from kiln.errors import RenderError
from kiln.recipe.model import TEMPLATE_PATTERN
from kiln.render.expr import (
    BinOp,
    BoolOp,
    Call,
    Compare,
    Const,
    Expr,
    Filter,
    IfExpr,
    ListExpr,
    Name,
    Neg,
    Not,
    parse_expression,
)
from kiln.versions import Version


@dataclass(frozen=True, slots=True)
class Undefined:
    name: str


Function = Callable[..., Any]


@dataclass(slots=True)
class Evaluator:
    """Evaluates expressions and records which variant variables were read.

    Lookup order is recipe context, then variant variables, then platform facts.
    Only reads that resolve to a variant variable are recorded in ``used``.
    """

    variables: Mapping[str, str]
    facts: Mapping[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    functions: Mapping[str, Function] = field(default_factory=dict)
    filters: Mapping[str, Function] = field(default_factory=dict)
    used: set[str] = field(default_factory=set)

    def lookup(self, name: str) -> Any:
        if name in self.context:
            return self.context[name]
        if name in self.variables:
            self.used.add(name)
            return self.variables[name]
        if name in self.facts:
            return self.facts[name]
        return Undefined(name)

    def read_variable(self, name: str) -> str | None:
        """Optional read used by built-ins such as ``compiler()``."""
        if name in self.variables:
            self.used.add(name)
            return self.variables[name]
        return None

    def evaluate(self, node: Expr) -> Any:
        if isinstance(node, Const):
            return node.value
        if isinstance(node, Name):
            return self.lookup(node.id)
        if isinstance(node, ListExpr):
            items = [self.evaluate(item) for item in node.items]
            for item in items:
                if isinstance(item, Undefined):
                    return item
            return items
        if isinstance(node, BoolOp):
            return self._bool_op(node)
        if isinstance(node, Not):
            value = self.evaluate(node.operand)
            if isinstance(value, Undefined):
                return value
            return not truthy(value)
        if isinstance(node, Neg):
            value = self.evaluate(node.operand)
            if isinstance(value, Undefined):
                return value
            if not isinstance(value, int) or isinstance(value, bool):
                raise _type_error(f"cannot negate {type(value).__name__}")
            return -value
        if isinstance(node, Compare):
            return self._compare(node)
        if isinstance(node, BinOp):
            return self._bin_op(node)
        if isinstance(node, IfExpr):
            test = self.evaluate(node.test)
            if isinstance(test, Undefined):
                return test
            return self.evaluate(node.body if truthy(test) else node.orelse)
        if isinstance(node, Call):
            return self._call(node)
        if isinstance(node, Filter):
            return self._filter(node)
        raise AssertionError(f"unhandled expression node {node!r}")

    def _bool_op(self, node: BoolOp) -> Any:
        result: Any = None
        for value_node in node.values:
            result = self.evaluate(value_node)
            if isinstance(result, Undefined):
                return result
            if node.op == "and" and not truthy(result):
                return result
            if node.op == "or" and truthy(result):
                return result
        return result

    def _compare(self, node: Compare) -> Any:
        left = self.evaluate(node.left)
        if isinstance(left, Undefined):
            return left
        for op, right_node in node.comparisons:
            right = self.evaluate(right_node)
            if isinstance(right, Undefined):
                return right
            if not compare_values(op, left, right):
                return False
            left = right
        return True

    def _bin_op(self, node: BinOp) -> Any:
        left = self.evaluate(node.left)
        if isinstance(left, Undefined):
            return left
        right = self.evaluate(node.right)
        if isinstance(right, Undefined):
            return right
        if node.op == "~":
            return to_text(left) + to_text(right)
        if _is_int(left) and _is_int(right):
            return left + right if node.op == "+" else left - right
        if node.op == "+":
            if isinstance(left, list) and isinstance(right, list):
                return left + right
            return to_text(left) + to_text(right)
        raise _type_error(f"unsupported operand types for -: {type(left).__name__}, {type(right).__name__}")

    def _call(self, node: Call) -> Any:
        function = self.functions.get(node.func)
        if function is None:
            raise RenderError(
                f"unknown function `{node.func}`",
                context={"function": node.func},
            )
        args, kwargs = self._arguments(node.args, node.kwargs)
        if isinstance(args, Undefined):
            return args
        return function(*args, **kwargs)

    def _filter(self, node: Filter) -> Any:
        function = self.filters.get(node.name)
        if function is None:
            raise RenderError(
                f"unknown filter `{node.name}`",
                context={"filter": node.name},
            )
        value = self.evaluate(node.value)
        args, kwargs = self._arguments(node.args, node.kwargs)
        if isinstance(args, Undefined):
            return args
        if isinstance(value, Undefined) and node.name != "default":
            return value
        return function(value, *args, **kwargs)

    def _arguments(
        self,
        arg_nodes: tuple[Expr, ...],
        kwarg_nodes: tuple[tuple[str, Expr], ...],
    ) -> tuple[Any, dict[str, Any]]:
        args = [self.evaluate(arg) for arg in arg_nodes]
        kwargs = {key: self.evaluate(value) for key, value in kwarg_nodes}
        for value in (*args, *kwargs.values()):
            if isinstance(value, Undefined):
                return value, {}
        return args, kwargs


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no", "off")
    return bool(value)


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(to_text(item) for item in value)
    return str(value)


def compare_values(op: str, left: Any, right: Any) -> bool:
    """Compare two values; strings and numbers meet as versions."""
    if op in ("in", "not in"):
        if isinstance(right, list):
            found = to_text(left) in [to_text(item) for item in right]
        elif isinstance(right, str):
            found = to_text(left) in right
        else:
            raise _type_error(f"`in` requires a list or string, got {type(right).__name__}")
        return found if op == "in" else not found

    if op in ("==", "!="):
        if isinstance(left, bool) or isinstance(right, bool) or left is None or right is None:
            equal = left == right
        else:
            equal = to_text(left) == to_text(right)
        return equal if op == "==" else not equal

    if _is_int(left) and _is_int(right):
        lhs: Any = left
        rhs: Any = right
    elif isinstance(left, (str, int)) and isinstance(right, (str, int)):
        lhs, rhs = Version(str(left)), Version(str(right))
    else:
        raise _type_error(
            f"cannot order {type(left).__name__} and {type(right).__name__}"
        )
    if op == "<":
        return bool(lhs < rhs)
    if op == "<=":
        return bool(lhs <= rhs)
    if op == ">":
        return bool(lhs > rhs)
    return bool(lhs >= rhs)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _type_error(reason: str) -> RenderError:
    return RenderError(f"type error: {reason}")


def undefined_error(value: Undefined, *, expression: str) -> RenderError:
    return RenderError(
        f"undefined variable {value.name}",
        hint="Declare it in the variant configuration or the recipe context.",
        context={"expression": expression, "variable": value.name},
    )


def evaluate_expression(text: str, evaluator: Evaluator) -> Any:
    """Evaluate one expression; undefined results become ``RenderError``."""
    try:
        node = parse_expression(text)
        value = evaluator.evaluate(node)
    except RenderError as exc:
        exc.context.setdefault("expression", text)
        raise
    if isinstance(value, Undefined):
        raise undefined_error(value, expression=text)
    return value


def evaluate_selector(text: str, evaluator: Evaluator) -> bool:
    return truthy(evaluate_expression(text, evaluator))


def render_template(text: str, evaluator: Evaluator) -> Any:
    """Substitute every ``${{ expr }}`` in ``text``.

    A template that is exactly one placeholder keeps the native value type, so
    ``${{ build_number }}`` can still render to an integer or a list.
    """
    matches = list(TEMPLATE_PATTERN.finditer(text))
    if len(matches) == 1 and matches[0].span() == (0, len(text)):
        return evaluate_expression(matches[0].group(1), evaluator)

    parts: list[str] = []
    cursor = 0
    for match in matches:
        parts.append(text[cursor : match.start()])
        parts.append(to_text(evaluate_expression(match.group(1), evaluator)))
        cursor = match.end()
    parts.append(text[cursor:])
    return "".join(parts)


__all__ = [
    "Evaluator",
    "Function",
    "Undefined",
    "compare_values",
    "evaluate_expression",
    "evaluate_selector",
    "render_template",
    "to_text",
    "truthy",
    "undefined_error",
]
