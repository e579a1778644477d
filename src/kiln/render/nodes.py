"""Resolution of recipe nodes into plain Python values."""

from __future__ import annotations

from typing import Any

from kiln.errors import RenderError
from kiln.recipe.model import Conditional, Literal, MapNode, Node, Sequence, Template
from kiln.render.evaluate import Evaluator, evaluate_selector, render_template


class _Omitted:
    """Marker for a field dropped by a false selector."""

    _instance: _Omitted | None = None

    def __new__(cls) -> _Omitted:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "OMITTED"


OMITTED = _Omitted()


def resolve_node(node: Node, evaluator: Evaluator, *, path: str = "") -> Any:
    """Evaluate ``node``; a false selector without ``else`` yields :data:`OMITTED`.

    Conditional list items whose branch is itself a list are spliced into the
    enclosing list.
    """
    try:
        return _resolve(node, evaluator, path=path)
    except RenderError as exc:
        if path:
            exc.context.setdefault("field", path)
        raise


def _resolve(node: Node, evaluator: Evaluator, *, path: str) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Template):
        return render_template(node.text, evaluator)
    if isinstance(node, Conditional):
        if evaluate_selector(node.selector, evaluator):
            return resolve_node(node.then, evaluator, path=path)
        if node.otherwise is not None:
            return resolve_node(node.otherwise, evaluator, path=path)
        return OMITTED
    if isinstance(node, Sequence):
        items: list[Any] = []
        for index, item in enumerate(node.items):
            value = resolve_node(item, evaluator, path=f"{path}[{index}]")
            if value is OMITTED:
                continue
            if isinstance(item, Conditional) and isinstance(value, list):
                items.extend(value)
            else:
                items.append(value)
        return items
    if isinstance(node, MapNode):
        resolved: dict[str, Any] = {}
        for key, value_node in node.entries:
            value = resolve_node(value_node, evaluator, path=f"{path}.{key}" if path else key)
            if value is not OMITTED:
                resolved[key] = value
        return resolved
    raise AssertionError(f"unhandled recipe node {node!r}")


__all__ = ["OMITTED", "resolve_node"]
