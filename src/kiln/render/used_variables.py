"""Static discovery of the variant variables a recipe can possibly read."""

from __future__ import annotations

import re
from collections.abc import Collection, Iterable, Iterator
from pathlib import Path

from kiln.errors import RenderError
from kiln.recipe.model import (
    Conditional,
    Literal,
    Node,
    Recipe,
    Template,
    walk,
)
from kiln.render.expr import Call, Const, Expr, iter_calls, iter_names, parse_expression
from kiln.render.plan import Dependency

UsedVariablesSet = frozenset[str]

_SHELL_VAR = re.compile(r"\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?")
_CMD_VAR = re.compile(r"%([A-Za-z_][A-Za-z0-9_]*)%")
SCRIPT_SUFFIXES = (".sh", ".bash", ".bat", ".cmd", ".ps1")

_IMPLICIT_READS = {
    "compiler": ("{}_compiler", "{}_compiler_version"),
    "stdlib": ("{}_stdlib", "{}_stdlib_version"),
}


def find_used_variables(recipe: Recipe, variant_keys: Collection[str]) -> UsedVariablesSet:
    """Every variant key that some branch of ``recipe`` could read.

    The result is a superset of what any single render pass records, which is
    what makes pruning the matrix before expansion sound.
    """
    keys = set(variant_keys)
    used: set[str] = set()

    defined: set[str] = set()
    for name, node in recipe.context:
        used.update(_expression_reads(_node_expressions(node), keys, shadowed=defined))
        defined.add(name)

    shadowed = {name for name, _ in recipe.context}
    for node in _non_context_nodes(recipe):
        used.update(_expression_reads(_node_expressions(node), keys, shadowed=shadowed))
    output_selectors = [output.selector for output in recipe.outputs if output.selector]
    used.update(_expression_reads(output_selectors, keys, shadowed=shadowed))

    requirement_maps = [recipe.requirements, *(output.requirements for output in recipe.outputs)]
    for requirements in requirement_maps:
        for section in ("build", "host"):
            node = requirements.get(section)
            if node is not None:
                used.update(_bare_requirement_reads(node, keys))

    script_nodes = [recipe.build.get("script"), *(output.build.get("script") for output in recipe.outputs)]
    used.update(
        find_script_variables(
            [node for node in script_nodes if node is not None], keys, recipe.recipe_dir
        )
    )

    return frozenset(used)


def _non_context_nodes(recipe: Recipe) -> Iterator[Node]:
    context_nodes = {id(node) for _, node in recipe.context}
    for node in recipe.iter_nodes():
        if id(node) not in context_nodes:
            yield node


def _node_expressions(node: Node) -> Iterator[str]:
    for child in walk(node):
        if isinstance(child, Template):
            yield from child.expressions()
        elif isinstance(child, Conditional):
            yield child.selector


def _expression_reads(
    expressions: Iterable[str],
    keys: set[str],
    *,
    shadowed: Collection[str],
) -> set[str]:
    found: set[str] = set()
    for text in expressions:
        try:
            expr = parse_expression(text)
        except RenderError:
            # malformed expressions surface with full context at render time
            continue
        found.update(name for name in iter_names(expr) if name in keys and name not in shadowed)
        for call in iter_calls(expr):
            found.update(_call_reads(call, keys))
    return found


def _call_reads(call: Call, keys: set[str]) -> set[str]:
    if call.func == "pin_compatible":
        argument = _const_argument(call)
        if argument is not None and argument in keys:
            return {argument}
        return set()
    patterns = _IMPLICIT_READS.get(call.func)
    if patterns is None:
        return set()
    argument = _const_argument(call)
    if argument is None:
        suffixes = tuple(pattern.format("") for pattern in patterns)
        return {key for key in keys if key.endswith(suffixes)}
    return {pattern.format(argument) for pattern in patterns} & keys


def _const_argument(call: Call) -> str | None:
    if not call.args:
        return None
    first: Expr = call.args[0]
    if isinstance(first, Const) and isinstance(first.value, str):
        return first.value
    return None


def _bare_requirement_reads(node: Node, keys: set[str]) -> set[str]:
    found: set[str] = set()
    for child in walk(node):
        if not isinstance(child, Literal) or not isinstance(child.value, str):
            continue
        try:
            dependency = Dependency.parse(child.value)
        except RenderError:
            continue
        if dependency.version:
            continue
        for candidate in (dependency.name, dependency.name.replace("-", "_")):
            if candidate in keys:
                found.add(candidate)
    return found


def find_script_variables(
    nodes: Iterable[Node],
    variant_keys: Collection[str],
    recipe_dir: Path | None,
) -> UsedVariablesSet:
    """Variant keys referenced as `$VAR`, `${VAR}` or `%VAR%` in build scripts."""
    found: set[str] = set()
    for node in nodes:
        for text in _script_texts(node, recipe_dir):
            for pattern in (_SHELL_VAR, _CMD_VAR):
                found.update(name for name in pattern.findall(text) if name in variant_keys)
    return frozenset(found)


def _script_texts(node: Node, recipe_dir: Path | None) -> Iterator[str]:
    for child in walk(node):
        if isinstance(child, Literal) and isinstance(child.value, str):
            text = child.value
        elif isinstance(child, Template):
            text = child.text
        else:
            continue
        yield text
        script_file = script_file_path(text, recipe_dir)
        if script_file is not None:
            yield script_file.read_text(encoding="utf-8", errors="replace")


def script_file_path(text: str, recipe_dir: Path | None) -> Path | None:
    """Resolve a script entry that names a file next to the recipe."""
    candidate = text.strip()
    if recipe_dir is None or "\n" in candidate or not candidate.endswith(SCRIPT_SUFFIXES):
        return None
    path = recipe_dir / candidate
    return path if path.is_file() else None


__all__ = [
    "SCRIPT_SUFFIXES",
    "UsedVariablesSet",
    "find_script_variables",
    "find_used_variables",
    "script_file_path",
]
