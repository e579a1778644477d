"""Parsed, immutable recipe tree.

Every field of a recipe is a :data:`Node`: a literal, a templated string, a
selector-guarded conditional, or a sequence/mapping of further nodes. Nothing is
evaluated here; the render engine resolves nodes against one variant.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

TEMPLATE_PATTERN = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

Scalar = Union[str, int, float, bool, None]


@dataclass(frozen=True, slots=True)
class Literal:
    value: Scalar


@dataclass(frozen=True, slots=True)
class Template:
    """A string with one or more ``${{ expr }}`` placeholders."""

    text: str

    def expressions(self) -> tuple[str, ...]:
        return tuple(match.group(1).strip() for match in TEMPLATE_PATTERN.finditer(self.text))


@dataclass(frozen=True, slots=True)
class Conditional:
    """``if: <selector>`` / ``then:`` / ``else:`` block."""

    selector: str
    then: Node
    otherwise: Node | None = None


@dataclass(frozen=True, slots=True)
class Sequence:
    items: tuple[Node, ...] = ()


@dataclass(frozen=True, slots=True)
class MapNode:
    entries: tuple[tuple[str, Node], ...] = ()

    def get(self, key: str) -> Node | None:
        for name, node in self.entries:
            if name == key:
                return node
        return None

    def keys(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.entries)


Node = Union[Literal, Template, Conditional, Sequence, MapNode]

EMPTY_MAP = MapNode()


@dataclass(frozen=True, slots=True)
class OutputDef:
    """One ``outputs:`` entry (or the implicit single output of the recipe)."""

    package: MapNode = EMPTY_MAP
    build: MapNode = EMPTY_MAP
    requirements: MapNode = EMPTY_MAP
    tests: Node | None = None
    about: Node | None = None
    selector: str | None = None
    implicit: bool = False


@dataclass(frozen=True, slots=True)
class Recipe:
    context: tuple[tuple[str, Node], ...] = ()
    package: MapNode = EMPTY_MAP
    source: Node | None = None
    build: MapNode = EMPTY_MAP
    requirements: MapNode = EMPTY_MAP
    tests: Node | None = None
    about: Node | None = None
    outputs: tuple[OutputDef, ...] = ()
    recipe_dir: Path | None = field(default=None, compare=False)

    @property
    def is_multi_output(self) -> bool:
        return any(not output.implicit for output in self.outputs)

    def iter_nodes(self) -> Iterator[Node]:
        """Yield every top-level node of the recipe, outputs included."""
        for _, node in self.context:
            yield node
        yield self.package
        if self.source is not None:
            yield self.source
        yield self.build
        yield self.requirements
        if self.tests is not None:
            yield self.tests
        if self.about is not None:
            yield self.about
        for output in self.outputs:
            yield from iter_output_nodes(output)


def iter_output_nodes(output: OutputDef) -> Iterator[Node]:
    yield output.package
    yield output.build
    yield output.requirements
    if output.tests is not None:
        yield output.tests
    if output.about is not None:
        yield output.about


def walk(node: Node) -> Iterator[Node]:
    """Depth-first traversal over both branches of every conditional."""
    yield node
    if isinstance(node, Conditional):
        yield from walk(node.then)
        if node.otherwise is not None:
            yield from walk(node.otherwise)
    elif isinstance(node, Sequence):
        for item in node.items:
            yield from walk(item)
    elif isinstance(node, MapNode):
        for _, value in node.entries:
            yield from walk(value)


__all__ = [
    "Conditional",
    "EMPTY_MAP",
    "Literal",
    "MapNode",
    "Node",
    "OutputDef",
    "Recipe",
    "Scalar",
    "Sequence",
    "TEMPLATE_PATTERN",
    "Template",
    "iter_output_nodes",
    "walk",
]
