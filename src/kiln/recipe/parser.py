"""YAML recipe loader producing the immutable :class:`Recipe` tree."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from kiln.errors import RecipeError
from kiln.recipe.model import (
    EMPTY_MAP,
    TEMPLATE_PATTERN,
    Conditional,
    Literal,
    MapNode,
    Node,
    OutputDef,
    Recipe,
    Sequence,
    Template,
)

TOP_LEVEL_KEYS = frozenset(
    {"context", "package", "recipe", "source", "build", "requirements", "tests", "about", "outputs"}
)
OUTPUT_KEYS = frozenset({"package", "build", "requirements", "tests", "about"})
CONDITIONAL_KEYS = frozenset({"if", "then", "else"})


class StringifyNumbersLoader(yaml.SafeLoader):
    """Safe loader that keeps ``3.10`` as the string ``"3.10"``."""

    @classmethod
    def remove_implicit_resolver(cls, tag: str) -> None:
        if "yaml_implicit_resolvers" not in cls.__dict__:
            cls.yaml_implicit_resolvers = {
                k: v[:] for k, v in cls.yaml_implicit_resolvers.items()
            }
        for ch in tuple(cls.yaml_implicit_resolvers):
            resolvers = [(t, r) for t, r in cls.yaml_implicit_resolvers[ch] if t != tag]
            if resolvers:
                cls.yaml_implicit_resolvers[ch] = resolvers
            else:
                del cls.yaml_implicit_resolvers[ch]


StringifyNumbersLoader.remove_implicit_resolver("tag:yaml.org,2002:float")
StringifyNumbersLoader.remove_implicit_resolver("tag:yaml.org,2002:int")


def load_yaml(text: str, *, source: str) -> Any:
    try:
        return yaml.load(text, Loader=StringifyNumbersLoader)
    except yaml.YAMLError as exc:
        raise RecipeError(
            "Invalid YAML document.",
            hint=str(exc),
            context={"path": source},
        ) from exc


def load_recipe(path: str | Path) -> Recipe:
    """Read ``recipe.yaml`` (or a directory containing one)."""
    recipe_path = Path(path)
    if recipe_path.is_dir():
        recipe_path = recipe_path / "recipe.yaml"
    try:
        text = recipe_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RecipeError(
            "Recipe file does not exist.",
            context={"path": str(recipe_path)},
        ) from exc
    return parse_recipe(text, recipe_dir=recipe_path.parent, source=str(recipe_path))


def parse_recipe(
    text: str,
    *,
    recipe_dir: Path | None = None,
    source: str = "<string>",
) -> Recipe:
    raw = load_yaml(text, source=source)
    if not isinstance(raw, dict):
        raise RecipeError("Recipe must be a mapping.", context={"path": source})
    return recipe_from_mapping(raw, recipe_dir=recipe_dir, source=source)


def recipe_from_mapping(
    raw: Mapping[str, Any],
    *,
    recipe_dir: Path | None = None,
    source: str = "<mapping>",
) -> Recipe:
    unknown = sorted(set(raw) - TOP_LEVEL_KEYS)
    if unknown:
        raise RecipeError(
            f"Unknown top-level recipe keys: {', '.join(unknown)}.",
            context={"path": source},
        )
    if "package" in raw and "recipe" in raw:
        raise RecipeError(
            "Recipe sets both `package` and `recipe`.",
            hint="Use `recipe` for multi-output recipes and `package` otherwise.",
            context={"path": source},
        )

    context = _parse_context(raw.get("context"), source=source)
    package = _mapping_field(raw.get("package", raw.get("recipe")), field="package", source=source)
    build = _mapping_field(raw.get("build"), field="build", source=source)
    requirements = _mapping_field(raw.get("requirements"), field="requirements", source=source)
    source_node = _optional_node(raw.get("source"), path="source")
    tests = _optional_node(raw.get("tests"), path="tests")
    about = _optional_node(raw.get("about"), path="about")

    raw_outputs = raw.get("outputs")
    if raw_outputs is None:
        if package.get("name") is None:
            raise RecipeError(
                "Recipe is missing `package.name`.",
                context={"path": source},
            )
        outputs: tuple[OutputDef, ...] = (
            OutputDef(
                package=package,
                build=build,
                requirements=requirements,
                tests=tests,
                about=about,
                implicit=True,
            ),
        )
    else:
        if not isinstance(raw_outputs, list) or not raw_outputs:
            raise RecipeError(
                "`outputs` must be a non-empty list.",
                context={"path": source},
            )
        outputs = tuple(
            _parse_output(item, index=index, source=source)
            for index, item in enumerate(raw_outputs)
        )

    return Recipe(
        context=context,
        package=package,
        source=source_node,
        build=build,
        requirements=requirements,
        tests=tests,
        about=about,
        outputs=outputs,
        recipe_dir=recipe_dir,
    )


def to_node(value: Any, *, path: str) -> Node:
    """Convert one YAML value into a recipe node."""
    if isinstance(value, dict):
        if "if" in value:
            return _parse_conditional(value, path=path)
        return _map_node(value, path=path)
    if isinstance(value, list):
        return Sequence(
            items=tuple(to_node(item, path=f"{path}[{index}]") for index, item in enumerate(value))
        )
    if isinstance(value, str) and TEMPLATE_PATTERN.search(value):
        return Template(text=value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return Literal(value=value)
    # dates and other YAML scalars are kept as their text form
    return Literal(value=str(value))


def _map_node(value: dict[Any, Any], *, path: str) -> MapNode:
    entries: list[tuple[str, Node]] = []
    for key, item in value.items():
        if not isinstance(key, str):
            raise RecipeError(
                "Recipe mapping keys must be strings.",
                context={"field": path, "key": repr(key)},
            )
        entries.append((key, to_node(item, path=f"{path}.{key}")))
    return MapNode(entries=tuple(entries))


def _parse_conditional(value: dict[str, Any], *, path: str) -> Conditional:
    extra = sorted(set(value) - CONDITIONAL_KEYS)
    if extra:
        raise RecipeError(
            f"Conditional block has unexpected keys: {', '.join(map(str, extra))}.",
            hint="A conditional block only accepts `if`, `then` and `else`.",
            context={"field": path},
        )
    selector = value.get("if")
    if not isinstance(selector, str) or not selector.strip():
        raise RecipeError(
            "Conditional `if` must be a non-empty expression string.",
            context={"field": path},
        )
    if "then" not in value:
        raise RecipeError(
            "Conditional block is missing `then`.",
            context={"field": path, "selector": selector},
        )
    otherwise = value.get("else")
    return Conditional(
        selector=selector.strip(),
        then=to_node(value["then"], path=f"{path}.then"),
        otherwise=None if otherwise is None else to_node(otherwise, path=f"{path}.else"),
    )


def _parse_context(value: Any, *, source: str) -> tuple[tuple[str, Node], ...]:
    if value is None:
        return ()
    if not isinstance(value, dict):
        raise RecipeError("`context` must be a mapping.", context={"path": source})
    entries: list[tuple[str, Node]] = []
    for key, item in value.items():
        if not isinstance(key, str) or not key.isidentifier():
            raise RecipeError(
                "Context variable names must be identifiers.",
                context={"path": source, "key": repr(key)},
            )
        entries.append((key, to_node(item, path=f"context.{key}")))
    return tuple(entries)


def _parse_output(item: Any, *, index: int, source: str) -> OutputDef:
    path = f"outputs[{index}]"
    selector: str | None = None
    if isinstance(item, dict) and "if" in item:
        conditional = _parse_conditional(item, path=path)
        if conditional.otherwise is not None:
            raise RecipeError(
                "Conditional outputs cannot have an `else` branch.",
                context={"path": source, "field": path},
            )
        selector = conditional.selector
        item = item["then"]
    if not isinstance(item, dict):
        raise RecipeError("Each output must be a mapping.", context={"path": source, "field": path})
    unknown = sorted(set(item) - OUTPUT_KEYS)
    if unknown:
        raise RecipeError(
            f"Unknown output keys: {', '.join(unknown)}.",
            context={"path": source, "field": path},
        )
    package = _mapping_field(item.get("package"), field=f"{path}.package", source=source)
    if package.get("name") is None:
        raise RecipeError(
            "Output is missing `package.name`.",
            context={"path": source, "field": path},
        )
    return OutputDef(
        package=package,
        build=_mapping_field(item.get("build"), field=f"{path}.build", source=source),
        requirements=_mapping_field(
            item.get("requirements"), field=f"{path}.requirements", source=source
        ),
        tests=_optional_node(item.get("tests"), path=f"{path}.tests"),
        about=_optional_node(item.get("about"), path=f"{path}.about"),
        selector=selector,
    )


def _mapping_field(value: Any, *, field: str, source: str) -> MapNode:
    if value is None:
        return EMPTY_MAP
    if not isinstance(value, dict) or "if" in value:
        raise RecipeError(
            f"`{field}` must be a mapping.",
            context={"path": source, "field": field},
        )
    return _map_node(value, path=field)


def _optional_node(value: Any, *, path: str) -> Node | None:
    if value is None:
        return None
    return to_node(value, path=path)


__all__ = [
    "StringifyNumbersLoader",
    "load_recipe",
    "load_yaml",
    "parse_recipe",
    "recipe_from_mapping",
    "to_node",
]
