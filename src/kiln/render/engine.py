"""Render a recipe for one variant assignment into a concrete :class:`BuildPlan`.

Evaluation order is fixed: recipe context, top-level metadata, then outputs in
topological order of their ``pin_subpackage`` references. Every read of a
variant variable is recorded so identical plans can be collapsed afterwards.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import replace
from typing import Any

from kiln.errors import ConfigError, KilnError, RenderError
from kiln.hashing import variant_hash
from kiln.platforms import Platform
from kiln.recipe.model import MapNode, Node, OutputDef, Recipe, Template, iter_output_nodes, walk
from kiln.render.evaluate import Evaluator, evaluate_selector, to_text, truthy
from kiln.render.expr import Const, iter_calls, parse_expression
from kiln.render.functions import FILTERS, Builtins, RenderedSibling
from kiln.render.nodes import OMITTED, resolve_node
from kiln.render.plan import BuildPlan, Dependency, DynamicLinking, OutputPlan, Requirements
from kiln.render.used_variables import UsedVariablesSet, find_script_variables
from kiln.variants.pins import PackageVersionLookup
from kiln.versions import is_constraint, version_to_buildstring

# variant variable -> build string abbreviation, in the order they appear
BUILD_STRING_PREFIXES: tuple[tuple[str, str], ...] = (
    ("numpy", "np"),
    ("python", "py"),
    ("perl", "pl"),
    ("r_base", "r"),
)

REQUIREMENT_SECTIONS = ("build", "host", "run", "run_constraints")


def render(
    recipe: Recipe,
    assignment: Mapping[str, str],
    *,
    target_platform: Platform | str,
    build_platform: Platform | str | None = None,
    lookup: PackageVersionLookup | None = None,
) -> tuple[BuildPlan, UsedVariablesSet]:
    """Produce the build plan for ``assignment`` and the variables it read.

    Rendering is pure: the same recipe, assignment and platforms always give a
    byte-identical ``plan.to_json()``.
    """
    target = target_platform if isinstance(target_platform, Platform) else Platform(target_platform)
    if build_platform is None:
        build = target
    elif isinstance(build_platform, Platform):
        build = build_platform
    else:
        build = Platform(build_platform)
    try:
        return _RenderPass(recipe, dict(assignment), target, build, lookup).run()
    except KilnError as exc:
        exc.context.setdefault(
            "variant", " ".join(f"{k}={v}" for k, v in sorted(assignment.items())) or "<default>"
        )
        raise


class _RenderPass:
    def __init__(
        self,
        recipe: Recipe,
        variables: dict[str, str],
        target: Platform,
        build: Platform,
        lookup: PackageVersionLookup | None,
    ) -> None:
        self.recipe = recipe
        self.variables = variables
        self.target = target
        self.build = build
        facts: dict[str, Any] = dict(target.facts())
        facts["target_platform"] = target.name
        facts["build_platform"] = build.name
        self.evaluator = Evaluator(variables=variables, facts=facts, filters=FILTERS)
        self.builtins = Builtins(platform=target, evaluator=self.evaluator, lookup=lookup)
        self.evaluator.functions = self.builtins.functions()

    def run(self) -> tuple[BuildPlan, UsedVariablesSet]:
        recipe = self.recipe
        for name, node in recipe.context:
            value = resolve_node(node, self.evaluator, path=f"context.{name}")
            if value is not OMITTED:
                self.evaluator.context[name] = value

        package = self._mapping(recipe.package, "package")
        top_build = self._mapping(recipe.build, "build")
        top_about = self._mapping_or_empty(recipe.about, "about")
        sources = self._sources()
        top_version = to_text(package.get("version", "")) or None
        top_number = top_build.get("number", 0)

        selected = [output for output in recipe.outputs if self._is_selected(output)]
        if not selected:
            raise RenderError(
                "every output of the recipe is disabled by its selector",
                context={"recipe": to_text(package.get("name", ""))},
            )
        names = {id(output): self._output_name(output) for output in selected}
        duplicates = sorted({name for name in names.values() if list(names.values()).count(name) > 1})
        if duplicates:
            raise RenderError(
                "Output names must be unique.",
                context={"outputs": ", ".join(duplicates)},
            )
        positions = {id(output): index for index, output in enumerate(recipe.outputs)}
        ordered = _topological_order(selected, names)
        top_used = set(self.evaluator.used)

        outputs: list[OutputPlan] = []
        all_used = set(top_used)
        for output in ordered:
            self.evaluator.used = set()
            plan = self._render_output(
                output,
                name=names[id(output)],
                position=positions[id(output)],
                version=top_version,
                number=top_number,
                about=top_about,
                top_used=top_used,
            )
            outputs.append(plan)
            all_used.update(name for name, _ in plan.variant)
            self.builtins.siblings[plan.name] = RenderedSibling(
                name=plan.name, version=plan.version, build_string=plan.build_string
            )

        catch_alls = [output.name for output in outputs if output.is_catch_all]
        if len(catch_alls) > 1:
            raise RenderError(
                "more than one output without `files` would claim all remaining files",
                hint="Give every output but one an explicit `build.files` list.",
                context={"outputs": ", ".join(catch_alls)},
            )

        implicit = len(recipe.outputs) == 1 and recipe.outputs[0].implicit
        script = outputs[0].script if implicit else _script_lines(top_build.get("script"))
        script_env = outputs[0].script_env if implicit else _env_pairs(top_build.get("env"))
        if implicit:
            outputs[0] = replace(outputs[0], script=(), script_env=())

        used = frozenset(all_used)
        build_plan = BuildPlan(
            target_platform=self.target.name,
            build_platform=self.build.name,
            variant=tuple(sorted((k, v) for k, v in self.variables.items() if k in used)),
            outputs=tuple(outputs),
            context=tuple(self.evaluator.context.items()),
            sources=sources,
            script=script,
            script_env=script_env,
            recipe_dir=None if recipe.recipe_dir is None else str(recipe.recipe_dir),
        )
        return build_plan, used

    def _mapping(self, node: MapNode, path: str) -> dict[str, Any]:
        value = resolve_node(node, self.evaluator, path=path)
        if not isinstance(value, dict):
            raise RenderError(f"`{path}` must render to a mapping.", context={"field": path})
        return value

    def _mapping_or_empty(self, node: Node | None, path: str) -> dict[str, Any]:
        if node is None:
            return {}
        value = resolve_node(node, self.evaluator, path=path)
        if value is OMITTED:
            return {}
        if not isinstance(value, dict):
            raise RenderError(f"`{path}` must render to a mapping.", context={"field": path})
        return value

    def _sources(self) -> tuple[Mapping[str, Any], ...]:
        if self.recipe.source is None:
            return ()
        value = resolve_node(self.recipe.source, self.evaluator, path="source")
        if value is OMITTED:
            return ()
        items = value if isinstance(value, list) else [value]
        for item in items:
            if not isinstance(item, dict):
                raise RenderError("Each source entry must be a mapping.", context={"field": "source"})
        return tuple(items)

    def _is_selected(self, output: OutputDef) -> bool:
        if output.selector is None:
            return True
        return evaluate_selector(output.selector, self.evaluator)

    def _output_name(self, output: OutputDef) -> str:
        node = output.package.get("name")
        if node is None:
            raise RenderError("Output has no package name.", context={"field": "package.name"})
        name = to_text(resolve_node(node, self.evaluator, path="package.name")).strip()
        if not name:
            raise RenderError("Output package name renders empty.", context={"field": "package.name"})
        return name

    def _render_output(
        self,
        output: OutputDef,
        *,
        name: str,
        position: int,
        version: str | None,
        number: Any,
        about: Mapping[str, Any],
        top_used: set[str],
    ) -> OutputPlan:
        path = name
        package = self._mapping(output.package, f"{path}.package")
        build = self._mapping(output.build, f"{path}.build")

        resolved_version = to_text(package.get("version", "")) or version
        if not resolved_version:
            raise RenderError(
                f"Output `{name}` has no version.",
                hint="Set `package.version` on the recipe or the output.",
                context={"output": name},
            )
        build_number = _build_number(build.get("number", number), output=name)
        noarch = build.get("noarch")
        noarch = to_text(noarch) if noarch not in (None, "", False) else None

        requirements, pinned = self._requirements(output, path)
        tests = None
        if output.tests is not None:
            rendered_tests = resolve_node(output.tests, self.evaluator, path=f"{path}.tests")
            tests = None if rendered_tests is OMITTED else rendered_tests
        merged_about = dict(about)
        if not output.implicit:
            merged_about.update(self._mapping_or_empty(output.about, f"{path}.about"))

        used = set(top_used) | self.evaluator.used | pinned
        used.update(self._script_reads(output))
        variant = tuple(sorted((k, v) for k, v in self.variables.items() if k in used))

        explicit = build.get("string")
        if explicit not in (None, ""):
            build_string = to_text(explicit)
        else:
            build_string = _build_string(
                dict(variant),
                number=build_number,
                noarch=noarch,
                target_platform=self.target.name,
            )

        dynamic_linking = _section(build, "dynamic_linking", field=f"{path}.build.dynamic_linking")
        prefix_detection = _section(build, "prefix_detection", field=f"{path}.build.prefix_detection")
        ignore = prefix_detection.get("ignore")
        detect = True
        prefix_ignore: tuple[str, ...] = ()
        if ignore is True or (isinstance(ignore, str) and ignore.lower() == "true"):
            detect = False
        elif ignore not in (None, False, ""):
            prefix_ignore = _string_tuple(ignore, field=f"{path}.build.prefix_detection.ignore")
        files = build.get("files")

        return OutputPlan(
            name=name,
            version=resolved_version,
            build_number=build_number,
            build_string=build_string,
            requirements=requirements,
            position=position,
            files=None if files is None else _string_tuple(files, field=f"{path}.build.files"),
            script=_script_lines(build.get("script")),
            script_env=_env_pairs(build.get("env")),
            noarch=noarch,
            dynamic_linking=DynamicLinking(
                rpaths=_string_tuple(
                    dynamic_linking.get("rpaths", ["lib/"]),
                    field=f"{path}.build.dynamic_linking.rpaths",
                ),
                binary_relocation=truthy(dynamic_linking.get("binary_relocation", True)),
            ),
            prefix_detection=detect,
            prefix_ignore=prefix_ignore,
            variant=variant,
            tests=tests,
            about=merged_about,
        )

    def _requirements(self, output: OutputDef, path: str) -> tuple[Requirements, set[str]]:
        sections: dict[str, tuple[Dependency, ...]] = {}
        pinned: set[str] = set()
        self.builtins.host_specs = {}
        for section in REQUIREMENT_SECTIONS:
            node = output.requirements.get(section)
            if node is None:
                sections[section] = ()
                continue
            field = f"{path}.requirements.{section}"
            value = resolve_node(node, self.evaluator, path=field)
            if value is OMITTED:
                sections[section] = ()
                continue
            items = value if isinstance(value, list) else [value]
            dependencies: list[Dependency] = []
            for item in items:
                if item in (None, ""):
                    continue
                dependency = Dependency.parse(to_text(item))
                if section in ("build", "host") and not dependency.version:
                    dependency, variable = self._pin_to_variant(dependency)
                    if variable is not None:
                        pinned.add(variable)
                dependencies.append(dependency)
            sections[section] = tuple(dependencies)
            if section == "host":
                self.builtins.host_specs = {
                    dependency.name: dependency.version or "*" for dependency in dependencies
                }
        return Requirements(**sections), pinned

    def _pin_to_variant(self, dependency: Dependency) -> tuple[Dependency, str | None]:
        for variable in (dependency.name, dependency.name.replace("-", "_")):
            value = self.variables.get(variable)
            if value is None:
                continue
            version = value if is_constraint(value) else f"{value}.*"
            return Dependency(name=dependency.name, version=version), variable
        return dependency, None

    def _script_reads(self, output: OutputDef) -> frozenset[str]:
        nodes = [self.recipe.build.get("script"), output.build.get("script")]
        return find_script_variables(
            [node for node in nodes if node is not None], self.variables, self.recipe.recipe_dir
        )


def _topological_order(outputs: list[OutputDef], names: Mapping[int, str]) -> list[OutputDef]:
    """Order outputs so each follows the siblings it pins; ties keep declaration order."""
    by_name = {names[id(output)]: output for output in outputs}
    requires: dict[str, set[str]] = {}
    for output in outputs:
        name = names[id(output)]
        requires[name] = {ref for ref in _subpackage_refs(output) if ref in by_name}

    ordered: list[OutputDef] = []
    done: set[str] = set()
    while len(ordered) < len(outputs):
        ready = [
            output
            for output in outputs
            if names[id(output)] not in done and requires[names[id(output)]] <= done
        ]
        if not ready:
            pending = sorted(name for name in requires if name not in done)
            raise ConfigError(
                "pin_subpackage references form a cycle between outputs",
                context={"outputs": ", ".join(pending)},
            )
        ordered.append(ready[0])
        done.add(names[id(ready[0])])
    return ordered


def _subpackage_refs(output: OutputDef) -> Iterator[str]:
    for root in iter_output_nodes(output):
        for node in walk(root):
            if not isinstance(node, Template):
                continue
            for text in node.expressions():
                try:
                    expr = parse_expression(text)
                except RenderError:
                    continue
                for call in iter_calls(expr):
                    if call.func != "pin_subpackage" or not call.args:
                        continue
                    first = call.args[0]
                    if isinstance(first, Const) and isinstance(first.value, str):
                        yield first.value


def _build_number(value: Any, *, output: str) -> int:
    try:
        number = int(to_text(value))
    except ValueError as exc:
        raise RenderError(
            f"Build number `{value}` is not an integer.",
            context={"output": output},
        ) from exc
    if number < 0:
        raise RenderError("Build number must not be negative.", context={"output": output})
    return number


def _build_string(
    variant: Mapping[str, str],
    *,
    number: int,
    noarch: str | None,
    target_platform: str,
) -> str:
    prefix = ""
    if noarch == "python":
        prefix = "py"
    elif noarch is None:
        for variable, abbreviation in BUILD_STRING_PREFIXES:
            value = variant.get(variable)
            if value:
                prefix += abbreviation + version_to_buildstring(value)
    digest = variant_hash(variant, target_platform="noarch" if noarch else target_platform)
    return f"{prefix}{digest}_{number}"


def _script_lines(value: Any) -> tuple[str, ...]:
    if value in (None, ""):
        return ()
    if isinstance(value, list):
        return tuple(to_text(item) for item in value if item not in (None, ""))
    return (to_text(value),)


def _env_pairs(value: Any) -> tuple[tuple[str, str], ...]:
    if value in (None, ""):
        return ()
    if not isinstance(value, dict):
        raise RenderError("`build.env` must be a mapping.", context={"field": "build.env"})
    return tuple(sorted((str(key), to_text(item)) for key, item in value.items()))


def _section(build: Mapping[str, Any], key: str, *, field: str) -> dict[str, Any]:
    value = build.get(key)
    if value in (None, ""):
        return {}
    if not isinstance(value, dict):
        raise RenderError(f"`{field}` must be a mapping.", context={"field": field})
    return value


def _string_tuple(value: Any, *, field: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise RenderError(f"`{field}` must be a string or a list.", context={"field": field})
    return tuple(to_text(item) for item in value)


__all__ = ["BUILD_STRING_PREFIXES", "render"]
