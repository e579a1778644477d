"""Variant configuration: candidate values, zip-key groups and pins."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from kiln.errors import ConfigError, RecipeError, RenderError
from kiln.platforms import Platform
from kiln.recipe.parser import load_yaml, to_node
from kiln.render.evaluate import Evaluator, to_text
from kiln.render.nodes import OMITTED, resolve_node
from kiln.variants.pins import PinSpec

RESERVED_KEYS = frozenset({"zip_keys", "pin"})


@dataclass(frozen=True, slots=True)
class VariantConfig:
    """Ordered ``variable -> candidates`` table plus zip groups and pins.

    Every zip group's members must have candidate lists of equal length.
    """

    variables: tuple[tuple[str, tuple[str, ...]], ...] = ()
    zip_keys: tuple[tuple[str, ...], ...] = ()
    pins: tuple[PinSpec, ...] = ()

    def __post_init__(self) -> None:
        names = [name for name, _ in self.variables]
        if len(set(names)) != len(names):
            raise ConfigError("Variant variables must be unique.")
        known = set(names)
        grouped: dict[str, tuple[str, ...]] = {}
        for group in self.zip_keys:
            if len(group) < 2:
                raise ConfigError(
                    "Zip-key groups need at least two variables.",
                    context={"group": ", ".join(group)},
                )
            for member in group:
                if member not in known:
                    raise ConfigError(
                        f"Zip-key group references unknown variable `{member}`.",
                        context={"group": ", ".join(group)},
                    )
                if member in grouped:
                    raise ConfigError(
                        f"Variable `{member}` belongs to more than one zip-key group.",
                        context={"group": ", ".join(group)},
                    )
                grouped[member] = group
            lengths = {member: len(self.candidates(member)) for member in group}
            if len(set(lengths.values())) > 1:
                raise ConfigError(
                    "zip-key length mismatch",
                    hint="All variables in one zip-key group need the same number of values.",
                    context={
                        "group": ", ".join(group),
                        "lengths": ", ".join(f"{k}={v}" for k, v in lengths.items()),
                    },
                )
        pinned = {pin.variable for pin in self.pins}
        for pin in self.pins:
            if pin.variable in known:
                raise ConfigError(
                    f"Variable `{pin.variable}` has both candidate values and a pin.",
                    context={"variable": pin.variable},
                )
            if pin.package in pinned:
                raise ConfigError(
                    f"Pin `{pin.variable}` depends on another pinned variable `{pin.package}`.",
                    context={"variable": pin.variable, "package": pin.package},
                )

    @classmethod
    def from_mapping(
        cls,
        raw: Mapping[str, Any],
        *,
        platform: Platform | None = None,
        source: str = "<mapping>",
    ) -> VariantConfig:
        """Build a config from a YAML-shaped mapping.

        ``if``/``then``/``else`` blocks inside value lists are evaluated against
        the platform facts of ``platform``.
        """
        evaluator = Evaluator(variables={}, facts=_platform_bindings(platform))
        variables: list[tuple[str, tuple[str, ...]]] = []
        for name, value in raw.items():
            if name in RESERVED_KEYS:
                continue
            if not isinstance(name, str) or not name.isidentifier():
                raise ConfigError(
                    "Variant variable names must be identifiers.",
                    context={"path": source, "variable": repr(name)},
                )
            resolved = _resolve_value(value, evaluator, name=name, source=source)
            if isinstance(resolved, dict):
                raise ConfigError(
                    f"Variant variable `{name}` must be a scalar or a list.",
                    context={"path": source, "variable": name},
                )
            items = resolved if isinstance(resolved, list) else [resolved]
            variables.append((name, tuple(to_text(item) for item in items)))

        return cls(
            variables=tuple(variables),
            zip_keys=_parse_zip_keys(raw.get("zip_keys"), source=source),
            pins=_parse_pins(raw.get("pin"), source=source),
        )

    def keys(self) -> tuple[str, ...]:
        return (*(name for name, _ in self.variables), *(pin.variable for pin in self.pins))

    def candidates(self, name: str) -> tuple[str, ...]:
        for variable, values in self.variables:
            if variable == name:
                return values
        raise KeyError(name)

    def group_of(self, name: str) -> tuple[str, ...] | None:
        for group in self.zip_keys:
            if name in group:
                return group
        return None

    def merge(self, other: VariantConfig) -> VariantConfig:
        """Later configuration wins per variable; zip groups of ``other`` replace ours."""
        replaced = dict(other.variables)
        variables = [(name, replaced.pop(name, values)) for name, values in self.variables]
        variables.extend((name, values) for name, values in other.variables if name in replaced)
        pins = {pin.variable: pin for pin in self.pins}
        pins.update({pin.variable: pin for pin in other.pins})
        return VariantConfig(
            variables=tuple(variables),
            zip_keys=other.zip_keys or self.zip_keys,
            pins=tuple(pins.values()),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {name: list(values) for name, values in self.variables}
        payload["zip_keys"] = [list(group) for group in self.zip_keys]
        payload["pin"] = {pin.variable: pin.to_payload() for pin in self.pins}
        return payload


def load_variant_config(
    *paths: str | Path,
    platform: Platform | None = None,
) -> VariantConfig:
    """Load and merge variant files in order; later files override earlier keys."""
    merged: dict[str, Any] = {}
    for path in paths:
        config_path = Path(path)
        try:
            text = config_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigError(
                "Variant configuration file does not exist.",
                context={"path": str(config_path)},
            ) from exc
        try:
            raw = load_yaml(text, source=str(config_path))
        except RecipeError as exc:
            raise ConfigError(
                "Variant configuration is not valid YAML.",
                hint=exc.hint,
                context={"path": str(config_path)},
            ) from exc
        if raw is None:
            continue
        if not isinstance(raw, dict):
            raise ConfigError(
                "Variant configuration must be a mapping.",
                context={"path": str(config_path)},
            )
        merged.update(raw)
    return VariantConfig.from_mapping(
        merged,
        platform=platform,
        source=", ".join(str(path) for path in paths),
    )


def _platform_bindings(platform: Platform | None) -> dict[str, Any]:
    if platform is None:
        return {}
    bindings: dict[str, Any] = dict(platform.facts())
    bindings["target_platform"] = platform.name
    return bindings


def _resolve_value(value: Any, evaluator: Evaluator, *, name: str, source: str) -> Any:
    if value is None:
        raise ConfigError(
            f"Variant variable `{name}` has no value.",
            context={"path": source, "variable": name},
        )
    try:
        resolved = resolve_node(to_node(value, path=name), evaluator, path=name)
    except RenderError as exc:
        raise ConfigError(
            f"Cannot evaluate values of variant variable `{name}`: {exc.message}",
            hint="Selectors in variant files may only use platform facts.",
            context={"path": source, "variable": name, **exc.context},
        ) from exc
    return [] if resolved is OMITTED else resolved


def _parse_zip_keys(value: Any, *, source: str) -> tuple[tuple[str, ...], ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError("`zip_keys` must be a list.", context={"path": source})
    # a single flat group may be written without the outer list
    if value and all(isinstance(item, str) for item in value):
        value = [value]
    groups: list[tuple[str, ...]] = []
    for group in value:
        if not isinstance(group, list) or not all(isinstance(item, str) for item in group):
            raise ConfigError(
                "Each zip-key group must be a list of variable names.",
                context={"path": source},
            )
        groups.append(tuple(group))
    return tuple(groups)


def _parse_pins(value: Any, *, source: str) -> tuple[PinSpec, ...]:
    if value is None:
        return ()
    if not isinstance(value, dict):
        raise ConfigError("`pin` must be a mapping.", context={"path": source})
    pins: list[PinSpec] = []
    for variable, spec in value.items():
        if not isinstance(spec, dict) or not isinstance(spec.get("package"), str):
            raise ConfigError(
                f"Pin `{variable}` needs a `package` name.",
                context={"path": source, "variable": str(variable)},
            )
        max_pin = spec.get("max_pin")
        exact = spec.get("exact", False)
        pins.append(
            PinSpec(
                variable=str(variable),
                package=spec["package"],
                max_pin=None if max_pin is None else str(max_pin),
                exact=exact is True or str(exact).lower() == "true",
            )
        )
    return tuple(pins)


__all__ = ["RESERVED_KEYS", "VariantConfig", "load_variant_config"]
