"""Variant matrix expansion."""

from __future__ import annotations

import itertools
from collections.abc import Collection, Iterable, Iterator, Mapping
from dataclasses import dataclass

from kiln.errors import ConfigError
from kiln.variants.config import VariantConfig
from kiln.variants.pins import PackageVersionLookup, resolve_pin


@dataclass(frozen=True, slots=True)
class VariantAssignment(Mapping[str, str]):
    """One concrete value per variable; items are kept sorted by name."""

    items_: tuple[tuple[str, str], ...] = ()

    @classmethod
    def of(cls, values: Mapping[str, str] | None = None, **kwargs: str) -> VariantAssignment:
        merged = dict(values or {})
        merged.update(kwargs)
        return cls(items_=tuple(sorted(merged.items())))

    def __getitem__(self, key: str) -> str:
        for name, value in self.items_:
            if name == key:
                return value
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self.items_)

    def __len__(self) -> int:
        return len(self.items_)

    def project(self, names: Collection[str]) -> VariantAssignment:
        return VariantAssignment(items_=tuple(item for item in self.items_ if item[0] in names))

    def label(self) -> str:
        return " ".join(f"{name}={value}" for name, value in self.items_) or "<default>"


def expand(
    recipe_declared_vars: Iterable[str],
    variant_config: VariantConfig,
    *,
    lookup: PackageVersionLookup | None = None,
    platform: str = "noarch",
) -> list[VariantAssignment]:
    """Expand the declared variables of a recipe into concrete assignments.

    Independent variables form one axis each; a zip-key group forms a single
    axis of positional tuples as soon as any member is declared. Axes follow the
    configuration's declaration order with the first axis outermost, so the
    enumeration order is stable across runs. Declared pinned variables are
    resolved per assignment after all free variables are chosen.
    """
    declared = set(recipe_declared_vars)
    axes: list[tuple[tuple[str, ...], list[tuple[str, ...]]]] = []
    seen_groups: set[tuple[str, ...]] = set()

    for name, values in variant_config.variables:
        group = variant_config.group_of(name)
        if group is None:
            if name not in declared:
                continue
            if not values:
                raise _empty_candidates(name)
            axes.append(((name,), [(value,) for value in values]))
            continue
        if group in seen_groups or not declared.intersection(group):
            continue
        seen_groups.add(group)
        columns = [variant_config.candidates(member) for member in group]
        for member, column in zip(group, columns, strict=True):
            if not column:
                raise _empty_candidates(member)
        axes.append((group, list(zip(*columns, strict=True))))

    pins = [pin for pin in variant_config.pins if pin.variable in declared]
    assignments: list[VariantAssignment] = []
    for cell in itertools.product(*(rows for _, rows in axes)):
        values: dict[str, str] = {}
        for (names, _), row in zip(axes, cell, strict=True):
            values.update(zip(names, row, strict=True))
        free = dict(values)
        for pin in pins:
            values[pin.variable] = resolve_pin(pin, free, lookup=lookup, platform=platform)
        assignments.append(VariantAssignment.of(values))
    return assignments


def collapse(
    assignments: Iterable[VariantAssignment],
    used: Collection[str],
) -> list[VariantAssignment]:
    """Drop assignments that agree with an earlier one on every used variable."""
    seen: set[VariantAssignment] = set()
    unique: list[VariantAssignment] = []
    for assignment in assignments:
        key = assignment.project(used)
        if key in seen:
            continue
        seen.add(key)
        unique.append(assignment)
    return unique


def _empty_candidates(name: str) -> ConfigError:
    return ConfigError(
        f"empty candidate set for variable `{name}`",
        hint="Give the variable at least one value or stop referencing it.",
        context={"variable": name},
    )


__all__ = ["VariantAssignment", "collapse", "expand"]
