"""Pinned variant variables and the package version lookup collaborator."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from kiln.errors import ConfigError
from kiln.versions import Version, version_matches

_PIN_PATTERN = re.compile(r"^x(\.x)*$")


class PackageVersionLookup(Protocol):
    def resolve(self, name: str, spec: str, *, platform: str) -> str | None:
        """Return the newest known version of ``name`` matching ``spec``, if any."""


@dataclass(frozen=True, slots=True)
class StaticVersionLookup:
    """Lookup over an in-memory ``{package: (versions...)}`` table."""

    versions: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def resolve(self, name: str, spec: str, *, platform: str) -> str | None:
        candidates = [
            version for version in self.versions.get(name, ()) if version_matches(version, spec)
        ]
        if not candidates:
            return None
        return max(candidates, key=Version)


@dataclass(frozen=True, slots=True)
class PinSpec:
    """``variable`` takes the resolved version of ``package``, cut to ``max_pin``."""

    variable: str
    package: str
    max_pin: str | None = None
    exact: bool = False

    def __post_init__(self) -> None:
        if self.max_pin is not None and not _PIN_PATTERN.match(self.max_pin):
            raise ConfigError(
                f"Invalid max_pin `{self.max_pin}` for pinned variable `{self.variable}`.",
                hint="Pin expressions look like `x`, `x.x` or `x.x.x`.",
                context={"variable": self.variable, "max_pin": self.max_pin},
            )

    def to_payload(self) -> dict[str, object]:
        return {
            "package": self.package,
            "max_pin": self.max_pin,
            "exact": self.exact,
        }


def resolve_pin(
    pin: PinSpec,
    values: Mapping[str, str],
    *,
    lookup: PackageVersionLookup | None,
    platform: str,
) -> str:
    """Resolve one pinned variable for an otherwise complete assignment."""
    constraint = values.get(pin.package, "*")
    context = {
        "variable": pin.variable,
        "package": pin.package,
        "constraint": constraint,
        "platform": platform,
        "variant": ", ".join(f"{k}={v}" for k, v in sorted(values.items())),
    }
    if lookup is None:
        raise ConfigError(
            f"cannot resolve pin `{pin.variable}`: no package version lookup configured",
            hint="Pass a PackageVersionLookup to expand().",
            context=context,
        )
    version = lookup.resolve(pin.package, constraint, platform=platform)
    if version is None:
        raise ConfigError(
            f"unsatisfiable pin `{pin.variable}`: no version of `{pin.package}` matches `{constraint}`",
            context=context,
        )
    if pin.exact or pin.max_pin is None:
        return version
    return str(Version(version).truncate(pin.max_pin.count("x")))


__all__ = ["PackageVersionLookup", "PinSpec", "StaticVersionLookup", "resolve_pin"]
