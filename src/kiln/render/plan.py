"""Concrete, fully rendered build plan types."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from kiln.errors import RenderError
from kiln.hashing import canonical_digest

_DEPENDENCY_RE = re.compile(r"^\s*([A-Za-z0-9_][A-Za-z0-9_.\-]*)\s*(.*?)\s*$")
_OPERATOR_START = re.compile(r"^(==|!=|>=|<=|~=|>|<|=)")


@dataclass(frozen=True, slots=True)
class Dependency:
    """A requirement of the form ``name [version-constraint [build-string]]``."""

    name: str
    version: str = ""
    build: str = ""

    @classmethod
    def parse(cls, spec: str) -> Dependency:
        match = _DEPENDENCY_RE.match(spec)
        if match is None or not match.group(1):
            raise RenderError(
                f"Invalid requirement `{spec}`.",
                context={"requirement": spec},
            )
        name, rest = match.groups()
        if not rest:
            return cls(name=name)
        if _OPERATOR_START.match(rest):
            # `python>=3.8` and `python >=3.8, <4` both keep operators glued
            rest = re.sub(r"\s*,\s*", ",", rest)
        parts = rest.split()
        if len(parts) > 2:
            raise RenderError(
                f"Invalid requirement `{spec}`.",
                hint="Use `name [version] [build]`.",
                context={"requirement": spec},
            )
        return cls(name=name, version=parts[0], build=parts[1] if len(parts) > 1 else "")

    def __str__(self) -> str:
        return " ".join(part for part in (self.name, self.version, self.build) if part)


@dataclass(frozen=True, slots=True)
class Requirements:
    build: tuple[Dependency, ...] = ()
    host: tuple[Dependency, ...] = ()
    run: tuple[Dependency, ...] = ()
    run_constraints: tuple[Dependency, ...] = ()

    def to_payload(self) -> dict[str, list[str]]:
        return {
            "build": [str(dep) for dep in self.build],
            "host": [str(dep) for dep in self.host],
            "run": [str(dep) for dep in self.run],
            "run_constraints": [str(dep) for dep in self.run_constraints],
        }


@dataclass(frozen=True, slots=True)
class DynamicLinking:
    """Relinking settings for one output."""

    rpaths: tuple[str, ...] = ("lib/",)
    binary_relocation: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {"rpaths": list(self.rpaths), "binary_relocation": self.binary_relocation}


@dataclass(frozen=True, slots=True)
class OutputPlan:
    name: str
    version: str
    build_number: int
    build_string: str
    requirements: Requirements = field(default_factory=Requirements)
    # index in the recipe's `outputs` list; file ownership follows it
    position: int = 0
    files: tuple[str, ...] | None = None
    script: tuple[str, ...] = ()
    script_env: tuple[tuple[str, str], ...] = ()
    noarch: str | None = None
    dynamic_linking: DynamicLinking = field(default_factory=DynamicLinking)
    prefix_detection: bool = True
    prefix_ignore: tuple[str, ...] = ()
    variant: tuple[tuple[str, str], ...] = ()
    tests: Any = None
    about: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_catch_all(self) -> bool:
        return self.files is None

    @property
    def dist_name(self) -> str:
        return f"{self.name}-{self.version}-{self.build_string}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "build_number": self.build_number,
            "build_string": self.build_string,
            "position": self.position,
            "requirements": self.requirements.to_payload(),
            "files": None if self.files is None else list(self.files),
            "script": list(self.script),
            "script_env": dict(self.script_env),
            "noarch": self.noarch,
            "dynamic_linking": self.dynamic_linking.to_payload(),
            "prefix_detection": self.prefix_detection,
            "prefix_ignore": list(self.prefix_ignore),
            "variant": dict(self.variant),
            "tests": self.tests,
            "about": dict(self.about),
        }


@dataclass(frozen=True, slots=True)
class BuildPlan:
    target_platform: str
    build_platform: str
    variant: tuple[tuple[str, str], ...]
    outputs: tuple[OutputPlan, ...]
    context: tuple[tuple[str, Any], ...] = ()
    sources: tuple[Mapping[str, Any], ...] = ()
    script: tuple[str, ...] = ()
    script_env: tuple[tuple[str, str], ...] = ()
    recipe_dir: str | None = None

    @property
    def name(self) -> str:
        return self.outputs[0].name

    def output(self, name: str) -> OutputPlan:
        for output in self.outputs:
            if output.name == name:
                return output
        raise KeyError(name)

    def variant_dict(self) -> dict[str, str]:
        return dict(self.variant)

    def to_payload(self) -> dict[str, Any]:
        return {
            "target_platform": self.target_platform,
            "build_platform": self.build_platform,
            "variant": dict(self.variant),
            "context": {key: value for key, value in self.context},
            "sources": [dict(source) for source in self.sources],
            "script": list(self.script),
            "script_env": dict(self.script_env),
            "outputs": [output.to_payload() for output in self.outputs],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), indent=2, sort_keys=True) + "\n"

    def digest(self) -> str:
        return canonical_digest(self.to_payload())


__all__ = [
    "BuildPlan",
    "Dependency",
    "DynamicLinking",
    "OutputPlan",
    "Requirements",
]
