"""Built-in functions and filters available inside recipe expressions."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from kiln.errors import RenderError
from kiln.platforms import Platform
from kiln.render.evaluate import Evaluator, Function, Undefined, to_text
from kiln.variants.pins import PackageVersionLookup
from kiln.versions import apply_pin, version_matches, version_to_buildstring

DEFAULT_COMPILERS: dict[str, dict[str, str]] = {
    "linux": {"c": "gcc", "cxx": "gxx", "fortran": "gfortran", "rust": "rust", "go": "go"},
    "osx": {"c": "clang", "cxx": "clangxx", "fortran": "gfortran", "rust": "rust", "go": "go"},
    "win": {"c": "vs2019", "cxx": "vs2019", "fortran": "flang", "rust": "rust", "go": "go"},
}

DEFAULT_STDLIBS: dict[str, dict[str, str]] = {
    "linux": {"c": "sysroot"},
    "osx": {"c": "macosx_deployment_target"},
    "win": {"c": "vs"},
}

PIN_DEFAULT_MIN = "x.x.x.x.x.x"
PIN_DEFAULT_MAX = "x"


@dataclass(frozen=True, slots=True)
class RenderedSibling:
    """Name, version and build string of an output rendered earlier in the pass."""

    name: str
    version: str
    build_string: str


@dataclass(slots=True)
class Builtins:
    """Function table bound to one render pass.

    ``siblings`` grows as outputs finish rendering so ``pin_subpackage`` can
    only see outputs that precede the caller in topological order.
    """

    platform: Platform
    evaluator: Evaluator
    lookup: PackageVersionLookup | None = None
    siblings: dict[str, RenderedSibling] = field(default_factory=dict)
    host_specs: dict[str, str] = field(default_factory=dict)

    def functions(self) -> dict[str, Function]:
        return {
            "compiler": self.compiler,
            "stdlib": self.stdlib,
            "pin_subpackage": self.pin_subpackage,
            "pin_compatible": self.pin_compatible,
            "match": match,
        }

    def compiler(self, language: str) -> str:
        language = _text_argument(language, function="compiler")
        name = self.evaluator.read_variable(f"{language}_compiler")
        if name is None:
            name = DEFAULT_COMPILERS.get(self.platform.family, {}).get(language, language)
        version = self.evaluator.read_variable(f"{language}_compiler_version")
        return _qualified(name, self.platform.name, version)

    def stdlib(self, language: str) -> str:
        language = _text_argument(language, function="stdlib")
        name = self.evaluator.read_variable(f"{language}_stdlib")
        if name is None:
            name = DEFAULT_STDLIBS.get(self.platform.family, {}).get(language, f"{language}_stdlib")
        version = self.evaluator.read_variable(f"{language}_stdlib_version")
        return _qualified(name, self.platform.name, version)

    def pin_subpackage(
        self,
        name: str,
        min_pin: str | None = PIN_DEFAULT_MIN,
        max_pin: str | None = PIN_DEFAULT_MAX,
        exact: bool = False,
    ) -> str:
        name = _text_argument(name, function="pin_subpackage")
        sibling = self.siblings.get(name)
        if sibling is None:
            raise RenderError(
                f"unresolved subpackage pin reference `{name}`",
                hint="pin_subpackage() must name another output of the same recipe.",
                context={"function": "pin_subpackage", "package": name},
            )
        constraint = apply_pin(
            sibling.version,
            min_pin=_pin_argument(min_pin),
            max_pin=_pin_argument(max_pin),
            exact=exact is True,
            build_string=sibling.build_string,
        )
        return f"{name} {constraint}"

    def pin_compatible(
        self,
        name: str,
        min_pin: str | None = PIN_DEFAULT_MIN,
        max_pin: str | None = PIN_DEFAULT_MAX,
        exact: bool = False,
    ) -> str:
        name = _text_argument(name, function="pin_compatible")
        spec = self.host_specs.get(name)
        if spec is None:
            spec = self.evaluator.read_variable(name) or "*"
        context = {"function": "pin_compatible", "package": name, "constraint": spec}
        if self.lookup is None:
            raise RenderError(
                f"cannot resolve pin_compatible(`{name}`): no package version lookup configured",
                context=context,
            )
        version = self.lookup.resolve(name, spec, platform=self.platform.name)
        if version is None:
            raise RenderError(
                f"cannot resolve pin_compatible(`{name}`): no version matches `{spec}`",
                context=context,
            )
        constraint = apply_pin(
            version,
            min_pin=_pin_argument(min_pin),
            max_pin=_pin_argument(max_pin),
            exact=exact is True,
        )
        return f"{name} {constraint}"


def match(value: Any, spec: Any) -> bool:
    return version_matches(to_text(value), to_text(spec))


def _qualified(name: str, platform: str, version: str | None) -> str:
    if version:
        return f"{name}_{platform} {version}"
    return f"{name}_{platform}"


def _text_argument(value: Any, *, function: str) -> str:
    if not isinstance(value, str) or not value:
        raise RenderError(
            f"{function}() expects a non-empty string argument",
            context={"function": function, "argument": repr(value)},
        )
    return value


def _pin_argument(value: Any) -> str | None:
    if value is None:
        return None
    return to_text(value)


def _split(value: Any, separator: str | None = None) -> list[str]:
    return to_text(value).split(separator)


def _join(value: Any, separator: str = "") -> str:
    if not isinstance(value, list):
        return to_text(value)
    return separator.join(to_text(item) for item in value)


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    text = to_text(value)
    return text[:1]


def _last(value: Any) -> Any:
    if isinstance(value, list):
        return value[-1] if value else None
    text = to_text(value)
    return text[-1:]


def _default(value: Any, fallback: Any = "") -> Any:
    if isinstance(value, Undefined) or value is None:
        return fallback
    return value


FILTERS: Mapping[str, Callable[..., Any]] = {
    "lower": lambda value: to_text(value).lower(),
    "upper": lambda value: to_text(value).upper(),
    "replace": lambda value, old, new: to_text(value).replace(to_text(old), to_text(new)),
    "trim": lambda value: to_text(value).strip(),
    "split": _split,
    "join": _join,
    "first": _first,
    "last": _last,
    "default": _default,
    "version_to_buildstring": lambda value: version_to_buildstring(to_text(value)),
}


__all__ = [
    "Builtins",
    "DEFAULT_COMPILERS",
    "DEFAULT_STDLIBS",
    "FILTERS",
    "RenderedSibling",
    "match",
]
