"""Target platform descriptors and the selector facts derived from them."""

from __future__ import annotations

import platform as _host
import sys
from dataclasses import dataclass
from typing import Literal

from kiln.errors import ConfigError

Family = Literal["linux", "osx", "win", "noarch"]

KNOWN_PLATFORMS: tuple[str, ...] = (
    "linux-64",
    "linux-aarch64",
    "linux-ppc64le",
    "linux-32",
    "osx-64",
    "osx-arm64",
    "win-64",
    "win-arm64",
    "win-32",
    "noarch",
)

_ARCH_FLAGS: dict[str, tuple[str, ...]] = {
    "64": ("x86_64",),
    "32": ("x86",),
    "aarch64": ("aarch64",),
    "arm64": ("arm64",),
    "ppc64le": ("ppc64le",),
}

ARCH_FACTS: tuple[str, ...] = ("x86_64", "x86", "aarch64", "arm64", "ppc64le")
FAMILY_FACTS: tuple[str, ...] = ("linux", "osx", "win", "unix")


@dataclass(frozen=True, slots=True)
class Platform:
    """A ``<family>-<arch>`` subdir such as ``linux-64`` or ``osx-arm64``."""

    name: str

    def __post_init__(self) -> None:
        if self.name not in KNOWN_PLATFORMS:
            raise ConfigError(
                f"Unknown platform `{self.name}`.",
                hint=f"Use one of: {', '.join(KNOWN_PLATFORMS)}.",
                context={"platform": self.name},
            )

    def __str__(self) -> str:
        return self.name

    @property
    def family(self) -> Family:
        if self.name == "noarch":
            return "noarch"
        family = self.name.split("-", 1)[0]
        if family == "linux":
            return "linux"
        if family == "osx":
            return "osx"
        return "win"

    @property
    def arch(self) -> str | None:
        if self.name == "noarch":
            return None
        return self.name.split("-", 1)[1]

    @property
    def is_unix(self) -> bool:
        return self.family in ("linux", "osx")

    @property
    def shlib_ext(self) -> str:
        if self.family == "osx":
            return ".dylib"
        if self.family == "win":
            return ".dll"
        return ".so"

    def facts(self) -> dict[str, bool]:
        """Boolean selector facts (``linux``, ``unix``, ``x86_64`` ...)."""
        facts = {name: False for name in (*FAMILY_FACTS, *ARCH_FACTS)}
        family = self.family
        if family != "noarch":
            facts[family] = True
        facts["unix"] = self.is_unix
        for flag in _ARCH_FLAGS.get(self.arch or "", ()):
            facts[flag] = True
        return facts


def host_platform() -> Platform:
    machine = _host.machine().lower()
    if sys.platform.startswith("linux"):
        family = "linux"
    elif sys.platform == "darwin":
        family = "osx"
    elif sys.platform.startswith("win"):
        family = "win"
    else:
        raise ConfigError(
            "Unsupported host operating system.",
            context={"sys.platform": sys.platform},
        )

    if machine in ("x86_64", "amd64"):
        arch = "64"
    elif machine in ("aarch64", "arm64"):
        arch = "arm64" if family in ("osx", "win") else "aarch64"
    elif machine == "ppc64le":
        arch = "ppc64le"
    else:
        arch = "32"
    return Platform(f"{family}-{arch}")


__all__ = ["ARCH_FACTS", "FAMILY_FACTS", "KNOWN_PLATFORMS", "Platform", "host_platform"]
