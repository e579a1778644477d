"""Default build environment preparation."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from kiln.errors import BuildError
from kiln.render.plan import OutputPlan


@dataclass(frozen=True, slots=True)
class PrefixEnvironmentResolver:
    """Creates empty host and build prefixes.

    Installing requirements into the prefixes needs a solver and is left to
    other resolvers; this one only lays out the directories and ``PATH``.
    """

    name: str = "prefix"
    windows: bool = False

    def prepare(self, output: OutputPlan, *, prefix: Path, build_prefix: Path) -> tuple[Path, ...]:
        bin_dirs = ("Library/bin", "Scripts") if self.windows else ("bin",)
        paths = tuple(root / sub for root in (build_prefix, prefix) for sub in bin_dirs)
        try:
            for path in paths:
                path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(
                "Preparing the build environment failed.",
                context={
                    "resolver": self.name,
                    "output": output.name,
                    "prefix": str(prefix),
                    "error": str(exc),
                },
            ) from exc
        return paths
