"""Protocols for script execution and build environment preparation."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from kiln.render.plan import OutputPlan


@dataclass(frozen=True, slots=True)
class ScriptResult:
    returncode: int
    output: str
    duration: float


class ScriptRunner(Protocol):
    name: str

    def run(
        self,
        script: Path,
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float | None,
    ) -> ScriptResult:
        """Run ``script`` in the foreground; raise ``BuildError`` on timeout or interrupt."""


class EnvironmentResolver(Protocol):
    name: str

    def prepare(self, output: OutputPlan, *, prefix: Path, build_prefix: Path) -> tuple[Path, ...]:
        """Populate the host and build prefixes; return extra ``PATH`` entries."""
