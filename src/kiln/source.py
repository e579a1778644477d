"""Source materialization into the build workspace."""

from __future__ import annotations

import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from kiln.errors import SourceError


class SourceProvider(Protocol):
    def materialize(
        self,
        sources: tuple[Mapping[str, Any], ...],
        work_dir: Path,
        *,
        recipe_dir: Path | None,
    ) -> None:
        """Place every source entry under ``work_dir``; failures raise ``SourceError``."""


@dataclass(frozen=True, slots=True)
class LocalSourceProvider:
    """Copies ``path:`` sources from disk; remote kinds are rejected."""

    name: str = "local"

    def materialize(
        self,
        sources: tuple[Mapping[str, Any], ...],
        work_dir: Path,
        *,
        recipe_dir: Path | None,
    ) -> None:
        work_dir.mkdir(parents=True, exist_ok=True)
        for index, entry in enumerate(sources):
            if "path" not in entry:
                kinds = ", ".join(sorted(entry)) or "<empty>"
                raise SourceError(
                    "Source kind is not supported by the local source provider.",
                    hint="Use a `path:` source or plug in a SourceProvider that fetches remote sources.",
                    context={"provider": self.name, "index": str(index), "keys": kinds},
                )
            self._copy_path(entry, work_dir, recipe_dir=recipe_dir, index=index)

    def _copy_path(
        self,
        entry: Mapping[str, Any],
        work_dir: Path,
        *,
        recipe_dir: Path | None,
        index: int,
    ) -> None:
        source = Path(str(entry["path"])).expanduser()
        if not source.is_absolute() and recipe_dir is not None:
            source = recipe_dir / source
        target = work_dir
        target_directory = entry.get("target_directory")
        if target_directory:
            target = work_dir / str(target_directory)
            if not target.resolve().is_relative_to(work_dir.resolve()):
                raise SourceError(
                    "Source target directory escapes the work directory.",
                    context={"index": str(index), "target_directory": str(target_directory)},
                )
        context = {"provider": self.name, "index": str(index), "path": str(source)}
        if not source.exists():
            raise SourceError("Source path does not exist.", context=context)
        try:
            if source.is_dir():
                shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
            else:
                target.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target / source.name)
        except OSError as exc:
            raise SourceError(
                f"Copying source failed: {exc}",
                context=context,
            ) from exc


__all__ = ["LocalSourceProvider", "SourceProvider"]
