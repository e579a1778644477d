"""Tool configuration threaded explicitly through the engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from kiln.errors import ConfigError
from kiln.platforms import Platform, host_platform

ArchiveFormat = Literal["tar.bz2", "tar.gz"]

# 2020-01-01T00:00:00Z; archives are byte-stable across rebuilds.
DEFAULT_ARCHIVE_MTIME = 1577836800


@dataclass(frozen=True, slots=True)
class ToolConfiguration:
    output_dir: Path = field(default_factory=lambda: Path("output"))
    concurrency: int = 1
    timeout: float | None = None
    keep_workspace: bool = False
    target_platform: Platform = field(default_factory=host_platform)
    build_platform: Platform = field(default_factory=host_platform)
    archive_format: ArchiveFormat = "tar.bz2"
    archive_mtime: int = DEFAULT_ARCHIVE_MTIME
    skip_existing: bool = False
    cpu_count: int = field(default_factory=lambda: os.cpu_count() or 1)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ConfigError(
                "Concurrency limit must be at least 1.",
                context={"concurrency": str(self.concurrency)},
            )
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(
                "Build timeout must be positive.",
                context={"timeout": str(self.timeout)},
            )

    @property
    def packages_dir(self) -> Path:
        return self.output_dir / str(self.target_platform)

    @property
    def workspaces_dir(self) -> Path:
        return self.output_dir / "bld"


__all__ = ["ArchiveFormat", "DEFAULT_ARCHIVE_MTIME", "ToolConfiguration"]
