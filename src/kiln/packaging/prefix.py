"""Detection of files that embed the build-time install prefix."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from kiln.packaging.formats.base import OutputArtifact
from kiln.packaging.partition import matches_any


def detect_prefix(
    artifacts: Iterable[OutputArtifact],
    *,
    prefix: Path,
    ignore: tuple[str, ...] = (),
    enabled: bool = True,
) -> list[OutputArtifact]:
    """Record ``prefix_placeholder`` and ``file_mode`` on files containing ``prefix``.

    Files with NUL bytes or a recognized binary format are ``binary``; the rest
    are ``text``. Symlinks and ignored paths are never scanned.
    """
    placeholder = str(prefix)
    needle = placeholder.encode("utf-8")
    scanned: list[OutputArtifact] = []
    for artifact in artifacts:
        scanned.append(artifact)
        if not enabled or artifact.kind == "symlink" or matches_any(ignore, artifact.path):
            continue
        data = artifact.absolute(prefix).read_bytes()
        if needle not in data:
            continue
        binary = artifact.kind not in (None, "plain") or b"\0" in data
        artifact.prefix_placeholder = placeholder
        artifact.file_mode = "binary" if binary else "text"
    return scanned


__all__ = ["detect_prefix"]
