"""Assign every built file to exactly one output."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from functools import lru_cache

from kiln.errors import PackagingError
from kiln.packaging.formats.base import OutputArtifact
from kiln.render.plan import OutputPlan


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a file glob into a regex over prefix-relative POSIX paths.

    ``*`` and ``?`` stay inside one path component, ``**`` spans directories,
    and a trailing ``/`` selects everything below a directory.
    """
    if pattern.endswith("/"):
        pattern += "**"
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "[":
            end = pattern.find("]", index + 1)
            if end < 0:
                parts.append(re.escape(char))
            else:
                body = pattern[index + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                index = end
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("".join(parts) + r"\Z")


def path_matches(pattern: str, path: str) -> bool:
    """Patterns without a ``/`` match the file name in any directory."""
    pattern = pattern.strip()
    if pattern.startswith("./"):
        pattern = pattern[2:]
    if "/" not in pattern:
        return compile_glob(pattern).match(path.rsplit("/", 1)[-1]) is not None
    return compile_glob(pattern).match(path) is not None


def matches_any(patterns: Iterable[str], path: str) -> bool:
    return any(path_matches(pattern, path) for pattern in patterns)


def partition(
    artifacts: Iterable[OutputArtifact],
    outputs: Sequence[OutputPlan],
) -> dict[str, list[OutputArtifact]]:
    """Map output name to the files it owns.

    The first output in recipe order whose ``files`` globs match owns a file;
    the output without ``files`` takes whatever nobody else claimed.
    """
    ordered = sorted(outputs, key=lambda output: output.position)
    catch_alls = [output for output in ordered if output.is_catch_all]
    if len(catch_alls) > 1:
        raise PackagingError(
            "At most one output may omit `files`.",
            context={"outputs": ", ".join(output.name for output in catch_alls)},
        )
    owned: dict[str, list[OutputArtifact]] = {output.name: [] for output in ordered}
    for artifact in sorted(artifacts, key=lambda item: item.path):
        owner = next(
            (
                output
                for output in ordered
                if output.files is not None and matches_any(output.files, artifact.path)
            ),
            catch_alls[0] if catch_alls else None,
        )
        if owner is None:
            raise PackagingError(
                f"unclaimed file {artifact.path}",
                hint="Add a matching `build.files` glob or leave one output without `files`.",
                context={"path": artifact.path},
            )
        owned[owner.name].append(artifact)
    return owned


__all__ = ["compile_glob", "matches_any", "partition", "path_matches"]
