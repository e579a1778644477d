"""Rewrite library search paths so packaged binaries resolve inside any prefix."""

from __future__ import annotations

import posixpath
import warnings
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path

from kiln.errors import PackagingError
from kiln.observability import StructuredLogger
from kiln.packaging.formats import classify, format_for
from kiln.packaging.formats.base import Linkage, OutputArtifact
from kiln.render.plan import DynamicLinking


class BinaryScanWarning(UserWarning):
    """Warning raised when a file looks like a binary but cannot be parsed."""


def prefix_relative(entry: str, prefixes: Iterable[str]) -> str | None:
    """Return ``entry`` relative to the first prefix containing it, else None."""
    for prefix in prefixes:
        root = prefix.rstrip("/")
        if entry == root:
            return "."
        if entry.startswith(root + "/"):
            return entry[len(root) + 1 :].rstrip("/") or "."
    return None


def _relative_to(anchor: str, artifact_path: str, target: str) -> str:
    origin = posixpath.dirname(artifact_path) or "."
    relative = posixpath.relpath(target or ".", origin)
    return anchor if relative == "." else f"{anchor}/{relative}"


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def elf_linkage(
    artifact_path: str,
    linkage: Linkage,
    *,
    prefixes: tuple[str, ...],
    rpaths: tuple[str, ...],
) -> Linkage:
    """In-prefix run-path entries become ``$ORIGIN``-relative.

    The configured rpath directories are appended once some entry pointed into
    the prefix; binaries without such entries keep their run-path.
    """
    entries: list[str] = []
    in_prefix = False
    for entry in linkage.rpaths:
        relative = prefix_relative(entry, prefixes)
        if relative is None:
            entries.append(entry)
            continue
        in_prefix = True
        entries.append(_relative_to("$ORIGIN", artifact_path, relative))
    if not in_prefix:
        return linkage
    for configured in rpaths:
        entries.append(_relative_to("$ORIGIN", artifact_path, configured.strip("/")))
    return replace(linkage, rpaths=_unique(entries))


def macho_linkage(artifact_path: str, linkage: Linkage, *, prefixes: tuple[str, ...]) -> Linkage:
    """``LC_RPATH`` becomes ``@loader_path``-relative.

    An in-prefix dylib becomes ``@rpath/<name>`` when one of the binary's own
    in-prefix rpaths names its directory, and ``@loader_path/<relative path>``
    otherwise.
    """
    rpaths = []
    searched: set[str] = set()
    for entry in linkage.rpaths:
        relative = prefix_relative(entry, prefixes)
        if relative is None:
            rpaths.append(entry)
            continue
        searched.add(relative)
        rpaths.append(_relative_to("@loader_path", artifact_path, relative))
    needed = []
    for entry in linkage.needed:
        relative = prefix_relative(entry, prefixes)
        if relative is None:
            needed.append(entry)
        elif (posixpath.dirname(relative) or ".") in searched:
            needed.append(f"@rpath/{posixpath.basename(relative)}")
        else:
            needed.append(_relative_to("@loader_path", artifact_path, relative))
    install_name = linkage.install_name
    if install_name is not None and prefix_relative(install_name, prefixes) is not None:
        install_name = f"@rpath/{posixpath.basename(install_name)}"
    return Linkage(needed=tuple(needed), rpaths=tuple(rpaths), install_name=install_name)


def relink(
    artifacts: Iterable[OutputArtifact],
    *,
    prefix: Path,
    dynamic_linking: DynamicLinking,
    logger: StructuredLogger | None = None,
    output: str | None = None,
) -> list[OutputArtifact]:
    """Classify, scan and relink ``artifacts`` in place.

    Running it again over already relinked files changes nothing: every rule
    only touches absolute paths inside the prefix, which relinking removes.
    """
    logger = logger or StructuredLogger()
    prefixes = _unique((str(prefix), str(prefix.resolve())))
    relinked: list[OutputArtifact] = []
    for artifact in artifacts:
        path = artifact.absolute(prefix)
        artifact.kind = classify(path)
        binary_format = format_for(artifact.kind)
        if binary_format is None:
            relinked.append(artifact)
            continue
        try:
            linkage = binary_format.read_linkage(path)
        except PackagingError as exc:
            warnings.warn(
                f"Treating {artifact.path} as a plain file: {exc.message}",
                BinaryScanWarning,
                stacklevel=2,
            )
            artifact.kind = "plain"
            relinked.append(artifact)
            continue
        if dynamic_linking.binary_relocation:
            if artifact.kind == "elf":
                updated = elf_linkage(
                    artifact.path, linkage, prefixes=prefixes, rpaths=dynamic_linking.rpaths
                )
            elif artifact.kind == "macho":
                updated = macho_linkage(artifact.path, linkage, prefixes=prefixes)
            else:
                updated = linkage
            if binary_format.rewrite_linkage(path, updated):
                logger.log(
                    operation="relink",
                    output=output,
                    phase="package",
                    message="Rewrote dynamic linkage.",
                    extra={
                        "path": artifact.path,
                        "before": linkage.to_payload(),
                        "after": updated.to_payload(),
                    },
                )
                linkage = binary_format.read_linkage(path)
        artifact.linkage = linkage
        relinked.append(artifact)
    return relinked


__all__ = ["BinaryScanWarning", "elf_linkage", "macho_linkage", "prefix_relative", "relink"]
