"""Deterministic package archives."""

from __future__ import annotations

import gzip
import io
import os
import tarfile
from collections.abc import Mapping, Sequence
from pathlib import Path

from kiln.config import ArchiveFormat
from kiln.errors import PackagingError
from kiln.packaging.formats.base import OutputArtifact

_MODES: dict[str, str] = {"tar.bz2": "w:bz2", "tar.gz": "w:gz"}


def archive_name(dist_name: str, archive_format: ArchiveFormat) -> str:
    return f"{dist_name}.{archive_format}"


def _normalize(info: tarfile.TarInfo, *, mtime: int) -> tarfile.TarInfo:
    info.mtime = mtime
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    if info.isfile():
        info.mode = 0o755 if info.mode & 0o111 else 0o644
    return info


def write_archive(
    destination: Path,
    *,
    artifacts: Sequence[OutputArtifact],
    prefix: Path,
    info: Mapping[str, bytes],
    mtime: int,
    archive_format: ArchiveFormat = "tar.bz2",
) -> Path:
    """Write package files plus ``info/`` members with sorted names and fixed metadata.

    Rebuilding the same inputs yields a byte-identical archive.
    """
    mode = _MODES.get(archive_format)
    if mode is None:
        raise PackagingError(
            f"Unsupported archive format `{archive_format}`.",
            context={"path": str(destination)},
        )
    destination.parent.mkdir(parents=True, exist_ok=True)
    members: dict[str, OutputArtifact | bytes] = {artifact.path: artifact for artifact in artifacts}
    for name, data in info.items():
        if name in members:
            raise PackagingError(
                "Package file collides with generated metadata.",
                context={"path": name},
            )
        members[name] = data

    # written beside the destination and moved into place only once complete
    partial = destination.with_name(f".{destination.name}.partial")
    try:
        with open(partial, "wb") as raw:
            if archive_format == "tar.gz":
                # the gzip header carries its own mtime
                compressed = gzip.GzipFile(fileobj=raw, mode="wb", mtime=mtime, filename="")
                with compressed, tarfile.open(fileobj=compressed, mode="w", format=tarfile.PAX_FORMAT) as tar:
                    _add_members(tar, members, prefix=prefix, mtime=mtime)
            else:
                with tarfile.open(fileobj=raw, mode=mode, format=tarfile.PAX_FORMAT) as tar:
                    _add_members(tar, members, prefix=prefix, mtime=mtime)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    os.replace(partial, destination)
    return destination


def _add_members(
    tar: tarfile.TarFile,
    members: Mapping[str, OutputArtifact | bytes],
    *,
    prefix: Path,
    mtime: int,
) -> None:
    for name in sorted(members):
        member = members[name]
        if isinstance(member, bytes):
            info = tarfile.TarInfo(name)
            info.size = len(member)
            info.mode = 0o644
            tar.addfile(_normalize(info, mtime=mtime), io.BytesIO(member))
            continue
        path = member.absolute(prefix)
        info = tar.gettarinfo(str(path), arcname=name)
        info = _normalize(info, mtime=mtime)
        if info.isfile():
            with open(path, "rb") as handle:
                tar.addfile(info, handle)
        elif info.issym():
            info.linkname = os.readlink(path)
            tar.addfile(info)
        else:
            raise PackagingError(
                "Only regular files and symlinks can be packaged.",
                context={"path": name},
            )


__all__ = ["archive_name", "write_archive"]
