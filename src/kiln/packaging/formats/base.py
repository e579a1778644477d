"""Binary classification and the linkage capability shared by all formats."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

BinaryKind = Literal["elf", "macho", "pe", "plain", "symlink"]
FileMode = Literal["text", "binary"]

# large enough to reach the PE signature behind the DOS stub
HEADER_SIZE = 4096


@dataclass(frozen=True, slots=True)
class Linkage:
    """Dynamic linking metadata of one binary.

    ``rpaths`` holds ELF ``DT_RPATH``/``DT_RUNPATH`` entries and Mach-O
    ``LC_RPATH`` entries in file order; ``needed`` holds ``DT_NEEDED`` entries,
    Mach-O ``LC_LOAD_DYLIB`` names or PE import DLL names.
    """

    needed: tuple[str, ...] = ()
    rpaths: tuple[str, ...] = ()
    install_name: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"needed": list(self.needed), "rpaths": list(self.rpaths)}
        if self.install_name is not None:
            payload["install_name"] = self.install_name
        return payload


@dataclass(slots=True)
class OutputArtifact:
    """One file produced by a build, relative to the install prefix.

    ``kind`` and ``linkage`` are filled by scanning and updated by relinking;
    ``prefix_placeholder`` and ``file_mode`` are set by prefix detection.
    """

    path: str
    kind: BinaryKind | None = None
    linkage: Linkage | None = None
    prefix_placeholder: str | None = None
    file_mode: FileMode | None = None

    def absolute(self, prefix: Path) -> Path:
        return prefix / self.path


class BinaryFormat(Protocol):
    kind: BinaryKind

    def classify(self, header: bytes) -> bool:
        """Return True when ``header`` starts a file of this format."""

    def read_linkage(self, path: Path) -> Linkage:
        """Parse the linkage metadata of ``path``."""

    def rewrite_linkage(self, path: Path, updated: Linkage) -> bool:
        """Rewrite ``path`` in place so it carries ``updated``; return True if bytes changed.

        Implementations never change the file size and raise ``PackagingError``
        when the new metadata does not fit.
        """


def read_header(path: Path) -> bytes:
    with open(path, "rb") as handle:
        return handle.read(HEADER_SIZE)


__all__ = [
    "BinaryFormat",
    "BinaryKind",
    "FileMode",
    "HEADER_SIZE",
    "Linkage",
    "OutputArtifact",
    "read_header",
]
