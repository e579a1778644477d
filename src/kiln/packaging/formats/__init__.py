"""Binary format handlers behind one classification entry point."""

from __future__ import annotations

from pathlib import Path

from .base import BinaryFormat, BinaryKind, FileMode, Linkage, OutputArtifact, read_header
from .elf import ElfFormat
from .macho import MachOFormat
from .pe import PeFormat

FORMATS: tuple[BinaryFormat, ...] = (ElfFormat(), MachOFormat(), PeFormat())


def classify(path: Path) -> BinaryKind:
    """Classify by header bytes; anything unrecognized is ``plain``."""
    if path.is_symlink():
        return "symlink"
    header = read_header(path)
    for binary_format in FORMATS:
        if binary_format.classify(header):
            return binary_format.kind
    return "plain"


def format_for(kind: BinaryKind | None) -> BinaryFormat | None:
    for binary_format in FORMATS:
        if binary_format.kind == kind:
            return binary_format
    return None


__all__ = [
    "BinaryFormat",
    "BinaryKind",
    "ElfFormat",
    "FORMATS",
    "FileMode",
    "Linkage",
    "MachOFormat",
    "OutputArtifact",
    "PeFormat",
    "classify",
    "format_for",
]
