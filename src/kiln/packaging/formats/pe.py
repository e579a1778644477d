"""PE import table reading. PE files are never rewritten."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

from kiln.errors import PackagingError
from kiln.packaging.formats.base import BinaryKind, Linkage

PE_SIGNATURE = b"PE\0\0"
PE32 = 0x10B
PE32_PLUS = 0x20B
IMPORT_DIRECTORY = 1


@dataclass(frozen=True, slots=True)
class _Section:
    virtual_address: int
    virtual_size: int
    raw_offset: int
    raw_size: int


def _pe_offset(data: bytes) -> int | None:
    if len(data) < 0x40 or not data.startswith(b"MZ"):
        return None
    (offset,) = struct.unpack_from("<I", data, 0x3C)
    if data[offset : offset + 4] != PE_SIGNATURE:
        return None
    return offset


def _rva_to_offset(rva: int, sections: list[_Section]) -> int | None:
    for section in sections:
        size = max(section.virtual_size, section.raw_size)
        if section.virtual_address <= rva < section.virtual_address + size:
            return rva - section.virtual_address + section.raw_offset
    return None


def _c_string(data: bytes, offset: int) -> str:
    end = data.find(b"\0", offset)
    if end < 0:
        end = len(data)
    return data[offset:end].decode("ascii", errors="replace")


def read_imports(data: bytes, *, path: Path) -> tuple[str, ...]:
    pe = _pe_offset(data)
    if pe is None:
        raise PackagingError("Not a PE image.", context={"path": str(path)})
    try:
        _, section_count, _, _, _, optional_size, _ = struct.unpack_from("<HHIIIHH", data, pe + 4)
        optional = pe + 24
        (magic,) = struct.unpack_from("<H", data, optional)
        if magic == PE32:
            directories = optional + 96
            (directory_count,) = struct.unpack_from("<I", data, optional + 92)
        elif magic == PE32_PLUS:
            directories = optional + 112
            (directory_count,) = struct.unpack_from("<I", data, optional + 108)
        else:
            raise PackagingError(
                "Unknown PE optional header magic.",
                context={"path": str(path), "magic": hex(magic)},
            )
        sections: list[_Section] = []
        table = optional + optional_size
        for index in range(section_count):
            virtual_size, virtual_address, raw_size, raw_offset = struct.unpack_from(
                "<IIII", data, table + index * 40 + 8
            )
            sections.append(_Section(virtual_address, virtual_size, raw_offset, raw_size))
        if directory_count <= IMPORT_DIRECTORY:
            return ()
        import_rva, _ = struct.unpack_from("<II", data, directories + IMPORT_DIRECTORY * 8)
        if import_rva == 0:
            return ()
        cursor = _rva_to_offset(import_rva, sections)
        if cursor is None:
            raise PackagingError("PE import table lies outside every section.", context={"path": str(path)})
        names: list[str] = []
        while True:
            descriptor = struct.unpack_from("<IIIII", data, cursor)
            if not any(descriptor):
                break
            name_offset = _rva_to_offset(descriptor[3], sections)
            if name_offset is not None:
                names.append(_c_string(data, name_offset))
            cursor += 20
    except struct.error as exc:
        raise PackagingError("Truncated PE image.", context={"path": str(path), "error": str(exc)}) from exc
    return tuple(names)


@dataclass(frozen=True, slots=True)
class PeFormat:
    kind: BinaryKind = "pe"

    def classify(self, header: bytes) -> bool:
        return _pe_offset(header) is not None

    def read_linkage(self, path: Path) -> Linkage:
        return Linkage(needed=read_imports(path.read_bytes(), path=path))

    def rewrite_linkage(self, path: Path, updated: Linkage) -> bool:
        if updated != self.read_linkage(path):
            raise PackagingError(
                "PE imports are resolved by DLL search order and are never rewritten.",
                context={"path": str(path)},
            )
        return False


__all__ = ["PE_SIGNATURE", "PeFormat", "read_imports"]
