"""Mach-O load command parsing and in-place install-name/rpath rewriting."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

from kiln.errors import PackagingError
from kiln.packaging.formats.base import BinaryKind, Linkage

MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
FAT_MAGIC = 0xCAFEBABE

LC_LOAD_DYLIB = 0xC
LC_ID_DYLIB = 0xD
LC_LOAD_WEAK_DYLIB = 0x80000018
LC_RPATH = 0x8000001C
LC_REEXPORT_DYLIB = 0x8000001F
DYLIB_COMMANDS = frozenset({LC_LOAD_DYLIB, LC_LOAD_WEAK_DYLIB, LC_REEXPORT_DYLIB})

# more slices than this and the 0xcafebabe file is a Java class, not a fat binary
MAX_FAT_ARCHES = 20


@dataclass(frozen=True, slots=True)
class _Command:
    cmd: int
    # absolute file offsets of the string payload and the end of the command
    start: int
    end: int
    value: str


def _thin_header(data: bytes, base: int) -> tuple[str, int] | None:
    """Return (byte order, header size) for a thin Mach-O image at ``base``."""
    if len(data) < base + 4:
        return None
    for order in ("<", ">"):
        (magic,) = struct.unpack_from(f"{order}I", data, base)
        if magic == MH_MAGIC:
            return order, 28
        if magic == MH_MAGIC_64:
            return order, 32
    return None


def _slices(data: bytes) -> list[int]:
    if len(data) >= 8:
        magic, count = struct.unpack_from(">II", data, 0)
        if magic == FAT_MAGIC and 0 < count <= MAX_FAT_ARCHES:
            offsets: list[int] = []
            for index in range(count):
                # fat_arch: cputype, cpusubtype, offset, size, align
                _, _, offset, _, _ = struct.unpack_from(">iiIII", data, 8 + index * 20)
                offsets.append(offset)
            return offsets
    return [0]


def _commands(data: bytes, path: Path) -> list[_Command]:
    commands: list[_Command] = []
    for base in _slices(data):
        header = _thin_header(data, base)
        if header is None:
            raise PackagingError("Malformed Mach-O slice.", context={"path": str(path), "offset": str(base)})
        order, header_size = header
        ncmds, sizeofcmds = struct.unpack_from(f"{order}II", data, base + 16)
        cursor = base + header_size
        limit = cursor + sizeofcmds
        for _ in range(ncmds):
            if cursor + 8 > min(limit, len(data)):
                raise PackagingError("Truncated Mach-O load commands.", context={"path": str(path)})
            cmd, cmdsize = struct.unpack_from(f"{order}II", data, cursor)
            if cmdsize < 8 or cursor + cmdsize > len(data):
                raise PackagingError("Malformed Mach-O load command.", context={"path": str(path)})
            if cmd in DYLIB_COMMANDS or cmd in (LC_ID_DYLIB, LC_RPATH):
                (offset,) = struct.unpack_from(f"{order}I", data, cursor + 8)
                start = cursor + offset
                end = cursor + cmdsize
                raw = data[start:end].split(b"\0", 1)[0]
                commands.append(_Command(cmd=cmd, start=start, end=end, value=raw.decode("utf-8")))
            cursor += cmdsize
    return commands


def _unique(values: list[str]) -> tuple[str, ...]:
    # fat binaries repeat the same commands once per slice
    return tuple(dict.fromkeys(values))


@dataclass(frozen=True, slots=True)
class MachOFormat:
    kind: BinaryKind = "macho"

    def classify(self, header: bytes) -> bool:
        if _thin_header(header, 0) is not None:
            return True
        if len(header) >= 8:
            magic, count = struct.unpack_from(">II", header, 0)
            return magic == FAT_MAGIC and 0 < count <= MAX_FAT_ARCHES
        return False

    def read_linkage(self, path: Path) -> Linkage:
        commands = _commands(path.read_bytes(), path)
        ids = [command.value for command in commands if command.cmd == LC_ID_DYLIB]
        return Linkage(
            needed=_unique([command.value for command in commands if command.cmd in DYLIB_COMMANDS]),
            rpaths=_unique([command.value for command in commands if command.cmd == LC_RPATH]),
            install_name=ids[0] if ids else None,
        )

    def rewrite_linkage(self, path: Path, updated: Linkage) -> bool:
        """Rewrite each load command string in place, one-to-one with ``updated``."""
        data = bytearray(path.read_bytes())
        commands = _commands(bytes(data), path)
        current = self.read_linkage(path)
        if len(current.needed) != len(updated.needed) or len(current.rpaths) != len(updated.rpaths):
            raise PackagingError(
                "Mach-O rewriting cannot add or remove load commands.",
                context={"path": str(path)},
            )
        if (current.install_name is None) != (updated.install_name is None):
            raise PackagingError(
                "Mach-O rewriting cannot add or remove LC_ID_DYLIB.",
                context={"path": str(path)},
            )
        mapping: dict[tuple[int, str], str] = {}
        for old, new in zip(current.needed, updated.needed, strict=True):
            for cmd in DYLIB_COMMANDS:
                mapping[(cmd, old)] = new
        for old, new in zip(current.rpaths, updated.rpaths, strict=True):
            mapping[(LC_RPATH, old)] = new
        if current.install_name is not None and updated.install_name is not None:
            mapping[(LC_ID_DYLIB, current.install_name)] = updated.install_name

        changed = False
        for command in commands:
            new_value = mapping.get((command.cmd, command.value), command.value)
            if new_value == command.value:
                continue
            encoded = new_value.encode("utf-8")
            space = command.end - command.start
            if len(encoded) + 1 > space:
                raise PackagingError(
                    "Relinked Mach-O path does not fit its load command.",
                    hint="Link with `-headerpad_max_install_names` to reserve space.",
                    context={
                        "path": str(path),
                        "value": new_value,
                        "reserved": str(space - 1),
                    },
                )
            data[command.start : command.end] = encoded + b"\0" * (space - len(encoded))
            changed = True
        if changed:
            path.write_bytes(bytes(data))
        return changed


__all__ = ["FAT_MAGIC", "MH_MAGIC", "MH_MAGIC_64", "MachOFormat"]
