"""Minimal hand-built ELF, Mach-O and PE images."""

from __future__ import annotations

import struct
from collections.abc import Sequence
from pathlib import Path

DT_NULL = 0
DT_NEEDED = 1
DT_SONAME = 14
DT_RPATH = 15
DT_RUNPATH = 29

LC_LOAD_DYLIB = 0xC
LC_ID_DYLIB = 0xD
LC_RPATH = 0x8000001C


def _align(value: int, to: int = 8) -> int:
    return (value + to - 1) // to * to


def build_elf(
    *,
    needed: Sequence[str] = (),
    rpath: str | None = None,
    soname: str | None = None,
    runpath: bool = False,
) -> bytes:
    """A little-endian ELF64 shared object with only ``.dynstr`` and ``.dynamic``."""
    dynstr = bytearray(b"\0")

    def add(text: str) -> int:
        offset = len(dynstr)
        dynstr.extend(text.encode("utf-8") + b"\0")
        return offset

    entries = [(DT_NEEDED, add(name)) for name in needed]
    if soname is not None:
        entries.append((DT_SONAME, add(soname)))
    if rpath is not None:
        entries.append((DT_RUNPATH if runpath else DT_RPATH, add(rpath)))
    entries.append((DT_NULL, 0))
    dynamic = b"".join(struct.pack("<qQ", tag, value) for tag, value in entries)
    shstrtab = b"\0.dynstr\0.dynamic\0.shstrtab\0"

    dynstr_offset = 64
    dynamic_offset = _align(dynstr_offset + len(dynstr))
    shstrtab_offset = dynamic_offset + len(dynamic)
    section_offset = _align(shstrtab_offset + len(shstrtab))

    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\0" * 8
    header = struct.pack(
        "<16sHHIQQQIHHHHHH", ident, 3, 62, 1, 0, 0, section_offset, 0, 64, 56, 0, 64, 4, 3
    )
    sections = [
        struct.pack("<IIQQQQIIQQ", 0, 0, 0, 0, 0, 0, 0, 0, 0, 0),
        struct.pack("<IIQQQQIIQQ", 1, 3, 2, 0, dynstr_offset, len(dynstr), 0, 0, 1, 0),
        struct.pack("<IIQQQQIIQQ", 9, 6, 3, 0, dynamic_offset, len(dynamic), 1, 0, 8, 16),
        struct.pack("<IIQQQQIIQQ", 18, 3, 0, 0, shstrtab_offset, len(shstrtab), 0, 0, 1, 0),
    ]

    image = bytearray(section_offset + 64 * len(sections))
    image[0:64] = header
    image[dynstr_offset : dynstr_offset + len(dynstr)] = dynstr
    image[dynamic_offset : dynamic_offset + len(dynamic)] = dynamic
    image[shstrtab_offset : shstrtab_offset + len(shstrtab)] = shstrtab
    for index, section in enumerate(sections):
        start = section_offset + 64 * index
        image[start : start + 64] = section
    return bytes(image)


def _string_command(cmd: int, fixed: bytes, value: str) -> bytes:
    name_offset = 8 + len(fixed) + 4
    size = _align(name_offset + len(value) + 1)
    body = struct.pack("<III", cmd, size, name_offset) + fixed
    return body + value.encode("utf-8") + b"\0" * (size - len(body) - len(value))


def build_macho(
    *,
    install_name: str | None = None,
    needed: Sequence[str] = (),
    rpaths: Sequence[str] = (),
) -> bytes:
    """A little-endian 64-bit Mach-O dylib header followed by its load commands."""
    dylib_fields = struct.pack("<III", 2, 0x10000, 0x10000)
    commands: list[bytes] = []
    if install_name is not None:
        commands.append(_string_command(LC_ID_DYLIB, dylib_fields, install_name))
    commands.extend(_string_command(LC_LOAD_DYLIB, dylib_fields, name) for name in needed)
    commands.extend(_string_command(LC_RPATH, b"", path) for path in rpaths)
    payload = b"".join(commands)
    header = struct.pack("<IiiIIIII", 0xFEEDFACF, 0x01000007, 3, 6, len(commands), len(payload), 0, 0)
    return header + payload + b"\0" * 64


def build_pe(imports: Sequence[str]) -> bytes:
    """A PE32+ image with one ``.idata`` section holding the import descriptors."""
    image = bytearray(0x400)
    image[0:2] = b"MZ"
    struct.pack_into("<I", image, 0x3C, 0x40)
    image[0x40:0x44] = b"PE\0\0"
    optional_size = 112 + 16 * 8
    struct.pack_into("<HHIIIHH", image, 0x44, 0x8664, 1, 0, 0, 0, optional_size, 0x22)
    optional = 0x58
    struct.pack_into("<H", image, optional, 0x20B)
    struct.pack_into("<I", image, optional + 108, 16)

    section_rva, section_raw = 0x1000, 0x200
    descriptors_size = 20 * (len(imports) + 1)
    struct.pack_into("<II", image, optional + 112 + 8, section_rva, descriptors_size)
    table = optional + optional_size
    image[table : table + 8] = b".idata\0\0"
    struct.pack_into("<IIII", image, table + 8, 0x200, section_rva, 0x200, section_raw)

    name_cursor = descriptors_size
    for index, name in enumerate(imports):
        struct.pack_into("<IIIII", image, section_raw + 20 * index, 0, 0, 0, section_rva + name_cursor, 0)
        encoded = name.encode("ascii") + b"\0"
        image[section_raw + name_cursor : section_raw + name_cursor + len(encoded)] = encoded
        name_cursor += len(encoded)
    return bytes(image)


def write_file(path: Path, data: bytes | str, *, executable: bool = False) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        path.write_text(data, encoding="utf-8")
    else:
        path.write_bytes(data)
    if executable:
        path.chmod(0o755)
    return path
