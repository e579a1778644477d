"""ELF dynamic section reading and in-place run-path rewriting."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSection
from elftools.elf.elffile import ELFFile

from kiln.errors import PackagingError
from kiln.packaging.formats.base import BinaryKind, Linkage

ELF_MAGIC = b"\x7fELF"
RPATH_TAGS = ("DT_RPATH", "DT_RUNPATH")


@dataclass(frozen=True, slots=True)
class _DynamicString:
    tag: str
    value: str
    offset: int


def _dynamic_strings(path: Path) -> list[_DynamicString]:
    strings: list[_DynamicString] = []
    try:
        with open(path, "rb") as handle:
            elffile = ELFFile(handle)
            for section in elffile.iter_sections():
                if not isinstance(section, DynamicSection):
                    continue
                strtab = elffile.get_section(section["sh_link"])
                base = strtab["sh_offset"]
                for tag in section.iter_tags():
                    name = tag.entry.d_tag
                    if name == "DT_NEEDED":
                        value = tag.needed
                    elif name == "DT_RPATH":
                        value = tag.rpath
                    elif name == "DT_RUNPATH":
                        value = tag.runpath
                    elif name == "DT_SONAME":
                        value = tag.soname
                    else:
                        continue
                    strings.append(_DynamicString(tag=name, value=value, offset=base + tag.entry.d_val))
    except (ELFError, ValueError, IndexError) as exc:
        raise PackagingError(
            "Malformed ELF dynamic section.",
            context={"path": str(path), "error": str(exc)},
        ) from exc
    return strings


def _rpath_slots(strings: list[_DynamicString]) -> list[_DynamicString]:
    slots: list[_DynamicString] = []
    for entry in strings:
        # DT_RPATH and DT_RUNPATH may share one string
        if entry.tag in RPATH_TAGS and all(slot.offset != entry.offset for slot in slots):
            slots.append(entry)
    return slots


@dataclass(frozen=True, slots=True)
class ElfFormat:
    kind: BinaryKind = "elf"

    def classify(self, header: bytes) -> bool:
        return header.startswith(ELF_MAGIC)

    def read_linkage(self, path: Path) -> Linkage:
        strings = _dynamic_strings(path)
        rpaths: list[str] = []
        for entry in _rpath_slots(strings):
            rpaths.extend(part for part in entry.value.split(":") if part)
        sonames = [entry.value for entry in strings if entry.tag == "DT_SONAME"]
        return Linkage(
            needed=tuple(entry.value for entry in strings if entry.tag == "DT_NEEDED"),
            rpaths=tuple(rpaths),
            install_name=sonames[0] if sonames else None,
        )

    def rewrite_linkage(self, path: Path, updated: Linkage) -> bool:
        """Rewrite the run-path strings in ``.dynstr`` without moving anything.

        All entries go into the first ``DT_RPATH``/``DT_RUNPATH`` string and any
        further run-path strings are blanked. The new value may not be longer
        than the string it replaces.
        """
        strings = _dynamic_strings(path)
        current = self.read_linkage(path)
        if current.needed != updated.needed or current.install_name != updated.install_name:
            raise PackagingError(
                "ELF rewriting only supports run-path changes.",
                context={"path": str(path)},
            )
        if current.rpaths == updated.rpaths:
            return False
        slots = _rpath_slots(strings)
        if not slots:
            raise PackagingError(
                "ELF file has no run-path entry to rewrite.",
                hint="Link with an rpath (for example `-Wl,-rpath,$PREFIX/lib`) to reserve space.",
                context={"path": str(path)},
            )

        new_value = ":".join(updated.rpaths).encode("utf-8")
        writes: list[tuple[int, bytes]] = []
        for index, slot in enumerate(slots):
            reserved = len(slot.value.encode("utf-8"))
            value = new_value if index == 0 else b""
            if len(value) > reserved:
                raise PackagingError(
                    "Relinked rpath is longer than the space reserved in the binary.",
                    hint="Link with a longer placeholder rpath or trim `dynamic_linking.rpaths`.",
                    context={
                        "path": str(path),
                        "rpath": new_value.decode("utf-8"),
                        "reserved": str(reserved),
                    },
                )
            writes.append((slot.offset, value + b"\0" * (reserved - len(value))))

        with open(path, "r+b") as handle:
            for offset, data in writes:
                handle.seek(offset)
                handle.write(data)
        return True


__all__ = ["ELF_MAGIC", "ElfFormat"]
