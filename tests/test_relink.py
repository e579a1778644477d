from collections.abc import Callable
from pathlib import Path

import pytest
from binaries import build_elf, build_macho, build_pe

from kiln.errors import PackagingError
from kiln.observability import StructuredLogger
from kiln.packaging import relink
from kiln.packaging.formats import ElfFormat, Linkage, MachOFormat, OutputArtifact, PeFormat, classify
from kiln.packaging.relink import BinaryScanWarning, elf_linkage, macho_linkage, prefix_relative
from kiln.render import DynamicLinking


def test_classify_by_header(install: Callable[..., Path], prefix: Path) -> None:
    install("lib/libfoo.so", build_elf(needed=["libc.so.6"]))
    install("lib/libfoo.dylib", build_macho(install_name="/x/libfoo.dylib"))
    install("bin/foo.dll", build_pe(["KERNEL32.dll"]))
    install("share/readme.txt", "hello\n")
    (prefix / "lib" / "libfoo.so.1").symlink_to("libfoo.so")

    assert classify(prefix / "lib/libfoo.so") == "elf"
    assert classify(prefix / "lib/libfoo.dylib") == "macho"
    assert classify(prefix / "bin/foo.dll") == "pe"
    assert classify(prefix / "share/readme.txt") == "plain"
    assert classify(prefix / "lib/libfoo.so.1") == "symlink"


def test_elf_linkage_is_read_from_the_dynamic_section(tmp_path: Path) -> None:
    path = tmp_path / "libfoo.so"
    path.write_bytes(build_elf(needed=["libz.so.1", "libc.so.6"], rpath="/opt/a:/opt/b", soname="libfoo.so.1"))

    linkage = ElfFormat().read_linkage(path)

    assert linkage == Linkage(
        needed=("libz.so.1", "libc.so.6"),
        rpaths=("/opt/a", "/opt/b"),
        install_name="libfoo.so.1",
    )


def test_elf_relink_makes_rpaths_origin_relative(install: Callable[..., Path], prefix: Path) -> None:
    path = install("lib/python3.10/site-packages/_foo.so", build_elf(needed=["libz.so.1"], rpath=f"{prefix}/lib"))
    size = path.stat().st_size
    artifact = OutputArtifact(path="lib/python3.10/site-packages/_foo.so")
    logger = StructuredLogger()

    relink([artifact], prefix=prefix, dynamic_linking=DynamicLinking(), logger=logger, output="foo")

    assert artifact.kind == "elf"
    assert artifact.linkage is not None
    assert artifact.linkage.rpaths == ("$ORIGIN/../..",)
    assert artifact.linkage.needed == ("libz.so.1",)
    assert path.stat().st_size == size
    assert str(prefix).encode() not in path.read_bytes()
    assert logger.records_for_operation("relink")[0]["output"] == "foo"


def test_relinking_twice_changes_nothing(install: Callable[..., Path], prefix: Path) -> None:
    elf = install("bin/tool", build_elf(rpath=f"$ORIGIN/../lib:{prefix}/lib"))
    dylib = install(
        "lib/libbar.dylib",
        build_macho(
            install_name=f"{prefix}/lib/libbar.dylib",
            needed=[f"{prefix}/lib/libz.1.dylib", "/usr/lib/libSystem.B.dylib"],
            rpaths=[f"{prefix}/lib"],
        ),
    )
    artifacts = [OutputArtifact(path="bin/tool"), OutputArtifact(path="lib/libbar.dylib")]

    relink(artifacts, prefix=prefix, dynamic_linking=DynamicLinking())
    first = (elf.read_bytes(), dylib.read_bytes())
    logger = StructuredLogger()
    relink(artifacts, prefix=prefix, dynamic_linking=DynamicLinking(), logger=logger)

    assert (elf.read_bytes(), dylib.read_bytes()) == first
    assert logger.records_for_operation("relink") == []
    assert artifacts[0].linkage is not None
    assert artifacts[0].linkage.rpaths == ("$ORIGIN/../lib",)
    assert artifacts[1].linkage == Linkage(
        needed=("@rpath/libz.1.dylib", "/usr/lib/libSystem.B.dylib"),
        rpaths=("@loader_path",),
        install_name="@rpath/libbar.dylib",
    )


def test_macho_dylib_without_matching_rpath_is_loader_relative(
    install: Callable[..., Path],
    prefix: Path,
) -> None:
    install(
        "bin/tool",
        build_macho(needed=[f"{prefix}/lib/libz.1.dylib", f"{prefix}/lib/foo/libfoo.dylib"]),
    )
    artifact = OutputArtifact(path="bin/tool")

    relink([artifact], prefix=prefix, dynamic_linking=DynamicLinking())

    assert artifact.linkage == Linkage(
        needed=("@loader_path/../lib/libz.1.dylib", "@loader_path/../lib/foo/libfoo.dylib"),
        rpaths=(),
    )


def test_macho_rpath_only_covers_its_own_directory() -> None:
    linkage = Linkage(needed=("/p/lib/libz.dylib", "/p/lib/foo/libfoo.dylib"), rpaths=("/p/lib",))

    updated = macho_linkage("bin/tool", linkage, prefixes=("/p",))

    assert updated.needed == ("@rpath/libz.dylib", "@loader_path/../lib/foo/libfoo.dylib")
    assert updated.rpaths == ("@loader_path/../lib",)


def test_relinked_rpath_longer_than_reserved_space_fails(install: Callable[..., Path], prefix: Path) -> None:
    install("bin/tool", build_elf(rpath=f"{prefix}/lib"))
    long_rpath = "lib/" + "x" * (len(str(prefix)) + 32)

    with pytest.raises(PackagingError) as excinfo:
        relink(
            [OutputArtifact(path="bin/tool")],
            prefix=prefix,
            dynamic_linking=DynamicLinking(rpaths=("lib/", long_rpath)),
        )

    assert excinfo.value.context["reserved"] == str(len(f"{prefix}/lib"))


def test_binary_relocation_can_be_disabled(install: Callable[..., Path], prefix: Path) -> None:
    path = install("bin/tool", build_elf(rpath=f"{prefix}/lib"))
    before = path.read_bytes()
    artifact = OutputArtifact(path="bin/tool")

    relink([artifact], prefix=prefix, dynamic_linking=DynamicLinking(binary_relocation=False))

    assert path.read_bytes() == before
    assert artifact.linkage is not None
    assert artifact.linkage.rpaths == (f"{prefix}/lib",)


def test_unparseable_binary_warns_and_is_treated_as_plain(install: Callable[..., Path], prefix: Path) -> None:
    install("lib/broken.so", b"\x7fELF" + b"\0" * 12)
    artifact = OutputArtifact(path="lib/broken.so")

    with pytest.warns(BinaryScanWarning):
        relink([artifact], prefix=prefix, dynamic_linking=DynamicLinking())

    assert artifact.kind == "plain"


def test_pe_imports_are_read_but_never_rewritten(install: Callable[..., Path], prefix: Path) -> None:
    path = install("Library/bin/foo.dll", build_pe(["KERNEL32.dll", "zlib.dll"]))
    before = path.read_bytes()
    artifact = OutputArtifact(path="Library/bin/foo.dll")

    relink([artifact], prefix=prefix, dynamic_linking=DynamicLinking())

    assert artifact.linkage == Linkage(needed=("KERNEL32.dll", "zlib.dll"))
    assert path.read_bytes() == before
    with pytest.raises(PackagingError):
        PeFormat().rewrite_linkage(path, Linkage(needed=("KERNEL32.dll",)))


def test_macho_rewrite_must_fit_the_load_command(tmp_path: Path) -> None:
    path = tmp_path / "libfoo.dylib"
    path.write_bytes(build_macho(install_name="/a/libfoo.dylib"))

    with pytest.raises(PackagingError, match="does not fit"):
        MachOFormat().rewrite_linkage(path, Linkage(install_name="/" + "y" * 64 + "/libfoo.dylib"))


def test_elf_linkage_rules() -> None:
    linkage = Linkage(rpaths=("/usr/lib", "/p/lib"))

    updated = elf_linkage("lib/libfoo.so", linkage, prefixes=("/p",), rpaths=("lib/",))

    assert updated.rpaths == ("/usr/lib", "$ORIGIN")
    assert elf_linkage("bin/tool", Linkage(rpaths=("/usr/lib",)), prefixes=("/p",), rpaths=("lib/",)).rpaths == (
        "/usr/lib",
    )
    assert prefix_relative("/p/lib/", ("/p",)) == "lib"
    assert prefix_relative("/prefix2/lib", ("/p",)) is None
