import json
import shutil
from pathlib import Path

import pytest

from wasmsysroot.errors import InstallError
from wasmsysroot.layout import SysrootTree
from wasmsysroot.models import Library


def test_install_copies_staged_sections_and_records_ownership(tmp_path: Path) -> None:
    stage = _stage(tmp_path / "stage", {"include/stdlib.h": "a", "lib/libc.a": "b", "bin/ignored": "c"})
    sysroot = SysrootTree(tmp_path / "sysroot")

    installed = sysroot.install(Library.LIBC, stage)

    assert (sysroot.include_dir / "stdlib.h").read_text(encoding="utf-8") == "a"
    assert sysroot.has_archive("libc.a")
    assert not (sysroot.root / "bin").exists()
    assert installed.archives == (sysroot.lib_dir / "libc.a",)
    manifest = json.loads(sysroot.manifest_path(Library.LIBC).read_text(encoding="utf-8"))
    assert manifest == {"library": "libc", "files": ["include/stdlib.h", "lib/libc.a"]}


def test_header_collision_between_libraries_is_rejected(tmp_path: Path) -> None:
    sysroot = SysrootTree(tmp_path / "sysroot")
    sysroot.install(Library.LIBC, _stage(tmp_path / "libc", {"include/unwind.h": "musl"}))

    with pytest.raises(InstallError) as excinfo:
        sysroot.install(
            Library.LIBUNWIND,
            _stage(tmp_path / "unwind", {"include/unwind.h": "llvm", "lib/libunwind.a": "x"}),
        )

    assert excinfo.value.context["owner"] == "libc"
    assert (sysroot.include_dir / "unwind.h").read_text(encoding="utf-8") == "musl"
    assert not sysroot.has_archive("libunwind.a")


def test_same_library_rebuild_overwrites_its_own_files(tmp_path: Path) -> None:
    sysroot = SysrootTree(tmp_path / "sysroot")
    sysroot.install(Library.ZLIB, _stage(tmp_path / "first", {"lib/libz.a": "old"}))

    sysroot.install(Library.ZLIB, _stage(tmp_path / "second", {"lib/libz.a": "new", "include/zlib.h": "h"}))

    assert sysroot.archive_path("libz.a").read_text(encoding="utf-8") == "new"
    assert sysroot.read_manifest(Library.ZLIB) == {"lib/libz.a", "include/zlib.h"}


def test_install_headers_places_them_under_prefix(tmp_path: Path) -> None:
    headers = _stage(tmp_path / "libcxx-include", {"__config": "x", "experimental/vector": "y"})
    sysroot = SysrootTree(tmp_path / "sysroot")

    sysroot.install_headers(Library.LIBCXX, headers, prefix="c++/v1")

    assert sysroot.has_header("c++/v1/__config")
    assert sysroot.has_header("c++/v1/experimental/vector")
    assert sysroot.owners()["include/c++/v1/__config"] is Library.LIBCXX
    assert list(sysroot.lib_dir.iterdir()) == []


def test_failed_copy_rolls_back_the_whole_library(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sysroot = SysrootTree(tmp_path / "sysroot")
    sysroot.install(Library.LIBC, _stage(tmp_path / "first", {"include/stdio.h": "v1"}))
    real_copy = shutil.copy2
    copies: list[str] = []

    def flaky_copy(source: Path, destination: Path) -> object:
        copies.append(Path(destination).name)
        if len(copies) == 3:
            raise OSError("disk full")
        return real_copy(source, destination)

    monkeypatch.setattr("wasmsysroot.layout.shutil.copy2", flaky_copy)

    with pytest.raises(InstallError) as excinfo:
        sysroot.install(
            Library.LIBC,
            _stage(
                tmp_path / "second",
                {"include/stdio.h": "v2", "include/stdlib.h": "v2", "lib/libc.a": "v2"},
            ),
        )

    assert "disk full" in excinfo.value.context["error"]
    assert (sysroot.include_dir / "stdio.h").read_text(encoding="utf-8") == "v1"
    assert not sysroot.has_header("stdlib.h")
    assert not sysroot.has_archive("libc.a")
    assert sysroot.read_manifest(Library.LIBC) == {"include/stdio.h"}


def test_install_merges_source_headers_with_staged_outputs(tmp_path: Path) -> None:
    stage = _stage(tmp_path / "stage", {"lib/libc++abi.a": "a", "include/__cxxabi_config.h": "built"})
    headers = _stage(tmp_path / "libcxxabi-include", {"cxxabi.h": "h", "__cxxabi_config.h": "source"})
    sysroot = SysrootTree(tmp_path / "sysroot")

    sysroot.install(Library.LIBCXXABI, stage, headers_dir=headers)

    assert (sysroot.include_dir / "cxxabi.h").read_text(encoding="utf-8") == "h"
    assert (sysroot.include_dir / "__cxxabi_config.h").read_text(encoding="utf-8") == "built"
    assert sysroot.read_manifest(Library.LIBCXXABI) == {
        "include/__cxxabi_config.h",
        "include/cxxabi.h",
        "lib/libc++abi.a",
    }


def test_missing_staged_output_fails_before_copying(tmp_path: Path) -> None:
    stage = _stage(tmp_path / "stage", {"include/zlib.h": "h"})
    sysroot = SysrootTree(tmp_path / "sysroot")

    with pytest.raises(InstallError) as excinfo:
        sysroot.install(Library.ZLIB, stage, expected=(stage / "lib" / "libz.a", stage / "include" / "zlib.h"))

    assert excinfo.value.context["missing"] == str(stage / "lib" / "libz.a")
    assert not sysroot.has_header("zlib.h")
    assert not sysroot.manifest_path(Library.ZLIB).exists()


def test_unwritable_manifest_directory_is_an_install_error(tmp_path: Path) -> None:
    sysroot = SysrootTree(tmp_path / "sysroot")
    sysroot.root.mkdir()
    sysroot.manifest_dir.write_text("not a directory", encoding="utf-8")

    with pytest.raises(InstallError) as excinfo:
        sysroot.install(Library.LIBC, _stage(tmp_path / "stage", {"lib/libc.a": "a"}))

    assert excinfo.value.context["library"] == "libc"
    assert excinfo.value.context["error"]
    assert not sysroot.has_archive("libc.a")


def test_corrupt_manifest_is_an_install_error(tmp_path: Path) -> None:
    sysroot = SysrootTree(tmp_path / "sysroot").create()
    sysroot.manifest_path(Library.LIBC).write_text("{", encoding="utf-8")

    with pytest.raises(InstallError):
        sysroot.read_manifest(Library.LIBC)


def _stage(root: Path, files: dict[str, str]) -> Path:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root
