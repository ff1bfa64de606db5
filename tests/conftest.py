"""Shared test fixtures."""

from __future__ import annotations

import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from wasmsysroot.config import BuildConfig
from wasmsysroot.drivers import InProcessDriver
from wasmsysroot.toolchain import ToolchainDescriptor

FAKE_TOOLS = ("clang", "clang++", "wasm-ld", "llvm-ar", "cmake", "ninja", "make")

SOURCE_FILES = {
    "compat/include/ctype.h": "#pragma once\n",
    "dlmalloc/dlmalloc.c": "void *malloc(unsigned long n);\n",
    "compiler-rt/lib/builtins/addsf3.c": "float __addsf3(float a, float b);\n",
    "compiler-rt/lib/builtins/divdi3.c": "long long __divdi3(long long a, long long b);\n",
    "compiler-rt/lib/builtins/emutls.c": "/* excluded */\n",
    "compiler-rt/lib/builtins/gcc_personality_v0.c": "/* excluded */\n",
    "compiler-rt/lib/builtins/apple_versioning.c": "/* excluded */\n",
    "musl/Makefile": "install:\n",
    "libunwind/include/libunwind.h": "#pragma once\n",
    "libunwind/include/unwind.h": "#pragma once\n",
    "libcxxabi/include/cxxabi.h": "#pragma once\n",
    "libcxxabi/include/__cxxabi_config.h": "#pragma once\n",
    "libcxx/include/__config": "#pragma once\n",
    "libcxx/include/vector": "#pragma once\n",
    "zlib/zlib.h": "#pragma once\n",
    "zlib/configure": "#!/bin/sh\nexit 0\n",
}


def write_executable(path: Path, body: str = "exit 0\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def make_executable() -> Callable[..., Path]:
    return write_executable


@pytest.fixture
def tool_dir(tmp_path: Path) -> Path:
    """Directory of no-op executables standing in for the LLVM and build tools."""
    directory = tmp_path / "tools" / "bin"
    for name in FAKE_TOOLS:
        write_executable(directory / name)
    return directory


@pytest.fixture
def toolchain(tool_dir: Path) -> ToolchainDescriptor:
    return ToolchainDescriptor.create(
        compiler=tool_dir / "clang",
        cxx_compiler=tool_dir / "clang++",
        linker=tool_dir / "wasm-ld",
        archiver=tool_dir / "llvm-ar",
        cmake=tool_dir / "cmake",
        ninja=tool_dir / "ninja",
        make=tool_dir / "make",
    )


@pytest.fixture
def sources_dir(tmp_path: Path) -> Path:
    root = tmp_path / "sources"
    for relative, content in SOURCE_FILES.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    (root / "zlib" / "configure").chmod(0o755)
    return root


@pytest.fixture
def build_config(tmp_path: Path, sources_dir: Path) -> BuildConfig:
    llvm_src = tmp_path / "llvm"
    llvm_src.mkdir()
    return BuildConfig(
        sources_dir=sources_dir,
        build_root=tmp_path / "build",
        sysroot_dir=tmp_path / "sysroot",
        llvm_src=llvm_src,
    )


@pytest.fixture
def inprocess_driver() -> InProcessDriver:
    """Provide an in-process driver for tests that run the orchestrator."""
    return InProcessDriver()
