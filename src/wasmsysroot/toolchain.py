"""Immutable description of the WebAssembly target and its tool executables.

The descriptor replaces environment-driven tool discovery with an explicit
value: it is resolved and validated once per run, then passed by reference to
every planner and driver.  It also renders the CMake toolchain file that
teaches the configuration driver how to emulate a real target platform.
"""

from __future__ import annotations

import os
import re
import shutil
import textwrap
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .errors import ConfigurationError
from .models import ToolKind

Endianness = Literal["little", "big"]

DEFAULT_TRIPLE = "wasm32-unknown-unknown"

# arch -> (pointer width, endianness)
KNOWN_ARCHES: dict[str, tuple[int, Endianness]] = {
    "wasm32": (32, "little"),
    "wasm64": (64, "little"),
}

TRIPLE_COMPONENT = re.compile(r"^[A-Za-z0-9_.]+$")

REQUIRED_TOOLS = (ToolKind.CC, ToolKind.LD, ToolKind.AR)


@dataclass(frozen=True, slots=True)
class TargetTriple:
    arch: str
    vendor: str
    os: str
    environment: str | None = None

    @classmethod
    def parse(cls, text: str) -> TargetTriple:
        parts = text.strip().split("-")
        if len(parts) not in (3, 4) or not all(TRIPLE_COMPONENT.fullmatch(p) for p in parts):
            raise ConfigurationError(
                f"Malformed target triple: {text!r}.",
                hint="Use the form <arch>-<vendor>-<os>[-<environment>], e.g. wasm32-unknown-unknown.",
                context={"triple": text},
            )
        if parts[0] not in KNOWN_ARCHES:
            raise ConfigurationError(
                f"Unsupported target architecture: {parts[0]!r}.",
                hint=f"Supported architectures: {', '.join(sorted(KNOWN_ARCHES))}.",
                context={"triple": text},
            )
        environment = parts[3] if len(parts) == 4 else None
        return cls(arch=parts[0], vendor=parts[1], os=parts[2], environment=environment)

    def __str__(self) -> str:
        parts = [self.arch, self.vendor, self.os]
        if self.environment:
            parts.append(self.environment)
        return "-".join(parts)


@dataclass(frozen=True, slots=True)
class ToolchainDescriptor:
    triple: TargetTriple
    compiler: Path
    linker: Path
    archiver: Path
    cxx_compiler: Path | None = None
    cmake: Path | None = None
    ninja: Path | None = None
    make: Path | None = None

    def __post_init__(self) -> None:
        for kind in REQUIRED_TOOLS:
            _ensure_executable(self._path_for(kind), kind=kind)
        for kind in (ToolKind.CXX, ToolKind.CMAKE, ToolKind.NINJA, ToolKind.MAKE):
            path = self._path_for(kind)
            if path is not None:
                _ensure_executable(path, kind=kind)

    @classmethod
    def create(
        cls,
        *,
        triple: str | TargetTriple = DEFAULT_TRIPLE,
        compiler: str | Path,
        linker: str | Path,
        archiver: str | Path,
        cxx_compiler: str | Path | None = None,
        cmake: str | Path | None = "cmake",
        ninja: str | Path | None = "ninja",
        make: str | Path | None = "make",
    ) -> ToolchainDescriptor:
        """Resolve tool names against ``PATH`` and build a validated descriptor.

        Required tools that cannot be resolved raise ``ConfigurationError``;
        optional build tools that cannot be resolved are left unset and only
        fail once a library that needs them is requested.
        """
        parsed = triple if isinstance(triple, TargetTriple) else TargetTriple.parse(triple)
        return cls(
            triple=parsed,
            compiler=_resolve_required(compiler, kind=ToolKind.CC),
            linker=_resolve_required(linker, kind=ToolKind.LD),
            archiver=_resolve_required(archiver, kind=ToolKind.AR),
            cxx_compiler=_resolve_optional(cxx_compiler),
            cmake=_resolve_optional(cmake),
            ninja=_resolve_optional(ninja),
            make=_resolve_optional(make),
        )

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> ToolchainDescriptor:
        """Build a descriptor from ``LLVM_ROOT`` and ``WASM_*`` variables."""
        env = os.environ if environ is None else environ
        llvm_root = env.get("LLVM_ROOT")
        llvm_bin = Path(llvm_root) / "bin" if llvm_root else None

        def pick(var: str, llvm_tool: str) -> str | Path:
            value = env.get(var)
            if value:
                return value
            if llvm_bin is None:
                raise ConfigurationError(
                    f"Need `{var}` or `LLVM_ROOT` to locate the {llvm_tool} tool.",
                    hint="Export LLVM_ROOT pointing at an LLVM install with WebAssembly support.",
                    context={"variable": var},
                )
            return llvm_bin / llvm_tool

        return cls.create(
            triple=env.get("WASM_TARGET", DEFAULT_TRIPLE),
            compiler=pick("WASM_CC", "clang"),
            cxx_compiler=pick("WASM_CXX", "clang++"),
            linker=pick("WASM_LD", "wasm-ld"),
            archiver=pick("WASM_AR", "llvm-ar"),
            cmake=env.get("CMAKE", "cmake"),
            ninja=env.get("NINJA", "ninja"),
            make=env.get("MAKE", "make"),
        )

    @property
    def target(self) -> str:
        return str(self.triple)

    @property
    def pointer_width(self) -> int:
        return KNOWN_ARCHES[self.triple.arch][0]

    @property
    def pointer_size(self) -> int:
        return self.pointer_width // 8

    @property
    def endianness(self) -> Endianness:
        return KNOWN_ARCHES[self.triple.arch][1]

    def has_tool(self, kind: ToolKind) -> bool:
        return kind is ToolKind.SCRIPT or self._path_for(kind) is not None

    def tool_path(self, kind: ToolKind) -> Path:
        path = self._path_for(kind)
        if path is None:
            raise ConfigurationError(
                f"No executable configured for the `{kind}` tool.",
                hint=f"Install {kind} or pass its path when creating the toolchain.",
                context={"tool": str(kind), "operation": "tool_path"},
            )
        return path

    def require(self, kinds: Iterable[ToolKind], *, purpose: str) -> None:
        missing = sorted({str(kind) for kind in kinds if not self.has_tool(kind)})
        if missing:
            raise ConfigurationError(
                f"Missing build tools required by {purpose}: {', '.join(missing)}.",
                hint="Install the missing tools or pass their paths explicitly.",
                context={"tools": ",".join(missing), "operation": "require"},
            )

    def render_cmake_toolchain_file(self) -> str:
        pointer = self.pointer_size
        cxx = self.cxx_compiler or self.compiler
        big_endian = 1 if self.endianness == "big" else 0
        return textwrap.dedent(f"""\
            # Generated target description for {self.target}.
            cmake_minimum_required(VERSION 3.4.3)

            set(CMAKE_SYSTEM_NAME WebAssembly)
            set(CMAKE_SYSTEM_VERSION 1)
            set(CMAKE_SYSTEM_PROCESSOR {self.triple.arch})
            set(CMAKE_CROSSCOMPILING TRUE)
            set(UNIX ON)
            unset(WIN32)
            unset(APPLE)

            set(CMAKE_C_COMPILER "{self.compiler}" CACHE FILEPATH "C Compiler")
            set(CMAKE_CXX_COMPILER "{cxx}" CACHE FILEPATH "C++ Compiler")
            set(CMAKE_ASM_COMPILER "false")
            set(CMAKE_LINKER "{self.linker}" CACHE FILEPATH "Linker")
            set(CMAKE_AR "{self.archiver}" CACHE FILEPATH "Archiver")
            set(CMAKE_C_COMPILER_TARGET {self.target})
            set(CMAKE_CXX_COMPILER_TARGET {self.target})

            set(CMAKE_C_COMPILER_ID_RUN TRUE)
            set(CMAKE_C_COMPILER_FORCED TRUE)
            set(CMAKE_C_COMPILER_WORKS TRUE)
            set(CMAKE_C_COMPILER_ID Clang)
            set(CMAKE_CXX_COMPILER_ID_RUN TRUE)
            set(CMAKE_CXX_COMPILER_FORCED TRUE)
            set(CMAKE_CXX_COMPILER_WORKS TRUE)
            set(CMAKE_CXX_COMPILER_ID Clang)
            set(CMAKE_C_PLATFORM_ID "wasm")
            set(CMAKE_CXX_PLATFORM_ID "wasm")

            set(CMAKE_FIND_ROOT_PATH_MODE_PROGRAM NEVER)
            set(CMAKE_FIND_ROOT_PATH_MODE_LIBRARY ONLY)
            set(CMAKE_FIND_ROOT_PATH_MODE_INCLUDE ONLY)
            set(CMAKE_FIND_ROOT_PATH_MODE_PACKAGE ONLY)

            set(CMAKE_C_CREATE_STATIC_LIBRARY "<CMAKE_AR> rc <TARGET> <LINK_FLAGS> <OBJECTS>")
            set(CMAKE_CXX_CREATE_STATIC_LIBRARY "<CMAKE_AR> rc <TARGET> <LINK_FLAGS> <OBJECTS>")
            set(CMAKE_EXECUTABLE_SUFFIX ".wasm")

            set(CMAKE_SKIP_COMPATIBILITY_TESTS 1)
            set(CMAKE_SIZEOF_CHAR 1)
            set(CMAKE_SIZEOF_SHORT 2)
            set(CMAKE_SIZEOF_INT 4)
            set(CMAKE_SIZEOF_LONG {pointer})
            set(CMAKE_SIZEOF_VOID_P {pointer})
            set(CMAKE_SIZEOF_FLOAT 4)
            set(CMAKE_SIZEOF_DOUBLE 8)
            set(CMAKE_C_SIZEOF_DATA_PTR {pointer})
            set(CMAKE_CXX_SIZEOF_DATA_PTR {pointer})
            set(CMAKE_WORDS_BIGENDIAN {big_endian})
            set(CMAKE_DL_LIBS)

            set(WASM 1 CACHE BOOL "Targeting WebAssembly.")
            """)

    def write_cmake_toolchain_file(self, directory: str | Path) -> Path:
        """Write ``Platform/WebAssembly.cmake`` under *directory* and return its path."""
        path = Path(directory) / "Platform" / "WebAssembly.cmake"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render_cmake_toolchain_file(), encoding="utf-8")
        return path

    def _path_for(self, kind: ToolKind) -> Path | None:
        paths: dict[ToolKind, Path | None] = {
            ToolKind.CC: self.compiler,
            ToolKind.CXX: self.cxx_compiler or self.compiler,
            ToolKind.LD: self.linker,
            ToolKind.AR: self.archiver,
            ToolKind.CMAKE: self.cmake,
            ToolKind.NINJA: self.ninja,
            ToolKind.MAKE: self.make,
        }
        return paths.get(kind)


def _resolve(value: str | Path) -> Path | None:
    text = str(value)
    if os.sep in text or (os.altsep and os.altsep in text):
        return Path(text)
    found = shutil.which(text)
    return Path(found) if found else None


def _resolve_required(value: str | Path, *, kind: ToolKind) -> Path:
    resolved = _resolve(value)
    if resolved is None:
        raise ConfigurationError(
            f"Cannot resolve the `{kind}` tool {str(value)!r} to an executable.",
            hint="Pass an absolute path or make the tool available on PATH.",
            context={"tool": str(kind), "value": str(value)},
        )
    return resolved


def _resolve_optional(value: str | Path | None) -> Path | None:
    if value is None:
        return None
    return _resolve(value)


def _ensure_executable(path: Path | None, *, kind: ToolKind) -> None:
    if path is None or not path.is_file() or not os.access(path, os.X_OK):
        raise ConfigurationError(
            f"The `{kind}` tool does not resolve to an existing executable.",
            hint="Check the tool path and its executable bit.",
            context={"tool": str(kind), "path": str(path) if path is not None else ""},
        )


__all__ = [
    "DEFAULT_TRIPLE",
    "Endianness",
    "KNOWN_ARCHES",
    "TargetTriple",
    "ToolchainDescriptor",
]
