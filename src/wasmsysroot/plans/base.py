"""Plan types and the context every per-library planner reads from."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from wasmsysroot.catalog import DEFAULT_CATALOG, Catalog, LibrarySpec, spec_for
from wasmsysroot.config import BuildConfig
from wasmsysroot.errors import ConfigurationError, PlanningError
from wasmsysroot.layout import SysrootTree
from wasmsysroot.models import BuildInvocation, Library
from wasmsysroot.toolchain import ToolchainDescriptor

# Vectorisation is off for every library, matching the flags the runtimes
# were brought up with.
DEFAULT_CODEGEN_FLAGS = ("-fno-vectorize", "-fno-slp-vectorize")
EMIT_WAST_FLAG = "-Wl,--emit-wast"


@dataclass(frozen=True, slots=True)
class BuildPlan:
    library: Library
    invocations: tuple[BuildInvocation, ...]
    scratch_dir: Path
    stage_dir: Path
    # Staged files the install step must find before copying anything.
    staged: tuple[Path, ...] = ()
    # Source-tree headers installed together with the staged outputs.
    headers: HeaderPlan | None = None

    def describe(self) -> list[str]:
        return [invocation.describe() for invocation in self.invocations]


@dataclass(frozen=True, slots=True)
class HeaderPlan:
    """Steps that put a library's public headers into ``headers_dir`` without building it."""

    library: Library
    invocations: tuple[BuildInvocation, ...]
    headers_dir: Path
    prefix: str = ""


@dataclass(frozen=True, slots=True)
class PlanContext:
    config: BuildConfig
    toolchain: ToolchainDescriptor
    sysroot: SysrootTree
    catalog: Catalog = field(default_factory=lambda: DEFAULT_CATALOG)
    cmake_toolchain_file: Path | None = None

    def spec(self, library: Library) -> LibrarySpec:
        return spec_for(library, self.catalog)

    def source_dir(self, spec: LibrarySpec) -> Path:
        return self.config.sources_dir / spec.source

    def scratch_dir(self, library: Library) -> Path:
        return self.config.scratch_dir(library)

    def stage_dir(self, library: Library) -> Path:
        return self.scratch_dir(library) / "stage"

    def header_stage_dir(self, library: Library) -> Path:
        return self.scratch_dir(library) / "headers"

    def compile_flags(self) -> tuple[str, ...]:
        return (
            f"--target={self.toolchain.target}",
            *DEFAULT_CODEGEN_FLAGS,
            "-isystem",
            str(self.sysroot.include_dir),
        )

    def link_flags(self) -> tuple[str, ...]:
        flags = [f"-L{self.sysroot.lib_dir}"]
        if self.config.emit_wast:
            flags.append(EMIT_WAST_FLAG)
        return tuple(flags)

    def placeholders(self, spec: LibrarySpec) -> dict[str, str]:
        llvm_src = self.config.llvm_src
        return {
            "sysroot": str(self.sysroot.root),
            "include": str(self.sysroot.include_dir),
            "lib": str(self.sysroot.lib_dir),
            "source": str(self.source_dir(spec)),
            "sources": str(self.config.sources_dir),
            "stage": str(self.stage_dir(spec.library)),
            "target": self.toolchain.target,
            "arch": self.toolchain.triple.arch,
            "llvm_src": str(llvm_src) if llvm_src is not None else "",
            "cc": str(self.toolchain.compiler),
            "ar": str(self.toolchain.archiver),
            "cflags": " ".join(self.compile_flags()),
            "ldflags": " ".join(self.link_flags()),
        }

    def format(self, template: str, values: Mapping[str, str]) -> str:
        try:
            return template.format_map(values)
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigurationError(
                "Catalog flag template references an unknown placeholder.",
                hint=f"Known placeholders: {', '.join(sorted(values))}.",
                context={"template": template, "error": str(exc)},
            ) from exc


class PlanStrategy(Protocol):
    def plan(self, spec: LibrarySpec, context: PlanContext) -> BuildPlan:
        """Return the ordered invocations that build and stage *spec*."""

    def provision_headers(self, spec: LibrarySpec, context: PlanContext) -> HeaderPlan:
        """Return the steps that stage *spec*'s public headers."""


def require_source_dir(spec: LibrarySpec, context: PlanContext) -> Path:
    source = context.source_dir(spec)
    if not source.is_dir():
        raise PlanningError(
            f"Sources for {spec.library.value!r} are missing.",
            hint="Check out the library sources under the configured sources directory.",
            context={"library": spec.library.value, "path": str(source)},
        )
    return source


def check_prerequisites(spec: LibrarySpec, context: PlanContext) -> None:
    """Fail unless every prerequisite's headers (and archives, for full prerequisites) are installed."""
    for dependency in (*spec.requires, *spec.header_requires):
        marker = context.spec(dependency).marker_header
        if marker is not None and not context.sysroot.has_header(marker):
            raise PlanningError(
                f"Headers of {dependency.value!r} needed by {spec.library.value!r} are not installed.",
                hint="Provision the prerequisite's headers or build it first.",
                context={
                    "library": spec.library.value,
                    "prerequisite": dependency.value,
                    "header": str(context.sysroot.include_dir / marker),
                },
            )
    for dependency in spec.requires:
        archive = context.spec(dependency).archive
        if archive is not None and not context.sysroot.has_archive(archive):
            raise PlanningError(
                f"Prerequisite {dependency.value!r} of {spec.library.value!r} is not installed.",
                hint="Build the prerequisite first or enable include_prerequisites.",
                context={
                    "library": spec.library.value,
                    "prerequisite": dependency.value,
                    "archive": str(context.sysroot.archive_path(archive)),
                },
            )


def copy_headers_plan(spec: LibrarySpec, context: PlanContext, public_headers: str) -> HeaderPlan:
    """Public headers that ship ready-made in the source tree need no tool run."""
    headers = require_source_dir(spec, context) / public_headers
    if not headers.is_dir():
        raise PlanningError(
            f"Public header directory of {spec.library.value!r} is missing.",
            context={"library": spec.library.value, "path": str(headers)},
        )
    return HeaderPlan(
        library=spec.library,
        invocations=(),
        headers_dir=headers,
        prefix=spec.header_prefix,
    )


def public_headers_plan(spec: LibrarySpec, context: PlanContext) -> HeaderPlan | None:
    if not spec.copy_public_headers or spec.public_headers is None:
        return None
    return copy_headers_plan(spec, context, spec.public_headers)
