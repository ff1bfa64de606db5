"""The fixed library catalog and the build-order graph derived from it.

Each entry is declarative data: build kind, where the sources live, what must
be fully built first (``requires``), whose headers must merely be present
(``header_requires``), and the flag sets the planners format per run.  Flag
values may reference ``{sysroot}``, ``{include}``, ``{lib}``, ``{source}``,
``{target}``, ``{llvm_src}``, ``{sources}`` and ``{stage}`` placeholders.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from .cmake import CMakeVar
from .errors import ConfigurationError, DependencyCycleError
from .models import BuildKind, Library, ToolKind


class NativeRecipe(StrEnum):
    """Which native build description a ``BuildKind.NATIVE`` library uses."""

    SOURCES = "sources"
    MAKEFILE = "makefile"
    CONFIGURE_SCRIPT = "configure-script"
    # Nothing to compile; the public headers are the whole library.
    HEADERS = "headers"


@dataclass(frozen=True, slots=True)
class LibrarySpec:
    library: Library
    role: str
    kind: BuildKind
    source: str
    archive: str | None = None
    requires: tuple[Library, ...] = ()
    header_requires: tuple[Library, ...] = ()
    marker_header: str | None = None
    # Source-relative directory copied into include/ by header provisioning.
    public_headers: str | None = None
    header_prefix: str = ""
    # The install step does not stage the public headers, so they are copied
    # from the source tree alongside the staged outputs.
    copy_public_headers: bool = False
    recipe: NativeRecipe | None = None
    sources: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    cflags: tuple[str, ...] = ()
    # Libraries whose compiled objects are linked into this archive.
    embed_objects: tuple[Library, ...] = ()
    make_vars: Mapping[str, str] = field(default_factory=dict)
    configure_args: tuple[str, ...] = ()
    cmake_cache: Mapping[str, CMakeVar] = field(default_factory=dict)
    cmake_flags: tuple[str, ...] = ()
    needs_llvm_src: bool = False

    @property
    def tools(self) -> tuple[ToolKind, ...]:
        if self.kind is BuildKind.CONFIGURED:
            return (ToolKind.CMAKE, ToolKind.NINJA)
        if self.recipe is NativeRecipe.MAKEFILE:
            return (ToolKind.MAKE,)
        if self.recipe is NativeRecipe.CONFIGURE_SCRIPT:
            return (ToolKind.MAKE,)
        if self.recipe is NativeRecipe.HEADERS:
            return ()
        return (ToolKind.CC, ToolKind.AR)

    @property
    def header_tools(self) -> tuple[ToolKind, ...]:
        """Tools needed to provision this library's headers without building it."""
        if self.public_headers is None and self.recipe is NativeRecipe.MAKEFILE:
            return (ToolKind.MAKE,)
        return ()


Catalog = Mapping[Library, LibrarySpec]

_LLVM_RUNTIME_COMMON_FLAGS = (
    "-nodefaultlibs",
    "-lc",
    "-D_LIBCPP_HAS_THREAD_API_PTHREAD",
)

DEFAULT_CATALOG: dict[Library, LibrarySpec] = {
    Library.COMPAT: LibrarySpec(
        library=Library.COMPAT,
        role="compat-headers",
        kind=BuildKind.NATIVE,
        recipe=NativeRecipe.HEADERS,
        source="compat",
        marker_header="compat/ctype.h",
        public_headers="include",
        header_prefix="compat",
        copy_public_headers=True,
    ),
    Library.DLMALLOC: LibrarySpec(
        library=Library.DLMALLOC,
        role="allocator",
        kind=BuildKind.NATIVE,
        recipe=NativeRecipe.SOURCES,
        source="dlmalloc",
        archive="libdlmalloc.a",
        header_requires=(Library.LIBC,),
        sources=("dlmalloc.c",),
        cflags=("-O3",),
    ),
    Library.COMPILER_RT: LibrarySpec(
        library=Library.COMPILER_RT,
        role="compiler-support-runtime",
        kind=BuildKind.NATIVE,
        recipe=NativeRecipe.SOURCES,
        source="compiler-rt",
        archive="libcompiler-rt.a",
        header_requires=(Library.LIBC,),
        sources=("lib/builtins/*.c",),
        exclude=("gcc_personality_v0.c", "apple_versioning.c", "emutls.c"),
        cflags=("-Oz",),
    ),
    Library.LIBC: LibrarySpec(
        library=Library.LIBC,
        role="c-runtime",
        kind=BuildKind.NATIVE,
        recipe=NativeRecipe.MAKEFILE,
        source="musl",
        archive="libc.a",
        requires=(Library.DLMALLOC,),
        marker_header="stdlib.h",
        embed_objects=(Library.DLMALLOC,),
        make_vars={
            "ARCH": "{arch}",
            "CC": "{cc}",
            "AR": "{ar}",
            "RANLIB": "{ar} s",
            "LIBCC": "",
            "CFLAGS": "{cflags}",
            "LDFLAGS": "{ldflags} -Oz",
        },
    ),
    Library.LIBUNWIND: LibrarySpec(
        library=Library.LIBUNWIND,
        role="unwinder",
        kind=BuildKind.CONFIGURED,
        source="libunwind",
        archive="libunwind.a",
        requires=(Library.LIBC, Library.COMPILER_RT),
        header_requires=(Library.LIBCXX,),
        marker_header="libunwind.h",
        public_headers="include",
        copy_public_headers=True,
        needs_llvm_src=True,
        cmake_cache={
            "LIBUNWIND_USE_COMPILER_RT": CMakeVar.on(),
            "LIBUNWIND_ENABLE_STATIC": CMakeVar.on(),
            "LIBUNWIND_ENABLE_SHARED": CMakeVar.off(),
            "LIBUNWIND_ENABLE_ASSERTIONS": CMakeVar.off(),
            "LIBUNWIND_ENABLE_THREADS": CMakeVar.off(),
            "LIBUNWIND_TARGET_TRIPLE": CMakeVar.string("{target}"),
            "LIBUNWIND_SYSROOT": CMakeVar.path("{sysroot}"),
            "LIBUNWIND_CXX_INCLUDE_PATHS": CMakeVar.path("{include}/c++/v1"),
            "LLVM_PATH": CMakeVar.path("{llvm_src}"),
        },
        cmake_flags=(
            "-nodefaultlibs",
            "-lc",
            "-D_LIBUNWIND_DISABLE_VISIBILITY_ANNOTATIONS",
        ),
    ),
    Library.LIBCXXABI: LibrarySpec(
        library=Library.LIBCXXABI,
        role="c++-abi",
        kind=BuildKind.CONFIGURED,
        source="libcxxabi",
        archive="libc++abi.a",
        requires=(Library.LIBC, Library.COMPILER_RT),
        header_requires=(Library.LIBCXX,),
        marker_header="cxxabi.h",
        public_headers="include",
        copy_public_headers=True,
        needs_llvm_src=True,
        cmake_cache={
            "LIBCXXABI_USE_LLVM_UNWINDER": CMakeVar.off(),
            "LIBCXXABI_USE_COMPILER_RT": CMakeVar.on(),
            "LLVM_ENABLE_LIBCXX": CMakeVar.on(),
            "LIBCXXABI_ENABLE_STATIC": CMakeVar.on(),
            "LIBCXXABI_ENABLE_SHARED": CMakeVar.off(),
            "LIBCXXABI_ENABLE_THREADS": CMakeVar.on(),
            "LIBCXXABI_ENABLE_EXCEPTIONS": CMakeVar.off(),
            "LIBCXXABI_TARGET_TRIPLE": CMakeVar.string("{target}"),
            "LIBCXXABI_SYSROOT": CMakeVar.path("{sysroot}"),
            "LIBCXXABI_LIBCXX_INCLUDES": CMakeVar.path("{include}/c++/v1"),
            "LLVM_PATH": CMakeVar.path("{llvm_src}"),
        },
        # unwind.h comes from the libunwind checkout whether or not libunwind is built.
        cmake_flags=(*_LLVM_RUNTIME_COMMON_FLAGS, "-I{sources}/libunwind/include"),
    ),
    Library.LIBCXX: LibrarySpec(
        library=Library.LIBCXX,
        role="c++-runtime",
        kind=BuildKind.CONFIGURED,
        source="libcxx",
        archive="libc++.a",
        requires=(Library.LIBC, Library.COMPILER_RT),
        header_requires=(Library.LIBCXXABI,),
        marker_header="c++/v1/__config",
        public_headers="include",
        header_prefix="c++/v1",
        needs_llvm_src=True,
        cmake_cache={
            "LIBCXX_USE_COMPILER_RT": CMakeVar.on(),
            "LIBCXX_HAS_MUSL_LIBC": CMakeVar.on(),
            "LIBCXX_ENABLE_STATIC": CMakeVar.on(),
            "LIBCXX_ENABLE_SHARED": CMakeVar.off(),
            "LIBCXX_ENABLE_THREADS": CMakeVar.on(),
            "LIBCXX_INSTALL_SUPPORT_HEADERS": CMakeVar.on(),
            "LIBCXX_ENABLE_WERROR": CMakeVar.off(),
            "LIBCXX_ENABLE_EXCEPTIONS": CMakeVar.off(),
            "LIBCXX_TARGET_TRIPLE": CMakeVar.string("{target}"),
            "LIBCXX_CXX_ABI": CMakeVar.string("libcxxabi"),
            "LIBCXX_CXX_ABI_INCLUDE_PATHS": CMakeVar.path("{include}"),
            "LIBCXX_CXX_ABI_LIBRARY_PATH": CMakeVar.path("{lib}"),
            "LIBCXX_SYSROOT": CMakeVar.path("{sysroot}"),
            "LLVM_PATH": CMakeVar.path("{llvm_src}"),
        },
        cmake_flags=(*_LLVM_RUNTIME_COMMON_FLAGS, "-I{source}/include/support/musl"),
    ),
    Library.ZLIB: LibrarySpec(
        library=Library.ZLIB,
        role="compression",
        kind=BuildKind.NATIVE,
        recipe=NativeRecipe.CONFIGURE_SCRIPT,
        source="zlib",
        archive="libz.a",
        requires=(Library.LIBC,),
        marker_header="zlib.h",
        configure_args=("--static",),
    ),
}

DEFAULT_LIBRARIES: tuple[Library, ...] = (
    Library.DLMALLOC,
    Library.COMPILER_RT,
    Library.LIBC,
    Library.LIBCXXABI,
    Library.LIBCXX,
)


def spec_for(library: Library, catalog: Catalog) -> LibrarySpec:
    try:
        return catalog[library]
    except KeyError as exc:
        raise ConfigurationError(
            f"Library {library.value!r} is not in the catalog.",
            context={"library": library.value},
        ) from exc


def validate_catalog(catalog: Catalog) -> None:
    """Reject dangling references and prerequisite cycles."""
    for library, spec in catalog.items():
        if spec.archive is None and spec.recipe is not NativeRecipe.HEADERS:
            raise ConfigurationError(
                f"Library {library.value!r} builds code but names no archive.",
                context={"library": library.value},
            )
        for dependency in (*spec.requires, *spec.header_requires):
            if dependency not in catalog:
                raise ConfigurationError(
                    f"Library {library.value!r} references unknown library {dependency.value!r}.",
                    context={"library": library.value, "dependency": dependency.value},
                )
        for dependency in spec.embed_objects:
            if dependency not in spec.requires:
                raise ConfigurationError(
                    f"Library {library.value!r} embeds objects of {dependency.value!r} "
                    "without requiring it.",
                    context={"library": library.value, "dependency": dependency.value},
                )
    cycle = find_cycle(catalog)
    if cycle:
        raise DependencyCycleError([library.value for library in cycle])


def find_cycle(catalog: Catalog) -> tuple[Library, ...]:
    """Return one prerequisite cycle (first node repeated at the end), or ``()``."""
    visiting: list[Library] = []
    done: set[Library] = set()

    def visit(library: Library) -> tuple[Library, ...]:
        if library in done:
            return ()
        if library in visiting:
            start = visiting.index(library)
            return (*visiting[start:], library)
        visiting.append(library)
        for dependency in catalog[library].requires:
            if dependency in catalog:
                cycle = visit(dependency)
                if cycle:
                    return cycle
        visiting.pop()
        done.add(library)
        return ()

    for library in catalog:
        cycle = visit(library)
        if cycle:
            return cycle
    return ()


def prerequisite_closure(libraries: Iterable[Library], catalog: Catalog) -> set[Library]:
    closure: set[Library] = set()
    pending = list(libraries)
    while pending:
        library = pending.pop()
        if library in closure:
            continue
        closure.add(library)
        pending.extend(spec_for(library, catalog).requires)
    return closure


def build_order(libraries: Iterable[Library], catalog: Catalog) -> tuple[Library, ...]:
    """Topologically sort *libraries*, breaking ties by catalog declaration order.

    Only prerequisite edges between requested libraries constrain the order;
    prerequisites outside the request are expected to be installed already.
    """
    requested = set(libraries)
    for library in requested:
        spec_for(library, catalog)
    rank = {library: index for index, library in enumerate(catalog)}
    indegree = {
        library: sum(1 for dep in set(catalog[library].requires) if dep in requested)
        for library in requested
    }
    dependents: dict[Library, list[Library]] = {library: [] for library in requested}
    for library in requested:
        for dependency in set(catalog[library].requires):
            if dependency in requested:
                dependents[dependency].append(library)

    order: list[Library] = []
    ready = sorted((lib for lib, degree in indegree.items() if degree == 0), key=rank.__getitem__)
    while ready:
        library = ready.pop(0)
        order.append(library)
        for dependent in dependents[library]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                ready.append(dependent)
        ready.sort(key=rank.__getitem__)

    if len(order) != len(requested):
        remaining = sorted(requested - set(order), key=rank.__getitem__)
        raise DependencyCycleError([library.value for library in remaining])
    return tuple(order)


__all__ = [
    "Catalog",
    "DEFAULT_CATALOG",
    "DEFAULT_LIBRARIES",
    "LibrarySpec",
    "NativeRecipe",
    "build_order",
    "find_cycle",
    "prerequisite_closure",
    "spec_for",
    "validate_catalog",
]
