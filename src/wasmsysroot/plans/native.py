"""Plans for libraries that bring their own build description, or none at all.

Four recipes are supported:

* ``SOURCES``: the planner compiles each matching source file directly with
  the C compiler and archives the objects (dlmalloc, compiler-rt builtins).
* ``MAKEFILE``: the library's own makefile is driven out of tree with every
  toolchain setting passed as a make variable (musl).
* ``CONFIGURE_SCRIPT``: an autoconf-style ``configure`` script followed by
  ``make install`` (zlib).
* ``HEADERS``: no tool runs; the public headers are installed straight from
  the source tree (compat).
"""

from __future__ import annotations

from pathlib import Path

from wasmsysroot.catalog import LibrarySpec, NativeRecipe
from wasmsysroot.errors import PlanningError
from wasmsysroot.models import BuildInvocation, ToolKind
from wasmsysroot.plans.base import (
    BuildPlan,
    HeaderPlan,
    PlanContext,
    copy_headers_plan,
    public_headers_plan,
    require_source_dir,
)

OBJECT_DIR_NAME = "obj"


class NativeStrategy:
    def plan(self, spec: LibrarySpec, context: PlanContext) -> BuildPlan:
        if spec.recipe is NativeRecipe.SOURCES:
            invocations = self._plan_sources(spec, context)
        elif spec.recipe is NativeRecipe.MAKEFILE:
            invocations = self._plan_makefile(spec, context)
        elif spec.recipe is NativeRecipe.CONFIGURE_SCRIPT:
            invocations = self._plan_configure_script(spec, context)
        elif spec.recipe is NativeRecipe.HEADERS:
            invocations = ()
        else:
            raise PlanningError(
                f"Native library {spec.library.value!r} declares no build recipe.",
                context={"library": spec.library.value},
            )
        return BuildPlan(
            library=spec.library,
            invocations=invocations,
            scratch_dir=context.scratch_dir(spec.library),
            stage_dir=context.stage_dir(spec.library),
            staged=invocations[-1].outputs if invocations else (),
            headers=public_headers_plan(spec, context),
        )

    def provision_headers(self, spec: LibrarySpec, context: PlanContext) -> HeaderPlan:
        if spec.public_headers is not None:
            return copy_headers_plan(spec, context, spec.public_headers)
        if spec.recipe is not NativeRecipe.MAKEFILE:
            raise PlanningError(
                f"Library {spec.library.value!r} cannot provision headers without building.",
                context={"library": spec.library.value},
            )
        source = require_source_dir(spec, context)
        values = context.placeholders(spec)
        headers_stage = context.header_stage_dir(spec.library)
        args = [
            "-f",
            str(source / "Makefile"),
            f"srcdir={source}",
            f"prefix={headers_stage}",
            f"ARCH={values['arch']}",
            "install-headers",
        ]
        outputs: tuple[Path, ...] = ()
        if spec.marker_header is not None:
            outputs = (headers_stage / "include" / spec.marker_header,)
        invocation = BuildInvocation(
            tool=ToolKind.MAKE,
            args=tuple(args),
            cwd=context.scratch_dir(spec.library),
            outputs=outputs,
            label=f"install {spec.library.value} headers",
        )
        return HeaderPlan(
            library=spec.library,
            invocations=(invocation,),
            headers_dir=headers_stage / "include",
        )

    def _plan_sources(self, spec: LibrarySpec, context: PlanContext) -> tuple[BuildInvocation, ...]:
        source = require_source_dir(spec, context)
        files = collect_sources(spec, source)
        scratch = context.scratch_dir(spec.library)
        values = context.placeholders(spec)
        cflags = (
            *context.compile_flags(),
            *(context.format(flag, values) for flag in spec.cflags),
        )

        compiles: list[BuildInvocation] = []
        objects: list[Path] = []
        for path in files:
            obj = object_path(context, spec, path)
            objects.append(obj)
            compiles.append(
                BuildInvocation(
                    tool=ToolKind.CC,
                    args=(*cflags, "-c", str(path), "-o", str(obj)),
                    cwd=scratch,
                    outputs=(obj,),
                    label=f"compile {path.relative_to(source)}",
                )
            )

        if spec.archive is None:
            raise PlanningError(
                f"Library {spec.library.value!r} compiles sources but names no archive.",
                context={"library": spec.library.value},
            )
        archive = context.stage_dir(spec.library) / "lib" / spec.archive
        archive_step = BuildInvocation(
            tool=ToolKind.AR,
            args=("rcs", str(archive), *(str(obj) for obj in objects)),
            cwd=scratch,
            outputs=(archive,),
            label=f"archive {spec.archive}",
        )
        return (*compiles, archive_step)

    def _plan_makefile(self, spec: LibrarySpec, context: PlanContext) -> tuple[BuildInvocation, ...]:
        source = require_source_dir(spec, context)
        stage = context.stage_dir(spec.library)
        values = context.placeholders(spec)
        make_vars = {name: context.format(value, values) for name, value in spec.make_vars.items()}
        embedded = embedded_objects(spec, context)
        if embedded:
            make_vars["EXTRA_OBJS"] = " ".join(str(path) for path in embedded)

        args = [
            "-f",
            str(source / "Makefile"),
            f"srcdir={source}",
            f"prefix={stage}",
            *(f"{name}={value}" for name, value in sorted(make_vars.items())),
            "install",
        ]
        return (
            BuildInvocation(
                tool=ToolKind.MAKE,
                args=tuple(args),
                cwd=context.scratch_dir(spec.library),
                outputs=staged_outputs(spec, stage),
                label=f"make install {spec.library.value}",
            ),
        )

    def _plan_configure_script(
        self, spec: LibrarySpec, context: PlanContext
    ) -> tuple[BuildInvocation, ...]:
        source = require_source_dir(spec, context)
        scratch = context.scratch_dir(spec.library)
        stage = context.stage_dir(spec.library)
        values = context.placeholders(spec)
        cflags = " ".join(
            (*context.compile_flags(), *(context.format(flag, values) for flag in spec.cflags))
        )
        env = {
            "CC": str(context.toolchain.compiler),
            "CXX": str(context.toolchain.tool_path(ToolKind.CXX)),
            "AR": str(context.toolchain.archiver),
            "CFLAGS": cflags,
            "CXXFLAGS": cflags,
            "LDFLAGS": " ".join(context.link_flags()),
        }
        configure = BuildInvocation(
            tool=ToolKind.SCRIPT,
            args=(
                str(source / "configure"),
                f"--prefix={stage}",
                *(context.format(arg, values) for arg in spec.configure_args),
            ),
            cwd=scratch,
            env=env,
            label=f"configure {spec.library.value}",
        )
        install = BuildInvocation(
            tool=ToolKind.MAKE,
            args=("install",),
            cwd=scratch,
            outputs=staged_outputs(spec, stage),
            label=f"make install {spec.library.value}",
        )
        return (configure, install)


def collect_sources(spec: LibrarySpec, source: Path) -> list[Path]:
    excluded = set(spec.exclude)
    found: set[Path] = set()
    for pattern in spec.sources:
        found.update(path for path in source.glob(pattern) if path.is_file())
    files = sorted(path for path in found if path.name not in excluded)
    if not files:
        raise PlanningError(
            f"No sources matched for {spec.library.value!r}.",
            context={
                "library": spec.library.value,
                "path": str(source),
                "patterns": ", ".join(spec.sources),
            },
        )
    return files


def object_path(context: PlanContext, spec: LibrarySpec, source_file: Path) -> Path:
    return context.scratch_dir(spec.library) / OBJECT_DIR_NAME / f"{source_file.stem}.o"


def embedded_objects(spec: LibrarySpec, context: PlanContext) -> list[Path]:
    """Objects of earlier libraries that this library links into its own archive."""
    objects: list[Path] = []
    for dependency in spec.embed_objects:
        obj_dir = context.scratch_dir(dependency) / OBJECT_DIR_NAME
        found = sorted(obj_dir.glob("*.o")) if obj_dir.is_dir() else []
        if not found:
            raise PlanningError(
                f"Objects of {dependency.value!r} needed by {spec.library.value!r} are missing.",
                hint=f"Rebuild {dependency.value!r} in the same build root first.",
                context={
                    "library": spec.library.value,
                    "prerequisite": dependency.value,
                    "path": str(obj_dir),
                },
            )
        objects.extend(found)
    return objects


def staged_outputs(spec: LibrarySpec, stage: Path) -> tuple[Path, ...]:
    outputs: list[Path] = []
    if spec.archive is not None:
        outputs.append(stage / "lib" / spec.archive)
    if spec.marker_header is not None and not spec.copy_public_headers:
        outputs.append(stage / "include" / spec.marker_header)
    return tuple(outputs)
