"""Plans for libraries built through a CMake configure step and ``ninja install``."""

from __future__ import annotations

from wasmsysroot.catalog import LibrarySpec
from wasmsysroot.cmake import CMakeArgs
from wasmsysroot.errors import ConfigurationError, PlanningError
from wasmsysroot.models import BuildInvocation, ToolKind
from wasmsysroot.plans.base import (
    BuildPlan,
    HeaderPlan,
    PlanContext,
    copy_headers_plan,
    public_headers_plan,
    require_source_dir,
)
from wasmsysroot.plans.native import staged_outputs

CMAKE_BUILD_DIR_NAME = "cmake"
CMAKE_GENERATOR = "Ninja"
CMAKE_BUILD_TYPE = "MinSizeRel"


class ConfiguredStrategy:
    def plan(self, spec: LibrarySpec, context: PlanContext) -> BuildPlan:
        source = require_source_dir(spec, context)
        scratch = context.scratch_dir(spec.library)
        stage = context.stage_dir(spec.library)
        build_dir = scratch / CMAKE_BUILD_DIR_NAME

        configure = BuildInvocation(
            tool=ToolKind.CMAKE,
            args=("-S", str(source), "-B", str(build_dir), *self.cmake_args(spec, context).to_args()),
            cwd=scratch,
            outputs=(build_dir / "build.ninja",),
            label=f"configure {spec.library.value}",
        )
        install = BuildInvocation(
            tool=ToolKind.NINJA,
            args=("-C", str(build_dir), "install"),
            cwd=scratch,
            outputs=staged_outputs(spec, stage),
            label=f"ninja install {spec.library.value}",
        )
        return BuildPlan(
            library=spec.library,
            invocations=(configure, install),
            scratch_dir=scratch,
            stage_dir=stage,
            staged=install.outputs,
            headers=public_headers_plan(spec, context),
        )

    def provision_headers(self, spec: LibrarySpec, context: PlanContext) -> HeaderPlan:
        if spec.public_headers is None:
            raise PlanningError(
                f"Library {spec.library.value!r} declares no public header directory.",
                context={"library": spec.library.value},
            )
        return copy_headers_plan(spec, context, spec.public_headers)

    def cmake_args(self, spec: LibrarySpec, context: PlanContext) -> CMakeArgs:
        if context.cmake_toolchain_file is None:
            raise PlanningError(
                "The CMake toolchain file has not been generated.",
                context={"library": spec.library.value},
            )
        if spec.needs_llvm_src and context.config.llvm_src is None:
            raise ConfigurationError(
                f"Library {spec.library.value!r} needs the LLVM source tree.",
                hint="Set `llvm_src` in the config or export LLVM_SRC.",
                context={"library": spec.library.value},
            )
        values = context.placeholders(spec)
        toolchain = context.toolchain
        module_dir = context.cmake_toolchain_file.parent.parent

        args = CMakeArgs().generator(CMAKE_GENERATOR)
        args.filepath("CMAKE_TOOLCHAIN_FILE", context.cmake_toolchain_file)
        args.path("CMAKE_MODULE_PATH", module_dir)
        args.string("CMAKE_BUILD_TYPE", CMAKE_BUILD_TYPE)
        args.path("CMAKE_INSTALL_PREFIX", context.stage_dir(spec.library))
        args.filepath("CMAKE_MAKE_PROGRAM", toolchain.tool_path(ToolKind.NINJA))
        args.filepath("CMAKE_C_COMPILER", toolchain.compiler)
        args.filepath("CMAKE_CXX_COMPILER", toolchain.tool_path(ToolKind.CXX))
        args.filepath("CMAKE_AR", toolchain.archiver)
        args.string("CMAKE_SYSROOT", str(context.sysroot.root))

        for flag in context.compile_flags():
            args.c_cxx_flag(flag)
        for flag in spec.cmake_flags:
            args.c_cxx_flag(context.format(flag, values))
        for flag in context.link_flags():
            args.shared_ld_flag(flag)
            args.exe_ld_flag(flag)

        for name, var in spec.cmake_cache.items():
            try:
                args.set(name, var.format(values))
            except (KeyError, IndexError, ValueError) as exc:
                raise ConfigurationError(
                    "Catalog CMake cache entry references an unknown placeholder.",
                    context={"library": spec.library.value, "entry": name, "error": str(exc)},
                ) from exc
        return args
