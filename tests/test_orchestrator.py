import json
from dataclasses import replace
from pathlib import Path
from typing import Any, cast

import cbor2
import pytest

from wasmsysroot.catalog import DEFAULT_CATALOG
from wasmsysroot.config import BuildConfig
from wasmsysroot.drivers import InProcessDriver, fail_when
from wasmsysroot.errors import (
    ConfigurationError,
    DependencyCycleError,
    InstallError,
    InvocationError,
    PlanningError,
)
from wasmsysroot.models import (
    BuildInvocation,
    CapturedOutput,
    Library,
    LibraryState,
    RunState,
    ToolKind,
)
from wasmsysroot.orchestrator import DIGESTS_FILE_NAME, SysrootBuilder
from wasmsysroot.toolchain import ToolchainDescriptor

DEFAULT_ORDER = (
    Library.DLMALLOC,
    Library.COMPILER_RT,
    Library.LIBC,
    Library.LIBCXXABI,
    Library.LIBCXX,
)


def test_default_run_builds_every_library_in_order(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    builder = SysrootBuilder(config=build_config, toolchain=toolchain, driver=inprocess_driver)

    result = builder.run()

    assert result.ok
    assert result.state is RunState.DONE
    assert result.order == DEFAULT_ORDER
    assert all(state is LibraryState.DONE for state in result.states.values())
    lib_dir = build_config.sysroot_dir / "lib"
    assert sorted(path.name for path in lib_dir.iterdir()) == [
        "libc++.a",
        "libc++abi.a",
        "libc.a",
        "libcompiler-rt.a",
        "libdlmalloc.a",
    ]
    include = build_config.sysroot_dir / "include"
    assert (include / "stdlib.h").is_file()
    assert (include / "cxxabi.h").is_file()
    assert (include / "c++" / "v1" / "__config").is_file()
    assert lib_dir / "libc.a" in result.artifacts_for(Library.LIBC)
    assert (build_config.build_root / "cmake-modules" / "Platform" / "WebAssembly.cmake").is_file()


def test_library_starts_planning_only_after_its_prerequisites_are_done(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    builder = SysrootBuilder(config=build_config, toolchain=toolchain, driver=inprocess_driver)

    builder.run()

    transitions = [
        (record["library"], record["state"])
        for record in builder.logger.snapshot()
        if record["operation"] == "transition"
    ]
    for library in DEFAULT_ORDER:
        started = transitions.index((library.value, "planning"))
        for dependency in DEFAULT_CATALOG[library].requires:
            assert transitions.index((dependency.value, "done")) < started


def test_wasm32_dlmalloc_and_libc_build_in_dependency_order(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    config = replace(build_config, libraries=(Library.LIBC, Library.DLMALLOC))
    builder = SysrootBuilder(config=config, toolchain=toolchain, driver=inprocess_driver)

    result = builder.run()

    assert toolchain.target == "wasm32-unknown-unknown"
    assert result.order == (Library.DLMALLOC, Library.LIBC)
    records = builder.logger.snapshot()
    dlmalloc_done = _transition_index(records, Library.DLMALLOC, LibraryState.DONE)
    libc_building = _transition_index(records, Library.LIBC, LibraryState.BUILDING)
    assert dlmalloc_done < libc_building
    assert result.states == {Library.DLMALLOC: LibraryState.DONE, Library.LIBC: LibraryState.DONE}


def test_two_clean_runs_produce_identical_layouts(
    tmp_path: Path,
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
) -> None:
    layouts = []
    for name in ("first", "second"):
        config = replace(
            build_config,
            build_root=tmp_path / name / "build",
            sysroot_dir=tmp_path / name / "sysroot",
        )
        builder = SysrootBuilder(config=config, toolchain=toolchain, driver=InProcessDriver())
        assert builder.run().ok
        digests = builder.digests()
        layouts.append((digests.paths("lib"), digests.paths("include")))

        owners: dict[str, str] = {}
        for manifest in sorted((config.sysroot_dir / ".manifests").glob("*.json")):
            payload = json.loads(manifest.read_text(encoding="utf-8"))
            for relative in payload["files"]:
                assert relative not in owners, f"{relative} installed by two libraries"
                owners[relative] = payload["library"]

    assert layouts[0] == layouts[1]
    assert layouts[0][0] == (
        "lib/libc++.a",
        "lib/libc++abi.a",
        "lib/libc.a",
        "lib/libcompiler-rt.a",
        "lib/libdlmalloc.a",
    )


def test_compiler_failure_aborts_run_and_leaves_no_partial_artifacts(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
) -> None:
    driver = InProcessDriver(fail_on=fail_when(tool=ToolKind.CC, arg_contains="addsf3.c"))
    builder = SysrootBuilder(config=build_config, toolchain=toolchain, driver=driver)

    result = builder.run()

    assert result.state is RunState.ABORTED
    assert result.states == {
        Library.DLMALLOC: LibraryState.DONE,
        Library.COMPILER_RT: LibraryState.FAILED,
        Library.LIBC: LibraryState.PENDING,
        Library.LIBCXXABI: LibraryState.PENDING,
        Library.LIBCXX: LibraryState.PENDING,
    }
    failure = result.failure
    assert failure is not None
    assert failure.library is Library.COMPILER_RT
    assert isinstance(failure.error, InvocationError)
    assert failure.error.tool == "cc"
    assert failure.error.stderr_tail == "error: injected failure"
    sysroot = build_config.sysroot_dir
    assert not (sysroot / "lib" / "libcompiler-rt.a").exists()
    assert not (sysroot / ".manifests" / "compiler-rt.json").exists()
    assert ToolKind.CMAKE not in driver.tools_run()
    assert not any(
        invocation.tool is ToolKind.MAKE and invocation.args[-1] == "install"
        for invocation in driver.invocations
    )
    with pytest.raises(InvocationError):
        result.raise_for_failure()


def test_dependency_cycle_is_rejected_before_any_tool_runs(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    catalog = dict(DEFAULT_CATALOG)
    catalog[Library.DLMALLOC] = replace(catalog[Library.DLMALLOC], requires=(Library.LIBC,))
    builder = SysrootBuilder(
        config=build_config,
        toolchain=toolchain,
        driver=inprocess_driver,
        catalog=catalog,
    )

    with pytest.raises(DependencyCycleError):
        builder.run()

    assert inprocess_driver.invocations == []
    assert not build_config.sysroot_dir.exists()


def test_cxx_runtime_is_planned_against_abi_headers_only(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    seen: list[bool] = []
    abi_archive = build_config.sysroot_dir / "lib" / "libc++abi.a"

    def record_abi_state(invocation: BuildInvocation) -> bool:
        if invocation.tool is ToolKind.CMAKE and any("LIBCXX_CXX_ABI" in arg for arg in invocation.args):
            seen.append(abi_archive.exists())
        return False

    inprocess_driver.fail_on = record_abi_state
    config = replace(build_config, libraries=(Library.LIBCXX,))
    builder = SysrootBuilder(config=config, toolchain=toolchain, driver=inprocess_driver)

    result = builder.run()

    assert result.ok
    assert Library.LIBCXXABI not in result.order
    assert seen == [False]
    assert (build_config.sysroot_dir / "include" / "cxxabi.h").is_file()
    assert not abi_archive.exists()


def test_missing_prerequisites_fail_planning_when_closure_is_disabled(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    config = replace(build_config, libraries=(Library.LIBC,), include_prerequisites=False)
    builder = SysrootBuilder(config=config, toolchain=toolchain, driver=inprocess_driver)

    result = builder.run()

    assert result.order == (Library.LIBC,)
    assert result.state is RunState.ABORTED
    assert result.failure is not None
    assert isinstance(result.failure.error, PlanningError)
    assert inprocess_driver.invocations == []


def test_missing_build_tool_is_reported_before_any_build(
    build_config: BuildConfig,
    tool_dir: Path,
    inprocess_driver: InProcessDriver,
) -> None:
    toolchain = ToolchainDescriptor.create(
        compiler=tool_dir / "clang",
        linker=tool_dir / "wasm-ld",
        archiver=tool_dir / "llvm-ar",
        cmake=tool_dir / "cmake",
        ninja=None,
        make=tool_dir / "make",
    )
    builder = SysrootBuilder(config=build_config, toolchain=toolchain, driver=inprocess_driver)

    with pytest.raises(ConfigurationError) as excinfo:
        builder.run()

    assert excinfo.value.context["tools"] == "ninja"
    assert inprocess_driver.invocations == []


def test_llvm_sources_are_required_for_llvm_runtimes(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    builder = SysrootBuilder(
        config=replace(build_config, llvm_src=None),
        toolchain=toolchain,
        driver=inprocess_driver,
    )

    with pytest.raises(ConfigurationError) as excinfo:
        builder.run()

    assert excinfo.value.context["library"] == "libcxxabi"
    assert inprocess_driver.invocations == []


def test_rerun_overwrites_each_library_own_outputs(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
) -> None:
    first = SysrootBuilder(config=build_config, toolchain=toolchain, driver=InProcessDriver()).run()
    lib_dir = build_config.sysroot_dir / "lib"
    archives = {path.name: path.read_bytes() for path in lib_dir.iterdir()}
    manifests = {
        path.name: path.read_text(encoding="utf-8")
        for path in (build_config.sysroot_dir / ".manifests").glob("*.json")
    }
    for path in lib_dir.iterdir():
        path.write_text("stale", encoding="utf-8")

    second = SysrootBuilder(config=build_config, toolchain=toolchain, driver=InProcessDriver()).run()

    assert first.ok
    assert second.ok
    assert {path.name: path.read_bytes() for path in lib_dir.iterdir()} == archives
    assert {
        path.name: path.read_text(encoding="utf-8")
        for path in (build_config.sysroot_dir / ".manifests").glob("*.json")
    } == manifests


def test_clobber_removes_previous_build_directory(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    stale = build_config.scratch_dir(Library.DLMALLOC) / "obj" / "stale.o"
    stale.parent.mkdir(parents=True)
    stale.write_text("", encoding="utf-8")
    config = replace(
        build_config,
        libraries=(Library.DLMALLOC,),
        clobber=frozenset({Library.DLMALLOC}),
    )

    result = SysrootBuilder(config=config, toolchain=toolchain, driver=inprocess_driver).run()

    assert result.ok
    assert not stale.exists()
    assert (build_config.scratch_dir(Library.DLMALLOC) / "obj" / "dlmalloc.o").exists()


def test_parallel_workers_build_the_same_sysroot(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
) -> None:
    config = replace(build_config, workers=3, libraries=tuple(DEFAULT_CATALOG))

    result = SysrootBuilder(config=config, toolchain=toolchain, driver=InProcessDriver()).run()

    assert result.ok
    assert set(result.order) == set(DEFAULT_CATALOG)
    assert (build_config.sysroot_dir / "lib" / "libz.a").is_file()
    assert (build_config.sysroot_dir / "lib" / "libunwind.a").is_file()


def test_cancel_stops_the_run(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    builder = SysrootBuilder(config=build_config, toolchain=toolchain, driver=inprocess_driver)

    def cancel_on_archive(invocation: BuildInvocation) -> bool:
        if invocation.tool is ToolKind.AR:
            builder.cancel()
        return False

    inprocess_driver.fail_on = cancel_on_archive

    result = builder.run()

    assert result.state is RunState.CANCELLED
    assert result.states[Library.DLMALLOC] is LibraryState.FAILED
    assert result.states[Library.LIBC] is LibraryState.PENDING
    failure = result.failure
    assert failure is not None
    assert isinstance(failure.error, InvocationError)
    assert failure.error.cancelled is True


def test_run_writes_report_and_digests(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    builder = SysrootBuilder(config=build_config, toolchain=toolchain, driver=inprocess_driver)

    result = builder.run()

    assert result.report_path == build_config.build_root / "report.json"
    report = cast(dict[str, Any], json.loads(result.report_path.read_text(encoding="utf-8")))
    assert report["state"] == "done"
    assert report["order"] == [library.value for library in DEFAULT_ORDER]
    assert report["target"] == "wasm32-unknown-unknown"
    assert report["failed_library"] is None
    assert "lib/libc.a" in report["digests"]
    assert any(record["operation"] == "provision_headers" for record in report["logs"])
    decoded = cbor2.loads((build_config.build_root / DIGESTS_FILE_NAME).read_bytes())
    assert decoded["values"] == report["digests"]


def test_blocked_scratch_directory_fails_the_library_and_still_reports(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    build_config.build_root.mkdir(parents=True)
    build_config.scratch_dir(Library.DLMALLOC).write_text("stale", encoding="utf-8")
    config = replace(build_config, libraries=(Library.DLMALLOC,))

    result = SysrootBuilder(config=config, toolchain=toolchain, driver=inprocess_driver).run()

    assert result.state is RunState.ABORTED
    assert result.states[Library.DLMALLOC] is LibraryState.FAILED
    failure = result.failure
    assert failure is not None
    assert isinstance(failure.error, PlanningError)
    assert failure.error.context["library"] == "dlmalloc"
    assert failure.error.context["path"] == str(build_config.scratch_dir(Library.DLMALLOC))
    assert not any(invocation.tool is ToolKind.CC for invocation in inprocess_driver.invocations)
    report = json.loads((build_config.build_root / "report.json").read_text(encoding="utf-8"))
    assert report["state"] == "aborted"
    assert report["failed_library"] == "dlmalloc"


def test_missing_staged_output_fails_install(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
) -> None:
    class ForgetfulDriver(InProcessDriver):
        def run_invocation(self, invocation: BuildInvocation) -> CapturedOutput:
            captured = super().run_invocation(invocation)
            for output in invocation.outputs:
                if output.name == "libdlmalloc.a":
                    output.unlink()
            return captured

    config = replace(build_config, libraries=(Library.DLMALLOC,))

    result = SysrootBuilder(config=config, toolchain=toolchain, driver=ForgetfulDriver()).run()

    assert result.state is RunState.ABORTED
    failure = result.failure
    assert failure is not None
    assert isinstance(failure.error, InstallError)
    assert failure.error.context["missing"].endswith("libdlmalloc.a")
    assert not (build_config.sysroot_dir / "lib" / "libdlmalloc.a").exists()


def test_abi_headers_come_from_source_when_its_install_stages_none(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    result = SysrootBuilder(config=build_config, toolchain=toolchain, driver=inprocess_driver).run()

    assert result.ok
    stage = build_config.scratch_dir(Library.LIBCXXABI) / "stage"
    assert not (stage / "include").exists()
    installed = build_config.sysroot_dir / "include" / "cxxabi.h"
    assert installed.read_text(encoding="utf-8") == "#pragma once\n"
    assert installed in result.artifacts_for(Library.LIBCXXABI)


def test_compat_headers_install_under_compat_without_tools(
    build_config: BuildConfig,
    toolchain: ToolchainDescriptor,
    inprocess_driver: InProcessDriver,
) -> None:
    config = replace(build_config, libraries=(Library.COMPAT,))

    result = SysrootBuilder(config=config, toolchain=toolchain, driver=inprocess_driver).run()

    assert result.ok
    assert result.order == (Library.COMPAT,)
    assert inprocess_driver.invocations == []
    assert (build_config.sysroot_dir / "include" / "compat" / "ctype.h").is_file()
    manifest = json.loads(
        (build_config.sysroot_dir / ".manifests" / "compat.json").read_text(encoding="utf-8")
    )
    assert manifest["files"] == ["include/compat/ctype.h"]


def _transition_index(records: list[dict[str, Any]], library: Library, state: LibraryState) -> int:
    for index, record in enumerate(records):
        if (
            record["operation"] == "transition"
            and record["library"] == library.value
            and record["state"] == state.value
        ):
            return index
    raise AssertionError(f"{library.value} never reached {state.value}")
