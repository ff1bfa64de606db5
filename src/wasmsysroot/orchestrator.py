"""Sysroot build orchestrator.

``SysrootBuilder.run()`` validates everything it can before touching a tool,
then drives each requested library through an explicit state machine::

    PENDING -> PLANNING -> BUILDING -> INSTALLING -> DONE
                    \\            \\            \\
                     +------------+------------+--> FAILED

Independent libraries may build concurrently on a bounded thread pool, but a
library is only scheduled once every prerequisite in the run is DONE, and all
writes into the shared sysroot happen under one run-scoped lock.  The first
failure stops scheduling; libraries that never started stay PENDING.
"""

from __future__ import annotations

import json
import shutil
import threading
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from wasmsysroot.catalog import (
    DEFAULT_CATALOG,
    Catalog,
    LibrarySpec,
    build_order,
    prerequisite_closure,
    spec_for,
    validate_catalog,
)
from wasmsysroot.config import BuildConfig
from wasmsysroot.digests import SysrootDigests
from wasmsysroot.drivers import Driver, LocalDriver
from wasmsysroot.errors import ConfigurationError, InvocationError, PlanningError, SysrootError
from wasmsysroot.layout import SysrootTree
from wasmsysroot.models import (
    BuildInvocation,
    BuildKind,
    BuildOutcome,
    Failed,
    Library,
    LibraryState,
    RunResult,
    RunState,
    Succeeded,
    ToolKind,
)
from wasmsysroot.observability import StructuredLogger
from wasmsysroot.plans import BuildPlan, PlanContext, plan, provision_headers
from wasmsysroot.toolchain import ToolchainDescriptor

REPORT_FILE_NAME = "report.json"
DIGESTS_FILE_NAME = "sysroot-digests.cbor"
CMAKE_MODULES_DIR_NAME = "cmake-modules"


@dataclass(slots=True)
class SysrootBuilder:
    config: BuildConfig
    toolchain: ToolchainDescriptor
    driver: Driver | None = None
    catalog: Catalog = field(default_factory=lambda: DEFAULT_CATALOG)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _install_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _headers_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _state_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    def __post_init__(self) -> None:
        if self.driver is None:
            self.driver = LocalDriver(
                toolchain=self.toolchain,
                tail_bytes=self.config.stderr_tail_bytes,
            )

    @property
    def sysroot(self) -> SysrootTree:
        return SysrootTree(self.config.sysroot_dir)

    def resolve(self, libraries: Iterable[Library] | None = None) -> tuple[Library, ...]:
        """Return the libraries this run will build, in build order."""
        validate_catalog(self.catalog)
        requested: Iterable[Library] = self.config.libraries if libraries is None else libraries
        selected = set(requested)
        if not selected:
            raise ConfigurationError("At least one library must be requested.")
        if self.config.include_prerequisites:
            selected = prerequisite_closure(selected, self.catalog)
        return build_order(selected, self.catalog)

    def validate(self, order: tuple[Library, ...]) -> None:
        """Check tools and inputs for *order* so that no build starts doomed."""
        kinds: set[ToolKind] = set()
        for library in order:
            spec = spec_for(library, self.catalog)
            kinds.update(spec.tools)
            for dependency in spec.header_requires:
                kinds.update(spec_for(dependency, self.catalog).header_tools)
            if spec.needs_llvm_src and self.config.llvm_src is None:
                raise ConfigurationError(
                    f"Library {library.value!r} needs the LLVM source tree.",
                    hint="Set `llvm_src` in the config or export LLVM_SRC.",
                    context={"library": library.value},
                )
        self.toolchain.require(
            sorted(kinds),
            purpose=", ".join(library.value for library in order),
        )

    def run(self, libraries: Iterable[Library] | None = None) -> RunResult:
        order = self.resolve(libraries)
        self.validate(order)
        result = RunResult(order=order, states={library: LibraryState.PENDING for library in order})
        self.logger.log(
            operation="run_start",
            library=None,
            state=result.state.value,
            tool=None,
            message="Starting sysroot build.",
            extra={
                "order": [library.value for library in order],
                "target": self.toolchain.target,
                "workers": self.config.workers,
            },
        )

        try:
            sysroot = self.sysroot.create()
            self.config.build_root.mkdir(parents=True, exist_ok=True)
            toolchain_file = None
            if any(spec_for(library, self.catalog).kind is BuildKind.CONFIGURED for library in order):
                toolchain_file = self.toolchain.write_cmake_toolchain_file(
                    self.config.build_root / CMAKE_MODULES_DIR_NAME
                )
        except OSError as exc:
            raise ConfigurationError(
                "Could not create the sysroot or build root directories.",
                context={
                    "sysroot": str(self.config.sysroot_dir),
                    "build_root": str(self.config.build_root),
                    "error": str(exc),
                },
            ) from exc
        context = PlanContext(
            config=self.config,
            toolchain=self.toolchain,
            sysroot=sysroot,
            catalog=self.catalog,
            cmake_toolchain_file=toolchain_file,
        )

        self._schedule(order, context, result)

        if self._cancelled.is_set():
            result.state = RunState.CANCELLED
        elif result.failure is not None:
            result.state = RunState.ABORTED
        else:
            result.state = RunState.DONE
        failure = result.failure
        self.logger.log(
            operation="run_complete",
            library=failure.library.value if failure is not None else None,
            state=result.state.value,
            tool=None,
            message="Sysroot build finished." if result.ok else "Sysroot build stopped.",
        )
        result.report_path = self._write_report(result)
        return result

    def digests(self) -> SysrootDigests:
        return SysrootDigests.from_tree(self.sysroot, target=self.toolchain.target)

    def cancel(self) -> None:
        """Stop scheduling and terminate every in-flight tool."""
        self._cancelled.set()
        self.logger.log(
            operation="cancel",
            library=None,
            state=RunState.CANCELLED.value,
            tool=None,
            message="Cancellation requested.",
            level="warning",
        )
        if self.driver is not None:
            self.driver.cancel()

    def _schedule(self, order: tuple[Library, ...], context: PlanContext, result: RunResult) -> None:
        pending = list(order)
        running: dict[Future[BuildOutcome], Library] = {}
        stopped = False
        with ThreadPoolExecutor(
            max_workers=self.config.workers,
            thread_name_prefix="wasmsysroot",
        ) as pool:
            while pending or running:
                if not stopped and not self._cancelled.is_set():
                    for library in list(pending):
                        if len(running) >= self.config.workers:
                            break
                        if self._ready(library, order, result):
                            pending.remove(library)
                            future = pool.submit(self._build_one, library, context, result)
                            running[future] = library
                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    library = running.pop(future)
                    outcome = future.result()
                    result.outcomes[library] = outcome
                    if isinstance(outcome, Failed):
                        stopped = True

    def _ready(self, library: Library, order: tuple[Library, ...], result: RunResult) -> bool:
        spec = spec_for(library, self.catalog)
        with self._state_lock:
            return all(
                result.states[dependency] is LibraryState.DONE
                for dependency in spec.requires
                if dependency in order
            )

    def _build_one(self, library: Library, context: PlanContext, result: RunResult) -> BuildOutcome:
        spec = context.spec(library)
        try:
            self._transition(result, library, LibraryState.PLANNING)
            self._provision_prerequisite_headers(spec, context)
            build_plan = plan(library, context)

            self._transition(result, library, LibraryState.BUILDING)
            self._prepare_scratch(library, build_plan)
            for invocation in build_plan.invocations:
                self._raise_if_cancelled(library)
                self._prepare_invocation(library, invocation)
                self.logger.log(
                    operation="invoke",
                    library=library.value,
                    state=LibraryState.BUILDING.value,
                    tool=str(invocation.tool),
                    message=invocation.describe(),
                    level="debug",
                    extra={"args": list(invocation.args), "cwd": str(invocation.cwd)},
                )
                self.driver.run_invocation(invocation)

            self._raise_if_cancelled(library)
            self._transition(result, library, LibraryState.INSTALLING)
            headers = build_plan.headers
            with self._install_lock:
                installed = context.sysroot.install(
                    library,
                    build_plan.stage_dir,
                    expected=build_plan.staged,
                    headers_dir=headers.headers_dir if headers is not None else None,
                    header_prefix=headers.prefix if headers is not None else "",
                )
            self._transition(result, library, LibraryState.DONE)
            return Succeeded(library=library, artifacts=installed.files)
        except SysrootError as exc:
            self._transition(result, library, LibraryState.FAILED)
            extra: dict[str, Any] = {"code": exc.code}
            if isinstance(exc, InvocationError):
                extra.update(
                    exit_code=exc.exit_code,
                    stderr_tail=exc.stderr_tail,
                    cancelled=exc.cancelled,
                )
            self.logger.log(
                operation="build_failed",
                library=library.value,
                state=LibraryState.FAILED.value,
                tool=exc.tool if isinstance(exc, InvocationError) else None,
                message=exc.message,
                level="error",
                extra=extra,
            )
            return Failed(library=library, error=exc)

    def _provision_prerequisite_headers(self, spec: LibrarySpec, context: PlanContext) -> None:
        for dependency in spec.header_requires:
            dependency_spec = context.spec(dependency)
            marker = dependency_spec.marker_header
            if marker is None:
                continue
            with self._headers_lock:
                if context.sysroot.has_header(marker):
                    continue
                header_plan = provision_headers(dependency, context)
                for invocation in header_plan.invocations:
                    self._raise_if_cancelled(spec.library)
                    self._prepare_invocation(dependency, invocation)
                    self.logger.log(
                        operation="invoke",
                        library=dependency.value,
                        state=LibraryState.PLANNING.value,
                        tool=str(invocation.tool),
                        message=invocation.describe(),
                        level="debug",
                        extra={"args": list(invocation.args), "for": spec.library.value},
                    )
                    self.driver.run_invocation(invocation)
                with self._install_lock:
                    installed = context.sysroot.install_headers(
                        dependency,
                        header_plan.headers_dir,
                        prefix=header_plan.prefix,
                    )
            self.logger.log(
                operation="provision_headers",
                library=dependency.value,
                state=LibraryState.PLANNING.value,
                tool=None,
                message=f"Provisioned headers needed by {spec.library.value}.",
                extra={"files": len(installed.files)},
            )

    def _transition(self, result: RunResult, library: Library, state: LibraryState) -> None:
        with self._state_lock:
            previous = result.states[library]
            result.states[library] = state
        self.logger.log(
            operation="transition",
            library=library.value,
            state=state.value,
            tool=None,
            message=f"{previous.value} -> {state.value}",
        )

    def _raise_if_cancelled(self, library: Library) -> None:
        if self._cancelled.is_set():
            raise InvocationError(
                "Sysroot build was cancelled.",
                cancelled=True,
                context={"library": library.value},
            )

    def _prepare_scratch(self, library: Library, build_plan: BuildPlan) -> None:
        """Clobber if asked, then give the library an empty stage in its scratch directory."""
        scratch = build_plan.scratch_dir
        try:
            if library in self.config.clobber and scratch.exists():
                shutil.rmtree(scratch)
                self.logger.log(
                    operation="clobber",
                    library=library.value,
                    state=LibraryState.BUILDING.value,
                    tool=None,
                    message="Removed previous build directory.",
                    extra={"path": str(scratch)},
                )
            scratch.mkdir(parents=True, exist_ok=True)
            if build_plan.stage_dir.exists():
                shutil.rmtree(build_plan.stage_dir)
        except OSError as exc:
            raise PlanningError(
                f"Could not prepare the build directory of {library.value!r}.",
                hint="Remove whatever occupies the build directory and re-run.",
                context={"library": library.value, "path": str(scratch), "error": str(exc)},
            ) from exc

    def _prepare_invocation(self, library: Library, invocation: BuildInvocation) -> None:
        directories = {invocation.cwd, *(output.parent for output in invocation.outputs)}
        for directory in sorted(directories):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise InvocationError(
                    f"Could not create a directory needed by {invocation.describe()}.",
                    tool=str(invocation.tool),
                    context={"library": library.value, "path": str(directory), "error": str(exc)},
                ) from exc

    def _write_report(self, result: RunResult) -> Path:
        report_path = self.config.build_root / REPORT_FILE_NAME
        digests = self.digests()
        if result.ok:
            digests.to_cbor(self.config.build_root / DIGESTS_FILE_NAME)
        payload = {
            **result.to_dict(),
            "target": self.toolchain.target,
            "sysroot": str(self.config.sysroot_dir),
            "digests": digests.values,
            "logs": self.logger.snapshot(),
        }
        report_path.write_text(
            json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n",
            encoding="utf-8",
        )
        return report_path


def build_sysroot(
    config: BuildConfig,
    toolchain: ToolchainDescriptor,
    *,
    driver: Driver | None = None,
    libraries: Iterable[Library] | None = None,
) -> RunResult:
    """Build *libraries* (default: the configured set) into the configured sysroot."""
    return SysrootBuilder(config=config, toolchain=toolchain, driver=driver).run(libraries)


__all__ = ["DIGESTS_FILE_NAME", "REPORT_FILE_NAME", "SysrootBuilder", "build_sysroot"]
