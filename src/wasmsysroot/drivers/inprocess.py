"""In-process driver for testing and dry runs.

Runs nothing.  Each invocation is recorded, and its declared outputs are
created as deterministic placeholder files, so the orchestrator's staging and
install steps can be exercised without a WebAssembly toolchain:
- unit tests of ordering, state transitions and failure handling
- planning a sysroot on a machine without clang or cmake
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from wasmsysroot.drivers.base import cancelled_error, verify_outputs
from wasmsysroot.errors import InvocationError
from wasmsysroot.models import BuildInvocation, CapturedOutput, ToolKind

FailurePredicate = Callable[[BuildInvocation], bool]


def fail_when(*, tool: ToolKind | None = None, arg_contains: str | None = None) -> FailurePredicate:
    """Build a predicate matching invocations by tool and/or an argument fragment."""

    def predicate(invocation: BuildInvocation) -> bool:
        if tool is not None and invocation.tool is not tool:
            return False
        if arg_contains is not None and not any(arg_contains in arg for arg in invocation.args):
            return False
        return True

    return predicate


@dataclass(slots=True)
class InProcessDriver:
    """Driver that records invocations and writes placeholder outputs."""

    name: str = "inprocess"
    fail_on: FailurePredicate | None = None
    failure_exit_code: int = 1
    failure_stderr: str = "error: injected failure"
    invocations: list[BuildInvocation] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    def run(
        self,
        tool: ToolKind,
        args: tuple[str, ...],
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> CapturedOutput:
        invocation = BuildInvocation(tool=tool, args=tuple(args), cwd=cwd, env=dict(env or {}))
        return self._execute(invocation)

    def run_invocation(self, invocation: BuildInvocation) -> CapturedOutput:
        captured = self._execute(invocation)
        for output in invocation.outputs:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(_placeholder(invocation, output), encoding="utf-8")
        return verify_outputs(invocation, captured)

    def cancel(self) -> None:
        self._cancelled.set()

    def tools_run(self) -> list[ToolKind]:
        with self._lock:
            return [invocation.tool for invocation in self.invocations]

    def _execute(self, invocation: BuildInvocation) -> CapturedOutput:
        if self._cancelled.is_set():
            raise cancelled_error(invocation.tool, invocation.args)
        with self._lock:
            self.invocations.append(invocation)
        if self.fail_on is not None and self.fail_on(invocation):
            raise InvocationError(
                f"{invocation.tool} tool exited with status {self.failure_exit_code}.",
                tool=str(invocation.tool),
                exit_code=self.failure_exit_code,
                stderr_tail=self.failure_stderr,
                context={"command": " ".join(invocation.args), "cwd": str(invocation.cwd)},
            )
        return CapturedOutput(
            tool=invocation.tool,
            argv=invocation.args,
            cwd=invocation.cwd,
            returncode=0,
        )


def _placeholder(invocation: BuildInvocation, output: Path) -> str:
    digest = hashlib.sha256("\0".join(invocation.args).encode()).hexdigest()
    return (
        f"wasmsysroot-placeholder: tool={invocation.tool} output={output.name}\n"
        f"digest={digest}\n"
    )
