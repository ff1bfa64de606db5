"""Protocol for driver invocation layers."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from wasmsysroot.errors import InvocationError
from wasmsysroot.models import BuildInvocation, CapturedOutput, ToolKind

DEFAULT_TAIL_BYTES = 8 * 1024


class Driver(Protocol):
    name: str

    def run(
        self,
        tool: ToolKind,
        args: tuple[str, ...],
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> CapturedOutput:
        """Run one tool to completion, raising ``InvocationError`` on failure."""

    def run_invocation(self, invocation: BuildInvocation) -> CapturedOutput:
        """Run one plan step and verify its declared outputs exist."""

    def cancel(self) -> None:
        """Terminate every in-flight tool; later runs fail as cancelled."""


def verify_outputs(invocation: BuildInvocation, captured: CapturedOutput) -> CapturedOutput:
    missing = [str(path) for path in invocation.outputs if not path.exists()]
    if missing:
        raise InvocationError(
            f"{invocation.describe()} did not produce its declared outputs.",
            tool=str(invocation.tool),
            exit_code=captured.returncode,
            stderr_tail=captured.stderr_tail,
            hint="The tool exited successfully but the expected files are absent.",
            context={"missing": ", ".join(missing), "cwd": str(invocation.cwd)},
        )
    return captured


def cancelled_error(tool: ToolKind, argv: tuple[str, ...]) -> InvocationError:
    return InvocationError(
        "Tool invocation was cancelled.",
        tool=str(tool),
        cancelled=True,
        context={"command": " ".join(argv)},
    )


def tail_text(raw: bytes, limit: int) -> str:
    return raw[-limit:].decode("utf-8", errors="replace")
