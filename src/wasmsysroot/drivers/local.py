"""Driver that runs the real toolchain executables as host subprocesses.

Output streams go to temporary files rather than pipes so a chatty compiler
cannot block on a full pipe; only the last ``tail_bytes`` of each stream are
read back.  There is no timeout: the only way to stop a running tool early is
``cancel()``, which terminates every child this driver has in flight.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from wasmsysroot.drivers.base import DEFAULT_TAIL_BYTES, cancelled_error, tail_text, verify_outputs
from wasmsysroot.errors import InvocationError
from wasmsysroot.models import BuildInvocation, CapturedOutput, ToolKind
from wasmsysroot.toolchain import ToolchainDescriptor

TERMINATE_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class LocalDriver:
    toolchain: ToolchainDescriptor
    name: str = "local"
    tail_bytes: int = DEFAULT_TAIL_BYTES
    _active: set[subprocess.Popen[bytes]] = field(default_factory=set, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    def argv(self, tool: ToolKind, args: tuple[str, ...]) -> tuple[str, ...]:
        if tool is ToolKind.SCRIPT:
            if not args:
                raise InvocationError("Script invocation has no executable.", tool=str(tool))
            return tuple(args)
        return (str(self.toolchain.tool_path(tool)), *args)

    def run(
        self,
        tool: ToolKind,
        args: tuple[str, ...],
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> CapturedOutput:
        argv = self.argv(tool, tuple(args))
        if self._cancelled.is_set():
            raise cancelled_error(tool, argv)
        process_env = {**os.environ, **env} if env else None

        with tempfile.TemporaryFile() as stdout, tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=str(cwd),
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    env=process_env,
                )
            except OSError as exc:
                raise InvocationError(
                    f"Failed to launch {tool} tool.",
                    tool=str(tool),
                    hint="Check that the executable exists and the working directory is valid.",
                    context={"command": " ".join(argv), "cwd": str(cwd), "error": str(exc)},
                ) from exc

            with self._lock:
                self._active.add(process)
                if self._cancelled.is_set():
                    process.terminate()
            try:
                returncode = process.wait()
            finally:
                with self._lock:
                    self._active.discard(process)

            stdout_tail = self._read_tail(stdout)
            stderr_tail = self._read_tail(stderr)

        if self._cancelled.is_set():
            raise cancelled_error(tool, argv)
        if returncode != 0:
            raise InvocationError(
                f"{tool} tool exited with status {returncode}.",
                tool=str(tool),
                exit_code=returncode,
                stderr_tail=stderr_tail,
                hint="Check the tool's stderr output for details.",
                context={"command": " ".join(argv), "cwd": str(cwd)},
            )
        return CapturedOutput(
            tool=tool,
            argv=argv,
            cwd=cwd,
            returncode=returncode,
            stdout_tail=stdout_tail,
            stderr_tail=stderr_tail,
        )

    def run_invocation(self, invocation: BuildInvocation) -> CapturedOutput:
        captured = self.run(invocation.tool, invocation.args, invocation.cwd, env=invocation.env)
        return verify_outputs(invocation, captured)

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            active = list(self._active)
        for process in active:
            process.terminate()
        for process in active:
            try:
                process.wait(timeout=TERMINATE_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                process.kill()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _read_tail(self, handle: IO[bytes]) -> str:
        handle.seek(0, os.SEEK_END)
        size = handle.tell()
        handle.seek(max(0, size - self.tail_bytes))
        return tail_text(handle.read(), self.tail_bytes)
