"""Core typed dataclasses for libraries, build invocations, and run results."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from .errors import ConfigurationError, SysrootError


class Library(StrEnum):
    """Runtime libraries known to the catalog, in declaration order."""

    COMPAT = "compat"
    DLMALLOC = "dlmalloc"
    COMPILER_RT = "compiler-rt"
    LIBC = "libc"
    LIBUNWIND = "libunwind"
    LIBCXXABI = "libcxxabi"
    LIBCXX = "libcxx"
    ZLIB = "zlib"

    @classmethod
    def parse(cls, name: str) -> Library:
        try:
            return cls(name.strip())
        except ValueError as exc:
            raise ConfigurationError(
                f"Unknown system library: {name!r}.",
                hint=f"Choose from: {', '.join(member.value for member in cls)}.",
                context={"library": name},
            ) from exc

    @classmethod
    def parse_list(cls, raw: str | Iterable[str]) -> tuple[Library, ...]:
        """Parse ``"libc,libcxx"`` or an iterable of names, keeping first occurrence order."""
        names = raw.split(",") if isinstance(raw, str) else list(raw)
        parsed: list[Library] = []
        for name in names:
            if not name.strip():
                continue
            library = cls.parse(name)
            if library not in parsed:
                parsed.append(library)
        return tuple(parsed)


class BuildKind(StrEnum):
    """How a library describes its own build."""

    NATIVE = "native"
    CONFIGURED = "configured"


class ToolKind(StrEnum):
    CC = "cc"
    CXX = "cxx"
    LD = "ld"
    AR = "ar"
    CMAKE = "cmake"
    NINJA = "ninja"
    MAKE = "make"
    # args[0] is the executable, e.g. a library's own configure script.
    SCRIPT = "script"


class LibraryState(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    BUILDING = "building"
    INSTALLING = "installing"
    DONE = "done"
    FAILED = "failed"


class RunState(StrEnum):
    RUNNING = "running"
    DONE = "done"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class BuildInvocation:
    tool: ToolKind
    args: tuple[str, ...]
    cwd: Path
    outputs: tuple[Path, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    label: str = ""

    def describe(self) -> str:
        return self.label or f"{self.tool} {' '.join(self.args)}"


@dataclass(frozen=True, slots=True)
class CapturedOutput:
    tool: ToolKind
    argv: tuple[str, ...]
    cwd: Path
    returncode: int
    stdout_tail: str = ""
    stderr_tail: str = ""


@dataclass(frozen=True, slots=True)
class Succeeded:
    library: Library
    artifacts: tuple[Path, ...] = ()

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failed:
    library: Library
    error: SysrootError

    @property
    def ok(self) -> bool:
        return False

    @property
    def cause(self) -> str:
        return self.error.code


BuildOutcome = Succeeded | Failed


@dataclass(slots=True)
class RunResult:
    order: tuple[Library, ...]
    state: RunState = RunState.RUNNING
    states: dict[Library, LibraryState] = field(default_factory=dict)
    outcomes: dict[Library, BuildOutcome] = field(default_factory=dict)
    report_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.state is RunState.DONE

    @property
    def failure(self) -> Failed | None:
        """The first failed library in build order, if any."""
        for library in self.order:
            outcome = self.outcomes.get(library)
            if isinstance(outcome, Failed):
                return outcome
        return None

    def raise_for_failure(self) -> None:
        failure = self.failure
        if failure is not None:
            raise failure.error

    def artifacts_for(self, library: Library) -> tuple[Path, ...]:
        outcome = self.outcomes.get(library)
        if isinstance(outcome, Succeeded):
            return outcome.artifacts
        return ()

    def to_dict(self) -> dict[str, object]:
        outcomes: dict[str, object] = {}
        for library, outcome in self.outcomes.items():
            if isinstance(outcome, Succeeded):
                outcomes[library.value] = {
                    "status": "succeeded",
                    "artifacts": [str(path) for path in outcome.artifacts],
                }
            else:
                outcomes[library.value] = {"status": "failed", "error": outcome.error.to_dict()}
        failure = self.failure
        return {
            "state": self.state.value,
            "order": [library.value for library in self.order],
            "states": {library.value: state.value for library, state in self.states.items()},
            "outcomes": outcomes,
            "failed_library": failure.library.value if failure is not None else None,
        }


__all__ = [
    "BuildInvocation",
    "BuildKind",
    "BuildOutcome",
    "CapturedOutput",
    "Failed",
    "Library",
    "LibraryState",
    "RunResult",
    "RunState",
    "Succeeded",
    "ToolKind",
]
