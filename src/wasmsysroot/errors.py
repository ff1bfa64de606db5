"""Typed sysroot build errors with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers surfaced in run results and reports."""

    CONFIGURATION = "E_CONFIGURATION"
    DEPENDENCY_CYCLE = "E_DEPENDENCY_CYCLE"
    PLANNING = "E_PLANNING"
    INVOCATION = "E_INVOCATION"
    INSTALL = "E_INSTALL"


class SysrootError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ConfigurationError(SysrootError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
        code: ErrorCode = ErrorCode.CONFIGURATION,
    ) -> None:
        super().__init__(message, code=code, hint=hint, context=context)


class DependencyCycleError(ConfigurationError):
    """Raised when the library prerequisite graph is not acyclic."""

    cycle: tuple[str, ...]

    def __init__(
        self,
        cycle: Sequence[str],
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        self.cycle = tuple(cycle)
        merged = {"cycle": " -> ".join(self.cycle)}
        merged.update(context or {})
        super().__init__(
            "Library prerequisites contain a cycle.",
            hint=hint or "Break the cycle in the library catalog before building.",
            context=merged,
            code=ErrorCode.DEPENDENCY_CYCLE,
        )


class PlanningError(SysrootError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PLANNING, hint=hint, context=context)


class InvocationError(SysrootError):
    """An external tool exited non-zero, failed to launch, or was cancelled."""

    tool: str | None
    exit_code: int | None
    stderr_tail: str
    cancelled: bool

    def __init__(
        self,
        message: str,
        *,
        tool: str | None = None,
        exit_code: int | None = None,
        stderr_tail: str = "",
        cancelled: bool = False,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged: dict[str, str] = {}
        if tool is not None:
            merged["tool"] = tool
        if exit_code is not None:
            merged["returncode"] = str(exit_code)
        merged.update(context or {})
        if stderr_tail:
            merged["stderr"] = stderr_tail
        super().__init__(message, code=ErrorCode.INVOCATION, hint=hint, context=merged)
        self.tool = tool
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.cancelled = cancelled


class InstallError(SysrootError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INSTALL, hint=hint, context=context)


__all__ = [
    "ConfigurationError",
    "DependencyCycleError",
    "ErrorCode",
    "InstallError",
    "InvocationError",
    "PlanningError",
    "SysrootError",
]
