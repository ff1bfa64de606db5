"""Typed CMake cache entries and configure-argument assembly."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Self

CMakeType = Literal["BOOL", "STRING", "PATH", "FILEPATH"]

C_CXX_FLAG_VARS = ("CMAKE_C_FLAGS", "CMAKE_CXX_FLAGS")


@dataclass(frozen=True, slots=True)
class CMakeVar:
    type: CMakeType
    value: str

    @classmethod
    def on(cls) -> CMakeVar:
        return cls("BOOL", "ON")

    @classmethod
    def off(cls) -> CMakeVar:
        return cls("BOOL", "OFF")

    @classmethod
    def string(cls, value: str) -> CMakeVar:
        return cls("STRING", value)

    @classmethod
    def path(cls, value: str | Path) -> CMakeVar:
        return cls("PATH", str(value))

    @classmethod
    def filepath(cls, value: str | Path) -> CMakeVar:
        return cls("FILEPATH", str(value))

    def render(self, name: str) -> str:
        return f"-D{name}:{self.type}={self.value}"

    def format(self, values: Mapping[str, str]) -> CMakeVar:
        """Substitute ``{placeholder}`` fields in the value."""
        if self.type == "BOOL":
            return self
        return CMakeVar(self.type, self.value.format_map(values))


@dataclass(slots=True)
class CMakeArgs:
    """Accumulates ``-D`` cache entries and generator arguments for one configure run.

    String entries can be appended to (space separated), which is how C/C++
    and linker flags accumulate.  Rendering is sorted by name so identical
    inputs always produce identical command lines.
    """

    defines: dict[str, CMakeVar] = field(default_factory=dict)
    args: list[str] = field(default_factory=list)

    def set(self, name: str, var: CMakeVar) -> Self:
        self.defines[name] = var
        return self

    def on(self, name: str) -> Self:
        return self.set(name, CMakeVar.on())

    def off(self, name: str) -> Self:
        return self.set(name, CMakeVar.off())

    def string(self, name: str, value: str) -> Self:
        return self.set(name, CMakeVar.string(value))

    def path(self, name: str, value: str | Path) -> Self:
        return self.set(name, CMakeVar.path(value))

    def filepath(self, name: str, value: str | Path) -> Self:
        return self.set(name, CMakeVar.filepath(value))

    def append_string(self, name: str, value: str) -> Self:
        if not value:
            return self
        current = self.defines.get(name)
        if current is None or current.type != "STRING" or not current.value:
            self.defines[name] = CMakeVar.string(value)
        else:
            self.defines[name] = CMakeVar.string(f"{current.value} {value}")
        return self

    def c_cxx_flag(self, value: str) -> Self:
        for name in C_CXX_FLAG_VARS:
            self.append_string(name, value)
        return self

    def shared_ld_flag(self, value: str) -> Self:
        return self.append_string("CMAKE_SHARED_LINKER_FLAGS", value)

    def exe_ld_flag(self, value: str) -> Self:
        return self.append_string("CMAKE_EXE_LINKER_FLAGS", value)

    def generator(self, name: str) -> Self:
        self.args.extend(["-G", name])
        return self

    def to_args(self) -> tuple[str, ...]:
        rendered = [var.render(name) for name, var in sorted(self.defines.items())]
        return (*self.args, *rendered)
