"""Run configuration: where sources live, where to build, and what to build."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .catalog import DEFAULT_LIBRARIES
from .errors import ConfigurationError
from .models import Library

DEFAULT_STDERR_TAIL_BYTES = 8 * 1024


@dataclass(frozen=True, slots=True)
class BuildConfig:
    sources_dir: Path
    build_root: Path
    sysroot_dir: Path
    libraries: tuple[Library, ...] = DEFAULT_LIBRARIES
    llvm_src: Path | None = None
    workers: int = 1
    clobber: frozenset[Library] = field(default_factory=frozenset)
    emit_wast: bool = False
    include_prerequisites: bool = True
    stderr_tail_bytes: int = DEFAULT_STDERR_TAIL_BYTES

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ConfigurationError(
                "Worker count must be at least 1.",
                context={"workers": str(self.workers)},
            )
        if self.stderr_tail_bytes < 1:
            raise ConfigurationError(
                "stderr tail size must be positive.",
                context={"stderr_tail_bytes": str(self.stderr_tail_bytes)},
            )
        if not self.libraries:
            raise ConfigurationError(
                "At least one library must be requested.",
                hint=f"Choose from: {', '.join(member.value for member in Library)}.",
            )

    def scratch_dir(self, library: Library) -> Path:
        return self.build_root / f"{library.value}-build"

    @classmethod
    def from_mapping(
        cls,
        payload: Mapping[str, Any],
        *,
        base_dir: str | Path | None = None,
    ) -> BuildConfig:
        base = Path(base_dir) if base_dir is not None else Path.cwd()
        libraries_raw = payload.get("libraries", [member.value for member in DEFAULT_LIBRARIES])
        clobber_raw = payload.get("clobber", [])
        if clobber_raw == "all":
            clobber_raw = [member.value for member in Library]
        llvm_src = payload.get("llvm_src")
        if llvm_src is not None and (not isinstance(llvm_src, str) or not llvm_src):
            raise ConfigurationError("Invalid config `llvm_src` value.")
        return cls(
            sources_dir=_path(base, _required_str(payload, "sources_dir")),
            build_root=_path(base, _required_str(payload, "build_root")),
            sysroot_dir=_path(base, _required_str(payload, "sysroot_dir")),
            libraries=Library.parse_list(_str_list(libraries_raw, "libraries")),
            llvm_src=_path(base, llvm_src) if llvm_src else None,
            workers=_optional_int(payload, "workers", 1),
            clobber=frozenset(Library.parse_list(_str_list(clobber_raw, "clobber"))),
            emit_wast=_optional_bool(payload, "emit_wast", False),
            include_prerequisites=_optional_bool(payload, "include_prerequisites", True),
            stderr_tail_bytes=_optional_int(
                payload, "stderr_tail_bytes", DEFAULT_STDERR_TAIL_BYTES
            ),
        )

    def with_environ(self, environ: Mapping[str, str] | None = None) -> BuildConfig:
        """Apply ``WASM_SYSROOT*`` and ``LLVM_SRC`` overrides."""
        env = os.environ if environ is None else environ
        changes: dict[str, Any] = {}
        if env.get("WASM_SYSROOT"):
            changes["sysroot_dir"] = Path(env["WASM_SYSROOT"])
        if env.get("WASM_SYSROOT_SOURCES"):
            changes["sources_dir"] = Path(env["WASM_SYSROOT_SOURCES"])
        if env.get("WASM_SYSROOT_BUILD"):
            changes["build_root"] = Path(env["WASM_SYSROOT_BUILD"])
        if env.get("WASM_SYSROOT_LIBRARIES"):
            changes["libraries"] = Library.parse_list(env["WASM_SYSROOT_LIBRARIES"])
        if env.get("WASM_SYSROOT_WORKERS"):
            try:
                changes["workers"] = int(env["WASM_SYSROOT_WORKERS"])
            except ValueError as exc:
                raise ConfigurationError(
                    "Invalid WASM_SYSROOT_WORKERS value.",
                    context={"value": env["WASM_SYSROOT_WORKERS"]},
                ) from exc
        if env.get("LLVM_SRC"):
            changes["llvm_src"] = Path(env["LLVM_SRC"])
        return replace(self, **changes) if changes else self


def parse_config(raw: str, *, base_dir: str | Path | None = None) -> BuildConfig:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError("Invalid config JSON.", hint=str(exc)) from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("Invalid config payload type.")
    return BuildConfig.from_mapping(payload, base_dir=base_dir)


def load_config(path: str | Path) -> BuildConfig:
    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(
            "Config file does not exist.",
            context={"path": str(config_path)},
        ) from exc
    return parse_config(raw, base_dir=config_path.parent)


def _path(base: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base / path


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"Invalid config `{key}` value.")
    return value


def _str_list(value: Any, key: str) -> list[str]:
    if isinstance(value, str):
        return value.split(",")
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigurationError(f"Invalid config `{key}` value.")
    return list(value)


def _optional_int(payload: Mapping[str, Any], key: str, default: int) -> int:
    value = payload.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigurationError(f"Invalid config `{key}` value.")
    return value


def _optional_bool(payload: Mapping[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"Invalid config `{key}` value.")
    return value


__all__ = ["BuildConfig", "load_config", "parse_config"]
