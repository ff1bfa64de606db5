"""Content digests of an assembled sysroot, their export, and verification."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import cbor2

from wasmsysroot.layout import INSTALL_SECTIONS, SysrootTree

MismatchReason = Literal["missing_actual", "unexpected_actual", "value_mismatch"]


@dataclass(frozen=True, slots=True)
class DigestMismatch:
    path: str
    reason: MismatchReason
    expected: str | None
    actual: str | None
    hint: str


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    mismatches: tuple[DigestMismatch, ...] = ()


@dataclass(frozen=True, slots=True)
class SysrootDigests:
    target: str
    values: dict[str, str] = field(default_factory=dict)
    schema_version: int = 1

    @classmethod
    def from_tree(cls, sysroot: SysrootTree, *, target: str) -> SysrootDigests:
        """Hash every file under ``include/`` and ``lib/``, keyed by sysroot-relative path."""
        values: dict[str, str] = {}
        for section in INSTALL_SECTIONS:
            section_dir = sysroot.root / section
            if not section_dir.is_dir():
                continue
            for path in sorted(section_dir.rglob("*")):
                if path.is_file():
                    relative = path.relative_to(sysroot.root).as_posix()
                    values[relative] = hashlib.sha256(path.read_bytes()).hexdigest()
        return cls(target=target, values=values)

    def paths(self, section: str) -> tuple[str, ...]:
        prefix = f"{section}/"
        return tuple(sorted(path for path in self.values if path.startswith(prefix)))

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def verify(self, expected: dict[str, str]) -> VerificationResult:
        mismatches: list[DigestMismatch] = []
        for path, expected_value in sorted(expected.items()):
            actual_value = self.values.get(path)
            if actual_value is None:
                mismatches.append(
                    DigestMismatch(
                        path=path,
                        reason="missing_actual",
                        expected=expected_value,
                        actual=None,
                        hint="The sysroot is missing this file; rebuild its library.",
                    ),
                )
            elif actual_value != expected_value:
                mismatches.append(
                    DigestMismatch(
                        path=path,
                        reason="value_mismatch",
                        expected=expected_value,
                        actual=actual_value,
                        hint="Rebuild with the same sources, flags and toolchain and compare again.",
                    ),
                )

        for path, actual_value in sorted(self.values.items()):
            if path not in expected:
                mismatches.append(
                    DigestMismatch(
                        path=path,
                        reason="unexpected_actual",
                        expected=None,
                        actual=actual_value,
                        hint="Expected set does not include this installed file.",
                    ),
                )
        return VerificationResult(ok=not mismatches, mismatches=tuple(mismatches))

    def _payload(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "target": self.target,
            "values": dict(sorted(self.values.items())),
        }


__all__ = ["DigestMismatch", "SysrootDigests", "VerificationResult"]
