"""On-disk sysroot layout and the all-or-nothing install of staged outputs.

A sysroot is ``<root>/include`` (merged headers) plus ``<root>/lib`` (one
archive per library).  Each install records the files it placed in
``<root>/.manifests/<library>.json`` so that a later library can never
silently replace another library's file, while a rebuild of the same library
overwrites its own previous outputs.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .errors import InstallError
from .models import Library

INSTALL_SECTIONS = ("include", "lib")
MANIFEST_DIR_NAME = ".manifests"


@dataclass(frozen=True, slots=True)
class InstalledFiles:
    library: Library
    files: tuple[Path, ...]

    @property
    def archives(self) -> tuple[Path, ...]:
        return tuple(path for path in self.files if path.suffix == ".a")


@dataclass(frozen=True, slots=True)
class SysrootTree:
    root: Path

    @property
    def include_dir(self) -> Path:
        return self.root / "include"

    @property
    def lib_dir(self) -> Path:
        return self.root / "lib"

    @property
    def manifest_dir(self) -> Path:
        return self.root / MANIFEST_DIR_NAME

    def create(self) -> SysrootTree:
        for directory in (self.include_dir, self.lib_dir, self.manifest_dir):
            directory.mkdir(parents=True, exist_ok=True)
        return self

    def archive_path(self, archive: str) -> Path:
        return self.lib_dir / archive

    def has_header(self, relative: str) -> bool:
        return (self.include_dir / relative).is_file()

    def has_archive(self, archive: str) -> bool:
        return self.archive_path(archive).is_file()

    def manifest_path(self, library: Library) -> Path:
        return self.manifest_dir / f"{library.value}.json"

    def read_manifest(self, library: Library) -> set[str]:
        path = self.manifest_path(library)
        if not path.exists():
            return set()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InstallError(
                "Sysroot ownership manifest is not valid JSON.",
                hint="Delete the manifest and rebuild the library.",
                context={"library": library.value, "path": str(path)},
            ) from exc
        files = payload.get("files") if isinstance(payload, dict) else None
        if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
            raise InstallError(
                "Sysroot ownership manifest has an invalid `files` list.",
                context={"library": library.value, "path": str(path)},
            )
        return set(files)

    def write_manifest(self, library: Library, files: Iterable[str]) -> Path:
        path = self.manifest_path(library)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"library": library.value, "files": sorted(set(files))}
        path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        return path

    def owners(self) -> dict[str, Library]:
        """Map every recorded relative path to the library that installed it."""
        owned: dict[str, Library] = {}
        if not self.manifest_dir.is_dir():
            return owned
        for manifest in sorted(self.manifest_dir.glob("*.json")):
            library = Library.parse(manifest.stem)
            for relative in self.read_manifest(library):
                owned[relative] = library
        return owned

    def install(
        self,
        library: Library,
        stage: Path,
        *,
        sections: tuple[str, ...] = INSTALL_SECTIONS,
        expected: Iterable[Path] = (),
        headers_dir: Path | None = None,
        header_prefix: str = "",
    ) -> InstalledFiles:
        """Copy ``<stage>/<section>/**`` into the sysroot, all or nothing.

        Every path in *expected* must exist in the stage before anything is
        copied.  When *headers_dir* is given its files are installed under
        ``include/<header_prefix>`` in the same transaction; a staged file with
        the same sysroot path takes precedence.
        """
        missing = sorted(str(path) for path in expected if not (path.exists() or path.is_symlink()))
        if missing:
            raise InstallError(
                f"Staged outputs of {library.value!r} are missing.",
                hint="The build step finished without staging every declared output.",
                context={"library": library.value, "missing": ", ".join(missing)},
            )
        mapping: dict[str, Path] = {}
        if headers_dir is not None:
            mapping.update(self._header_mapping(library, headers_dir, header_prefix))
        for section in sections:
            section_dir = stage / section
            if section_dir.is_dir():
                for source in _walk_files(section_dir):
                    mapping[(Path(section) / source.relative_to(section_dir)).as_posix()] = source
        return self._copy_owned(library, mapping)

    def install_headers(self, library: Library, headers_dir: Path, *, prefix: str = "") -> InstalledFiles:
        """Install a header directory under ``include/<prefix>`` without building."""
        return self._copy_owned(library, self._header_mapping(library, headers_dir, prefix))

    def _header_mapping(self, library: Library, headers_dir: Path, prefix: str) -> dict[str, Path]:
        if not headers_dir.is_dir():
            raise InstallError(
                "Header directory to install does not exist.",
                context={"library": library.value, "path": str(headers_dir)},
            )
        base = Path("include") / prefix if prefix else Path("include")
        return {
            (base / source.relative_to(headers_dir)).as_posix(): source
            for source in _walk_files(headers_dir)
        }

    def _copy_owned(self, library: Library, mapping: dict[str, Path]) -> InstalledFiles:
        owners = self.owners()
        collisions = sorted(
            relative
            for relative in mapping
            if owners.get(relative, library) is not library
        )
        if collisions:
            raise InstallError(
                f"Files staged by {library.value!r} are owned by another library.",
                hint="Two libraries may not install the same sysroot path.",
                context={
                    "library": library.value,
                    "paths": ", ".join(collisions[:10]),
                    "owner": owners[collisions[0]].value,
                },
            )

        installed: list[Path] = []
        created: list[Path] = []
        backups: dict[Path, Path] = {}
        backup_dir: Path | None = None
        try:
            self.create()
            backup_dir = Path(tempfile.mkdtemp(prefix=f"{library.value}-", dir=self.manifest_dir))
            for relative, source in sorted(mapping.items()):
                destination = self.root / relative
                if destination.exists() or destination.is_symlink():
                    saved = backup_dir / relative
                    saved.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(destination, saved)
                    backups[destination] = saved
                else:
                    created.append(destination)
                destination.parent.mkdir(parents=True, exist_ok=True)
                if source.is_symlink():
                    os.symlink(os.readlink(source), destination)
                else:
                    shutil.copy2(source, destination)
                installed.append(destination)
            self.write_manifest(library, self.read_manifest(library) | set(mapping))
        except OSError as exc:
            for path in created:
                if path.exists() or path.is_symlink():
                    path.unlink()
            for destination, saved in backups.items():
                if destination.exists() or destination.is_symlink():
                    destination.unlink()
                os.replace(saved, destination)
            raise InstallError(
                f"Failed to install {library.value!r} into the sysroot.",
                hint="The files copied for this library were rolled back.",
                context={"library": library.value, "root": str(self.root), "error": str(exc)},
            ) from exc
        finally:
            if backup_dir is not None:
                shutil.rmtree(backup_dir, ignore_errors=True)
        return InstalledFiles(library=library, files=tuple(installed))


def _walk_files(root: Path) -> list[Path]:
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(filenames):
            files.append(base / name)
        # Symlinked directories are copied as links, not followed.
        for name in list(dirnames):
            if (base / name).is_symlink():
                files.append(base / name)
                dirnames.remove(name)
    return files


__all__ = ["INSTALL_SECTIONS", "InstalledFiles", "SysrootTree"]
