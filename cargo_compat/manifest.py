"""Reading Cargo.toml manifests and Cargo.lock files into package models."""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any

from .crates import Dependency
from .errors import (
    CargoLockParseError,
    CargoManifestParseError,
    CompatError,
    FileSystemError,
    InvalidVersionSyntaxError,
)
from .versions import Version

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"
DEFAULT_VERSION = Version(0, 1, 0)

_DEPENDENCY_TABLES = {
    "dependencies": ("dependencies",),
    "build_dependencies": ("build-dependencies", "build_dependencies"),
    "dev_dependencies": ("dev-dependencies", "dev_dependencies"),
}


def read_cargo_manifest(path: str | Path) -> dict[str, Any]:
    """Parse a Cargo.toml, given either the file or the directory holding it."""
    path = Path(path)
    if path.is_dir():
        path = path / MANIFEST_NAME

    logger.debug("Reading Cargo manifest at: %s", path)
    try:
        content = path.read_bytes()
    except OSError as exc:
        raise FileSystemError(path, exc.strerror or exc) from exc
    try:
        return tomllib.loads(content.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise CargoManifestParseError(path, exc) from exc


def _package_version(
    name: str,
    raw: Any,
    workspace: Mapping[str, Any] | None,
    manifest_path: Path,
) -> Version:
    if raw is None:
        return DEFAULT_VERSION
    if isinstance(raw, Mapping):
        if raw.get("workspace") is not True:
            raise CargoManifestParseError(manifest_path, f"invalid version of package {name}")
        if workspace is None:
            logger.error(
                "Package %s is trying to inherit version from workspace, "
                "but no workspace is defined",
                name,
            )
            raise CompatError("Cannot inherit version from workspace")
        raw = (workspace.get("package") or {}).get("version")
        if raw is None:
            raise CompatError(
                f"Package {name} inherits its version, but the workspace defines none"
            )
    if not isinstance(raw, str):
        raise CargoManifestParseError(manifest_path, f"invalid version of package {name}")
    try:
        return Version.parse(raw)
    except InvalidVersionSyntaxError as exc:
        raise CargoManifestParseError(manifest_path, exc) from exc


def _dependencies(
    manifest: Mapping[str, Any],
    keys: tuple[str, ...],
    workspace: Mapping[str, Any] | None,
) -> list[Dependency]:
    table: dict[str, Any] = {}
    for key in keys:
        table.update(manifest.get(key) or {})
    return [
        Dependency.from_manifest_entry(name, table[name], workspace)
        for name in sorted(table)
    ]


@dataclass
class CargoPackage:
    """A Cargo package with its dependencies resolved against its workspace."""

    manifest_path: Path
    version: Version
    name: str
    dependencies: list[Dependency] = field(default_factory=list)
    build_dependencies: list[Dependency] = field(default_factory=list)
    dev_dependencies: list[Dependency] = field(default_factory=list)

    @classmethod
    def from_target(
        cls,
        manifest_path: str | Path,
        manifest: Mapping[str, Any],
        workspace: Mapping[str, Any] | None = None,
    ) -> CargoPackage | None:
        """Build from a parsed manifest; ``None`` if it declares no named package."""
        manifest_path = Path(manifest_path)
        package = manifest.get("package")
        if not isinstance(package, Mapping):
            return None
        name = package.get("name")
        if name is None:
            return None
        name = str(name)

        version = _package_version(name, package.get("version"), workspace, manifest_path)
        lists = {
            attr: _dependencies(manifest, keys, workspace)
            for attr, keys in _DEPENDENCY_TABLES.items()
        }
        return cls(manifest_path=manifest_path, version=version, name=name, **lists)


@dataclass
class Cargo:
    """The packages of a single-package project or of a workspace."""

    packages: list[CargoPackage]
    is_workspace: bool = False

    @classmethod
    def from_path(cls, path: str | Path) -> Cargo:
        """Read the project rooted at the path, following workspace members."""
        path = Path(path)
        main_manifest = read_cargo_manifest(path)

        workspace = main_manifest.get("workspace")
        if workspace is None:
            package = CargoPackage.from_target(path, main_manifest, None)
            if package is None:
                logger.error("No package found in Cargo manifest at: %s", path)
                raise CompatError("No package found in Cargo manifest")
            return cls([package], is_workspace=False)

        members = list(workspace.get("members") or [])
        excluded = list(workspace.get("exclude") or [])
        logger.debug(
            "Workspace positive matchers: %s, negative matchers: %s", members, excluded
        )

        root_manifest = path / MANIFEST_NAME
        packages: list[CargoPackage] = []
        for entry_path in sorted(path.glob(f"**/{MANIFEST_NAME}")):
            if entry_path == root_manifest:
                continue

            relative = entry_path.parent.relative_to(path).as_posix()
            is_included = any(fnmatchcase(relative, pattern) for pattern in members)
            is_excluded = any(fnmatchcase(relative, pattern) for pattern in excluded)
            logger.debug(
                "Workspace member %s: is_included=%s, is_excluded=%s",
                relative,
                is_included,
                is_excluded,
            )
            if not is_included or is_excluded:
                continue

            member_manifest = read_cargo_manifest(entry_path)
            if member_manifest.get("workspace") is not None:
                logger.error("Nested workspaces are not supported: %s", entry_path)
                raise CompatError("Nested workspaces are not supported")

            package = CargoPackage.from_target(entry_path, member_manifest, workspace)
            if package is None:
                logger.warning(
                    "No package found in workspace member manifest at: %s", entry_path
                )
                continue
            packages.append(package)

        return cls(packages, is_workspace=True)


@dataclass(frozen=True)
class CargoLockPackage:
    """One package entry of a Cargo.lock file."""

    name: str
    version: Version


@dataclass
class CargoLockFile:
    """The package entries of a Cargo.lock file."""

    packages: list[CargoLockPackage] = field(default_factory=list)

    @classmethod
    def read_from_path(cls, path: str | Path) -> CargoLockFile:
        """Parse the packages listed in a Cargo.lock file."""
        path = Path(path)
        logger.debug("Reading Cargo lock file at: %s", path)
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise FileSystemError(path, exc.strerror or exc) from exc
        try:
            lock = tomllib.loads(content.decode("utf-8"))
        except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
            raise CargoLockParseError(path, exc) from exc

        entries = lock.get("package")
        if not isinstance(entries, list):
            entries = []

        packages = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                entry = {}
            name = entry.get("name")
            if not isinstance(name, str):
                raise CargoLockParseError(path, "Missing 'name' field in package entry")
            version_text = entry.get("version")
            if not isinstance(version_text, str):
                raise CargoLockParseError(path, "Missing 'version' field in package entry")
            try:
                version = Version.parse(version_text)
            except InvalidVersionSyntaxError as exc:
                raise CargoLockParseError(
                    path, f"Invalid version '{version_text}' in package '{name}': {exc}"
                ) from exc
            logger.debug("Parsed package from Cargo.lock: %s %s", name, version)
            packages.append(CargoLockPackage(name, version))

        return cls(packages)