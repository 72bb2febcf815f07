"""Crate metadata from crates.io and dependency declarations from manifests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from .errors import CompatError, CratesIoApiError, InvalidVersionSyntaxError
from .versions import Version, VersionReq

logger = logging.getLogger(__name__)

API_ROOT = "https://crates.io/api/v1"
USER_AGENT = "cargo-compat (dependency version resolver)"
REQUEST_INTERVAL = 0.5


def _field(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except (KeyError, TypeError) as exc:
        raise CratesIoApiError(f"missing field {key!r} in response") from exc


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value))
        except ValueError as exc:
            raise CompatError(f"Invalid timestamp {value!r}") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class Dependency:
    """A dependency on a crate with its version requirement."""

    crate_name: str
    required_version: VersionReq
    features: list[str] = field(default_factory=list)
    git: bool = False
    optional: bool = False

    @classmethod
    def from_manifest_entry(
        cls,
        name: str,
        entry: str | Mapping[str, Any],
        workspace: Mapping[str, Any] | None = None,
    ) -> Dependency:
        """Build from a Cargo.toml dependency entry, following workspace inheritance."""
        features: list[str] = []
        if workspace is not None:
            logger.debug("Resolving dependency %s with workspace inheritance", name)

        if isinstance(entry, Mapping) and entry.get("workspace") is True:
            if workspace is None:
                logger.error(
                    "Dependency %s is trying to inherit version from workspace, "
                    "but no workspace is defined",
                    name,
                )
                raise CompatError("Cannot inherit version from workspace")
            features.extend(entry.get("features") or [])
            normalized = (workspace.get("dependencies") or {}).get(name)
            if normalized is None:
                raise CompatError(f"Dependency {name} not found in workspace")
        else:
            normalized = entry

        optional = False
        git = False
        if isinstance(normalized, str):
            requirement = normalized
        elif isinstance(normalized, Mapping):
            if "features" in normalized:
                features = list(normalized["features"])
            optional = bool(normalized.get("optional", False))
            git = "git" in normalized
            requirement = normalized.get("version", "*")
        else:
            raise CompatError(f"Invalid dependency specification for {name}")

        try:
            required_version = VersionReq.parse(requirement)
        except InvalidVersionSyntaxError as exc:
            logger.error("Failed to parse version requirement for %s: %s", name, exc)
            raise
        return cls(name, required_version, features, git, optional)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Dependency:
        """Build from a dependency object returned by crates.io."""
        return cls(
            crate_name=_field(data, "crate_id"),
            required_version=VersionReq.parse(_field(data, "req")),
            features=list(data.get("features") or []),
            git=False,
            optional=bool(data.get("optional", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "crate_name": self.crate_name,
            "required_version": str(self.required_version),
            "features": list(self.features),
            "git": self.git,
            "optional": self.optional,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Dependency:
        return cls(
            crate_name=data["crate_name"],
            required_version=VersionReq.parse(data["required_version"]),
            features=list(data.get("features", [])),
            git=bool(data.get("git", False)),
            optional=bool(data.get("optional", False)),
        )


@dataclass
class CrateVersion:
    """One published version of a crate."""

    created_at: datetime
    updated_at: datetime
    yanked: bool
    version: Version
    checksum: str
    dependencies: list[Dependency] | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> CrateVersion:
        """Build from a crates.io version object, with dependencies if it carries them."""
        raw_deps = data.get("dependencies")
        dependencies = (
            [Dependency.from_api(dep) for dep in raw_deps] if raw_deps is not None else None
        )
        return cls(
            created_at=_parse_datetime(_field(data, "created_at")),
            updated_at=_parse_datetime(_field(data, "updated_at")),
            yanked=bool(_field(data, "yanked")),
            version=Version.parse(_field(data, "num")),
            checksum=_field(data, "checksum"),
            dependencies=dependencies,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "yanked": self.yanked,
            "version": str(self.version),
            "checksum": self.checksum,
            "dependencies": (
                None
                if self.dependencies is None
                else [dep.to_dict() for dep in self.dependencies]
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CrateVersion:
        raw_deps = data.get("dependencies")
        return cls(
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
            yanked=bool(data["yanked"]),
            version=Version.parse(data["version"]),
            checksum=data["checksum"],
            dependencies=(
                None if raw_deps is None else [Dependency.from_dict(d) for d in raw_deps]
            ),
        )


@dataclass
class Crate:
    """A crate with its description and every published version."""

    name: str
    description: str | None
    created_at: datetime
    updated_at: datetime
    versions: list[CrateVersion] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Crate:
        """Build from a crates.io crate response, nested under "crate" or flat."""
        info = data["crate"] if "crate" in data else data
        versions = [CrateVersion.from_api(v) for v in data.get("versions") or []]
        return cls(
            name=_field(info, "name"),
            description=info.get("description"),
            created_at=_parse_datetime(_field(info, "created_at")),
            updated_at=_parse_datetime(_field(info, "updated_at")),
            versions=versions,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "versions": [v.to_dict() for v in self.versions],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Crate:
        return cls(
            name=data["name"],
            description=data.get("description"),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
            versions=[CrateVersion.from_dict(v) for v in data.get("versions", [])],
        )


class _Throttle:
    """Spaces out requests so that consecutive calls are at least an interval apart."""

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._lock = asyncio.Lock()
        self._last: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last is not None:
                delay = self._last + self._interval - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
            self._last = loop.time()


async def _get_json(client: httpx.AsyncClient, throttle: _Throttle, url: str) -> Any:
    await throttle.wait()
    try:
        response = await client.get(url, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise CratesIoApiError(exc) from exc


async def _download(
    crate_names: Iterable[str], client: httpx.AsyncClient | None, *, full: bool
) -> list[Crate]:
    names = list(crate_names)
    kind = "full crate data" if full else "crate data"
    logger.debug("Downloading %s for: [%s]", kind, ", ".join(names))

    own_client = client is None
    http = client if client is not None else httpx.AsyncClient(timeout=30.0)
    throttle = _Throttle(REQUEST_INTERVAL)
    done = 0

    async def fetch(name: str) -> Any:
        nonlocal done
        data = await _get_json(http, throttle, f"{API_ROOT}/crates/{name}")
        if full:
            info = _field(data, "crate")
            versions = []
            for version in data.get("versions") or []:
                num = _field(version, "num")
                deps = await _get_json(
                    http, throttle, f"{API_ROOT}/crates/{name}/{num}/dependencies"
                )
                versions.append({**version, "dependencies": _field(deps, "dependencies")})
            data = {**info, "versions": versions}
        done += 1
        logger.info("Downloaded %s for %s (%d/%d)", kind, name, done, len(names))
        return data

    try:
        responses = await asyncio.gather(*(fetch(name) for name in names))
    finally:
        if own_client:
            await http.aclose()
    return [Crate.from_api(response) for response in responses]


async def download_crates(
    crate_names: Iterable[str], client: httpx.AsyncClient | None = None
) -> list[Crate]:
    """Fetch crate metadata with the version list for each named crate."""
    return await _download(crate_names, client, full=False)


async def download_full_crates(
    crate_names: Iterable[str], client: httpx.AsyncClient | None = None
) -> list[Crate]:
    """Fetch crate metadata including the dependencies of every version."""
    return await _download(crate_names, client, full=True)