"""Persistent cache of crates.io responses, stored as CBOR on disk."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import cbor2

from .crates import Crate, download_crates
from .errors import CompatError, FileSystemError

logger = logging.getLogger(__name__)

Fetcher = Callable[[list[str]], Awaitable[list[Crate]]]


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class CrateCacheEntry:
    """Cached metadata of one crate and the moment it was fetched."""

    krate: Crate
    last_fetched_at: datetime

    def _to_dict(self) -> dict[str, Any]:
        return {
            "krate": self.krate.to_dict(),
            "last_fetched_at": _utc(self.last_fetched_at).isoformat(),
        }

    @classmethod
    def _from_dict(cls, data: Any) -> CrateCacheEntry:
        return cls(
            krate=Crate.from_dict(data["krate"]),
            last_fetched_at=_utc(datetime.fromisoformat(data["last_fetched_at"])),
        )

    def _age(self, now: datetime) -> timedelta:
        return now - _utc(self.last_fetched_at)


@dataclass
class CrateCache:
    """Crate metadata keyed by crate name, with load, save and freshness queries."""

    entries: dict[str, CrateCacheEntry] = field(default_factory=dict)

    @classmethod
    def load_from_path(cls, path: str | Path) -> CrateCache:
        """Load the cache file, or return an empty cache if it does not exist."""
        path = Path(path)
        if not path.exists():
            logger.debug("Cache file does not exist at: %s", path)
            return cls()

        logger.debug("Loading cache from: %s", path)
        try:
            with path.open("rb") as handle:
                raw = cbor2.load(handle)
        except OSError as exc:
            raise FileSystemError(path, exc.strerror or exc) from exc
        except cbor2.CBORDecodeError as exc:
            raise CompatError(f"Failed to deserialize cache from {path}: {exc}") from exc

        try:
            entries = {
                str(name): CrateCacheEntry._from_dict(entry)
                for name, entry in raw["entries"].items()
            }
        except (KeyError, TypeError, ValueError, AttributeError, CompatError) as exc:
            raise CompatError(f"Failed to deserialize cache from {path}: {exc}") from exc
        return cls(entries)

    def save_to_path(self, path: str | Path) -> None:
        """Write the cache to disk, creating parent directories as needed."""
        path = Path(path)
        logger.debug("Saving cache to: %s", path)

        parent = path.parent
        if not parent.exists():
            try:
                parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FileSystemError(parent, exc.strerror or exc) from exc

        data = {
            "entries": {
                name: entry._to_dict() for name, entry in sorted(self.entries.items())
            }
        }
        try:
            with path.open("wb") as handle:
                cbor2.dump(data, handle)
        except OSError as exc:
            raise FileSystemError(path, exc.strerror or exc) from exc
        except cbor2.CBOREncodeError as exc:
            raise CompatError(f"Failed to serialize cache to {path}: {exc}") from exc
        logger.debug("Cache successfully saved to: %s", path)

    def retrieve_packages_no_fetch(
        self, crate_names: Iterable[str], cache_validity: timedelta
    ) -> dict[str, Crate]:
        """Return the cached crates among the names that are younger than the validity."""
        now = datetime.now(timezone.utc)
        found: dict[str, Crate] = {}
        for name in crate_names:
            entry = self.entries.get(name)
            if entry is None:
                continue
            age = entry._age(now)
            if age < cache_validity:
                logger.debug(
                    "Cache hit for crate '%s' (age: %d seconds)", name, age.total_seconds()
                )
                found[name] = entry.krate
            else:
                logger.debug(
                    "Cache stale for crate '%s' (age: %d seconds)", name, age.total_seconds()
                )
        return dict(sorted(found.items()))

    async def retrieve_packages_fetch(
        self,
        crate_names: Iterable[str],
        cache_validity: timedelta,
        fetcher: Fetcher | None = None,
    ) -> dict[str, Crate]:
        """Return every named crate, fetching those missing or stale and caching them."""
        names = list(crate_names)
        packages = self.retrieve_packages_no_fetch(names, cache_validity)
        to_fetch = [name for name in names if name not in packages]

        if to_fetch:
            fetch = fetcher if fetcher is not None else download_crates
            fetched = await fetch(to_fetch)
            now = datetime.now(timezone.utc)
            for krate in fetched:
                self.entries[krate.name] = CrateCacheEntry(krate, now)
                packages[krate.name] = krate

        return dict(sorted(packages.items()))

    def size(self) -> int:
        """Number of cached crates."""
        return len(self.entries)

    def filter_expired_entries(self, cache_validity: timedelta) -> None:
        """Drop every entry that is at least as old as the validity."""
        now = datetime.now(timezone.utc)
        kept: dict[str, CrateCacheEntry] = {}
        for name, entry in self.entries.items():
            age = entry._age(now)
            if age < cache_validity:
                kept[name] = entry
            else:
                logger.debug(
                    "Removing expired cache entry for crate '%s' (age: %d seconds)",
                    name,
                    age.total_seconds(),
                )
        self.entries = kept