"""Command-line interface: list, resolve and cache management commands."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shutil
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from pathlib import Path

from .cache import CrateCache
from .crates import Crate, Dependency
from .errors import CompatError
from .manifest import Cargo, CargoPackage
from .resolver import Resolver
from .validator import BuildOptions, CargoRepoValidator, TestOptions
from .versions import VersionReq

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "cargo_compat"
TIME_FORMAT = "%d/%m/%Y %H:%M:%S"
SILENT = logging.CRITICAL + 10

_COLORS = {
    logging.ERROR: "\x1b[31m",
    logging.WARNING: "\x1b[33m",
    logging.INFO: "\x1b[32m",
    logging.DEBUG: "\x1b[34m",
}
_RESET = "\x1b[0m"

_DISCLAIMER = (
    "Please use cargo-compat responsibly: resolving can be expensive and may put load "
    "on crates.io and docs.rs. Prefer caching, avoid tight loops, and limit scope with "
    "--include."
)


@dataclass(frozen=True)
class CachePaths:
    """Locations of the cache directory and of the crate cache file inside it."""

    base_cache_dir: Path
    crate_cache: Path


class _Formatter(logging.Formatter):
    def __init__(self, with_location: bool) -> None:
        super().__init__()
        self.with_location = with_location

    def render(self, record: logging.LogRecord, color: bool) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime(TIME_FORMAT)
        location = f"[{record.filename}:{record.lineno}] " if self.with_location else ""
        level = record.levelname
        if color:
            level = f"{_COLORS.get(record.levelno, '')}{level}{_RESET}"
        text = f"[{stamp}] {location}{level} -- {record.getMessage()}"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text

    def format(self, record: logging.LogRecord) -> str:
        return self.render(record, color=False)


class _ConsoleHandler(logging.Handler):
    """Writes errors to stderr and everything else to stdout, looked up at emit time."""

    def __init__(self, errors: bool) -> None:
        super().__init__()
        self.errors = errors
        self.addFilter(
            (lambda r: r.levelno >= logging.ERROR)
            if errors
            else (lambda r: r.levelno < logging.ERROR)
        )

    def emit(self, record: logging.LogRecord) -> None:
        stream = sys.stderr if self.errors else sys.stdout
        try:
            color = bool(getattr(stream, "isatty", lambda: False)())
            formatter = self.formatter
            if isinstance(formatter, _Formatter):
                text = formatter.render(record, color)
            else:
                text = self.format(record)
            stream.write(text + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def setup_logging(verbose: bool = False, quiet: bool = False, silent: bool = False) -> int:
    """Configure console logging for the package and return the level chosen."""
    if silent:
        level = SILENT
    elif quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        if isinstance(handler, _ConsoleHandler):
            package_logger.removeHandler(handler)

    formatter = _Formatter(with_location=level <= logging.DEBUG)
    for errors in (False, True):
        handler = _ConsoleHandler(errors)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False
    return level


def find_cache_path(cache_dir: str | os.PathLike[str] | None = None) -> CachePaths:
    """Choose the cache directory: the given one, else under $HOME/.cache."""
    if cache_dir is not None:
        base = Path(cache_dir)
    else:
        home = os.environ.get("HOME")
        if home is not None:
            base = Path(home) / ".cache" / "cargo-compat"
        else:
            logger.warning("HOME environment variable not set, using current directory for cache")
            base = Path(".cargo-compat-cache")
    logger.debug("Using base cache directory: %s", base)
    return CachePaths(base_cache_dir=base, crate_cache=base / "crate_cache.cbor")


def local_datetime(dt: datetime) -> str:
    """Format a moment in the local time zone as day/month/year hours:minutes:seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone().strftime(TIME_FORMAT)


def read_packages_with_includes(
    path: str | os.PathLike[str], includes: Sequence[str] = ()
) -> list[CargoPackage]:
    """Read the project at the path; in a workspace keep the packages named by the patterns."""
    try:
        cargo = Cargo.from_path(path)
    except CompatError as exc:
        raise CompatError(f"Error reading Cargo manifest: {exc}") from exc

    if not cargo.is_workspace:
        if includes:
            logger.warning("Include patterns are ignored when processing a single package")
        return list(cargo.packages)

    if not includes:
        raise CompatError(
            "No include patterns specified for workspace. "
            "Workspace processing requires at least one --include pattern."
        )

    targets = [
        package
        for package in cargo.packages
        if any(fnmatchcase(package.name, pattern) for pattern in includes)
    ]
    if not targets:
        available = [package.name for package in cargo.packages]
        raise CompatError(
            "No packages in the workspace matched the provided include patterns: "
            f"{list(includes)}. Available packages: {available}"
        )
    return targets


def _non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {text!r}")
    return value


def _requirement(text: str) -> VersionReq:
    try:
        return VersionReq.parse(text)
    except CompatError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def build_parser() -> argparse.ArgumentParser:
    """The argument parser for every command and option."""
    parser = argparse.ArgumentParser(
        prog="cargo-compat",
        description=(
            "A tool to automatically determine compatible versions of Rust crates "
            "for Cargo packages and workspaces."
        ),
    )
    parser.add_argument(
        "--cache-dir",
        help="cache directory for downloaded crate information "
        "(defaults to $HOME/.cache/cargo-compat)",
    )
    parser.add_argument(
        "--cache-age",
        type=_non_negative_int,
        default=48,
        help="age limit for cached crate information in hours (default: 48)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="suppress non-error output")
    parser.add_argument("-s", "--silent", action="store_true", help="suppress all log output")

    commands = parser.add_subparsers(dest="command", required=True)

    cache = commands.add_parser("cache", help="cache related commands")
    cache_commands = cache.add_subparsers(dest="cache_command", required=True)

    clean = cache_commands.add_parser("clean", help="remove expired cache entries")
    clean.add_argument(
        "--full", action="store_true", help="remove the entire cache directory"
    )
    clean.set_defaults(handler=_cache_clean)

    info = cache_commands.add_parser("info", help="display information about the cache")
    info.set_defaults(handler=_cache_info)

    fetch = cache_commands.add_parser("fetch", help="fetch a crate and display information")
    fetch.add_argument("crate_name", help="name of the crate to fetch")
    fetch.add_argument(
        "requirement",
        nargs="?",
        type=_requirement,
        default=None,
        help="version requirement to filter the displayed versions",
    )
    fetch.add_argument(
        "--force", action="store_true", help="re-fetch even if the crate is cached"
    )
    fetch.set_defaults(handler=_cache_fetch)

    listing = commands.add_parser(
        "list-dependencies", help="list the dependencies of a package or workspace"
    )
    listing.add_argument("path", nargs="?", help="Cargo.toml or workspace directory")
    listing.add_argument(
        "--include", action="append", default=[], help="glob of workspace packages to include"
    )
    listing.set_defaults(handler=_list_dependencies)

    resolve = commands.add_parser(
        "resolve",
        help="resolve all dependencies of a package or workspace",
        description=(
            "Fetch information about all dependencies from crates.io, then search for "
            "the widest compatible version requirements. Git dependencies are skipped."
        ),
    )
    resolve.add_argument("path", nargs="?", help="Cargo.toml or workspace directory")
    resolve.add_argument(
        "--include", action="append", default=[], help="glob of workspace packages to include"
    )
    resolve.add_argument("--cargo-path", default="cargo", help="cargo executable to use")
    resolve.add_argument("--release", action="store_true", help="build in release mode")
    resolve.add_argument("--no-test", action="store_true", help="only build, do not test")
    resolve.add_argument(
        "-f", "--features", action="append", default=[], help="features to enable"
    )
    resolve.set_defaults(handler=_resolve)

    return parser


def _project_path(raw: str | None) -> Path:
    return Path(raw) if raw else Path.cwd()


def _dependency_line(dep: Dependency) -> str:
    return (
        f"  - {dep.crate_name} {dep.required_version}"
        f"{' (optional)' if dep.optional else ''}"
        f"{' (git)' if dep.git else ''}"
    )


def _list_dependencies(args: argparse.Namespace) -> int:
    for package in read_packages_with_includes(_project_path(args.path), args.include):
        print(f"Package: {package.name} (version: {package.version})")
        print(f"Manifest path: {package.manifest_path}")
        for title, deps in (
            ("Dependencies:", package.dependencies),
            ("Build Dependencies:", package.build_dependencies),
            ("Dev Dependencies:", package.dev_dependencies),
        ):
            print(title)
            for dep in deps:
                print(_dependency_line(dep))
        print()
    return 0


def _load_cache_or_empty(path: Path) -> CrateCache:
    try:
        return CrateCache.load_from_path(path)
    except CompatError as exc:
        logger.warning("Failed to load cache: %s, starting with empty cache", exc)
        return CrateCache()


def _save_cache(cache: CrateCache, path: Path) -> None:
    try:
        cache.save_to_path(path)
    except CompatError as exc:
        logger.warning("Failed to save cache to %s: %s", path, exc)


async def _resolve_packages(
    cache_paths: CachePaths, names: list[str], validity: timedelta
) -> dict[str, Crate]:
    cache = _load_cache_or_empty(cache_paths.crate_cache)
    try:
        packages = await cache.retrieve_packages_fetch(names, validity)
    except CompatError as exc:
        _save_cache(cache, cache_paths.crate_cache)
        raise CompatError(f"Failed to retrieve packages: {exc}") from exc
    _save_cache(cache, cache_paths.crate_cache)
    return packages


def _resolve(args: argparse.Namespace) -> int:
    path = _project_path(args.path)
    targets = read_packages_with_includes(path, args.include)
    cache_paths = find_cache_path(args.cache_dir)

    names: list[str] = []
    for package in targets:
        for dep in package.dependencies:
            if dep.git:
                logger.warning(
                    "Git dependency %s in package %s is not supported and will be skipped",
                    dep.crate_name,
                    package.name,
                )
                continue
            names.append(dep.crate_name)

    informations = asyncio.run(
        _resolve_packages(cache_paths, list(dict.fromkeys(names)), timedelta(hours=args.cache_age))
    )
    build_opts = BuildOptions(
        packages=[package.name for package in targets],
        features=list(args.features) or None,
        release=args.release,
    )
    workdir = path if path.is_dir() else path.parent
    resolver = Resolver(
        targets,
        path,
        informations,
        CargoRepoValidator(args.cargo_path, cwd=workdir),
        build_opts,
        None if args.no_test else TestOptions(filters=[]),
    )

    try:
        resolver.populate_default()
    except CompatError as exc:
        raise CompatError(f"Failed to populate resolver: {exc}") from exc
    try:
        versions = resolver.resolve()
    except CompatError as exc:
        raise CompatError(f"Failed to resolve packages: {exc}") from exc

    print("Resolved package versions:")
    for name, requirement in versions.items():
        print(f"- {name}: {requirement}")

    try:
        resolver.write_cargo_toml_with_resolved_versions()
    except CompatError as exc:
        raise CompatError(f"Failed to write resolved versions to Cargo.toml: {exc}") from exc
    resolver.clean()
    return 0


def _cache_clean(args: argparse.Namespace) -> int:
    paths = find_cache_path(args.cache_dir)
    if not paths.base_cache_dir.is_dir():
        logger.info(
            "Cache directory %s does not exist, nothing to clean", paths.base_cache_dir
        )
        return 0

    if args.full:
        logger.info("Removing entire cache directory: %s", paths.base_cache_dir)
        try:
            shutil.rmtree(paths.base_cache_dir)
        except OSError as exc:
            logger.error("Failed to remove cache directory %s: %s", paths.base_cache_dir, exc)
        else:
            logger.info("Cache directory removed successfully")
        return 0

    logger.info(
        "Cleaning expired cache entries older than %d hours in %s",
        args.cache_age,
        paths.base_cache_dir,
    )
    try:
        cache = CrateCache.load_from_path(paths.crate_cache)
    except CompatError as exc:
        logger.warning(
            "Failed to load cache from %s: %s, nothing to clean", paths.crate_cache, exc
        )
        return 0

    initial = cache.size()
    cache.filter_expired_entries(timedelta(hours=args.cache_age))
    logger.info(
        "Removed %d expired cache entries (%d total entries remaining)",
        initial - cache.size(),
        cache.size(),
    )
    try:
        cache.save_to_path(paths.crate_cache)
    except CompatError as exc:
        raise CompatError(f"Failed to save cleaned cache: {exc}") from exc
    return 0


def _cache_info(args: argparse.Namespace) -> int:
    paths = find_cache_path(args.cache_dir)
    print(f"Cache directory: {paths.base_cache_dir}")
    print(f"Crate cache file: {paths.crate_cache}")

    try:
        cache = CrateCache.load_from_path(paths.crate_cache)
    except CompatError as exc:
        raise CompatError(f"Failed to load cache from {paths.crate_cache}: {exc}") from exc

    print(f"Total cached crates: {cache.size()}")
    now = datetime.now(timezone.utc)
    for name, entry in sorted(cache.entries.items()):
        fetched = entry.last_fetched_at
        if fetched.tzinfo is None:
            fetched = fetched.replace(tzinfo=timezone.utc)
        hours = int((now - fetched).total_seconds() / 3600)
        print(
            f"- {name}: last fetched at {local_datetime(fetched)} (age: {hours} hours)"
        )
    return 0


def _cache_fetch(args: argparse.Namespace) -> int:
    paths = find_cache_path(args.cache_dir)
    requirement = args.requirement if args.requirement is not None else VersionReq.STAR
    cache = _load_cache_or_empty(paths.crate_cache)
    age_limit = timedelta(0) if args.force else timedelta(hours=args.cache_age)

    try:
        found = asyncio.run(cache.retrieve_packages_fetch([args.crate_name], age_limit))
    except CompatError as exc:
        raise CompatError(f"Failed to fetch crate {args.crate_name}: {exc}") from exc
    information = found.get(args.crate_name)
    if information is None:
        raise CompatError(f"Failed to fetch crate {args.crate_name}: not found in response")

    _save_cache(cache, paths.crate_cache)

    print(f"Crate: {information.name}")
    print(f"Description: {information.description or ''}")
    print(f"Created at: {local_datetime(information.created_at)}")
    print(f"Updated at: {local_datetime(information.updated_at)}")
    print(f"A total of {len(information.versions)} versions found")
    print("Versions:")
    for version in information.versions:
        if requirement.matches(version.version):
            print(
                f"- {version.version} (published at {local_datetime(version.created_at)})"
                f"{' (yanked)' if version.yanked else ''}"
            )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; returns the process exit status."""
    arguments = list(sys.argv[1:] if argv is None else argv)
    # When started as "cargo compat", cargo passes the subcommand name first.
    if arguments and arguments[0] == "compat":
        arguments = arguments[1:]

    args = build_parser().parse_args(arguments)
    setup_logging(args.verbose, args.quiet, args.silent)
    logger.info(_DISCLAIMER)

    try:
        return args.handler(args)
    except CompatError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())