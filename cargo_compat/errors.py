"""Exception hierarchy shared by every part of the package."""

from __future__ import annotations


class CompatError(Exception):
    """Base class for every error raised by the package."""


class InvalidVersionSyntaxError(CompatError, ValueError):
    """A version or version requirement could not be parsed."""

    def __init__(self, detail: object) -> None:
        self.detail = detail
        super().__init__(f"The provided version has an invalid syntax: {detail}")


class CratesIoApiError(CompatError):
    """Network or protocol failure while talking to the crates.io API."""

    def __init__(self, detail: object) -> None:
        self.detail = detail
        super().__init__(
            f"An error occurred while communicating with the crates.io API: {detail}"
        )


class FileSystemError(CompatError):
    """A filesystem operation failed at a specific path."""

    def __init__(self, path: object, error: object) -> None:
        self.path = str(path)
        self.error = error
        super().__init__(f"File system error: {self.path}: {error}")


class CargoManifestParseError(CompatError):
    """A Cargo.toml file could not be parsed."""

    def __init__(self, path: object, error: object) -> None:
        self.path = str(path)
        self.error = error
        super().__init__(f"Failed to parse cargo manifest at {self.path}: {error}")


class CargoLockParseError(CompatError):
    """A Cargo.lock file could not be parsed."""

    def __init__(self, path: object, error: object) -> None:
        self.path = str(path)
        self.error = error
        super().__init__(f"Failed to parse Cargo lock file at {self.path}: {error}")


class GitPackageNotSupportedError(CompatError):
    """The project depends on a git package, which cannot be resolved."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Git packages are not supported: {name}")