"""Validation layer that runs cargo build or test to check candidate dependency sets."""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .errors import CompatError
from .versions import Version, VersionReq

logger = logging.getLogger(__name__)


@dataclass
class BuildOptions:
    """Options controlling how cargo build is run."""

    packages: list[str] | None = None
    features: list[str] | None = None
    release: bool = False

    def arguments(self) -> list[str]:
        """Command-line arguments that select packages, features and profile."""
        args: list[str] = []
        for package in self.packages or []:
            args += ["--package", package]
        if self.features is not None:
            args += ["--features", ",".join(self.features)]
        if self.release:
            args.append("--release")
        return args


@dataclass
class TestOptions:
    """Options controlling how cargo test is run."""

    __test__ = False

    filters: list[str] = field(default_factory=list)

    def arguments(self) -> list[str]:
        """Arguments passed after the cargo test options."""
        if not self.filters:
            return []
        args = ["--"]
        for name in self.filters:
            args += ["--test", name]
        return args


@dataclass(frozen=True)
class Check:
    """A check to run: a build, or a test run when test options are given."""

    build_opts: BuildOptions
    test_opts: TestOptions | None = None

    @property
    def runs_tests(self) -> bool:
        return self.test_opts is not None


@dataclass
class BuildFailure:
    """Exit code and error output of a failed build."""

    cargo_error_code: int
    message: str


class ValidationError(Exception):
    """A build or test run did not succeed."""

    def __init__(
        self,
        tests_failed: bool = False,
        build_failure: BuildFailure | None = None,
        runned_at: datetime | None = None,
    ) -> None:
        self.tests_failed = tests_failed
        self.build_failure = build_failure
        self.runned_at = runned_at if runned_at is not None else datetime.now(timezone.utc)
        if build_failure is not None:
            detail = f"build failed with code {build_failure.cargo_error_code}"
        elif tests_failed:
            detail = "tests failed"
        else:
            detail = "validation failed"
        super().__init__(detail)

    def __repr__(self) -> str:
        return (
            f"ValidationError(tests_failed={self.tests_failed!r}, "
            f"build_failure={self.build_failure!r}, runned_at={self.runned_at!r})"
        )


class RepoValidator(ABC):
    """Something that can pin dependencies of a repository and check that it still works."""

    def clean(self) -> None:
        """Remove temporary artefacts; nothing to do by default."""

    @abstractmethod
    def set_dependency_req(self, name: str, version_req: VersionReq) -> None:
        """Set the requirement of a dependency; raises CompatError on failure."""

    def set_dependency(self, name: str, version: Version) -> None:
        """Pin a dependency to exactly one version."""
        self.set_dependency_req(name, VersionReq.exact(version))

    @abstractmethod
    def run_check(self, check: Check) -> None:
        """Run the check; raises ValidationError if it fails, CompatError on other errors."""


class CargoRepoValidator(RepoValidator):
    """Validator driving the cargo executable."""

    def __init__(self, cargo_command: str | None = None, cwd: str | Path | None = None) -> None:
        self.cargo_command = cargo_command if cargo_command is not None else "cargo"
        self.cwd = cwd

    def _run(self, args: list[str]) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                [self.cargo_command, *args],
                capture_output=True,
                cwd=self.cwd,
                check=False,
            )
        except OSError as exc:
            raise CompatError(f"An I/O error occurred: {exc}") from exc
        logger.debug(
            "Running cargo command: %s %s...%s",
            self.cargo_command,
            " ".join(args),
            " OK" if result.returncode == 0 else " FAILED",
        )
        return result

    def clean(self) -> None:
        try:
            self._run(["clean"])
        except CompatError as exc:
            logger.warning("Failed to clean the cargo project: %s", exc)

    def set_dependency_req(self, name: str, version_req: VersionReq) -> None:
        try:
            result = self._run(["add", f"{name}@{version_req}"])
        except CompatError as exc:
            logger.warning(
                "Failed to set dependency %s to version requirement %s: %s",
                name,
                version_req,
                exc,
            )
            raise
        if result.returncode != 0:
            raise CompatError(f"Failed to set dependency {name} to {version_req}")

    def run_check(self, check: Check) -> None:
        args = ["test" if check.runs_tests else "build", *check.build_opts.arguments()]
        if check.test_opts is not None:
            args += check.test_opts.arguments()

        result = self._run(args)
        status = result.returncode if result.returncode >= 0 else 1
        if status == 0:
            return
        if check.runs_tests:
            raise ValidationError(tests_failed=True)
        stderr = result.stderr or b""
        message = stderr.decode("utf-8", "replace") if isinstance(stderr, bytes) else stderr
        raise ValidationError(
            tests_failed=False,
            build_failure=BuildFailure(cargo_error_code=status, message=message),
        )