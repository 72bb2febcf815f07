"""Search for the most permissive version requirements that still validate."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from pathlib import Path

from .crates import Crate
from .errors import CompatError
from .manifest import CargoLockFile, CargoPackage
from .validator import BuildOptions, Check, RepoValidator, TestOptions, ValidationError
from .versions import Comparator, Op, Version, VersionReq

logger = logging.getLogger(__name__)

DEFAULT_THROTTLE = 0.5


class Resolver:
    """Resolves dependency requirements by testing candidate versions against the repository."""

    def __init__(
        self,
        targets: list[CargoPackage],
        path: str | Path,
        package_informations: Mapping[str, Crate],
        validator: RepoValidator,
        build_opts: BuildOptions,
        test_opts: TestOptions | None = None,
        *,
        throttle: float = DEFAULT_THROTTLE,
    ) -> None:
        self.targets = list(targets)
        self.path = Path(path)
        self.package_informations = dict(package_informations)
        self.validator = validator
        self.build_opts = build_opts
        self.test_opts = test_opts
        self.throttle = throttle
        self._requirements: dict[str, VersionReq] = {}
        self._packages: dict[str, Version] = {}

    def populate_default(self) -> None:
        """Pick starting versions from Cargo.lock, else the latest matching release."""
        try:
            lock_file: CargoLockFile | None = CargoLockFile.read_from_path(
                self.path / "Cargo.lock"
            )
        except CompatError as exc:
            logger.warning("Failed to read Cargo.lock: %s", exc)
            lock_file = None

        for target in self.targets:
            for dependency in target.dependencies:
                if dependency.git:
                    logger.warning(
                        "Git packages are not supported. Ignoring package: %s",
                        dependency.crate_name,
                    )
                    continue
                self._requirements[dependency.crate_name] = dependency.required_version

        if lock_file is not None:
            for name, requirement in sorted(self._requirements.items()):
                locked = next(
                    (
                        pkg
                        for pkg in lock_file.packages
                        if pkg.name == name and requirement.matches(pkg.version)
                    ),
                    None,
                )
                if locked is not None:
                    logger.debug(
                        "Resolved package '%s' to version '%s' using Cargo.lock",
                        name,
                        locked.version,
                    )
                    self._packages[name] = locked.version

        for name, requirement in sorted(self._requirements.items()):
            krate = self.package_informations.get(name)
            if name in self._packages or krate is None:
                continue
            candidates = [v.version for v in krate.versions if requirement.matches(v.version)]
            if candidates:
                latest = max(candidates)
                logger.debug(
                    "Package '%s' not found in Cargo.lock. "
                    "Selected latest version '%s' from crates.io",
                    name,
                    latest,
                )
                self._packages[name] = latest

    def resolve(self) -> dict[str, VersionReq]:
        """Run the resolution and return the final requirement of every crate."""
        for name, info in sorted(self.package_informations.items()):
            selected = self._packages.get(name)
            if selected is None:
                raise CompatError(f"No version selected for package '{name}'")
            entry = next((v for v in info.versions if v.version == selected), None)
            if entry is not None and not entry.yanked:
                continue

            logger.warning(
                "The selected version '%s' for package '%s' is invalid or yanked.",
                selected,
                name,
            )
            requirement = self._requirements[name]
            available = [v for v in info.versions if not v.yanked]
            matching = [v.version for v in available if requirement.matches(v.version)]
            if matching:
                replacement = max(matching)
            elif available:
                replacement = available[-1].version
            else:
                raise CompatError(f"No available versions for package '{name}'")
            self._packages[name] = replacement
            logger.info("Selected non-yanked version '%s' for package '%s'", replacement, name)

        check = Check(self.build_opts, self.test_opts)

        for name, version in sorted(self._packages.items()):
            logger.info("Initial package '%s' set to version '%s'", name, version)
            try:
                self.validator.set_dependency(name, version)
            except CompatError as exc:
                raise CompatError(f"Failed to set dependency {name}") from exc

        try:
            self.validator.run_check(check)
        except ValidationError as exc:
            logger.error(
                "Cannot resolve packages because default configuration is invalid: %r", exc
            )
            raise CompatError(f"Validation error: {exc!r}") from exc

        for name, info in sorted(self.package_informations.items()):
            self._requirements[name] = resolve_package(
                name, self._packages[name], info, self.validator, check, self.throttle
            )

        return dict(sorted(self._requirements.items()))

    def clean(self) -> None:
        """Remove temporary files created by the validator."""
        self.validator.clean()

    def write_cargo_toml_with_resolved_versions(self) -> None:
        """Write the resolved requirements back to the repository."""
        for name, requirement in sorted(self._requirements.items()):
            try:
                self.validator.set_dependency_req(name, requirement)
            except CompatError as exc:
                raise CompatError(f"Failed to set dependency {name}") from exc


def resolve_package(
    package_name: str,
    version: Version,
    package_information: Crate,
    validator: RepoValidator,
    check: Check,
    throttle: float = DEFAULT_THROTTLE,
) -> VersionReq:
    """Find the widest requirement around the version under which the check still passes."""
    all_versions = [v.version for v in package_information.versions if not v.yanked]
    results: dict[Version, bool] = {}
    comparisons = 0

    def is_valid(candidate: Version) -> bool:
        nonlocal comparisons
        if candidate in results:
            return results[candidate]
        comparisons += 1
        if throttle > 0:
            time.sleep(throttle)

        try:
            validator.set_dependency(package_name, candidate)
            validator.run_check(check)
            outcome = True
        except ValidationError:
            outcome = False
        except CompatError:
            # Only a failure to pin the dependency counts as an invalid candidate.
            outcome = None
        if outcome is None:
            results[candidate] = False
            logger.info("Checking package '%s' with version '%s'...FAIL", package_name, candidate)
            return False
        results[candidate] = outcome
        logger.info(
            "Checking package '%s' with version '%s'...%s",
            package_name,
            candidate,
            "OK" if outcome else "FAIL",
        )
        return outcome

    requirement = binary_search_bounds(version, all_versions, is_valid)
    logger.info(
        "Resolved package '%s' to version requirement '%s' using %d comparisons "
        "(%d matching versions)",
        package_name,
        requirement,
        comparisons,
        sum(
            1
            for v in package_information.versions
            if not v.yanked and requirement.matches(v.version)
        ),
    )

    validator.set_dependency(package_name, version)
    return requirement


def _bisect(
    versions: list[Version],
    valid: int,
    outer: int,
    validator: Callable[[Version], bool],
) -> tuple[int, int | None]:
    """Move the valid index towards the outer end; return it and the invalid index found."""
    if validator(versions[outer]):
        return valid, None
    invalid = outer
    while True:
        mid = (invalid + valid) // 2
        if mid in (valid, invalid):
            return valid, invalid
        if validator(versions[mid]):
            valid = mid
        else:
            invalid = mid


def binary_search_bounds(
    initial_version: Version,
    versions: Iterable[Version],
    validator: Callable[[Version], bool],
) -> VersionReq:
    """Bisect below and above the initial version for the range of valid versions."""
    ordered = sorted(versions)
    try:
        start = ordered.index(initial_version)
    except ValueError:
        raise CompatError(
            f"Version '{initial_version}' is not among the available versions"
        ) from None

    left_valid, left_invalid = _bisect(ordered, start, 0, validator)
    right_valid, right_invalid = _bisect(ordered, start, len(ordered) - 1, validator)

    bounds = []
    if left_invalid is not None:
        low = ordered[left_valid]
        bounds.append(Comparator(Op.GREATER_EQ, low.major, low.minor, low.patch, low.pre))
    if right_invalid is not None:
        high = ordered[right_valid]
        bounds.append(Comparator(Op.LESS_EQ, high.major, high.minor, high.patch, high.pre))

    return simplify_version_req(VersionReq(tuple(bounds)), ordered)


def simplify_version_req(version_req: VersionReq, versions: Iterable[Version]) -> VersionReq:
    """Replace the requirement with a shorter one matching the same versions, if any."""
    versions = list(versions)
    if not version_req.comparators or all(version_req.matches(v) for v in versions):
        return VersionReq.STAR

    matching = {v for v in versions if version_req.matches(v)}
    if len(matching) == 1:
        return VersionReq.exact(next(iter(matching)))

    def same_matches(proposal: VersionReq) -> bool:
        return {v for v in versions if proposal.matches(v)} == matching

    first = version_req.comparators[0]
    caret = Comparator(Op.CARET, first.major)
    proposals = [caret]
    caret = replace(caret, minor=first.minor if first.minor is not None else 0)
    proposals.append(caret)
    caret = replace(caret, patch=first.patch if first.patch is not None else 0)
    proposals.append(caret)

    for comparator in proposals:
        proposal = VersionReq((comparator,))
        if same_matches(proposal):
            return proposal
    return version_req