"""Semantic versions and version requirements with Cargo's matching rules."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import ClassVar

from .errors import InvalidVersionSyntaxError

_NUMERIC = re.compile(r"0|[1-9][0-9]*")
_IDENT = r"[0-9A-Za-z-]+"
_DOTTED = re.compile(rf"{_IDENT}(?:\.{_IDENT})*")
_VERSION_RE = re.compile(
    r"(?P<major>[0-9]+)\.(?P<minor>[0-9]+)\.(?P<patch>[0-9]+)"
    r"(?:-(?P<pre>[^+]*))?(?:\+(?P<build>.*))?"
)
_COMPARATOR_RE = re.compile(
    r"(?P<op>>=|<=|=|>|<|~|\^)?\s*"
    r"(?P<major>[^.\s]+)"
    r"(?:\.(?P<minor>[^.\s]+)"
    r"(?:\.(?P<patch>[^-+\s]+)"
    r"(?:-(?P<pre>[^+\s]+))?(?:\+(?P<build>\S+))?)?)?"
)
_WILDCARDS = frozenset({"*", "x", "X"})


def _number(text: str, what: str, source: str) -> int:
    if not _NUMERIC.fullmatch(text):
        raise InvalidVersionSyntaxError(f"invalid {what} number {text!r} in {source!r}")
    return int(text)


def _identifiers(text: str, what: str, source: str) -> str:
    if not _DOTTED.fullmatch(text):
        raise InvalidVersionSyntaxError(f"invalid {what} {text!r} in {source!r}")
    for ident in text.split("."):
        if what == "pre-release" and ident.isdigit() and len(ident) > 1 and ident[0] == "0":
            raise InvalidVersionSyntaxError(
                f"leading zero in pre-release identifier {ident!r} in {source!r}"
            )
    return text


def _identifier_key(text: str) -> tuple:
    if not text:
        return ()
    return tuple(
        (0, int(ident), "") if ident.isdigit() else (1, 0, ident)
        for ident in text.split(".")
    )


def _pre_key(pre: str) -> tuple:
    # A release without a pre-release tag sorts after every pre-release.
    if not pre:
        return (1,)
    return (0, _identifier_key(pre))


@total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """A semantic version: major.minor.patch with optional pre-release and build."""

    major: int
    minor: int
    patch: int
    pre: str = ""
    build: str = ""

    @classmethod
    def parse(cls, text: str) -> Version:
        """Parse a full version such as ``1.2.3-alpha.1+build``."""
        match = _VERSION_RE.fullmatch(text)
        if match is None:
            raise InvalidVersionSyntaxError(f"unexpected version format {text!r}")
        pre = match["pre"]
        build = match["build"]
        return cls(
            _number(match["major"], "major", text),
            _number(match["minor"], "minor", text),
            _number(match["patch"], "patch", text),
            _identifiers(pre, "pre-release", text) if pre is not None else "",
            _identifiers(build, "build metadata", text) if build is not None else "",
        )

    def _key(self) -> tuple:
        return (
            self.major,
            self.minor,
            self.patch,
            _pre_key(self.pre),
            _identifier_key(self.build),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return (self.major, self.minor, self.patch, self.pre, self.build) == (
            other.major,
            other.minor,
            other.patch,
            other.pre,
            other.build,
        )

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash((self.major, self.minor, self.patch, self.pre, self.build))

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            text += f"-{self.pre}"
        if self.build:
            text += f"+{self.build}"
        return text


class Op(Enum):
    """Operator of a single comparator."""

    EXACT = "="
    GREATER = ">"
    GREATER_EQ = ">="
    LESS = "<"
    LESS_EQ = "<="
    TILDE = "~"
    CARET = "^"
    WILDCARD = "*"


@dataclass(frozen=True)
class Comparator:
    """One operator applied to a possibly partial version."""

    op: Op
    major: int
    minor: int | None = None
    patch: int | None = None
    pre: str = ""

    def matches(self, version: Version) -> bool:
        """Whether the version satisfies this comparator, ignoring pre-release policy."""
        op = self.op
        if op in (Op.EXACT, Op.WILDCARD):
            return self._exact(version)
        if op is Op.GREATER:
            return self._greater(version)
        if op is Op.GREATER_EQ:
            return self._exact(version) or self._greater(version)
        if op is Op.LESS:
            return self._less(version)
        if op is Op.LESS_EQ:
            return self._exact(version) or self._less(version)
        if op is Op.TILDE:
            return self._tilde(version)
        return self._caret(version)

    def _exact(self, ver: Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is not None and ver.minor != self.minor:
            return False
        if self.patch is not None and ver.patch != self.patch:
            return False
        return ver.pre == self.pre

    def _greater(self, ver: Version) -> bool:
        if ver.major != self.major:
            return ver.major > self.major
        if self.minor is None:
            return False
        if ver.minor != self.minor:
            return ver.minor > self.minor
        if self.patch is None:
            return False
        if ver.patch != self.patch:
            return ver.patch > self.patch
        return _pre_key(ver.pre) > _pre_key(self.pre)

    def _less(self, ver: Version) -> bool:
        if ver.major != self.major:
            return ver.major < self.major
        if self.minor is None:
            return False
        if ver.minor != self.minor:
            return ver.minor < self.minor
        if self.patch is None:
            return False
        if ver.patch != self.patch:
            return ver.patch < self.patch
        return _pre_key(ver.pre) < _pre_key(self.pre)

    def _tilde(self, ver: Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is not None and ver.minor != self.minor:
            return False
        if self.patch is not None and ver.patch != self.patch:
            return ver.patch > self.patch
        return _pre_key(ver.pre) >= _pre_key(self.pre)

    def _caret(self, ver: Version) -> bool:
        if ver.major != self.major:
            return False
        if self.minor is None:
            return True
        minor = self.minor
        if self.patch is None:
            return ver.minor >= minor if self.major > 0 else ver.minor == minor
        patch = self.patch
        if self.major > 0:
            if ver.minor != minor:
                return ver.minor > minor
            if ver.patch != patch:
                return ver.patch > patch
        elif minor > 0:
            if ver.minor != minor:
                return False
            if ver.patch != patch:
                return ver.patch > patch
        elif ver.minor != minor or ver.patch != patch:
            return False
        return _pre_key(ver.pre) >= _pre_key(self.pre)

    def _allows_pre_of(self, ver: Version) -> bool:
        return (
            self.major == ver.major
            and self.minor == ver.minor
            and self.patch == ver.patch
            and bool(self.pre)
        )

    @classmethod
    def _parse(cls, text: str, source: str) -> Comparator | None:
        """Parse one comparator; ``None`` stands for a bare ``*``."""
        match = _COMPARATOR_RE.fullmatch(text)
        if match is None:
            raise InvalidVersionSyntaxError(f"unexpected requirement format {source!r}")
        op = Op(match["op"]) if match["op"] else None
        parts = [match["major"], match["minor"], match["patch"]]

        if parts[0] in _WILDCARDS:
            rest = [p for p in parts[1:] if p is not None]
            if op is not None or any(p not in _WILDCARDS for p in rest) or match["pre"]:
                raise InvalidVersionSyntaxError(f"unexpected wildcard in {source!r}")
            return None
        major = _number(parts[0], "major", source)

        wild = False
        numbers: list[int | None] = []
        for what, part in (("minor", parts[1]), ("patch", parts[2])):
            if part is None:
                numbers.append(None)
            elif part in _WILDCARDS:
                wild = True
                numbers.append(None)
            elif wild:
                raise InvalidVersionSyntaxError(
                    f"unexpected version number after wildcard in {source!r}"
                )
            else:
                numbers.append(_number(part, what, source))
        minor, patch = numbers

        pre = match["pre"] or ""
        if pre:
            if patch is None:
                raise InvalidVersionSyntaxError(
                    f"pre-release requires a full version in {source!r}"
                )
            _identifiers(pre, "pre-release", source)
        if match["build"]:
            _identifiers(match["build"], "build metadata", source)

        if op is None:
            op = Op.WILDCARD if wild else Op.CARET
        return cls(op, major, minor, patch, pre)

    def __str__(self) -> str:
        text = ("" if self.op is Op.WILDCARD else self.op.value) + str(self.major)
        if self.minor is not None:
            text += f".{self.minor}"
            if self.patch is not None:
                text += f".{self.patch}"
                if self.pre:
                    text += f"-{self.pre}"
            elif self.op is Op.WILDCARD:
                text += ".*"
        elif self.op is Op.WILDCARD:
            text += ".*"
        return text


@dataclass(frozen=True)
class VersionReq:
    """A conjunction of comparators; no comparators matches every release."""

    comparators: tuple[Comparator, ...] = ()

    STAR: ClassVar[VersionReq]

    def __post_init__(self) -> None:
        object.__setattr__(self, "comparators", tuple(self.comparators))

    @classmethod
    def parse(cls, text: str) -> VersionReq:
        """Parse a Cargo requirement such as ``>=1.2, <2`` or ``^0.3``."""
        stripped = text.strip()
        if not stripped:
            raise InvalidVersionSyntaxError("empty string, expected a version requirement")
        pieces = [piece.strip() for piece in stripped.split(",")]
        if any(not piece for piece in pieces):
            raise InvalidVersionSyntaxError(f"empty comparator in {text!r}")
        parsed = [Comparator._parse(piece, text) for piece in pieces]
        if any(item is None for item in parsed):
            if len(parsed) > 1:
                raise InvalidVersionSyntaxError(
                    f"wildcard req (*) must be the only comparator in {text!r}"
                )
            return cls()
        return cls(tuple(parsed))

    @classmethod
    def exact(cls, version: Version) -> VersionReq:
        """A requirement matching exactly the given version."""
        return cls(
            (Comparator(Op.EXACT, version.major, version.minor, version.patch, version.pre),)
        )

    def matches(self, version: Version) -> bool:
        """Whether the version satisfies every comparator and the pre-release policy."""
        if not all(cmp.matches(version) for cmp in self.comparators):
            return False
        if not version.pre:
            return True
        return any(cmp._allows_pre_of(version) for cmp in self.comparators)

    def __str__(self) -> str:
        if not self.comparators:
            return "*"
        return ", ".join(str(cmp) for cmp in self.comparators)


VersionReq.STAR = VersionReq()