import random

import pytest

from cargo_compat.errors import InvalidVersionSyntaxError
from cargo_compat.versions import Comparator, Op, Version, VersionReq


@pytest.mark.parametrize(
    "text",
    ["1.2.3", "0.0.0", "1.0.0-alpha.1", "1.0.0+build.5", "1.0.0-rc.1+meta", "10.20.30"],
)
def test_version_round_trip(text):
    assert str(Version.parse(text)) == text


def test_version_fields_from_parse():
    assert Version.parse("1.2.3-beta+b7") == Version(1, 2, 3, "beta", "b7")


@pytest.mark.parametrize(
    "text", ["1.2", "01.2.3", "1.2.3-", "1.2.3-01", "a.b.c", " 1.2.3", "1.2.3.4", ""]
)
def test_version_invalid(text):
    with pytest.raises(InvalidVersionSyntaxError):
        Version.parse(text)


def test_version_precedence_follows_spec():
    ordered = [
        "1.0.0-alpha",
        "1.0.0-alpha.1",
        "1.0.0-alpha.beta",
        "1.0.0-beta",
        "1.0.0-beta.2",
        "1.0.0-beta.11",
        "1.0.0-rc.1",
        "1.0.0",
    ]
    shuffled = ordered[:]
    random.Random(7).shuffle(shuffled)
    result = sorted(Version.parse(v) for v in shuffled)
    assert [str(v) for v in result] == ordered


def test_version_numeric_components_compare_numerically():
    assert Version.parse("1.10.0") > Version.parse("1.9.0")
    assert max(Version.parse(v) for v in ["0.9.9", "0.10.0", "0.2.0"]) == Version.parse(
        "0.10.0"
    )


def test_version_hash_consistent_with_eq():
    versions = {Version.parse("1.2.3"), Version(1, 2, 3)}
    assert versions == {Version(1, 2, 3)}


@pytest.mark.parametrize(
    "req, version, expected",
    [
        ("^1.2.3", "1.2.3", True),
        ("^1.2.3", "1.9.0", True),
        ("^1.2.3", "2.0.0", False),
        ("^1.2.3", "1.2.2", False),
        ("^0.2.3", "0.2.9", True),
        ("^0.2.3", "0.3.0", False),
        ("^0.0.3", "0.0.4", False),
        ("1.2", "1.5.0", True),
        ("~1.2.3", "1.2.9", True),
        ("~1.2.3", "1.3.0", False),
        ("=1.2.3", "1.2.3", True),
        ("=1.2.3", "1.2.4", False),
        (">=1.2.0, <1.5.0", "1.4.9", True),
        (">=1.2.0, <1.5.0", "1.5.0", False),
        ("1.*", "1.9.9", True),
        ("1.*", "2.0.0", False),
        ("1.2.*", "1.2.7", True),
        ("*", "3.4.5", True),
        ("^1.0.0", "1.1.0-alpha", False),
        (">=1.0.0-alpha", "1.0.0-beta", True),
        ("<=1.4.0", "1.4.0", True),
        (">1.4.0", "1.4.0", False),
        (">= 1.2.3", "1.2.3", True),
    ],
)
def test_requirement_matching(req, version, expected):
    assert VersionReq.parse(req).matches(Version.parse(version)) is expected


@pytest.mark.parametrize(
    "text", [">=1.2.3, <=1.5.0", "=1.0.0-alpha", "~1.2", "1.*", "1.2.*", "^0.3.1", "*"]
)
def test_requirement_display_round_trip(text):
    req = VersionReq.parse(text)
    assert str(req) == text
    assert VersionReq.parse(str(req)) == req


def test_bare_version_defaults_to_caret():
    assert str(VersionReq.parse("1.2")) == "^1.2"


def test_exact_requirement():
    version = Version.parse("1.2.3")
    req = VersionReq.exact(version)
    assert str(req) == "=1.2.3"
    assert req.matches(version)
    assert not req.matches(Version.parse("1.2.4"))


def test_exact_requirement_with_prerelease():
    version = Version.parse("2.0.0-rc.1")
    req = VersionReq.exact(version)
    assert req.matches(version)
    assert VersionReq.parse(str(req)) == req


def test_star_is_empty():
    assert VersionReq.parse("*") == VersionReq.STAR
    assert VersionReq.STAR.comparators == ()
    assert str(VersionReq.STAR) == "*"


@pytest.mark.parametrize(
    "text", ["", "1.2.3.4", "^1.*.3", ">=*", "1.2-alpha", "*, 1.0", "1,,2", "abc", "01.2"]
)
def test_requirement_invalid(text):
    with pytest.raises(InvalidVersionSyntaxError):
        VersionReq.parse(text)


def test_comparator_greater_partial():
    cmp = Comparator(Op.GREATER, 1)
    assert cmp.matches(Version.parse("2.0.0"))
    assert not cmp.matches(Version.parse("1.5.0"))


def test_comparator_ignores_prerelease_policy():
    cmp = Comparator(Op.CARET, 1, 0, 0)
    version = Version.parse("1.1.0-alpha")
    assert cmp.matches(version)
    assert not VersionReq((cmp,)).matches(version)