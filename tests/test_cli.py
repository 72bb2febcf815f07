import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
import respx

from cargo_compat.cache import CrateCache, CrateCacheEntry
from cargo_compat.cli import (
    CachePaths,
    SILENT,
    TIME_FORMAT,
    build_parser,
    find_cache_path,
    local_datetime,
    main,
    read_packages_with_includes,
    setup_logging,
)
from cargo_compat.crates import API_ROOT, Crate, CrateVersion
from cargo_compat.errors import CompatError
from cargo_compat.versions import Version, VersionReq


def _crate(name: str) -> Crate:
    moment = datetime(2020, 1, 1, tzinfo=timezone.utc)
    return Crate(
        name=name,
        description=None,
        created_at=moment,
        updated_at=moment,
        versions=[CrateVersion(moment, moment, False, Version(1, 0, 0), "abc")],
    )


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


@pytest.fixture
def workspace(tmp_path):
    _write(tmp_path / "Cargo.toml", '[workspace]\nmembers = ["crates/*"]\n')
    _write(
        tmp_path / "crates" / "alpha" / "Cargo.toml",
        '[package]\nname = "alpha"\nversion = "0.2.0"\n',
    )
    _write(
        tmp_path / "crates" / "beta" / "Cargo.toml",
        '[package]\nname = "beta"\nversion = "0.3.0"\n',
    )
    return tmp_path


@pytest.fixture
def single(tmp_path):
    _write(
        tmp_path / "Cargo.toml",
        "[package]\n"
        'name = "demo"\n'
        'version = "1.2.3"\n'
        "[dependencies]\n"
        'serde = "1.0"\n'
        'tokio = { version = "1", optional = true }\n'
        "[dev-dependencies]\n"
        'rand = { git = "https://example.com/rand.git" }\n',
    )
    return tmp_path


def test_find_cache_path_explicit(tmp_path):
    paths = find_cache_path(str(tmp_path))
    assert paths == CachePaths(tmp_path, tmp_path / "crate_cache.cbor")


def test_find_cache_path_from_home(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    paths = find_cache_path(None)
    assert paths.base_cache_dir == tmp_path / ".cache" / "cargo-compat"
    assert paths.crate_cache.parent == paths.base_cache_dir


def test_find_cache_path_without_home(monkeypatch):
    monkeypatch.delenv("HOME", raising=False)
    paths = find_cache_path(None)
    assert paths.base_cache_dir == Path(".cargo-compat-cache")


def test_local_datetime_round_trip():
    moment = datetime(2024, 3, 5, 12, 30, 15, tzinfo=timezone.utc)
    text = local_datetime(moment)
    assert datetime.strptime(text, TIME_FORMAT) == moment.astimezone().replace(tzinfo=None)


@pytest.mark.parametrize(
    "flags, expected",
    [
        ((False, False, False), logging.INFO),
        ((True, False, False), logging.DEBUG),
        ((True, True, False), logging.ERROR),
        ((False, True, True), SILENT),
    ],
)
def test_setup_logging_levels(flags, expected):
    assert setup_logging(*flags) == expected
    assert logging.getLogger("cargo_compat").level == expected


def test_parser_resolve_options():
    args = build_parser().parse_args(
        ["resolve", "proj", "--include", "a*", "--include", "b*", "-f", "x", "--no-test"]
    )
    assert args.path == "proj"
    assert args.include == ["a*", "b*"]
    assert args.features == ["x"]
    assert args.no_test is True
    assert args.release is False
    assert args.cargo_path == "cargo"
    assert args.cache_age == 48


def test_parser_fetch_requirement():
    args = build_parser().parse_args(["cache", "fetch", "serde", "^1.0", "--force"])
    assert args.crate_name == "serde"
    assert args.requirement == VersionReq.parse("^1.0")
    assert args.force is True


def test_parser_rejects_bad_requirement():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["cache", "fetch", "serde", "not a version"])


def test_parser_rejects_negative_cache_age():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--cache-age", "-1", "cache", "info"])


def test_read_single_package(single):
    packages = read_packages_with_includes(single, [])
    assert [p.name for p in packages] == ["demo"]
    assert packages[0].version == Version(1, 2, 3)


def test_read_workspace_filters_by_include(workspace):
    packages = read_packages_with_includes(workspace, ["al*"])
    assert [p.name for p in packages] == ["alpha"]


def test_read_workspace_without_include_fails(workspace):
    with pytest.raises(CompatError, match="No include patterns"):
        read_packages_with_includes(workspace, [])


def test_read_workspace_without_match_fails(workspace):
    with pytest.raises(CompatError, match="No packages in the workspace matched"):
        read_packages_with_includes(workspace, ["gamma"])


def test_read_missing_manifest_fails(tmp_path):
    with pytest.raises(CompatError, match="Error reading Cargo manifest"):
        read_packages_with_includes(tmp_path, [])


def test_list_dependencies_output(single, capsys):
    assert main(["-q", "list-dependencies", str(single)]) == 0
    out = capsys.readouterr().out.splitlines()
    assert "Package: demo (version: 1.2.3)" in out
    assert "  - serde ^1.0" in out
    assert "  - tokio ^1 (optional)" in out
    assert "  - rand * (git)" in out
    assert out.index("Dev Dependencies:") < out.index("  - rand * (git)")


def test_subcommand_name_is_skipped(single, capsys):
    assert main(["compat", "-q", "list-dependencies", str(single)]) == 0
    assert "Package: demo (version: 1.2.3)" in capsys.readouterr().out


def test_resolve_workspace_without_include_fails(workspace, capsys):
    assert main(["-q", "resolve", str(workspace)]) == 1
    assert "No include patterns" in capsys.readouterr().err


def test_cache_info_empty(tmp_path, capsys):
    assert main(["-q", "--cache-dir", str(tmp_path), "cache", "info"]) == 0
    out = capsys.readouterr().out
    assert f"Cache directory: {tmp_path}" in out
    assert "Total cached crates: 0" in out


def test_cache_info_lists_entries(tmp_path, capsys):
    cache = CrateCache({"serde": CrateCacheEntry(_crate("serde"), datetime.now(timezone.utc))})
    cache.save_to_path(tmp_path / "crate_cache.cbor")
    assert main(["-q", "--cache-dir", str(tmp_path), "cache", "info"]) == 0
    out = capsys.readouterr().out
    assert "Total cached crates: 1" in out
    assert "- serde: last fetched at" in out


def test_cache_clean_removes_expired(tmp_path):
    now = datetime.now(timezone.utc)
    cache = CrateCache(
        {
            "fresh": CrateCacheEntry(_crate("fresh"), now),
            "old": CrateCacheEntry(_crate("old"), now - timedelta(hours=100)),
        }
    )
    cache.save_to_path(tmp_path / "crate_cache.cbor")
    assert main(["-q", "--cache-dir", str(tmp_path), "cache", "clean"]) == 0
    reloaded = CrateCache.load_from_path(tmp_path / "crate_cache.cbor")
    assert list(reloaded.entries) == ["fresh"]


def test_cache_clean_full_removes_directory(tmp_path):
    base = tmp_path / "cache"
    CrateCache().save_to_path(base / "crate_cache.cbor")
    assert main(["-q", "--cache-dir", str(base), "cache", "clean", "--full"]) == 0
    assert not base.exists()


def test_cache_clean_missing_directory(tmp_path):
    base = tmp_path / "absent"
    assert main(["-q", "--cache-dir", str(base), "cache", "clean"]) == 0
    assert not base.exists()


def _payload():
    stamp = "2020-01-01T00:00:00+00:00"
    return {
        "crate": {
            "name": "demo",
            "description": "A demo crate",
            "created_at": stamp,
            "updated_at": stamp,
        },
        "versions": [
            {"num": "1.0.0", "created_at": stamp, "updated_at": stamp,
             "yanked": False, "checksum": "abc"},
            {"num": "0.9.0", "created_at": stamp, "updated_at": stamp,
             "yanked": True, "checksum": "def"},
        ],
    }


def test_cache_fetch_downloads_and_caches(tmp_path, capsys):
    with respx.mock:
        route = respx.get(f"{API_ROOT}/crates/demo").mock(
            return_value=httpx.Response(200, json=_payload())
        )
        assert main(["-q", "--cache-dir", str(tmp_path), "cache", "fetch", "demo"]) == 0
        assert main(["-q", "--cache-dir", str(tmp_path), "cache", "fetch", "demo"]) == 0
        assert route.call_count == 1

    out = capsys.readouterr().out
    assert "Crate: demo" in out
    assert "Description: A demo crate" in out
    assert "A total of 2 versions found" in out
    assert "(yanked)" in out
    cached = CrateCache.load_from_path(tmp_path / "crate_cache.cbor")
    assert list(cached.entries) == ["demo"]


def test_cache_fetch_filters_by_requirement(tmp_path, capsys):
    with respx.mock:
        respx.get(f"{API_ROOT}/crates/demo").mock(
            return_value=httpx.Response(200, json=_payload())
        )
        assert main(["-q", "--cache-dir", str(tmp_path), "cache", "fetch", "demo", "^1"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert any(line.startswith("- 1.0.0 (published at") for line in lines)
    assert not any(line.startswith("- 0.9.0") for line in lines)


def test_cache_fetch_network_error(tmp_path, capsys):
    with respx.mock:
        respx.get(f"{API_ROOT}/crates/demo").mock(return_value=httpx.Response(404))
        assert main(["-q", "--cache-dir", str(tmp_path), "cache", "fetch", "demo"]) == 1
    assert "Failed to fetch crate demo" in capsys.readouterr().err