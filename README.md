# cargo-compat

`cargo-compat` finds the widest semantic-version requirements for the
dependencies of a Cargo package or workspace under which the project still
builds. By default it also requires the tests to pass.

For each dependency it downloads the list of published versions from
crates.io and keeps that data in a local CBOR cache. The starting version comes
from `Cargo.lock`. If the lock file has no matching entry, the starting version
is the newest release that matches the requirement. From there the tool
bisects the non-yanked releases below and above the starting version. Each
candidate is pinned with `cargo add name@=x.y.z` and checked with `cargo test`,
or with `cargo build` when `--no-test` is given. The resulting requirement is
simplified where possible to `*`, `=x.y.z` or a caret requirement. It is then
written back with `cargo add`.

## Installation

```
pip install .
```

A working `cargo` toolchain with the `cargo add` subcommand must be on the
`PATH`, or be named with `--cargo-path`.

## Usage

The tool can also run as a Cargo subcommand. When it is started as
`cargo compat ...`, Cargo passes `compat` as the first argument and the tool
drops it.

List the dependencies, build dependencies and dev dependencies of a package,
or of selected workspace members, without resolving them:

```
cargo-compat list-dependencies path/to/project
cargo-compat list-dependencies path/to/workspace --include "my-crate*"
```

Resolve the requirements of the normal dependencies and write them back to
`Cargo.toml`:

```
cargo-compat resolve path/to/project
cargo-compat resolve path/to/workspace --include "core" --release -f serde
cargo-compat resolve --no-test --cargo-path /opt/cargo/bin/cargo
```

`path` is either a `Cargo.toml` file or the directory that holds it. If you
leave it out, the current directory is used.

In a workspace you must give at least one `--include` glob pattern. The
patterns are matched against package names. For a single package,
`--include` is ignored with a warning.

Manage the crates.io cache:

```
cargo-compat cache info
cargo-compat cache fetch serde "^1.0" --force
cargo-compat cache clean
cargo-compat cache clean --full
```

- `cache info` shows the cache location and the age of each cached crate.
- `cache fetch` downloads a crate, or takes it from the cache, and lists its
  versions. If a requirement is given, only the matching versions are listed.
  `--force` downloads the crate again even when it is cached.
- `cache clean` drops the expired entries. `cache clean --full` removes the
  whole cache directory.

### Global options

Place these before the subcommand:

- `--cache-dir PATH`: the cache location. The default is
  `$HOME/.cache/cargo-compat`. If `HOME` is not set, it is
  `.cargo-compat-cache` in the current directory.
- `--cache-age HOURS`: how long cached crate data stays valid. The default
  is 48.
- `-v/--verbose`: debug logging with file and line.
- `-q/--quiet`: errors only.
- `-s/--silent`: no log output.

Errors go to stderr and the other log messages go to stdout. The command
exits with status 1 when it fails.

Resolving runs many builds and makes requests to crates.io. Requests and
candidate checks are spaced half a second apart. Keep the cache enabled and
use `--include` to limit the scope.

## Limitations

- Git dependencies are skipped with a warning.
- Only the normal `[dependencies]` are resolved. Build dependencies and dev
  dependencies are listed but their requirements are not changed.
- Nested workspaces are rejected.

## Library use

The pieces can also be used on their own:

- `cargo_compat.versions`: `Version`, `VersionReq` and `Comparator`, following
  Cargo's matching rules.
- `cargo_compat.manifest`: `Cargo.from_path`, which reads a package or
  workspace, and `CargoLockFile.read_from_path`.
- `cargo_compat.crates`: `download_crates` and `download_full_crates`. Both
  accept an optional `httpx.AsyncClient`.
- `cargo_compat.cache`: `CrateCache`. Its `retrieve_packages_fetch` takes an
  optional fetcher coroutine.
- `cargo_compat.resolver`:
  - `Resolver`, which works with any `cargo_compat.validator.RepoValidator`
    subclass.
  - `binary_search_bounds`, which finds the range of passing versions for any
    predicate you supply.
  - `simplify_version_req`.

Errors derive from `cargo_compat.errors.CompatError`.