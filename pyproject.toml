[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cargo-compat"
version = "0.1.3"
description = "Resolve and validate the widest compatible dependency version requirements for Cargo packages and workspaces"
requires-python = ">=3.11"
keywords = ["cargo", "semver", "dependencies", "version-resolution", "rust"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "httpx",
    "cbor2",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "respx",
]

[project.scripts]
cargo-compat = "cargo_compat.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["cargo_compat"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
