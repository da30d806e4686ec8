"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from lockstep.context import ReleaseContext
from lockstep.shell import Console


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def sleeps() -> list[float]:
    """Delays passed to the context's sleep function, in call order."""
    return []


@pytest.fixture
def ctx(sleeps: list[float]) -> ReleaseContext:
    """A quiet context whose sleep records delays instead of waiting."""
    return ReleaseContext(console=Console(quiet=True), sleep=sleeps.append)


@pytest.fixture
def uv_workspace(tmp_path: Path) -> Path:
    """A uv workspace: gamma → beta → alpha, plus a private tool.

    alpha 1.0.0
    beta 1.2.0     requires alpha ``>=1.0,<2``
    gamma 0.3.0    requires beta ``~=1.2``; dev group pins alpha ``==1.0.0``
    tool 0.1.0     private; requires gamma (no version)
    """
    write(
        tmp_path / "pyproject.toml",
        """\
[tool.uv.workspace]
members = ["packages/*"]

[tool.lockstep]
max-attempts = 3
base-delay = 0.5
""",
    )
    write(
        tmp_path / "packages" / "alpha" / "pyproject.toml",
        """\
[project]
name = "alpha"
version = "1.0.0"
dependencies = ["requests>=2.0"]
""",
    )
    write(
        tmp_path / "packages" / "beta" / "pyproject.toml",
        """\
[project]
name = "beta"
version = "1.2.0"
# internal dependency below
dependencies = ["alpha>=1.0,<2", "click>=8.0"]
""",
    )
    write(
        tmp_path / "packages" / "gamma" / "pyproject.toml",
        """\
[project]
name = "gamma"
version = "0.3.0"
dependencies = ["beta[cli]~=1.2; python_version >= '3.10'"]

[dependency-groups]
test = ["pytest>=8.0", "alpha==1.0.0"]
""",
    )
    write(
        tmp_path / "packages" / "tool" / "pyproject.toml",
        """\
[project]
name = "tool"
version = "0.1.0"
classifiers = ["Private :: Do Not Upload"]
dependencies = ["gamma"]
""",
    )
    return tmp_path


@pytest.fixture
def cargo_workspace(tmp_path: Path) -> Path:
    """A Cargo workspace: app → mid → base.

    base 0.1.4
    mid 0.2.0    depends on base ``0.1`` (path + version)
    app 1.0.0    depends on mid ``^0.2.0``; dev-dependency ``helper``
                 renames base with ``=0.1.4``; publish = false
    """
    write(
        tmp_path / "Cargo.toml",
        """\
[workspace]
members = ["crates/*"]

[workspace.metadata.lockstep]
pin-policy = "rewrite"
""",
    )
    write(
        tmp_path / "crates" / "base" / "Cargo.toml",
        """\
[package]
name = "base"
version = "0.1.4"
edition = "2021"
""",
    )
    write(
        tmp_path / "crates" / "mid" / "Cargo.toml",
        """\
[package]
name = "mid"
version = "0.2.0"
edition = "2021"

[dependencies]
base = { path = "../base", version = "0.1" }
serde = "1"
""",
    )
    write(
        tmp_path / "crates" / "app" / "Cargo.toml",
        """\
[package]
name = "app"
version = "1.0.0"
edition = "2021"
publish = false

[dependencies]
mid = { path = "../mid", version = "^0.2.0" }

[dev-dependencies]
helper = { package = "base", path = "../base", version = "=0.1.4" }
""",
    )
    return tmp_path


@pytest.fixture
def cyclic_workspace(tmp_path: Path) -> Path:
    """A uv workspace where a and b depend on each other."""
    write(tmp_path / "pyproject.toml", '[tool.uv.workspace]\nmembers = ["packages/*"]\n')
    write(
        tmp_path / "packages" / "a" / "pyproject.toml",
        '[project]\nname = "a"\nversion = "1.0.0"\ndependencies = ["b>=1.0"]\n',
    )
    write(
        tmp_path / "packages" / "b" / "pyproject.toml",
        '[project]\nname = "b"\nversion = "1.0.0"\ndependencies = ["a>=1.0"]\n',
    )
    return tmp_path


@pytest.fixture
def cargo_shared_workspace(tmp_path: Path) -> Path:
    """A Cargo workspace whose members inherit requirements from the root.

    [workspace.dependencies] declares base ``=1.0.0`` and engine ``0.4``.

    base 1.0.0
    engine 0.4.2
    app 2.0.0      base and engine with ``workspace = true``
    cli 0.1.0      engine with ``engine.workspace = true``
    shared 0.9.0   ``version.workspace = true``; engine with ``workspace = true``
    """
    write(
        tmp_path / "Cargo.toml",
        """\
[workspace]
members = ["crates/*"]

[workspace.package]
version = "0.9.0"

[workspace.dependencies]
base = { path = "crates/base", version = "=1.0.0" }
# shared by app, cli and shared
engine = { path = "crates/engine", version = "0.4" }
""",
    )
    write(tmp_path / "crates" / "base" / "Cargo.toml", '[package]\nname = "base"\nversion = "1.0.0"\n')
    write(tmp_path / "crates" / "engine" / "Cargo.toml", '[package]\nname = "engine"\nversion = "0.4.2"\n')
    write(
        tmp_path / "crates" / "app" / "Cargo.toml",
        """\
[package]
name = "app"
version = "2.0.0"

[dependencies]
base = { workspace = true }
engine = { workspace = true, features = ["fast"] }
""",
    )
    write(
        tmp_path / "crates" / "cli" / "Cargo.toml",
        """\
[package]
name = "cli"
version = "0.1.0"

[dependencies]
engine.workspace = true
""",
    )
    write(
        tmp_path / "crates" / "shared" / "Cargo.toml",
        """\
[package]
name = "shared"
version.workspace = true

[dependencies]
engine = { workspace = true }
""",
    )
    return tmp_path
