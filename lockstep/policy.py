"""Bump policies: which packages are released, and by how much.

The planner only asks ``policy.decide(package)``. Where the answer comes
from (command-line flags, git history) is this module's business.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import Path
from typing import Protocol

from .errors import WorkspaceError
from .graph import WorkspaceGraph
from .models import Flavour, Package
from .shell import Console, git
from .versions import BumpKind


class ExactPinPolicy(str, Enum):
    """What to do with an exact pin that stops matching its target."""

    # Fail planning with VersionConflict
    REJECT = "reject"
    # Rewrite the pin, provided the pinning package is released as well
    REWRITE = "rewrite"


class BumpPolicy(Protocol):
    def decide(self, package: Package) -> BumpKind | None:
        """Return the bump for ``package``, or None to leave it out."""
        ...


class NoBumpPolicy:
    """Release nothing."""

    def decide(self, package: Package) -> BumpKind | None:
        return None


class ExplicitBumpPolicy:
    """Bumps chosen up front, typically from command-line flags.

    Args:
        overrides: Per-package bump kinds; always win.
        default: Bump for every other selected package, or None to release
                 only the overridden packages.
        patterns: Glob patterns restricting which packages ``default``
                  applies to. Empty means all packages.
        only: Explicit set of names ``default`` applies to.
    """

    def __init__(
        self,
        overrides: Mapping[str, BumpKind] | None = None,
        default: BumpKind | None = None,
        patterns: Iterable[str] = (),
        only: Iterable[str] | None = None,
    ) -> None:
        self.overrides = dict(overrides or {})
        self.default = default
        self.patterns = list(patterns)
        self.only = set(only) if only is not None else None

    def decide(self, package: Package) -> BumpKind | None:
        if package.name in self.overrides:
            return self.overrides[package.name]
        if self.default is None:
            return None
        if self.patterns and not any(
            fnmatch.fnmatchcase(package.name, p) for p in self.patterns
        ):
            return None
        if self.only is not None and package.name not in self.only:
            return None
        return self.default

    def validate(self, graph: WorkspaceGraph) -> None:
        """Fail on overrides naming packages outside the workspace.

        Raises:
            WorkspaceError: If an override names an unknown package.
        """
        unknown = sorted(n for n in self.overrides if n not in graph)
        if unknown:
            raise WorkspaceError(f"Unknown package(s): {', '.join(unknown)}")


# Root files whose change affects every package
_ROOT_FILES = {
    Flavour.UV: {"pyproject.toml", "uv.lock"},
    Flavour.CARGO: {"Cargo.toml", "Cargo.lock"},
}


def detect_changes(
    graph: WorkspaceGraph,
    ref: str,
    flavour: Flavour,
    console: Console,
    root: Path | None = None,
) -> set[str]:
    """Determine which packages changed since a git ref.

    A package is changed if:
    1. Any file in its directory changed since ``ref``
    2. The root manifest or lockfile changed since ``ref``
    3. Any of its dependencies changed (transitive)

    Args:
        graph: Validated workspace graph.
        ref: Git revision to diff against (tag, branch or commit).
        flavour: Workspace flavour, to know which root files matter.
        console: Where progress lines go.
        root: Workspace root to run git in.

    Returns:
        Set of changed package names.
    """
    console.step(f"Detecting changes since {ref}")

    changed_files = set(git("diff", "--name-only", ref, "HEAD", cwd=root).splitlines())
    dirty: set[str] = set()

    if changed_files & _ROOT_FILES[flavour]:
        console.info("  root manifest changed: all packages marked changed")
        return {p.name for p in graph.packages}

    # A package at the workspace root owns every file no other member claims
    prefixes = {
        pkg.name: "" if Path(pkg.path) == Path(".") else Path(pkg.path).as_posix() + "/"
        for pkg in graph.packages
    }
    for changed_file in sorted(changed_files):
        owners = [name for name, prefix in prefixes.items() if changed_file.startswith(prefix)]
        if not owners:
            continue
        # The deepest member directory wins
        owner = max(owners, key=lambda name: len(prefixes[name]))
        if owner not in dirty:
            dirty.add(owner)
            console.info(f"  {owner}: changed since {ref}")

    # Propagate to dependents
    closure = graph.dependents_closure(dirty)
    for name in sorted(closure - dirty):
        console.info(f"  {name}: changed (depends on a changed package)")
    return closure


def changed_since_policy(
    graph: WorkspaceGraph,
    ref: str,
    kind: BumpKind,
    flavour: Flavour,
    console: Console,
    root: Path | None = None,
    overrides: Mapping[str, BumpKind] | None = None,
) -> ExplicitBumpPolicy:
    """Bump every package changed since ``ref`` (and its dependents) by ``kind``."""
    changed = detect_changes(graph, ref, flavour, console, root)
    return ExplicitBumpPolicy(overrides=overrides, default=kind, only=changed)
