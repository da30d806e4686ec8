"""Data models for lockstep.

These Pydantic models represent the core data structures used throughout
the release pipeline. Everything produced by planning is frozen: the plan
is computed once and only ever read afterwards.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .versions import BumpKind


class Flavour(str, Enum):
    """Workspace ecosystem: which manifests, dialect and registry apply."""

    UV = "uv"
    CARGO = "cargo"


class DependencyKind(str, Enum):
    NORMAL = "normal"
    BUILD = "build"
    DEV = "dev"


class PublishFlag(str, Enum):
    """Whether a package may be published at all."""

    PUBLISH = "publish"
    # Explicitly skipped for this run (skip list)
    SKIP = "skip"
    # Never published (publish = false, Private :: Do Not Upload)
    PRIVATE = "private"


class DependencyEdge(BaseModel):
    """A dependency of one workspace package on another.

    Attributes:
        source: Name of the package declaring the dependency.
        target: Name of the workspace package depended upon.
        kind: normal, build or dev dependency.
        requirement: Version requirement as written, or None for
                     path-only / unconstrained dependencies.
        location: Manifest table holding the entry, e.g.
                  ("project", "dependencies") or ("dev-dependencies",).
        key: Entry name as written in the manifest. Differs from target
             for renamed Cargo dependencies.
        inherited: The requirement lives in the workspace root's
                   ``[workspace.dependencies]`` (``dep = { workspace = true }``)
                   and is shared by every member inheriting it.
    """

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    kind: DependencyKind = DependencyKind.NORMAL
    requirement: str | None = None
    location: tuple[str, ...] = ()
    key: str = ""
    inherited: bool = False


class Package(BaseModel):
    """Metadata for a single package in the workspace.

    Attributes:
        name: Canonical package name.
        version: Current version string from the manifest.
        path: Relative path from workspace root to the package directory.
        edges: Internal (workspace) dependency edges. External deps are not
               tracked here since only internal requirements are managed.
        publish_flag: Whether the package may be published.
        version_source: Set when the version is not declared in the
                        package's own manifest: "workspace" for Cargo's
                        ``version.workspace = true``, "dynamic" for a
                        pyproject version listed in ``dynamic``. Such a
                        package cannot be bumped.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    path: str
    edges: tuple[DependencyEdge, ...] = ()
    publish_flag: PublishFlag = PublishFlag.PUBLISH
    version_source: str | None = None

    @property
    def deps(self) -> list[str]:
        """Distinct internal dependency names, in declaration order."""
        seen: list[str] = []
        for edge in self.edges:
            if edge.target not in seen:
                seen.append(edge.target)
        return seen


class EdgeRewrite(BaseModel):
    """A requirement string that must change to keep matching its target."""

    model_config = ConfigDict(frozen=True)

    edge: DependencyEdge
    old: str
    new: str


class PlanEntry(BaseModel):
    """One package's slot in the release plan.

    Attributes:
        package: The package as loaded from its manifest.
        current_version: Version before the release.
        target_version: Version after the release (equal to current when
                        the package is not bumped).
        bump: Applied bump kind, or None when the version is kept.
        release: True when the bump policy selected the package.
        rewrites: Requirement rewrites in this package's own manifest.
    """

    model_config = ConfigDict(frozen=True)

    package: Package
    current_version: str
    target_version: str
    bump: BumpKind | None = None
    release: bool = False
    rewrites: tuple[EdgeRewrite, ...] = ()

    @property
    def name(self) -> str:
        return self.package.name

    @property
    def version_changed(self) -> bool:
        return self.current_version != self.target_version


class ReleasePlan(BaseModel):
    """Ordered publish plan: every dependency precedes its dependents."""

    model_config = ConfigDict(frozen=True)

    flavour: Flavour
    entries: tuple[PlanEntry, ...] = ()

    @property
    def order(self) -> list[str]:
        return [e.name for e in self.entries]

    @property
    def rewrites(self) -> list[EdgeRewrite]:
        return [r for e in self.entries for r in e.rewrites]

    @property
    def released(self) -> list[PlanEntry]:
        return [e for e in self.entries if e.release]

    def entry(self, name: str) -> PlanEntry:
        for e in self.entries:
            if e.name == name:
                return e
        raise KeyError(name)


class ManifestWrite(BaseModel):
    """A single manifest edit issued by the mutator."""

    model_config = ConfigDict(frozen=True)

    package: str
    version: str | None = None
    rewrite: EdgeRewrite | None = None

    def describe(self) -> str:
        if self.rewrite is not None:
            r = self.rewrite
            return f"{self.package}: {r.edge.target} {r.old!r} → {r.new!r}"
        return f"{self.package}: version → {self.version}"


class MutationReport(BaseModel):
    """Every manifest write applied (or, in dry-run, intended)."""

    writes: list[ManifestWrite] = Field(default_factory=list)
    dry_run: bool = False


class PublishState(str, Enum):
    PENDING = "pending"
    PUBLISHING = "publishing"
    VERIFYING = "verifying"
    PUBLISHED = "published"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_ATTEMPTED = "not_attempted"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient-failure"
    PERMANENT = "permanent-failure"


class PublishAttempt(BaseModel):
    """One registry interaction for a package (a submission or a poll)."""

    package: str
    phase: str
    index: int
    outcome: AttemptOutcome
    delay: float = 0.0
    detail: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PackageReport(BaseModel):
    """Final outcome of one package in a publish run."""

    name: str
    target_version: str
    state: PublishState = PublishState.PENDING
    reason: str = ""
    attempts: list[PublishAttempt] = Field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        """Number of publish submissions (verification polls excluded)."""
        return sum(1 for a in self.attempts if a.phase == "publish")

    @property
    def verify_polls(self) -> int:
        return sum(1 for a in self.attempts if a.phase == "verify")


class RunReport(BaseModel):
    """Per-package terminal states and attempt history for a run."""

    dry_run: bool = False
    halted: bool = False
    packages: list[PackageReport] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.halted and all(
            p.state in (PublishState.PUBLISHED, PublishState.SKIPPED)
            for p in self.packages
        )

    @property
    def published(self) -> list[str]:
        return [p.name for p in self.packages if p.state is PublishState.PUBLISHED]

    def package(self, name: str) -> PackageReport:
        for p in self.packages:
            if p.name == name:
                return p
        raise KeyError(name)

    def to_json(self) -> str:
        """Serialize for machine consumption, including derived counts."""
        data = self.model_dump(mode="json")
        for entry, report in zip(data["packages"], self.packages):
            entry["attempt_count"] = report.attempt_count
            entry["verify_polls"] = report.verify_polls
        data["succeeded"] = self.succeeded
        return json.dumps(data, indent=2)

    def render_table(self) -> str:
        """Render a plain-text summary table for humans."""
        rows = [("package", "version", "state", "attempts", "polls", "reason")]
        for p in self.packages:
            rows.append(
                (
                    p.name,
                    p.target_version,
                    p.state.value,
                    str(p.attempt_count),
                    str(p.verify_polls),
                    p.reason,
                )
            )
        widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
        lines = ["  ".join(c.ljust(w) for c, w in zip(r, widths)).rstrip() for r in rows]
        lines.insert(1, "  ".join("─" * w for w in widths))
        return "\n".join(lines)
