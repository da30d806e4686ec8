"""Exceptions raised by the release pipeline.

Planning errors are raised before any manifest is touched. Manifest write
failures abort the run after a partial rewrite and carry what was applied.
Registry errors are raised by registry clients; the orchestrator turns them
into per-package outcomes instead of letting them escape.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import DependencyEdge, ManifestWrite, RunReport


class LockstepError(Exception):
    """Base class for all lockstep errors."""


class PlanningError(LockstepError):
    """The workspace cannot be planned; nothing was changed."""


class WorkspaceError(PlanningError):
    """The workspace layout or a manifest is invalid."""


class CyclicDependency(PlanningError):
    """The workspace dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        path = " → ".join([*cycle, cycle[0]]) if cycle else "<empty>"
        super().__init__(f"Dependency cycle detected: {path}")


class VersionConflict(PlanningError):
    """A requirement cannot be made to match its target's new version."""

    def __init__(self, edge: DependencyEdge, version: str, reason: str) -> None:
        self.edge = edge
        self.version = version
        self.reason = reason
        super().__init__(
            f"{edge.source} requires {edge.target} {edge.requirement!r} "
            f"({edge.kind.value}), which does not match {version}: {reason}"
        )


class ManifestWriteFailure(LockstepError):
    """Writing a manifest failed part way through applying a plan."""

    def __init__(
        self,
        applied: list[ManifestWrite],
        failed: ManifestWrite,
        cause: Exception,
    ) -> None:
        self.applied = applied
        self.failed = failed
        self.cause = cause
        super().__init__(
            f"Failed to write {failed.describe()}: {cause} "
            f"({len(applied)} write(s) already applied)"
        )


class RegistryError(LockstepError):
    """Base class for registry failures."""


class RegistryTransientFailure(RegistryError):
    """The registry failed in a way that may resolve on retry."""


class RegistryPermanentFailure(RegistryError):
    """The registry rejected the request; retrying will not help."""


class PublishFailed(LockstepError):
    """Publishing stopped after a package failed or the run was aborted."""

    def __init__(self, report: RunReport) -> None:
        self.report = report
        failed = [p.name for p in report.packages if p.state.value == "failed"]
        if failed:
            msg = f"Publishing failed for: {', '.join(failed)}"
        else:
            msg = "Publishing was aborted before completing"
        super().__init__(msg)
