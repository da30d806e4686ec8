"""Apply a release plan to the workspace manifests."""

from __future__ import annotations

from .context import ReleaseContext
from .errors import LockstepError, ManifestWriteFailure
from .manifests import ManifestStore
from .models import ManifestWrite, MutationReport, ReleasePlan


def planned_writes(plan: ReleasePlan) -> list[ManifestWrite]:
    """List every manifest write a plan implies, in plan order.

    Each released package whose version changes gets a version write;
    every rewrite gets a requirement write in its source manifest. A
    requirement inherited by several members is written once.
    """
    writes: list[ManifestWrite] = []
    shared: set[tuple[tuple[str, ...], str]] = set()
    for entry in plan.entries:
        if entry.release and entry.version_changed:
            writes.append(ManifestWrite(package=entry.name, version=entry.target_version))
        for rewrite in entry.rewrites:
            if rewrite.edge.inherited:
                slot = (rewrite.edge.location, rewrite.edge.key)
                if slot in shared:
                    continue
                shared.add(slot)
            writes.append(ManifestWrite(package=entry.name, rewrite=rewrite))
    return writes


def apply_plan(
    plan: ReleasePlan,
    store: ManifestStore,
    ctx: ReleaseContext,
    *,
    dry_run: bool = False,
) -> MutationReport:
    """Write a plan's versions and requirement rewrites to the manifests.

    All writes are computed before the first one is issued. The first
    failing write stops the mutation; the raised error lists the writes
    already applied so nothing is left silently half-done.

    Args:
        plan: The release plan.
        store: Manifest store of the workspace.
        ctx: Run context.
        dry_run: Report the writes without performing them.

    Returns:
        MutationReport listing the applied (or intended) writes.

    Raises:
        ManifestWriteFailure: If any write fails.
    """
    console = ctx.console
    writes = planned_writes(plan)
    console.step(f"{'Would update' if dry_run else 'Updating'} {len(writes)} manifest entries")

    if dry_run:
        for write in writes:
            console.info(f"  {write.describe()}")
        return MutationReport(writes=writes, dry_run=True)

    applied: list[ManifestWrite] = []
    for write in writes:
        entry = plan.entry(write.package)
        try:
            if write.rewrite is not None:
                store.write_requirement(write.rewrite.edge, write.rewrite.new)
            else:
                store.write_version(entry.package, entry.target_version)
        except (OSError, LockstepError) as exc:
            console.error(f"Failed to write {write.describe()}: {exc}")
            for done in applied:
                console.error(f"  already written: {done.describe()}")
            raise ManifestWriteFailure(applied, write, exc) from exc
        applied.append(write)
        console.info(f"  {write.describe()}")

    return MutationReport(writes=applied)
