"""Release planning: publish order, target versions and requirement rewrites.

The planner only computes intent. It never touches a manifest; the mutator
applies the plan afterwards.
"""

from __future__ import annotations

from .context import ReleaseContext
from .errors import VersionConflict, WorkspaceError
from .graph import WorkspaceGraph
from .models import DependencyEdge, EdgeRewrite, Flavour, PlanEntry, ReleasePlan
from .policy import BumpPolicy, ExactPinPolicy
from .requirements import RequirementDialect
from .versions import BumpKind, bump_version, parse_version

_VERSION_SOURCES = {
    "workspace": "its version is inherited from [workspace.package]",
    "dynamic": "its version is dynamic; set it at its source",
}


def resolve_versions(
    graph: WorkspaceGraph,
    policy: BumpPolicy,
    dialect: RequirementDialect,
) -> dict[str, tuple[str, BumpKind | None]]:
    """Apply the bump policy to every package.

    Returns:
        Map of package name → (target version, bump kind or None).

    Raises:
        WorkspaceError: If a package's current version cannot be parsed, or
            a package to be bumped declares its version elsewhere.
    """
    targets: dict[str, tuple[str, BumpKind | None]] = {}
    for pkg in graph.packages:
        kind = policy.decide(pkg)
        if kind is None:
            targets[pkg.name] = (pkg.version, None)
            continue
        if pkg.version_source is not None:
            raise WorkspaceError(f"{pkg.name}: cannot bump, {_VERSION_SOURCES[pkg.version_source]}")
        try:
            new = bump_version(pkg.version, kind)
            targets[pkg.name] = (dialect.format_version(new), kind)
        except ValueError as exc:
            raise WorkspaceError(f"{pkg.name}: cannot bump {pkg.version!r}: {exc}") from exc
    return targets


def plan_rewrite(
    edge: DependencyEdge,
    version: str,
    dialect: RequirementDialect,
    pin_policy: ExactPinPolicy,
    source_released: bool,
) -> EdgeRewrite | None:
    """Decide whether ``edge`` needs a new requirement for ``version``.

    Returns:
        The rewrite, or None when the requirement still matches.

    Raises:
        VersionConflict: If no safe rewrite exists.
    """
    if edge.requirement is None:
        return None
    try:
        if dialect.matches(edge.requirement, version):
            return None
        exact = dialect.is_exact_pin(edge.requirement)
    except ValueError as exc:
        raise VersionConflict(edge, version, str(exc)) from exc

    if exact:
        if pin_policy is ExactPinPolicy.REJECT:
            raise VersionConflict(edge, version, "exact pins are not rewritten (pin policy: reject)")
        if not source_released:
            raise VersionConflict(
                edge,
                version,
                f"{edge.source} pins the old version but is not released itself",
            )

    new = dialect.rewrite(edge.requirement, version)
    if not dialect.matches(new, version):
        raise VersionConflict(edge, version, f"rewritten requirement {new!r} still does not match")
    return EdgeRewrite(edge=edge, old=edge.requirement, new=new)


def plan_release(
    graph: WorkspaceGraph,
    policy: BumpPolicy,
    dialect: RequirementDialect,
    flavour: Flavour,
    ctx: ReleaseContext,
    *,
    dry_run: bool = False,
) -> ReleasePlan:
    """Compute the release plan for a validated workspace graph.

    Steps:
    1. Order packages topologically, smallest name first among ready ones
    2. Resolve each package's target version through the bump policy
    3. For every edge whose target version changed, keep the requirement if
       it still matches, otherwise plan a style-preserving rewrite

    Args:
        graph: Validated, acyclic workspace graph.
        policy: Decides which packages are released and their bump.
        dialect: Requirement syntax of the workspace.
        flavour: Workspace flavour, recorded on the plan.
        ctx: Run context; its config supplies the exact-pin policy.
        dry_run: Only changes the progress header; the plan is identical.

    Returns:
        The frozen ReleasePlan.

    Raises:
        VersionConflict: If a requirement cannot follow its target's bump.
        WorkspaceError: If a version cannot be parsed or bumped.
    """
    console = ctx.console
    console.step("Planning release" + (" (dry run)" if dry_run else ""))

    order = graph.topo_order()
    targets = resolve_versions(graph, policy, dialect)

    rewrites: dict[str, list[EdgeRewrite]] = {name: [] for name in order}
    for _, _, edge in graph.edges:
        pkg = graph.package(edge.target)
        new_version, _ = targets[edge.target]
        if new_version == pkg.version:
            continue
        source_released = targets[edge.source][1] is not None
        rewrite = plan_rewrite(edge, new_version, dialect, ctx.config.pin_policy, source_released)
        if rewrite is not None:
            rewrites[edge.source].append(rewrite)

    entries: list[PlanEntry] = []
    for name in order:
        pkg = graph.package(name)
        target, kind = targets[name]
        entry = PlanEntry(
            package=pkg,
            current_version=pkg.version,
            target_version=target,
            bump=kind,
            release=kind is not None,
            rewrites=tuple(rewrites[name]),
        )
        entries.append(entry)

        marker = f"{pkg.version} → {target}" if entry.version_changed else pkg.version
        status = "release" if entry.release else "keep"
        console.info(f"  {name} {marker} [{status}]")
        for r in entry.rewrites:
            console.info(f"    {r.edge.target}: {r.old!r} → {r.new!r}")

    return ReleasePlan(flavour=flavour, entries=tuple(entries))


def unsatisfied_requirements(
    graph: WorkspaceGraph, dialect: RequirementDialect
) -> list[tuple[DependencyEdge, str]]:
    """Find edges whose requirement does not match the target's current version.

    Returns:
        (edge, reason) pairs, in edge order.
    """
    problems: list[tuple[DependencyEdge, str]] = []
    for _, _, edge in graph.edges:
        if edge.requirement is None:
            continue
        version = graph.package(edge.target).version
        try:
            parse_version(version)
            if not dialect.matches(edge.requirement, version):
                problems.append((edge, f"{edge.requirement!r} does not match {version}"))
        except ValueError as exc:
            problems.append((edge, str(exc)))
    return problems
