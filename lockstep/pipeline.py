"""Release pipeline: discover → graph → plan → write manifests → publish.

This module wires the stages together:
1. Discover all packages in the workspace through its manifest store
2. Build and validate the dependency graph (cycles are fatal)
3. Decide bumps and plan versions and requirement rewrites
4. Write the planned versions and requirements to the manifests
5. Publish released packages in dependency order, verifying each one

Validation always precedes mutation, and mutation precedes publication:
a planning error leaves every manifest untouched.
"""

from __future__ import annotations

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .context import ReleaseContext
from .errors import PublishFailed, WorkspaceError
from .graph import WorkspaceGraph, build_graph
from .manifests import ManifestStore, detect_store
from .models import DependencyEdge, Flavour, MutationReport, PublishFlag, ReleasePlan, RunReport
from .mutator import apply_plan
from .orchestrator import publish_plan
from .planner import plan_release, unsatisfied_requirements
from .policy import BumpPolicy, ExplicitBumpPolicy, NoBumpPolicy, changed_since_policy
from .registry import RegistryClient, SimulatedRegistry, make_registry
from .versions import BumpKind


@dataclass
class BumpSelection:
    """Which packages to release and by how much, as given on the command line.

    Attributes:
        bump: Default bump for selected packages.
        packages: Glob patterns selecting packages for ``bump``.
        overrides: Per-package bumps; always applied.
        changed_since: Git ref; select packages changed since it (plus
                       their dependents) instead of every package.
    """

    bump: BumpKind | None = None
    packages: list[str] = field(default_factory=list)
    overrides: dict[str, BumpKind] = field(default_factory=dict)
    changed_since: str | None = None


def load_graph(
    root: Path, ctx: ReleaseContext, flavour: Flavour | None = None
) -> tuple[ManifestStore, WorkspaceGraph]:
    """Discover the workspace and build its validated graph.

    Packages named in the configured skip list are flagged ``skip``.

    Raises:
        WorkspaceError: If the workspace or a manifest is invalid.
        CyclicDependency: If the graph has a cycle.
    """
    console = ctx.console
    console.step("Discovering workspace packages")

    store = detect_store(root, flavour)
    packages = store.load_workspace()

    names = {p.name for p in packages}
    skip = set(ctx.config.skip)
    for name in sorted(skip - names):
        console.warn(f"skip list names unknown package {name!r}")
    packages = [
        p.model_copy(update={"publish_flag": PublishFlag.SKIP})
        if p.name in skip and p.publish_flag is PublishFlag.PUBLISH
        else p
        for p in packages
    ]

    graph = build_graph(packages, include_dev=not ctx.config.exclude_dev)
    for name in graph.topo_order():
        pkg = graph.package(name)
        deps = f" → [{', '.join(pkg.deps)}]" if pkg.deps else ""
        flag = "" if pkg.publish_flag is PublishFlag.PUBLISH else f" ({pkg.publish_flag.value})"
        console.info(f"  {name} {pkg.version} ({pkg.path}){flag}{deps}")
    return store, graph


def build_policy(
    graph: WorkspaceGraph,
    store: ManifestStore,
    selection: BumpSelection,
    ctx: ReleaseContext,
) -> BumpPolicy:
    """Turn a BumpSelection into a bump policy for the planner.

    Raises:
        WorkspaceError: If an override names an unknown package, or
                        ``changed_since`` is set without a bump kind.
    """
    if selection.changed_since is not None:
        if selection.bump is None:
            raise WorkspaceError("--changed-since needs --bump to know how far to bump")
        policy = changed_since_policy(
            graph,
            selection.changed_since,
            selection.bump,
            store.flavour,
            ctx.console,
            root=store.root,
            overrides=selection.overrides,
        )
    elif selection.bump is None and not selection.overrides:
        return NoBumpPolicy()
    else:
        policy = ExplicitBumpPolicy(
            overrides=selection.overrides,
            default=selection.bump,
            patterns=selection.packages,
        )
    policy.validate(graph)
    return policy


def run_plan(
    root: Path,
    selection: BumpSelection,
    ctx: ReleaseContext,
    *,
    flavour: Flavour | None = None,
    dry_run: bool = False,
) -> tuple[ManifestStore, ReleasePlan]:
    """Discover, build the graph and plan. Nothing is written."""
    store, graph = load_graph(root, ctx, flavour)
    policy = build_policy(graph, store, selection, ctx)
    plan = plan_release(graph, policy, store.dialect, store.flavour, ctx, dry_run=dry_run)
    return store, plan


def run_check(
    root: Path, ctx: ReleaseContext, flavour: Flavour | None = None
) -> list[tuple[DependencyEdge, str]]:
    """Validate the workspace and list requirements that no longer match.

    Raises:
        CyclicDependency: If the graph has a cycle.
        WorkspaceError: If the workspace is invalid.
    """
    store, graph = load_graph(root, ctx, flavour)
    ctx.console.step("Checking internal requirements")
    problems = unsatisfied_requirements(graph, store.dialect)
    for edge, reason in problems:
        ctx.console.info(f"  {edge.source} → {edge.target} ({edge.kind.value}): {reason}")
    if not problems:
        ctx.console.info("  all internal requirements match")
    return problems


def run_version(
    root: Path,
    selection: BumpSelection,
    ctx: ReleaseContext,
    *,
    flavour: Flavour | None = None,
    dry_run: bool = False,
) -> tuple[ReleasePlan, MutationReport]:
    """Plan and write the new versions, without publishing anything.

    Raises:
        PlanningError: If planning fails; no manifest was touched.
        ManifestWriteFailure: If a write fails part way through.
    """
    store, plan = run_plan(root, selection, ctx, flavour=flavour, dry_run=dry_run)
    mutation = apply_plan(plan, store, ctx, dry_run=dry_run)
    return plan, mutation


@contextmanager
def abort_on_signals(ctx: ReleaseContext) -> Iterator[None]:
    """Set ``ctx.abort`` on SIGINT/SIGTERM for the duration of the block.

    Handlers can only be installed from the main thread; elsewhere the
    block runs without them.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        ctx.console.warn(
            f"Received {signal.Signals(signum).name}: finishing the current attempt, then stopping"
        )
        ctx.abort.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run_release(
    root: Path,
    selection: BumpSelection,
    ctx: ReleaseContext,
    *,
    flavour: Flavour | None = None,
    dry_run: bool = False,
    registry: RegistryClient | None = None,
    report_path: Path | None = None,
) -> RunReport:
    """Run the full release pipeline.

    Args:
        root: Workspace root.
        selection: Which packages to release and how.
        ctx: Run context; ``ctx.config`` supplies retry and pin settings.
        flavour: Force a workspace flavour instead of detecting it.
        dry_run: Plan, report intended writes and simulate publishing.
        registry: Registry client to use instead of the flavour's default.
        report_path: Where to write the JSON run report.

    Returns:
        The RunReport of a fully successful run.

    Raises:
        PlanningError: If planning fails; nothing was changed.
        ManifestWriteFailure: If writing manifests fails.
        PublishFailed: If a package failed or the run was aborted.
    """
    config = ctx.config
    store, plan = run_plan(root, selection, ctx, flavour=flavour, dry_run=dry_run)
    apply_plan(plan, store, ctx, dry_run=dry_run)

    http = None
    if registry is None:
        if dry_run:
            registry = SimulatedRegistry()
        else:
            registry = http = make_registry(store.flavour, root, config.registry)
    try:
        with abort_on_signals(ctx):
            report = publish_plan(
                plan,
                registry,
                config.retry,
                ctx,
                dry_run=dry_run,
                fail_fast=config.fail_fast,
            )
    finally:
        if http is not None:
            http.close()

    ctx.console.step("Release summary")
    ctx.console.info(report.render_table())
    if report_path is not None:
        report_path.write_text(report.to_json())
        ctx.console.info(f"\nReport written to {report_path}")

    if not report.succeeded:
        raise PublishFailed(report)
    return report

