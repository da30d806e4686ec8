"""Tests for lockstep.mutator."""

from __future__ import annotations

from pathlib import Path

import pytest
import tomlkit

from lockstep.config import ReleaseConfig
from lockstep.context import ReleaseContext
from lockstep.errors import ManifestWriteFailure
from lockstep.graph import build_graph
from lockstep.manifests import CargoStore, PyprojectStore
from lockstep.models import DependencyEdge, Package, ReleasePlan
from lockstep.mutator import apply_plan, planned_writes
from lockstep.planner import plan_release
from lockstep.policy import ExactPinPolicy, ExplicitBumpPolicy
from lockstep.versions import BumpKind


def _plan(store: PyprojectStore | CargoStore, ctx: ReleaseContext, **bumps: BumpKind) -> ReleasePlan:
    graph = build_graph(store.load_workspace())
    policy = ExplicitBumpPolicy(overrides=bumps)
    return plan_release(graph, policy, store.dialect, store.flavour, ctx)


class TestPlannedWrites:
    def test_versions_then_rewrites_in_plan_order(self, uv_workspace: Path, ctx: ReleaseContext) -> None:
        store = PyprojectStore(uv_workspace)
        plan = _plan(store, ctx, beta=BumpKind.MAJOR, tool=BumpKind.MINOR)

        described = [w.describe() for w in planned_writes(plan)]
        assert described == [
            "beta: version → 2.0.0",
            "gamma: beta '~=1.2' → '~=2.0'",
            "tool: version → 0.2.0",
        ]


    def test_shared_requirement_written_once(self, cargo_shared_workspace: Path, ctx: ReleaseContext) -> None:
        store = CargoStore(cargo_shared_workspace)
        plan = _plan(store, ctx, engine=BumpKind.MINOR)

        assert len(plan.rewrites) == 3
        described = [w.describe() for w in planned_writes(plan)]
        assert described == ["engine: version → 0.5.0", "app: engine '0.4' → '0.5'"]


class TestApplyPlan:
    def test_shared_requirement_rewritten_in_root(
        self, cargo_shared_workspace: Path, ctx: ReleaseContext
    ) -> None:
        store = CargoStore(cargo_shared_workspace)
        members = {p: p.read_text() for p in (cargo_shared_workspace / "crates").rglob("Cargo.toml")}
        plan = _plan(store, ctx, engine=BumpKind.MINOR)

        apply_plan(plan, store, ctx)

        root = tomlkit.parse((cargo_shared_workspace / "Cargo.toml").read_text())
        assert root["workspace"]["dependencies"]["engine"]["version"] == "0.5"
        engine = cargo_shared_workspace / "crates" / "engine" / "Cargo.toml"
        assert tomlkit.parse(engine.read_text())["package"]["version"] == "0.5.0"
        # only engine's own manifest changed among the members
        changed = [p for p, text in members.items() if p.read_text() != text]
        assert changed == [engine]

    def test_writes_versions_and_requirements(self, uv_workspace: Path, ctx: ReleaseContext) -> None:
        store = PyprojectStore(uv_workspace)
        plan = _plan(store, ctx, beta=BumpKind.MAJOR)

        report = apply_plan(plan, store, ctx)

        assert len(report.writes) == 2
        beta = tomlkit.parse((uv_workspace / "packages" / "beta" / "pyproject.toml").read_text())
        gamma = tomlkit.parse((uv_workspace / "packages" / "gamma" / "pyproject.toml").read_text())
        assert beta["project"]["version"] == "2.0.0"
        assert gamma["project"]["dependencies"] == ['beta[cli]~=2.0; python_version >= "3.10"']
        # gamma itself was not released
        assert gamma["project"]["version"] == "0.3.0"

    def test_dry_run_writes_nothing(self, uv_workspace: Path, ctx: ReleaseContext) -> None:
        store = PyprojectStore(uv_workspace)
        plan = _plan(store, ctx, beta=BumpKind.MAJOR)
        before = {p: p.read_text() for p in uv_workspace.rglob("pyproject.toml")}

        report = apply_plan(plan, store, ctx, dry_run=True)

        assert report.dry_run
        assert len(report.writes) == 2
        assert {p: p.read_text() for p in uv_workspace.rglob("pyproject.toml")} == before

    def test_cargo_rewrite(self, cargo_workspace: Path, ctx: ReleaseContext) -> None:
        store = CargoStore(cargo_workspace)
        ctx.config = ReleaseConfig(pin_policy=ExactPinPolicy.REWRITE)
        plan = _plan(store, ctx, base=BumpKind.BREAKING, app=BumpKind.PATCH)

        apply_plan(plan, store, ctx)

        mid = tomlkit.parse((cargo_workspace / "crates" / "mid" / "Cargo.toml").read_text())
        app = tomlkit.parse((cargo_workspace / "crates" / "app" / "Cargo.toml").read_text())
        assert mid["dependencies"]["base"]["version"] == "0.2"
        assert app["dev-dependencies"]["helper"]["version"] == "=0.2.0"
        assert app["package"]["version"] == "1.0.1"

    def test_failure_reports_applied_writes(self, ctx: ReleaseContext) -> None:
        """The first failing write stops the run and names what was already written."""

        class FlakyStore:
            def __init__(self) -> None:
                self.written: list[str] = []

            def write_version(self, package: Package, version: str) -> None:
                if package.name == "b":
                    raise OSError("disk full")
                self.written.append(package.name)

            def write_requirement(self, edge: DependencyEdge, requirement: str) -> None:
                self.written.append(f"{edge.source}->{edge.target}")

        a = Package(name="a", version="1.0.0", path="a")
        b = Package(
            name="b",
            version="1.0.0",
            path="b",
            edges=(DependencyEdge(source="b", target="a", requirement="==1.0.0"),),
        )
        c = Package(name="c", version="1.0.0", path="c")
        graph = build_graph([a, b, c])
        ctx.config = ReleaseConfig(pin_policy=ExactPinPolicy.REWRITE)
        plan = plan_release(
            graph,
            ExplicitBumpPolicy(default=BumpKind.MINOR),
            PyprojectStore.dialect,
            PyprojectStore.flavour,
            ctx,
        )
        store = FlakyStore()

        with pytest.raises(ManifestWriteFailure) as excinfo:
            apply_plan(plan, store, ctx)  # type: ignore[arg-type]

        assert [w.package for w in excinfo.value.applied] == ["a"]
        assert excinfo.value.failed.describe() == "b: version → 1.1.0"
        assert isinstance(excinfo.value.cause, OSError)
        # c comes after the failure and is never written
        assert store.written == ["a"]
