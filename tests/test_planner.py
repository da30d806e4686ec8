"""Tests for lockstep.planner."""

from __future__ import annotations

from pathlib import Path

import pytest

from lockstep.config import ReleaseConfig
from lockstep.context import ReleaseContext
from lockstep.errors import VersionConflict, WorkspaceError
from lockstep.graph import WorkspaceGraph, build_graph
from lockstep.manifests import CargoStore
from lockstep.models import DependencyEdge, DependencyKind, Flavour, Package
from lockstep.planner import plan_release, plan_rewrite, unsatisfied_requirements
from lockstep.policy import ExactPinPolicy, ExplicitBumpPolicy, NoBumpPolicy
from lockstep.requirements import CargoDialect, Pep440Dialect
from lockstep.shell import Console
from lockstep.versions import BumpKind

CARGO = CargoDialect()
PEP440 = Pep440Dialect()


def crate(name: str, version: str = "1.0.0", **deps: str) -> Package:
    edges = tuple(
        DependencyEdge(
            source=name, target=target, requirement=req, location=("dependencies",), key=target
        )
        for target, req in deps.items()
    )
    return Package(name=name, version=version, path=f"crates/{name}", edges=edges)


def make_ctx(pin_policy: ExactPinPolicy = ExactPinPolicy.REJECT) -> ReleaseContext:
    return ReleaseContext(config=ReleaseConfig(pin_policy=pin_policy), console=Console(quiet=True))


class TestPlanRelease:
    def test_order_is_topological(self) -> None:
        """A depends on B, B depends on C: plan order C, B, A."""
        graph = build_graph([crate("a", b="^1.0"), crate("b", c="^1.0"), crate("c")])
        plan = plan_release(graph, NoBumpPolicy(), CARGO, Flavour.CARGO, make_ctx())
        assert plan.order == ["c", "b", "a"]
        assert plan.released == []
        assert all(not e.version_changed for e in plan.entries)

    def test_compatible_requirement_not_rewritten(self) -> None:
        """B 1.0.0 → 1.1.0 keeps A's ``^1.0.0``."""
        graph = build_graph([crate("a", b="^1.0.0"), crate("b")])
        policy = ExplicitBumpPolicy(overrides={"b": BumpKind.MINOR})
        plan = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())

        entry = plan.entry("b")
        assert (entry.current_version, entry.target_version) == ("1.0.0", "1.1.0")
        assert entry.release
        assert plan.rewrites == []
        assert not plan.entry("a").release

    def test_exact_pin_rejected_by_default(self) -> None:
        graph = build_graph([crate("a", b="=1.0.0"), crate("b")])
        policy = ExplicitBumpPolicy(overrides={"b": BumpKind.MINOR})
        with pytest.raises(VersionConflict) as excinfo:
            plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())
        assert excinfo.value.edge.source == "a"
        assert excinfo.value.version == "1.1.0"

    def test_exact_pin_rewrite_needs_released_source(self) -> None:
        graph = build_graph([crate("a", b="=1.0.0"), crate("b")])
        policy = ExplicitBumpPolicy(overrides={"b": BumpKind.MINOR})
        with pytest.raises(VersionConflict, match="not released itself"):
            plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx(ExactPinPolicy.REWRITE))

    def test_exact_pin_rewritten_when_source_released(self) -> None:
        graph = build_graph([crate("a", b="=1.0.0"), crate("b")])
        policy = ExplicitBumpPolicy(overrides={"b": BumpKind.MINOR, "a": BumpKind.PATCH})
        plan = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx(ExactPinPolicy.REWRITE))

        (rewrite,) = plan.entry("a").rewrites
        assert (rewrite.old, rewrite.new) == ("=1.0.0", "=1.1.0")
        assert plan.entry("a").target_version == "1.0.1"

    def test_incompatible_range_rewritten(self) -> None:
        graph = build_graph([crate("a", b="^1.2"), crate("b", "1.2.3")])
        policy = ExplicitBumpPolicy(overrides={"b": BumpKind.MAJOR})
        plan = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())

        (rewrite,) = plan.rewrites
        assert rewrite.new == "^2.0"
        # The dependent keeps its version; only its manifest entry changes
        assert not plan.entry("a").release

    def test_path_only_edges_never_rewritten(self) -> None:
        a = Package(
            name="a",
            version="1.0.0",
            path="a",
            edges=(DependencyEdge(source="a", target="b"),),
        )
        graph = build_graph([a, crate("b")])
        policy = ExplicitBumpPolicy(overrides={"b": BumpKind.MAJOR})
        plan = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())
        assert plan.rewrites == []

    def test_dev_edges_rewritten_even_when_excluded_from_order(self) -> None:
        a = crate("a", b="^1.0")
        b = Package(
            name="b",
            version="1.0.0",
            path="b",
            edges=(
                DependencyEdge(
                    source="b",
                    target="a",
                    kind=DependencyKind.DEV,
                    requirement="^1.0",
                    location=("dev-dependencies",),
                    key="a",
                ),
            ),
        )
        graph = build_graph([a, b], include_dev=False)
        policy = ExplicitBumpPolicy(default=BumpKind.MAJOR)
        plan = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())

        assert plan.order == ["b", "a"]
        assert {(r.edge.source, r.new) for r in plan.rewrites} == {("a", "^2.0"), ("b", "^2.0")}

    def test_pep440_versions_formatted(self) -> None:
        a = Package(
            name="a",
            version="1.0.0",
            path="a",
            edges=(DependencyEdge(source="a", target="b", requirement=">=1.0"),),
        )
        b = Package(name="b", version="1.2.3", path="b")
        graph = build_graph([a, b])
        policy = ExplicitBumpPolicy(overrides={"b": BumpKind.PRE})
        plan = plan_release(graph, policy, PEP440, Flavour.UV, make_ctx())

        assert plan.entry("b").target_version == "1.2.4rc1"
        (rewrite,) = plan.rewrites
        assert rewrite.new == ">=1.2.4rc1,<1.3.0"

    def test_unparsable_version_is_workspace_error(self) -> None:
        graph = build_graph([crate("a", "banana")])
        policy = ExplicitBumpPolicy(default=BumpKind.PATCH)
        with pytest.raises(WorkspaceError, match="cannot bump"):
            plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())

    def test_idempotent(self) -> None:
        graph = build_graph(
            [crate("a", b="^1.0", c="=1.0.0"), crate("b", c="~1.0"), crate("c")]
        )
        policy = ExplicitBumpPolicy(default=BumpKind.MINOR)
        ctx = make_ctx(ExactPinPolicy.REWRITE)
        first = plan_release(graph, policy, CARGO, Flavour.CARGO, ctx)
        second = plan_release(graph, policy, CARGO, Flavour.CARGO, ctx)
        assert first == second

    def test_dry_run_plan_is_identical(self) -> None:
        graph = build_graph([crate("a", b="^1.0"), crate("b")])
        policy = ExplicitBumpPolicy(default=BumpKind.MAJOR)
        wet = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())
        dry = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx(), dry_run=True)
        assert wet == dry

    def test_every_requirement_matches_after_plan(self) -> None:
        graph = build_graph(
            [
                crate("a", b="^0.1", c="0.2.1"),
                crate("b", "0.1.5", c="~0.2"),
                crate("c", "0.2.1"),
            ]
        )
        policy = ExplicitBumpPolicy(default=BumpKind.BREAKING)
        plan = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())

        new_req = {(r.edge.source, r.edge.target): r.new for r in plan.rewrites}
        for _, _, edge in graph.edges:
            requirement = new_req.get((edge.source, edge.target), edge.requirement)
            target = plan.entry(edge.target).target_version
            assert CARGO.matches(requirement, target), (edge, requirement, target)


class TestDeclaredAtWorkspaceRoot:
    """Versions and requirements that live outside the member's manifest."""

    def _graph(self, root: Path) -> WorkspaceGraph:
        return build_graph(CargoStore(root).load_workspace())

    def test_shared_exact_pin_rejected(self, cargo_shared_workspace: Path) -> None:
        graph = self._graph(cargo_shared_workspace)
        policy = ExplicitBumpPolicy(overrides={"base": BumpKind.BREAKING})
        with pytest.raises(VersionConflict) as excinfo:
            plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())
        assert excinfo.value.edge.inherited
        assert excinfo.value.edge.requirement == "=1.0.0"

    def test_shared_requirement_rewritten(self, cargo_shared_workspace: Path) -> None:
        graph = self._graph(cargo_shared_workspace)
        policy = ExplicitBumpPolicy(overrides={"engine": BumpKind.MINOR})
        plan = plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())

        assert plan.entry("engine").target_version == "0.5.0"
        assert {(r.edge.source, r.old, r.new) for r in plan.rewrites} == {
            ("app", "0.4", "0.5"),
            ("cli", "0.4", "0.5"),
            ("shared", "0.4", "0.5"),
        }

    def test_inherited_version_cannot_be_bumped(self, cargo_shared_workspace: Path) -> None:
        graph = self._graph(cargo_shared_workspace)
        policy = ExplicitBumpPolicy(overrides={"shared": BumpKind.PATCH})
        with pytest.raises(WorkspaceError, match=r"shared: cannot bump, .*\[workspace\.package\]"):
            plan_release(graph, policy, CARGO, Flavour.CARGO, make_ctx())

    def test_dynamic_version_cannot_be_bumped(self) -> None:
        dynamic = Package(name="p", version="0.0.0", path="p", version_source="dynamic")
        policy = ExplicitBumpPolicy(default=BumpKind.MINOR)
        with pytest.raises(WorkspaceError, match="version is dynamic"):
            plan_release(build_graph([dynamic]), policy, PEP440, Flavour.UV, make_ctx())

    def test_unbumped_inherited_version_is_fine(self) -> None:
        shared = Package(name="p", version="0.9.0", path="p", version_source="workspace")
        plan = plan_release(build_graph([shared]), NoBumpPolicy(), CARGO, Flavour.CARGO, make_ctx())
        assert not plan.entry("p").release


class TestPlanRewrite:
    edge =DependencyEdge(source="a", target="b", requirement="^1.0", key="b")

    def test_no_requirement(self) -> None:
        edge = DependencyEdge(source="a", target="b")
        assert plan_rewrite(edge, "2.0.0", CARGO, ExactPinPolicy.REJECT, False) is None

    def test_still_matches(self) -> None:
        assert plan_rewrite(self.edge, "1.9.0", CARGO, ExactPinPolicy.REJECT, False) is None

    def test_invalid_requirement_is_conflict(self) -> None:
        edge = DependencyEdge(source="a", target="b", requirement="whatever")
        with pytest.raises(VersionConflict):
            plan_rewrite(edge, "2.0.0", CARGO, ExactPinPolicy.REJECT, False)


class TestUnsatisfiedRequirements:
    def test_reports_stale_requirements(self) -> None:
        graph = build_graph([crate("a", b="^1.0", c="^2.0"), crate("b"), crate("c")])
        problems = unsatisfied_requirements(graph, CARGO)
        assert [(e.source, e.target) for e, _ in problems] == [("a", "c")]

    def test_clean_workspace(self) -> None:
        graph = build_graph([crate("a", b="^1.0"), crate("b")])
        assert unsatisfied_requirements(graph, CARGO) == []
