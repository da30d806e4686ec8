"""Manifest stores: load workspace packages and write version changes back.

A store owns the on-disk syntax of one workspace flavour. The rest of the
pipeline sees Packages and DependencyEdges only, and asks the store to
write a version or a requirement string back.

Every write re-reads and re-saves the affected manifest through tomlkit, so
formatting and comments survive.
"""

from __future__ import annotations

import glob
from pathlib import Path
from typing import Any, Protocol

from packaging.utils import canonicalize_name

from .deps import dep_canonical_name, dep_specifier, parse_dep, with_specifier
from .errors import WorkspaceError
from .models import DependencyEdge, DependencyKind, Flavour, Package, PublishFlag
from .requirements import CargoDialect, Pep440Dialect, RequirementDialect
from .toml import (
    get_cargo_dependency_tables,
    get_cargo_members,
    get_dependency_lists,
    get_project_name,
    get_project_version,
    get_table,
    get_workspace_member_globs,
    load_toml,
    save_toml,
)

PRIVATE_CLASSIFIER = "Private :: Do Not Upload"

WORKSPACE_DEPENDENCIES = ("workspace", "dependencies")


class ManifestStore(Protocol):
    flavour: Flavour
    dialect: RequirementDialect
    manifest_name: str
    root: Path

    def load_workspace(self) -> list[Package]:
        """Read every workspace package and its internal edges."""
        ...

    def write_version(self, package: Package, version: str) -> None:
        """Set ``package``'s own version in its manifest."""
        ...

    def write_requirement(self, edge: DependencyEdge, requirement: str) -> None:
        """Replace ``edge``'s requirement string in its source manifest."""
        ...


def _expand_members(root: Path, patterns: list[str], exclude: list[str], manifest: str) -> list[Path]:
    """Expand member globs to package directories holding ``manifest``."""
    excluded: set[Path] = set()
    for pattern in exclude:
        excluded.update(Path(m).resolve() for m in glob.glob(str(root / pattern)))

    member_dirs: list[Path] = []
    for pattern in patterns:
        for match in sorted(glob.glob(str(root / pattern))):
            p = Path(match)
            if p.resolve() in excluded or p in member_dirs:
                continue
            if (p / manifest).exists():
                member_dirs.append(p)
    return member_dirs


def _relative(path: Path, root: Path) -> str:
    rel = path.resolve().relative_to(root.resolve()).as_posix()
    return rel or "."


class PyprojectStore:
    """uv workspaces: ``[tool.uv.workspace]`` members with pyproject.toml files.

    Dependency kinds:
    - [project].dependencies and optional-dependencies → normal
    - [build-system].requires → build
    - [dependency-groups] → dev
    """

    flavour = Flavour.UV
    dialect: RequirementDialect = Pep440Dialect()
    manifest_name = "pyproject.toml"

    def __init__(self, root: Path) -> None:
        self.root = root
        self._paths: dict[str, Path] = {}

    def load_workspace(self) -> list[Package]:
        root_doc = load_toml(self.root / self.manifest_name)
        member_globs = get_workspace_member_globs(root_doc)
        exclude = [
            str(e)
            for e in root_doc.get("tool", {}).get("uv", {}).get("workspace", {}).get("exclude", [])
        ]
        member_dirs = _expand_members(self.root, member_globs, exclude, self.manifest_name)
        # The workspace root is a package too when it has a [project] table
        if "project" in root_doc and self.root not in member_dirs:
            member_dirs.insert(0, self.root)

        if not member_dirs:
            raise WorkspaceError("No packages found matching workspace members")

        # First pass: collect basic info from each package
        docs: dict[str, Any] = {}
        basics: dict[str, tuple[str, str, PublishFlag]] = {}
        version_sources: dict[str, str] = {}
        for d in member_dirs:
            doc = load_toml(d / self.manifest_name)
            name = get_project_name(doc, d.name)
            if name in basics:
                raise WorkspaceError(f"Duplicate package name in workspace: {name}")
            classifiers = doc.get("project", {}).get("classifiers", [])
            flag = PublishFlag.PRIVATE if PRIVATE_CLASSIFIER in classifiers else PublishFlag.PUBLISH
            basics[name] = (_relative(d, self.root), get_project_version(doc), flag)
            if _has_dynamic_version(doc):
                version_sources[name] = "dynamic"
            docs[name] = doc
            self._paths[name] = d / self.manifest_name

        # Second pass: identify which deps are internal (within workspace)
        packages: list[Package] = []
        for name, (path, version, flag) in basics.items():
            edges: list[DependencyEdge] = []
            for location, deps in get_dependency_lists(docs[name]):
                kind = _pyproject_kind(location)
                for dep_str in deps:
                    req = parse_dep(dep_str)
                    if req is None:
                        continue
                    target = canonicalize_name(req.name)
                    if target not in basics or target == name:
                        continue
                    edges.append(
                        DependencyEdge(
                            source=name,
                            target=target,
                            kind=kind,
                            requirement=str(req.specifier) or None,
                            location=location,
                            key=req.name,
                        )
                    )
            packages.append(
                Package(
                    name=name,
                    version=version,
                    path=path,
                    edges=tuple(edges),
                    publish_flag=flag,
                    version_source=version_sources.get(name),
                )
            )
        return packages

    def _manifest(self, name: str) -> Path:
        if name not in self._paths:
            raise WorkspaceError(f"Unknown package: {name}")
        return self._paths[name]

    def write_version(self, package: Package, version: str) -> None:
        path = self._manifest(package.name)
        doc = load_toml(path)
        project = doc.get("project")
        if project is None:
            raise WorkspaceError(f"{path} has no [project] table")
        if _has_dynamic_version(doc):
            raise WorkspaceError(f"{package.name} has a dynamic version; set it at its source")
        project["version"] = version
        save_toml(path, doc)

    def write_requirement(self, edge: DependencyEdge, requirement: str) -> None:
        path = self._manifest(edge.source)
        doc = load_toml(path)
        deps = get_table(doc, edge.location)
        if not isinstance(deps, list):
            raise WorkspaceError(f"{path} has no {'.'.join(edge.location)} list")
        replaced = False
        for i, dep_str in enumerate(deps):
            if parse_dep(dep_str) is None:
                continue
            if dep_canonical_name(dep_str) == edge.target and dep_specifier(dep_str) == edge.requirement:
                deps[i] = with_specifier(dep_str, requirement)
                replaced = True
        if not replaced:
            raise WorkspaceError(
                f"{path}: no {edge.target} {edge.requirement!r} entry in {'.'.join(edge.location)}"
            )
        save_toml(path, doc)


def _has_dynamic_version(doc: Any) -> bool:
    project = doc.get("project", {})
    return "version" not in project and "version" in project.get("dynamic", [])


def _pyproject_kind(location: tuple[str, ...]) -> DependencyKind:
    if location[0] == "build-system":
        return DependencyKind.BUILD
    if location[0] == "dependency-groups":
        return DependencyKind.DEV
    return DependencyKind.NORMAL


_CARGO_KINDS = {
    "dependencies": DependencyKind.NORMAL,
    "build-dependencies": DependencyKind.BUILD,
    "dev-dependencies": DependencyKind.DEV,
}


class CargoStore:
    """Cargo workspaces: ``[workspace].members`` with Cargo.toml files.

    Renamed dependencies (``alias = { package = "real", ... }``) resolve to
    the real crate. Dependencies inherited with ``workspace = true`` take
    their requirement from the root's ``[workspace.dependencies]`` entry,
    and rewriting them edits the root manifest.
    """

    flavour = Flavour.CARGO
    dialect: RequirementDialect = CargoDialect()
    manifest_name = "Cargo.toml"

    def __init__(self, root: Path) -> None:
        self.root = root
        self._paths: dict[str, Path] = {}

    def load_workspace(self) -> list[Package]:
        root_doc = load_toml(self.root / self.manifest_name)
        members, exclude = get_cargo_members(root_doc)
        member_dirs = _expand_members(self.root, members, exclude, self.manifest_name)
        if "package" in root_doc and self.root not in member_dirs:
            member_dirs.insert(0, self.root)
        if not member_dirs:
            raise WorkspaceError("No packages found matching workspace members")

        workspace_version = get_table(root_doc, ("workspace", "package", "version"))
        shared_deps = get_table(root_doc, WORKSPACE_DEPENDENCIES) or {}

        docs: dict[str, Any] = {}
        basics: dict[str, tuple[str, str, PublishFlag]] = {}
        inherited_version: set[str] = set()
        for d in member_dirs:
            doc = load_toml(d / self.manifest_name)
            pkg = doc.get("package")
            if pkg is None or "name" not in pkg:
                raise WorkspaceError(f"{d / self.manifest_name} has no [package].name")
            name = str(pkg["name"])
            if name in basics:
                raise WorkspaceError(f"Duplicate package name in workspace: {name}")
            version = pkg.get("version", "0.0.0")
            if hasattr(version, "get") and version.get("workspace"):
                if workspace_version is None:
                    raise WorkspaceError(f"{name} inherits a version but [workspace.package] has none")
                version = workspace_version
                inherited_version.add(name)
            publish = pkg.get("publish", True)
            private = publish is False or (isinstance(publish, list) and not publish)
            flag = PublishFlag.PRIVATE if private else PublishFlag.PUBLISH
            basics[name] = (_relative(d, self.root), str(version), flag)
            docs[name] = doc
            self._paths[name] = d / self.manifest_name

        packages: list[Package] = []
        for name, (path, version, flag) in basics.items():
            edges: list[DependencyEdge] = []
            for location, section, table in get_cargo_dependency_tables(docs[name]):
                for key, spec in table.items():
                    edge = _cargo_edge(name, str(key), spec, location, section, shared_deps)
                    if edge is not None and edge.target in basics and edge.target != name:
                        edges.append(edge)
            packages.append(
                Package(
                    name=name,
                    version=version,
                    path=path,
                    edges=tuple(edges),
                    publish_flag=flag,
                    version_source="workspace" if name in inherited_version else None,
                )
            )
        return packages

    def _manifest(self, name: str) -> Path:
        if name not in self._paths:
            raise WorkspaceError(f"Unknown package: {name}")
        return self._paths[name]

    def write_version(self, package: Package, version: str) -> None:
        if package.version_source == "workspace":
            raise WorkspaceError(
                f"{package.name} inherits its version from [workspace.package]; set it there"
            )
        path = self._manifest(package.name)
        doc = load_toml(path)
        doc["package"]["version"] = version
        save_toml(path, doc)

    def write_requirement(self, edge: DependencyEdge, requirement: str) -> None:
        path = self.root / self.manifest_name if edge.inherited else self._manifest(edge.source)
        doc = load_toml(path)
        table = get_table(doc, edge.location)
        if table is None or edge.key not in table:
            raise WorkspaceError(f"{path}: no {edge.key} entry in [{'.'.join(edge.location)}]")
        entry = table[edge.key]
        if isinstance(entry, str):
            table[edge.key] = requirement
        else:
            entry["version"] = requirement
        save_toml(path, doc)


def _cargo_edge(
    source: str,
    key: str,
    spec: Any,
    location: tuple[str, ...],
    section: str,
    shared_deps: Any,
) -> DependencyEdge | None:
    """Turn one Cargo dependency entry into an edge candidate.

    ``dep = { workspace = true }`` resolves through ``shared_deps`` (the
    root's ``[workspace.dependencies]``); without a root entry the edge has
    no requirement. Returns None for git dependencies, which never point at
    the workspace.
    """
    kind = _CARGO_KINDS[section]
    inherited = hasattr(spec, "get") and bool(spec.get("workspace")) and key in shared_deps
    if inherited:
        spec, location = shared_deps[key], WORKSPACE_DEPENDENCIES
    if isinstance(spec, str):
        return DependencyEdge(
            source=source,
            target=key,
            kind=kind,
            requirement=spec,
            location=location,
            key=key,
            inherited=inherited,
        )
    if not hasattr(spec, "get") or "git" in spec:
        return None
    requirement = None if spec.get("workspace") else spec.get("version")
    return DependencyEdge(
        source=source,
        target=str(spec.get("package", key)),
        kind=kind,
        requirement=str(requirement) if requirement is not None else None,
        location=location,
        key=key,
        inherited=inherited,
    )


def detect_store(root: Path, flavour: Flavour | None = None) -> ManifestStore:
    """Pick the manifest store for a workspace root.

    A Cargo.toml with a [workspace] table wins over a uv workspace.

    Raises:
        WorkspaceError: If no supported workspace is found.
    """
    if flavour is Flavour.CARGO:
        return CargoStore(root)
    if flavour is Flavour.UV:
        return PyprojectStore(root)

    cargo = root / CargoStore.manifest_name
    if cargo.exists() and "workspace" in load_toml(cargo):
        return CargoStore(root)
    pyproject = root / PyprojectStore.manifest_name
    if pyproject.exists():
        doc = load_toml(pyproject)
        if get_table(doc, ("tool", "uv", "workspace")) is not None:
            return PyprojectStore(root)
    raise WorkspaceError(
        f"No workspace found in {root}: expected a Cargo.toml with [workspace] "
        "or a pyproject.toml with [tool.uv.workspace]"
    )
