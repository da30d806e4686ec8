"""TOML reading and writing utilities.

Uses tomlkit to preserve formatting and comments when modifying manifest
files (pyproject.toml, Cargo.toml). This is important for maintaining
readable, diff-friendly files.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomlkit
from packaging.utils import canonicalize_name
from tomlkit.exceptions import TOMLKitError

from .errors import WorkspaceError


def load_toml(path: Path) -> tomlkit.TOMLDocument:
    """Load and parse a TOML file.

    Returns a TOMLDocument that preserves formatting when modified and saved.

    Raises:
        WorkspaceError: If the file is missing or not valid TOML.
    """
    try:
        return tomlkit.parse(path.read_text())
    except FileNotFoundError as exc:
        raise WorkspaceError(f"Manifest not found: {path}") from exc
    except TOMLKitError as exc:
        raise WorkspaceError(f"Invalid TOML in {path}: {exc}") from exc


def save_toml(path: Path, doc: tomlkit.TOMLDocument) -> None:
    """Save a TOMLDocument back to disk, preserving original formatting."""
    path.write_text(tomlkit.dumps(doc))


def get_table(doc: Any, location: tuple[str, ...]) -> Any:
    """Walk nested tables, returning None when any level is missing."""
    node = doc
    for key in location:
        if not hasattr(node, "get"):
            return None
        node = node.get(key)
        if node is None:
            return None
    return node


# ---------------------------------------------------------------------------
# pyproject.toml
# ---------------------------------------------------------------------------


def get_project_name(doc: tomlkit.TOMLDocument, fallback: str) -> str:
    """Extract the canonical package name from [project].name.

    Names are normalized per PEP 503 (lowercase, hyphens instead of
    underscores) for consistent comparison.

    Args:
        doc: Parsed pyproject.toml document.
        fallback: Value to return if name is not specified.
    """
    return canonicalize_name(doc.get("project", {}).get("name", fallback))


def get_project_version(doc: tomlkit.TOMLDocument) -> str:
    """Extract version from [project].version, defaulting to '0.0.0'."""
    return str(doc.get("project", {}).get("version", "0.0.0"))


def get_dependency_lists(doc: tomlkit.TOMLDocument) -> list[tuple[tuple[str, ...], list]]:
    """Collect every dependency list in a pyproject.toml with its location.

    Gathers dependencies from four locations:
    - [project].dependencies (main runtime deps)
    - [project].optional-dependencies.* (extras like [dev], [test])
    - [dependency-groups].* (PEP 735 dependency groups)
    - [build-system].requires (build deps)

    Returns:
        (location, list of raw PEP 508 strings) pairs. The lists are the
        document's own arrays, so editing them edits the document.
    """
    found: list[tuple[tuple[str, ...], list]] = []
    project = doc.get("project", {})
    deps = project.get("dependencies")
    if isinstance(deps, list):
        found.append((("project", "dependencies"), deps))
    # Collect optional dependency groups (e.g., [project.optional-dependencies.dev])
    for group, group_deps in project.get("optional-dependencies", {}).items():
        if isinstance(group_deps, list):
            found.append((("project", "optional-dependencies", group), group_deps))
    # Collect PEP 735 dependency groups (e.g., [dependency-groups.test])
    for group, group_deps in doc.get("dependency-groups", {}).items():
        if isinstance(group_deps, list):
            found.append((("dependency-groups", group), group_deps))
    requires = doc.get("build-system", {}).get("requires")
    if isinstance(requires, list):
        found.append((("build-system", "requires"), requires))
    return found


def get_workspace_member_globs(doc: tomlkit.TOMLDocument) -> list[str]:
    """Extract workspace member glob patterns from [tool.uv.workspace].

    These patterns (e.g., "packages/*", "libs/*") define which directories
    contain workspace packages.

    Raises:
        WorkspaceError: If no workspace members are defined.
    """
    members = doc.get("tool", {}).get("uv", {}).get("workspace", {}).get("members")
    if not members:
        raise WorkspaceError("No [tool.uv.workspace] members defined in root pyproject.toml")
    return [str(m) for m in members]


# ---------------------------------------------------------------------------
# Cargo.toml
# ---------------------------------------------------------------------------


def get_cargo_members(doc: tomlkit.TOMLDocument) -> tuple[list[str], list[str]]:
    """Extract [workspace].members and [workspace].exclude glob patterns.

    Raises:
        WorkspaceError: If the manifest has no [workspace] table.
    """
    workspace = doc.get("workspace")
    if workspace is None:
        raise WorkspaceError("No [workspace] table in root Cargo.toml")
    members = [str(m) for m in workspace.get("members", [])]
    exclude = [str(m) for m in workspace.get("exclude", [])]
    return members, exclude


def get_cargo_dependency_tables(
    doc: tomlkit.TOMLDocument,
) -> list[tuple[tuple[str, ...], str, Any]]:
    """Collect every dependency table in a Cargo.toml.

    Covers [dependencies], [build-dependencies], [dev-dependencies] and
    their [target.'cfg(...)'.*] variants.

    Returns:
        (location, section name, table) triples.
    """
    sections = ("dependencies", "build-dependencies", "dev-dependencies")
    found: list[tuple[tuple[str, ...], str, Any]] = []
    for section in sections:
        table = doc.get(section)
        if table is not None:
            found.append(((section,), section, table))
    for cfg, target in doc.get("target", {}).items():
        for section in sections:
            table = target.get(section)
            if table is not None:
                found.append((("target", cfg, section), section, table))
    return found
