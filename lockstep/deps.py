"""PEP 508 dependency string helpers.

Parses dependency strings from pyproject.toml and rebuilds them with a
different version specifier while keeping extras and markers intact.
"""

from __future__ import annotations

from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name


def parse_dep(dep_str: str) -> Requirement | None:
    """Parse a PEP 508 string, returning None for unparsable entries.

    Dependency groups may contain ``{include-group = "..."}`` tables and
    other non-string items; those are not dependencies.
    """
    if not isinstance(dep_str, str):
        return None
    try:
        return Requirement(dep_str)
    except InvalidRequirement:
        return None


def dep_canonical_name(dep_str: str) -> str:
    """Extract the canonical package name from a PEP 508 dependency string.

    Handles version specifiers, extras, and normalizes the name per PEP 503
    (lowercase, hyphens instead of underscores).

    Examples:
        "requests>=2.0" → "requests"
        "My_Package[extra]~=1.0" → "my-package"
    """
    return canonicalize_name(Requirement(dep_str).name)


def dep_specifier(dep_str: str) -> str | None:
    """Return the version specifier of a dependency string, or None if unconstrained.

    Examples:
        "requests>=2.0,<3" → "<3,>=2.0"
        "requests" → None
    """
    spec = str(Requirement(dep_str).specifier)
    return spec or None


def with_specifier(dep_str: str, specifier: str) -> str:
    """Replace the version specifier of a PEP 508 dependency string.

    Preserves any extras (sorted for consistent output) and environment
    markers from the original string.

    Examples:
        with_specifier("requests>=2.0", "==2.31.0") → "requests==2.31.0"
        with_specifier("pkg[z,a]~=1.0; python_version>'3.8'", ">=2.0")
            → 'pkg[a,z]>=2.0; python_version > "3.8"'
    """
    req = Requirement(dep_str)
    extras = f"[{','.join(sorted(req.extras))}]" if req.extras else ""
    marker = f"; {req.marker}" if req.marker else ""
    return f"{req.name}{extras}{specifier}{marker}"
