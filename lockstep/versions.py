"""Version parsing and bumping utilities.

Handles conversion between version strings and semver objects, with
special handling for incomplete version strings (e.g., "1.0" → "1.0.0")
and PEP 440 spellings found in pyproject.toml ("1.2.0rc1" → "1.2.0-rc.1").
"""

from __future__ import annotations

from enum import Enum

import semver
from packaging.version import InvalidVersion
from packaging.version import Version as Pep440Version


class BumpKind(str, Enum):
    """How a package's version moves during a release."""

    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"
    # Major for >=1.0, minor for 0.x, patch for 0.0.x
    BREAKING = "breaking"
    # Start or continue a pre-release of the next patch
    PRE = "pre"
    # Drop the pre-release part
    RELEASE = "release"


# PEP 440 pre-release letters and their semver spelling
_PEP440_PRE_NAMES = {"a": "alpha", "b": "beta", "rc": "rc"}


def _split_suffix(version_str: str) -> tuple[str, str]:
    """Split "1.2.3-rc.1+meta" into ("1.2.3", "-rc.1+meta")."""
    for i, ch in enumerate(version_str):
        if ch in "-+":
            return version_str[:i], version_str[i:]
    return version_str, ""


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Handles incomplete versions by padding with zeros:
    - "1" → "1.0.0"
    - "1.2" → "1.2.0"
    - "1.2.3-rc.1" → "1.2.3-rc.1"

    Strings that are not semver but valid PEP 440 ("1.2.0rc1",
    "2.0.0.dev3") are converted to their semver equivalent.

    Raises:
        ValueError: If the string is neither semver nor PEP 440.
    """
    version_str = version_str.strip()
    core, suffix = _split_suffix(version_str)
    parts = core.split(".")
    if len(parts) <= 3 and all(p.isdigit() for p in parts):
        # Pad with zeros to ensure we have 3 parts
        while len(parts) < 3:
            parts.append("0")
        try:
            return semver.Version.parse(".".join(parts) + suffix)
        except ValueError:
            pass
    return _from_pep440(version_str)


def _from_pep440(version_str: str) -> semver.Version:
    try:
        v = Pep440Version(version_str)
    except InvalidVersion as exc:
        raise ValueError(f"{version_str!r} is not a valid version") from exc

    release = list(v.release[:3])
    while len(release) < 3:
        release.append(0)

    pre: list[str] = []
    if v.pre is not None:
        letter, number = v.pre
        pre.append(f"{_PEP440_PRE_NAMES[letter]}.{number}")
    if v.dev is not None:
        pre.append(f"dev.{v.dev}")

    build: list[str] = []
    if v.post is not None:
        build.append(f"post.{v.post}")
    if v.local is not None:
        build.append(v.local)

    return semver.Version(
        *release,
        prerelease=".".join(pre) or None,
        build=".".join(build) or None,
    )


def to_pep440(version: semver.Version) -> str:
    """Render a semver version the way PEP 440 normalizes it.

    Examples:
        "1.2.4-rc.1" → "1.2.4rc1"
        "1.0.0" → "1.0.0"

    Raises:
        ValueError: If the pre-release part has no PEP 440 spelling.
    """
    try:
        return str(Pep440Version(str(version)))
    except InvalidVersion as exc:
        raise ValueError(f"{version} has no PEP 440 equivalent") from exc


def bump_version(version_str: str, kind: BumpKind) -> semver.Version:
    """Apply a semver bump to a version string.

    major resets minor and patch, minor resets patch, patch increments the
    patch field only. Pre-release and build metadata are dropped by those
    three.

    Examples:
        bump_version("1.2.3", BumpKind.MINOR) → 1.3.0
        bump_version("0.4.1", BumpKind.BREAKING) → 0.5.0
        bump_version("1.2.3", BumpKind.PRE) → 1.2.4-rc.1
        bump_version("1.2.4-rc.1", BumpKind.RELEASE) → 1.2.4
    """
    v = parse_version(version_str)
    if kind is BumpKind.MAJOR:
        return v.bump_major()
    if kind is BumpKind.MINOR:
        return v.bump_minor()
    if kind is BumpKind.PATCH:
        # bump_patch keeps nothing but the numeric core
        return v.bump_patch()
    if kind is BumpKind.BREAKING:
        if v.major > 0:
            return v.bump_major()
        if v.minor > 0:
            return v.bump_minor()
        return v.bump_patch()
    if kind is BumpKind.PRE:
        return v.next_version(part="prerelease")
    if kind is BumpKind.RELEASE:
        return v.finalize_version()
    raise ValueError(f"Unknown bump kind: {kind}")
