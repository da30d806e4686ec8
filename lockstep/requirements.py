"""Requirement expressions: matching and style-preserving rewrites.

Two dialects are supported:

- Cargo requirements (``^1.2``, ``~1.2.3``, ``=1.0.0``, ``>=1, <2``,
  ``1.*``), matched with Cargo's semver rules.
- PEP 440 specifier sets (``>=1.0``, ``~=1.2``, ``==1.0.0``) as found in
  pyproject.toml dependency strings, matched with ``packaging``.

Both expose the same small surface so the planner never cares which
ecosystem a workspace belongs to.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

import semver
from packaging.specifiers import InvalidSpecifier, Specifier, SpecifierSet
from packaging.version import InvalidVersion
from packaging.version import Version as Pep440Version

from .versions import parse_version, to_pep440


class RequirementDialect(Protocol):
    """Requirement syntax and matching rules of one ecosystem."""

    name: str

    def matches(self, requirement: str, version: str) -> bool:
        """Return True if ``version`` satisfies ``requirement``."""
        ...

    def is_exact_pin(self, requirement: str) -> bool:
        """Return True if ``requirement`` pins one exact version."""
        ...

    def rewrite(self, requirement: str, version: str) -> str:
        """Return a requirement matching ``version`` in the style of the old one."""
        ...

    def format_version(self, version: semver.Version) -> str:
        """Render a version the way this ecosystem writes it in manifests."""
        ...


# ---------------------------------------------------------------------------
# Cargo
# ---------------------------------------------------------------------------

_CARGO_COMPARATOR = re.compile(
    r"""^\s*
    (?P<op>=|>=|<=|>|<|~|\^)?\s*
    (?P<major>\d+|\*|x|X)
    (?:\.(?P<minor>\d+|\*|x|X))?
    (?:\.(?P<patch>\d+|\*|x|X))?
    (?:-(?P<pre>[0-9A-Za-z.-]+))?
    (?:\+[0-9A-Za-z.-]+)?
    \s*$""",
    re.VERBOSE,
)

_WILDCARDS = {"*", "x", "X"}


@dataclass(frozen=True)
class CargoComparator:
    """One comma-separated piece of a Cargo requirement.

    ``minor``/``patch`` are None when omitted or written as a wildcard.
    An empty ``op`` means a bare version (caret semantics) or a wildcard.
    """

    op: str
    major: int | None
    minor: int | None
    patch: int | None
    pre: str | None
    wildcard: bool

    @property
    def precision(self) -> int:
        return sum(p is not None for p in (self.major, self.minor, self.patch))

    def lower(self) -> semver.Version:
        return semver.Version(
            self.major or 0, self.minor or 0, self.patch or 0, prerelease=self.pre
        )

    def bounds(
        self,
    ) -> tuple[semver.Version | None, bool, semver.Version | None]:
        """Return (lower, lower_inclusive, exclusive_upper) for this comparator."""
        major, minor, patch = self.major, self.minor, self.patch
        if major is None:
            return None, True, None
        low = self.lower()
        op = self.op or ("=" if self.wildcard else "^")

        if op == "=":
            if minor is None:
                return low, True, semver.Version(major + 1, 0, 0)
            if patch is None:
                return low, True, semver.Version(major, minor + 1, 0)
            return low, True, _next_exact(low)
        if op == ">":
            if minor is None:
                return semver.Version(major + 1, 0, 0), True, None
            if patch is None:
                return semver.Version(major, minor + 1, 0), True, None
            return low, False, None
        if op == ">=":
            return low, True, None
        if op == "<":
            return None, True, low
        if op == "<=":
            if minor is None:
                return None, True, semver.Version(major + 1, 0, 0)
            if patch is None:
                return None, True, semver.Version(major, minor + 1, 0)
            return None, True, _next_exact(low)
        if op == "~":
            if minor is None:
                return low, True, semver.Version(major + 1, 0, 0)
            return low, True, semver.Version(major, minor + 1, 0)
        # caret
        if major > 0 or minor is None:
            return low, True, semver.Version(major + 1, 0, 0)
        if minor > 0 or patch is None:
            return low, True, semver.Version(0, minor + 1, 0)
        return low, True, _next_exact(low)

    def matches(self, version: semver.Version) -> bool:
        low, inclusive, high = self.bounds()
        if low is not None:
            if inclusive and version < low:
                return False
            if not inclusive and version <= low:
                return False
        if high is not None and version >= high:
            return False
        return True


def _next_exact(version: semver.Version) -> semver.Version:
    """Smallest version strictly above ``version`` for bound arithmetic."""
    if version.prerelease:
        return semver.Version(
            version.major, version.minor, version.patch, prerelease=version.prerelease + ".0"
        )
    return semver.Version(version.major, version.minor, version.patch + 1, prerelease="0")


def parse_cargo_requirement(requirement: str) -> list[CargoComparator]:
    """Parse a Cargo requirement string into comparators.

    Raises:
        ValueError: If any piece is not a valid comparator.
    """
    comparators: list[CargoComparator] = []
    for piece in requirement.split(","):
        m = _CARGO_COMPARATOR.match(piece)
        if m is None:
            raise ValueError(f"Invalid version requirement: {requirement!r}")
        fields = [m.group("major"), m.group("minor"), m.group("patch")]
        wildcard = any(f in _WILDCARDS for f in fields if f is not None)
        numbers: list[int | None] = []
        for f in fields:
            # Anything after a wildcard is a wildcard too
            if f is None or f in _WILDCARDS or (numbers and numbers[-1] is None):
                numbers.append(None)
            else:
                numbers.append(int(f))
        comparators.append(
            CargoComparator(
                op=m.group("op") or "",
                major=numbers[0],
                minor=numbers[1],
                patch=numbers[2],
                pre=m.group("pre"),
                wildcard=wildcard,
            )
        )
    return comparators


def _truncate(version: semver.Version, precision: int) -> str:
    """Render ``version`` with only ``precision`` numeric parts."""
    if version.prerelease or precision >= 3:
        text = f"{version.major}.{version.minor}.{version.patch}"
        return f"{text}-{version.prerelease}" if version.prerelease else text
    return ".".join(str(p) for p in (version.major, version.minor, version.patch)[:precision])


class CargoDialect:
    """Cargo's semver requirement syntax."""

    name = "cargo"

    def matches(self, requirement: str, version: str) -> bool:
        v = parse_version(version)
        comparators = parse_cargo_requirement(requirement)
        if not all(c.matches(v) for c in comparators):
            return False
        if v.prerelease:
            # Pre-releases only match comparators naming the same release line
            return any(
                c.pre is not None
                and (c.major, c.minor, c.patch) == (v.major, v.minor, v.patch)
                for c in comparators
            )
        return True

    def is_exact_pin(self, requirement: str) -> bool:
        comparators = parse_cargo_requirement(requirement)
        if len(comparators) != 1:
            return False
        c = comparators[0]
        return c.op == "=" and c.precision == 3 and not c.wildcard

    def rewrite(self, requirement: str, version: str) -> str:
        v = parse_version(version)
        full = _truncate(v, 3)
        comparators = parse_cargo_requirement(requirement)
        if len(comparators) == 1:
            c = comparators[0]
            if c.wildcard and not c.op:
                if c.precision == 0:
                    candidate = "*"
                elif v.prerelease:
                    candidate = full
                else:
                    candidate = f"{_truncate(v, c.precision)}.*"
            elif c.op in ("", "^", "~", "="):
                candidate = f"{c.op}{_truncate(v, c.precision)}"
            else:
                candidate = f"^{full}"
            if self.matches(candidate, version):
                return candidate
            if c.op in ("", "^", "~", "="):
                return f"{c.op}{full}"
        return f"^{full}"

    def format_version(self, version: semver.Version) -> str:
        return str(version)


# ---------------------------------------------------------------------------
# PEP 440
# ---------------------------------------------------------------------------


def _specifier_set(requirement: str) -> SpecifierSet:
    try:
        return SpecifierSet(requirement)
    except InvalidSpecifier as exc:
        raise ValueError(f"Invalid version specifier: {requirement!r}") from exc


def _names_prerelease(spec: Specifier) -> bool:
    text = spec.version[:-2] if spec.version.endswith(".*") else spec.version
    try:
        return Pep440Version(text).is_prerelease
    except InvalidVersion:
        return False


def _version_range(version: semver.Version) -> str:
    """Compute a pip version range: >=current,<next_minor."""
    return f">={to_pep440(version)},<{version.major}.{version.minor + 1}.0"


class Pep440Dialect:
    """PEP 440 specifiers, as used in pyproject.toml dependency strings."""

    name = "pep440"

    def matches(self, requirement: str, version: str) -> bool:
        """Match as installers resolve: a pre-release only satisfies a
        specifier set that names a pre-release itself (``>=1.2.4rc1``).

        ``prereleases`` is always passed explicitly, since the default
        differs between packaging releases.
        """
        spec = _specifier_set(requirement)
        candidate = Pep440Version(to_pep440(parse_version(version)))
        allow_pre = candidate.is_prerelease and any(_names_prerelease(s) for s in spec)
        return spec.contains(candidate, prereleases=allow_pre)

    def is_exact_pin(self, requirement: str) -> bool:
        specs = list(_specifier_set(requirement))
        if len(specs) != 1:
            return False
        s = specs[0]
        return s.operator == "===" or (s.operator == "==" and not s.version.endswith(".*"))

    def rewrite(self, requirement: str, version: str) -> str:
        v = parse_version(version)
        pep = to_pep440(v)
        specs = list(_specifier_set(requirement))
        if len(specs) == 1:
            s = specs[0]
            if s.operator == "===":
                return f"==={pep}"
            if s.operator == "==" and not s.version.endswith(".*"):
                return f"=={pep}"
            if s.operator == "==":
                precision = len(s.version[:-2].split("."))
                candidate = f"=={_truncate(v.finalize_version(), precision)}.*"
            elif s.operator == "~=":
                precision = max(2, len(Pep440Version(s.version).release))
                candidate = f"~={to_pep440(v) if v.prerelease else _truncate(v, precision)}"
            else:
                candidate = None
            if candidate is not None and self.matches(candidate, version):
                return candidate
        return _version_range(v)

    def format_version(self, version: semver.Version) -> str:
        return to_pep440(version)


DIALECTS: dict[str, RequirementDialect] = {
    CargoDialect.name: CargoDialect(),
    Pep440Dialect.name: Pep440Dialect(),
}
