"""Registry clients: "is this version visible?" and "publish this package".

Existence checks go over HTTP with httpx. Publishing shells out to the
ecosystem's own tool (uv, cargo), which owns authentication.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Protocol

import httpx
from pydantic import BaseModel

from .errors import RegistryPermanentFailure, RegistryTransientFailure
from .models import AttemptOutcome, Flavour, Package
from .shell import run

# Output fragments meaning "retrying will not help", even when the same
# output also mentions a timeout
PERMANENT_MARKERS = (
    "already exists",
    "already uploaded",
    "forbidden",
    "unauthorized",
    "not allowed",
)

# Output fragments meaning "try again later"
TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "failed to connect",
    "temporarily unavailable",
    "temporary failure",
    "too many requests",
)

PERMANENT_STATUS = {401, 403}

# A status code only counts next to "HTTP", "status" or "got", or followed
# by its reason phrase; bare numbers are byte counts and line numbers
_STATUS_AFTER_KEYWORD = re.compile(r"\b(?:http(?:/[\d.]+)?|status(?: code)?|got)[\s:=]+(\d{3})\b")
_REASON_PHRASES = {
    401: "unauthorized",
    403: "forbidden",
    429: "too many requests",
    500: "internal server error",
    502: "bad gateway",
    503: "service unavailable",
    504: "gateway timeout",
}

USER_AGENT = "lockstep release tool"


class PublishResult(BaseModel):
    outcome: AttemptOutcome
    detail: str = ""


class RegistryClient(Protocol):
    def exists(self, name: str, version: str) -> bool:
        """Return True once ``version`` of ``name`` is visible in the registry.

        Raises:
            RegistryTransientFailure: On network errors, 429 or 5xx.
            RegistryPermanentFailure: On any other unexpected response.
        """
        ...

    def publish(self, package: Package, version: str) -> PublishResult:
        """Submit ``package`` (at ``version``) to the registry."""
        ...


def status_codes(text: str) -> set[int]:
    """HTTP status codes named in lower-cased tool output."""
    codes = {int(code) for code in _STATUS_AFTER_KEYWORD.findall(text)}
    codes.update(code for code, reason in _REASON_PHRASES.items() if f"{code} {reason}" in text)
    return codes


def classify_failure(output: str) -> AttemptOutcome:
    """Classify a failed publish command from its output.

    Permanent signs (duplicate upload, 401/403) win over transient ones:
    a rejected token stays rejected however often the request times out.
    Then 429, 5xx and network trouble are transient. Unknown failures are
    permanent.
    """
    text = output.lower()
    codes = status_codes(text)
    if codes & PERMANENT_STATUS or any(marker in text for marker in PERMANENT_MARKERS):
        return AttemptOutcome.PERMANENT
    if any(code == 429 or 500 <= code < 600 for code in codes):
        return AttemptOutcome.TRANSIENT
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return AttemptOutcome.TRANSIENT
    return AttemptOutcome.PERMANENT


def _last_lines(text: str, count: int = 5) -> str:
    return "\n".join(text.strip().splitlines()[-count:])


class HttpRegistry(ABC):
    """Shared existence check for registries with a per-version HTTP endpoint.

    Subclasses name the endpoint and know how to publish.
    """

    default_url = ""

    def __init__(
        self,
        root: Path,
        *,
        base_url: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.root = root
        self.base_url = (base_url or self.default_url).rstrip("/")
        self._client = client or httpx.Client(
            timeout=timeout, headers={"User-Agent": USER_AGENT}, follow_redirects=True
        )

    @abstractmethod
    def version_url(self, name: str, version: str) -> str:
        """URL answering 200 when the version exists and 404 when it does not."""

    @abstractmethod
    def publish(self, package: Package, version: str) -> PublishResult: ...

    def exists(self, name: str, version: str) -> bool:
        url = self.version_url(name, version)
        try:
            resp = self._client.get(url)
        except httpx.TransportError as exc:
            raise RegistryTransientFailure(f"GET {url}: {exc}") from exc
        if resp.status_code == 200:
            return True
        if resp.status_code == 404:
            return False
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RegistryTransientFailure(f"GET {url}: HTTP {resp.status_code}")
        raise RegistryPermanentFailure(f"GET {url}: HTTP {resp.status_code}")

    def close(self) -> None:
        self._client.close()


class PypiRegistry(HttpRegistry):
    """PyPI (or a compatible index): JSON API plus ``uv build`` / ``uv publish``."""

    default_url = "https://pypi.org"

    def __init__(self, root: Path, *, publish_url: str | None = None, **kwargs) -> None:
        super().__init__(root, **kwargs)
        self.publish_url = publish_url

    def version_url(self, name: str, version: str) -> str:
        return f"{self.base_url}/pypi/{name}/{version}/json"

    def publish(self, package: Package, version: str) -> PublishResult:
        out_dir = self.root / "dist" / package.name
        out_dir.mkdir(parents=True, exist_ok=True)
        for old in out_dir.iterdir():
            if old.is_file():
                old.unlink()

        built = run("uv", "build", package.path, "--out-dir", str(out_dir), cwd=self.root)
        if built.returncode != 0:
            # Build errors never resolve by retrying
            return PublishResult(
                outcome=AttemptOutcome.PERMANENT,
                detail=f"uv build failed: {_last_lines(built.stderr or built.stdout)}",
            )

        args = ["uv", "publish"]
        if self.publish_url:
            args += ["--publish-url", self.publish_url]
        args.append(str(out_dir / "*"))
        result = run(*args, cwd=self.root)
        if result.returncode == 0:
            return PublishResult(outcome=AttemptOutcome.SUCCESS)
        output = result.stderr + result.stdout
        return PublishResult(outcome=classify_failure(output), detail=_last_lines(output))


class CratesIoRegistry(HttpRegistry):
    """crates.io: HTTP API plus ``cargo publish``."""

    default_url = "https://crates.io"

    def __init__(self, root: Path, *, registry_name: str | None = None, **kwargs) -> None:
        super().__init__(root, **kwargs)
        self.registry_name = registry_name

    def version_url(self, name: str, version: str) -> str:
        return f"{self.base_url}/api/v1/crates/{name}/{version}"

    def publish(self, package: Package, version: str) -> PublishResult:
        args = ["cargo", "publish", "--manifest-path", str(Path(package.path) / "Cargo.toml")]
        if self.registry_name:
            args += ["--registry", self.registry_name]
        result = run(*args, cwd=self.root)
        if result.returncode == 0:
            return PublishResult(outcome=AttemptOutcome.SUCCESS)
        output = result.stderr + result.stdout
        return PublishResult(outcome=classify_failure(output), detail=_last_lines(output))


class SimulatedRegistry:
    """In-memory registry for dry runs.

    Every version starts out unpublished; a simulated publish makes it
    visible immediately. Calls are counted so tests can assert on them.
    """

    def __init__(self, published: set[tuple[str, str]] | None = None) -> None:
        self.published: set[tuple[str, str]] = set(published or ())
        self.exists_calls = 0
        self.publish_calls = 0

    def exists(self, name: str, version: str) -> bool:
        self.exists_calls += 1
        return (name, version) in self.published

    def publish(self, package: Package, version: str) -> PublishResult:
        self.publish_calls += 1
        self.published.add((package.name, version))
        return PublishResult(outcome=AttemptOutcome.SUCCESS, detail="simulated")


def make_registry(flavour: Flavour, root: Path, registry: str | None = None) -> HttpRegistry:
    """Build the real registry client for a workspace flavour.

    For uv workspaces ``registry`` is the upload URL (existence is still
    checked against PyPI's JSON API); for Cargo it names an alternative
    registry configured in cargo.
    """
    if flavour is Flavour.CARGO:
        return CratesIoRegistry(root, registry_name=registry)
    return PypiRegistry(root, publish_url=registry)
