"""Release configuration.

Settings live in the workspace root manifest, next to the workspace
definition itself:

    # pyproject.toml
    [tool.lockstep]
    max-attempts = 5
    skip = ["docs-site"]

    # Cargo.toml
    [workspace.metadata.lockstep]
    pin-policy = "rewrite"

Command-line flags override file values.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import WorkspaceError
from .models import Flavour
from .policy import ExactPinPolicy
from .toml import load_toml


class RetryPolicy(BaseModel):
    """Attempt limit and exponential backoff for registry interactions.

    The delay before retry ``n`` (1-based) is
    ``base_delay * multiplier ** (n - 1)``, capped at ``max_delay``.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float | None = Field(default=60.0, ge=0)

    def delay(self, attempt: int) -> float:
        delay = self.base_delay * self.multiplier ** (attempt - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class ReleaseConfig(BaseModel):
    """Settings read from ``[tool.lockstep]`` / ``[workspace.metadata.lockstep]``."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    max_attempts: int = Field(default=5, ge=1, alias="max-attempts")
    base_delay: float = Field(default=2.0, ge=0, alias="base-delay")
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float | None = Field(default=60.0, ge=0, alias="max-delay")
    skip: list[str] = Field(default_factory=list)
    pin_policy: ExactPinPolicy = Field(default=ExactPinPolicy.REJECT, alias="pin-policy")
    exclude_dev: bool = Field(default=False, alias="exclude-dev")
    fail_fast: bool = Field(default=True, alias="fail-fast")
    registry: str | None = None

    @property
    def retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
        )

    def merged(self, overrides: Mapping[str, Any]) -> ReleaseConfig:
        """Return a copy with non-None ``overrides`` applied (by field name).

        List values are appended to the file's lists rather than replacing
        them, so ``--skip`` adds to the configured skip list.
        """
        update: dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            current = getattr(self, key)
            if isinstance(current, list):
                value = [*current, *(v for v in value if v not in current)]
            update[key] = value
        data = self.model_dump()
        data.update(update)
        try:
            return ReleaseConfig.model_validate(data)
        except ValidationError as exc:
            raise WorkspaceError(f"Invalid option: {exc}") from exc


def _config_table(doc: Mapping[str, Any], flavour: Flavour) -> Mapping[str, Any]:
    if flavour is Flavour.CARGO:
        return doc.get("workspace", {}).get("metadata", {}).get("lockstep", {})
    return doc.get("tool", {}).get("lockstep", {})


def load_config(root: Path, flavour: Flavour) -> ReleaseConfig:
    """Load release settings from the workspace root manifest.

    Returns defaults when the table is absent.

    Raises:
        WorkspaceError: If the table holds unknown keys or invalid values.
    """
    manifest = root / ("Cargo.toml" if flavour is Flavour.CARGO else "pyproject.toml")
    table = _config_table(load_toml(manifest).unwrap(), flavour)
    try:
        return ReleaseConfig.model_validate(dict(table))
    except ValidationError as exc:
        raise WorkspaceError(f"Invalid lockstep configuration in {manifest}: {exc}") from exc
