"""Per-run context threaded through the release pipeline."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import ReleaseConfig
from .shell import Console


@dataclass
class ReleaseContext:
    """Everything a pipeline stage needs besides its direct inputs.

    Attributes:
        config: Effective settings (file values merged with CLI flags).
        console: Progress output.
        sleep: Called to wait out backoff delays.
        abort: Set to stop the run after the current attempt.
    """

    config: ReleaseConfig = field(default_factory=ReleaseConfig)
    console: Console = field(default_factory=Console)
    sleep: Callable[[float], None] = time.sleep
    abort: threading.Event = field(default_factory=threading.Event)
