"""Shell and git utilities.

Provides simple wrappers around subprocess calls for running shell commands
and git operations, plus the console used for progress output.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

import click


def git(*args: str, check: bool = True, cwd: Path | None = None) -> str:
    """Run a git command and return stdout.

    Args:
        *args: Arguments to pass to git (e.g., "status", "--short").
        check: If True (default), raise on non-zero exit. Set to False
               for commands that may legitimately fail (e.g., tag lookup).
        cwd: Directory to run in; defaults to the current directory.

    Returns:
        Stripped stdout from the git command.
    """
    result = subprocess.run(
        ["git", *args], capture_output=True, text=True, check=check, cwd=cwd
    )
    return result.stdout.strip()


def run(
    *args: str, cwd: Path | None = None, timeout: float | None = None
) -> subprocess.CompletedProcess[str]:
    """Run a command and capture its output.

    Never raises on a non-zero exit: callers inspect returncode and the
    captured output to decide what the failure means.

    Args:
        *args: Command and arguments (e.g., "cargo", "publish").
        cwd: Directory to run in.
        timeout: Seconds before the command is killed.

    Returns:
        CompletedProcess with returncode, stdout and stderr.
    """
    return subprocess.run(
        args, capture_output=True, text=True, check=False, cwd=cwd, timeout=timeout
    )


class Console:
    """Progress output for the release pipeline.

    Passed around inside the ReleaseContext rather than printed to
    directly, so library code stays quiet under test.

    Args:
        verbose: Also print ``detail`` lines.
        quiet: Only print warnings and errors.
    """

    def __init__(self, *, verbose: bool = False, quiet: bool = False) -> None:
        self.verbose = verbose
        self.quiet = quiet

    def step(self, msg: str) -> None:
        """Print a visually distinct step header.

        Used to separate major phases of the release pipeline in terminal output.
        """
        if not self.quiet:
            click.echo(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")

    def info(self, msg: str) -> None:
        if not self.quiet:
            click.echo(msg)

    def detail(self, msg: str) -> None:
        if self.verbose and not self.quiet:
            click.echo(msg)

    def warn(self, msg: str) -> None:
        click.echo(f"WARNING: {msg}", err=True)

    def error(self, msg: str) -> None:
        click.echo(f"ERROR: {msg}", err=True)
