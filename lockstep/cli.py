"""CLI entry point for lockstep."""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from .config import load_config
from .context import ReleaseContext
from .errors import LockstepError, ManifestWriteFailure, PlanningError, PublishFailed
from .manifests import detect_store
from .models import Flavour
from .pipeline import BumpSelection, load_graph, run_check, run_plan, run_release, run_version
from .policy import ExactPinPolicy
from .readme import ReadmeMode, ReadmeStatus, run_readme
from .shell import Console
from .versions import BumpKind


class PlanningFailure(click.ClickException):
    exit_code = 3


class WriteFailure(click.ClickException):
    exit_code = 4


class PublishFailure(click.ClickException):
    exit_code = 1


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn lockstep errors into click exceptions with the right exit code."""
    try:
        yield
    except PlanningError as exc:
        raise PlanningFailure(f"{exc}\nPlanning failed; nothing was changed.") from exc
    except ManifestWriteFailure as exc:
        applied = "\n".join(f"  {w.describe()}" for w in exc.applied) or "  (none)"
        raise WriteFailure(
            f"{exc}\nManifest writes already applied:\n{applied}\n"
            "Review the working tree before retrying."
        ) from exc
    except PublishFailed as exc:
        published = ", ".join(exc.report.published) or "none"
        raise PublishFailure(
            f"{exc}\nPublished in this run: {published}\n"
            "Registry state needs inspection before retrying."
        ) from exc
    except LockstepError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_bump_packages(
    ctx: click.Context, param: click.Parameter, values: tuple[str, ...]
) -> dict[str, BumpKind]:
    overrides: dict[str, BumpKind] = {}
    for value in values:
        name, sep, kind = value.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=KIND, got {value!r}")
        try:
            overrides[name.strip()] = BumpKind(kind.strip())
        except ValueError:
            choices = ", ".join(k.value for k in BumpKind)
            raise click.BadParameter(f"unknown bump kind {kind!r} (choose from {choices})") from None
    return overrides


def _apply(options: list[Callable[[Any], Any]], f: Callable[..., Any]) -> Callable[..., Any]:
    return functools.reduce(lambda acc, option: option(acc), reversed(options), f)


def workspace_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options every command shares: where the workspace is and how loud to be."""
    return _apply(
        [
            click.option(
                "--root",
                type=click.Path(exists=True, file_okay=False, path_type=Path),
                default=".",
                show_default=True,
                help="Workspace root directory.",
            ),
            click.option(
                "--flavour",
                type=click.Choice([f.value for f in Flavour]),
                default=None,
                help="Workspace flavour (detected from the root when omitted).",
            ),
            click.option("--skip", multiple=True, help="Package to leave unpublished (repeatable)."),
            click.option(
                "--exclude-dev",
                is_flag=True,
                help="Ignore dev dependencies when ordering packages.",
            ),
            click.option("-v", "--verbose", is_flag=True, help="Show detailed progress."),
            click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors."),
        ],
        f,
    )


def bump_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options choosing which packages are released and by how much."""
    return _apply(
        [
            click.option(
                "--bump",
                type=click.Choice([k.value for k in BumpKind]),
                default=None,
                help="Bump applied to every selected package.",
            ),
            click.option(
                "--package",
                "packages",
                multiple=True,
                metavar="PATTERN",
                help="Glob selecting packages for --bump (repeatable, default all).",
            ),
            click.option(
                "--bump-package",
                "bump_packages",
                multiple=True,
                metavar="NAME=KIND",
                callback=_parse_bump_packages,
                help="Bump one package by KIND (repeatable, wins over --bump).",
            ),
            click.option(
                "--changed-since",
                metavar="REF",
                default=None,
                help="Select packages changed since a git ref, plus their dependents.",
            ),
            click.option(
                "--pin-policy",
                type=click.Choice([p.value for p in ExactPinPolicy]),
                default=None,
                help="How to treat exact pins on bumped packages [config default: reject].",
            ),
            click.option(
                "--dry-run",
                is_flag=True,
                help="Show what would change without writing or publishing.",
            ),
        ],
        f,
    )


def publish_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Retry and reporting options of the publish stage."""
    return _apply(
        [
            click.option("--max-attempts", type=click.IntRange(min=1), default=None, help="Attempts per package and phase."),
            click.option("--base-delay", type=click.FloatRange(min=0), default=None, help="First backoff delay in seconds."),
            click.option("--multiplier", type=click.FloatRange(min=1), default=None, help="Backoff growth factor."),
            click.option("--max-delay", type=click.FloatRange(min=0), default=None, help="Cap on a single backoff delay."),
            click.option(
                "--keep-going",
                is_flag=True,
                help="Continue with unrelated packages after a failure.",
            ),
            click.option("--registry", default=None, help="Upload URL (uv) or registry name (cargo)."),
            click.option(
                "--report",
                "report_path",
                type=click.Path(dir_okay=False, path_type=Path),
                default=None,
                help="Write a JSON run report to this file.",
            ),
        ],
        f,
    )


def make_context(
    root: Path,
    flavour: str | None,
    *,
    verbose: bool = False,
    quiet: bool = False,
    **overrides: Any,
) -> tuple[ReleaseContext, Flavour]:
    """Load the workspace config and apply command-line overrides.

    Raises:
        WorkspaceError: If no workspace is found or the config is invalid.
    """
    store = detect_store(root, Flavour(flavour) if flavour else None)
    config = load_config(root, store.flavour).merged(overrides)
    return ReleaseContext(config=config, console=Console(verbose=verbose, quiet=quiet)), store.flavour


def _selection(
    bump: str | None,
    packages: tuple[str, ...],
    bump_packages: dict[str, BumpKind],
    changed_since: str | None,
) -> BumpSelection:
    return BumpSelection(
        bump=BumpKind(bump) if bump else None,
        packages=list(packages),
        overrides=bump_packages,
        changed_since=changed_since,
    )


@click.group()
@click.version_option(package_name="lockstep")
def cli() -> None:
    """Release the packages of a workspace together, in dependency order."""


@cli.command()
@workspace_options
def graph(
    root: Path, flavour: str | None, skip: tuple[str, ...], exclude_dev: bool, verbose: bool, quiet: bool
) -> None:
    """List packages and internal dependencies in publish order."""
    with handle_errors():
        ctx, kind = make_context(
            root, flavour, verbose=verbose, quiet=True, skip=list(skip), exclude_dev=exclude_dev or None
        )
        _, workspace = load_graph(root, ctx, kind)

    for position, name in enumerate(workspace.topo_order(), start=1):
        pkg = workspace.package(name)
        click.echo(f"{position:>3}. {name} {pkg.version} ({pkg.publish_flag.value})")
        for edge in pkg.edges:
            requirement = edge.requirement or "*"
            click.echo(f"       → {edge.target} {requirement} [{edge.kind.value}]")


@cli.command()
@workspace_options
def check(
    root: Path, flavour: str | None, skip: tuple[str, ...], exclude_dev: bool, verbose: bool, quiet: bool
) -> None:
    """Validate the graph and report requirements that no longer match."""
    with handle_errors():
        ctx, kind = make_context(
            root, flavour, verbose=verbose, quiet=quiet, skip=list(skip), exclude_dev=exclude_dev or None
        )
        problems = run_check(root, ctx, kind)
    if problems:
        raise PlanningFailure(f"{len(problems)} internal requirement(s) do not match")
    click.echo("✓ Workspace is consistent")


@cli.command()
@workspace_options
@bump_options
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON.")
def plan(
    root: Path,
    flavour: str | None,
    skip: tuple[str, ...],
    exclude_dev: bool,
    verbose: bool,
    quiet: bool,
    bump: str | None,
    packages: tuple[str, ...],
    bump_packages: dict[str, BumpKind],
    changed_since: str | None,
    pin_policy: str | None,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Compute the release plan without changing anything."""
    with handle_errors():
        ctx, kind = make_context(
            root,
            flavour,
            verbose=verbose,
            quiet=quiet or as_json,
            skip=list(skip),
            exclude_dev=exclude_dev or None,
            pin_policy=pin_policy,
        )
        selection = _selection(bump, packages, bump_packages, changed_since)
        _, release_plan = run_plan(root, selection, ctx, flavour=kind, dry_run=dry_run)
    if as_json:
        click.echo(release_plan.model_dump_json(indent=2))


@cli.command()
@workspace_options
@bump_options
def version(
    root: Path,
    flavour: str | None,
    skip: tuple[str, ...],
    exclude_dev: bool,
    verbose: bool,
    quiet: bool,
    bump: str | None,
    packages: tuple[str, ...],
    bump_packages: dict[str, BumpKind],
    changed_since: str | None,
    pin_policy: str | None,
    dry_run: bool,
) -> None:
    """Plan and write new versions to the manifests, without publishing."""
    with handle_errors():
        ctx, kind = make_context(
            root,
            flavour,
            verbose=verbose,
            quiet=quiet,
            skip=list(skip),
            exclude_dev=exclude_dev or None,
            pin_policy=pin_policy,
        )
        selection = _selection(bump, packages, bump_packages, changed_since)
        _, mutation = run_version(root, selection, ctx, flavour=kind, dry_run=dry_run)
    verb = "Would write" if mutation.dry_run else "Wrote"
    click.echo(f"✓ {verb} {len(mutation.writes)} manifest change(s)")


@cli.command()
@workspace_options
@bump_options
@publish_options
def release(
    root: Path,
    flavour: str | None,
    skip: tuple[str, ...],
    exclude_dev: bool,
    verbose: bool,
    quiet: bool,
    bump: str | None,
    packages: tuple[str, ...],
    bump_packages: dict[str, BumpKind],
    changed_since: str | None,
    pin_policy: str | None,
    dry_run: bool,
    max_attempts: int | None,
    base_delay: float | None,
    multiplier: float | None,
    max_delay: float | None,
    keep_going: bool,
    registry: str | None,
    report_path: Path | None,
) -> None:
    """Plan, write manifests and publish every released package."""
    with handle_errors():
        ctx, kind = make_context(
            root,
            flavour,
            verbose=verbose,
            quiet=quiet,
            skip=list(skip),
            exclude_dev=exclude_dev or None,
            pin_policy=pin_policy,
            max_attempts=max_attempts,
            base_delay=base_delay,
            multiplier=multiplier,
            max_delay=max_delay,
            fail_fast=False if keep_going else None,
            registry=registry,
        )
        selection = _selection(bump, packages, bump_packages, changed_since)
        report = run_release(
            root, selection, ctx, flavour=kind, dry_run=dry_run, report_path=report_path
        )
    verb = "Would publish" if report.dry_run else "Published"
    click.echo(f"✓ {verb} {len(report.published)} package(s)")


@cli.command()
@workspace_options
@click.option("--package", "packages", multiple=True, metavar="PATTERN", help="Glob selecting packages.")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ReadmeMode]),
    default=ReadmeMode.IF_MISSING.value,
    show_default=True,
    help="What to do with an existing README.md.",
)
@click.option("--check", "check_only", is_flag=True, help="Only report whether READMEs are current.")
def readme(
    root: Path,
    flavour: str | None,
    skip: tuple[str, ...],
    exclude_dev: bool,
    verbose: bool,
    quiet: bool,
    packages: tuple[str, ...],
    mode: str,
    check_only: bool,
) -> None:
    """Generate README.md files from package documentation."""
    with handle_errors():
        ctx, kind = make_context(root, flavour, verbose=verbose, quiet=quiet)
        store = detect_store(root, kind)
        results = run_readme(
            store, ctx, patterns=list(packages), mode=ReadmeMode(mode), check=check_only
        )
    if check_only:
        stale = sorted(
            name
            for name, status in results.items()
            if status not in (ReadmeStatus.UP_TO_DATE, ReadmeStatus.SKIPPED)
        )
        if stale:
            raise click.ClickException(f"README out of date for: {', '.join(stale)}")
        click.echo("✓ READMEs are up to date")
