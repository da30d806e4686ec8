"""Publish orchestration: push a release plan to the registry, one package at a time.

Each package walks ``pending → publishing → verifying → published``. A
transient registry failure sends it back to ``pending`` for another attempt
after a backoff delay; a permanent failure, or running out of attempts,
ends in ``failed``. Package k only starts once package k-1 is ``published``
or ``skipped``.
"""

from __future__ import annotations

import dataclasses

from .config import RetryPolicy
from .context import ReleaseContext
from .errors import RegistryError, RegistryTransientFailure
from .models import (
    AttemptOutcome,
    PackageReport,
    PlanEntry,
    PublishAttempt,
    PublishFlag,
    PublishState,
    ReleasePlan,
    RunReport,
)
from .registry import RegistryClient, SimulatedRegistry


class _Halted(Exception):
    """The abort event was seen between two attempts."""


def _skip_reason(entry: PlanEntry) -> str | None:
    if not entry.release:
        return "not released"
    if entry.package.publish_flag is PublishFlag.SKIP:
        return "in skip list"
    if entry.package.publish_flag is PublishFlag.PRIVATE:
        return "private package"
    return None


def _outcome_of(exc: RegistryError) -> AttemptOutcome:
    if isinstance(exc, RegistryTransientFailure):
        return AttemptOutcome.TRANSIENT
    return AttemptOutcome.PERMANENT


def _record(
    report: PackageReport,
    phase: str,
    index: int,
    outcome: AttemptOutcome,
    delay: float,
    detail: str = "",
) -> None:
    report.attempts.append(
        PublishAttempt(
            package=report.name,
            phase=phase,
            index=index,
            outcome=outcome,
            delay=delay,
            detail=detail,
        )
    )


def _no_wait(delay: float) -> None:
    pass


def _wait(ctx: ReleaseContext, delay: float) -> None:
    if delay > 0 and not ctx.abort.is_set():
        ctx.sleep(delay)
    if ctx.abort.is_set():
        raise _Halted


def _submit(
    entry: PlanEntry,
    registry: RegistryClient,
    retry: RetryPolicy,
    ctx: ReleaseContext,
    report: PackageReport,
) -> bool:
    """Run the publishing phase.

    The registry is asked whether the version exists before every attempt:
    a publish reported as a transient failure may still have been stored,
    and uploading it again would be rejected as a duplicate. A failing
    existence check costs an attempt like a failing publish.

    Returns:
        True when the package went out (or was already out) and False when
        it failed. State and reason are set on ``report`` either way.
    """
    console = ctx.console
    version = entry.target_version
    submitted = False
    for attempt in range(1, retry.max_attempts + 1):
        delay = retry.delay(attempt - 1) if attempt > 1 else 0.0
        if attempt > 1:
            report.state = PublishState.PENDING
            console.info(f"  retrying {entry.name} in {delay:g}s (attempt {attempt}/{retry.max_attempts})")
            _wait(ctx, delay)
        report.state = PublishState.PUBLISHING

        try:
            exists = registry.exists(entry.name, version)
        except RegistryError as exc:
            outcome = _outcome_of(exc)
            _record(report, "publish", attempt, outcome, delay, f"existence check: {exc}")
            console.warn(f"{entry.name}: existence check failed: {exc}")
            if outcome is AttemptOutcome.PERMANENT:
                report.state = PublishState.FAILED
                report.reason = str(exc)
                return False
            continue
        if exists and submitted:
            console.info(f"  {entry.name} {version} was stored despite the failure report")
            return True
        if exists:
            report.state = PublishState.SKIPPED
            report.reason = "already published"
            console.info(f"  {entry.name} {version} is already published")
            return True

        console.detail(f"  publishing {entry.name} {version} (attempt {attempt})")
        submitted = True
        result = registry.publish(entry.package, version)
        _record(report, "publish", attempt, result.outcome, delay, result.detail)
        if result.outcome is AttemptOutcome.SUCCESS:
            return True
        if result.outcome is AttemptOutcome.PERMANENT:
            report.state = PublishState.FAILED
            report.reason = result.detail or "permanent registry failure"
            console.error(f"{entry.name}: publish rejected: {report.reason}")
            return False
        console.warn(f"{entry.name}: transient publish failure: {result.detail}")

    report.state = PublishState.FAILED
    report.reason = f"publish failed after {retry.max_attempts} attempts"
    console.error(f"{entry.name}: {report.reason}")
    return False


def _verify(
    entry: PlanEntry,
    registry: RegistryClient,
    retry: RetryPolicy,
    ctx: ReleaseContext,
    report: PackageReport,
) -> bool:
    """Poll the registry until the new version is visible.

    Poll k waits ``retry.delay(k)`` first: a freshly published version is
    rarely visible straight away.
    """
    console = ctx.console
    version = entry.target_version
    for poll in range(1, retry.max_attempts + 1):
        report.state = PublishState.VERIFYING
        delay = retry.delay(poll)
        console.detail(f"  waiting {delay:g}s for {entry.name} {version} to appear")
        _wait(ctx, delay)
        try:
            visible = registry.exists(entry.name, version)
        except RegistryError as exc:
            outcome = _outcome_of(exc)
            _record(report, "verify", poll, outcome, delay, str(exc))
            if outcome is AttemptOutcome.PERMANENT:
                report.state = PublishState.FAILED
                report.reason = f"verification failed: {exc}"
                console.error(f"{entry.name}: {report.reason}")
                return False
            console.warn(f"{entry.name}: verification poll {poll} failed: {exc}")
            continue
        if visible:
            _record(report, "verify", poll, AttemptOutcome.SUCCESS, delay)
            return True
        _record(report, "verify", poll, AttemptOutcome.TRANSIENT, delay, "not visible yet")
        report.state = PublishState.PENDING

    report.state = PublishState.FAILED
    report.reason = (
        f"published but not visible after {retry.max_attempts} polls; "
        "the release is not consumable yet"
    )
    console.error(f"{entry.name}: {report.reason}")
    return False


def publish_plan(
    plan: ReleasePlan,
    registry: RegistryClient,
    retry: RetryPolicy,
    ctx: ReleaseContext,
    *,
    dry_run: bool = False,
    fail_fast: bool = True,
) -> RunReport:
    """Publish every released plan entry in plan order.

    Entries that are not released, in the skip list or private are
    ``skipped`` without contacting the registry. With ``fail_fast`` the
    first failure halts the run and everything after it is
    ``not_attempted``; otherwise only entries depending (transitively) on a
    failed package are ``not_attempted``.

    Setting ``ctx.abort`` lets the current attempt finish, then marks the
    rest ``not_attempted`` and the report ``halted``.

    Args:
        plan: The release plan; its order is the publish order.
        registry: Registry client. Replaced by a SimulatedRegistry when
                  ``dry_run`` is set, so nothing real is published.
        retry: Attempt limit and backoff for publishing and verification.
        ctx: Run context (console, sleep function, abort event).
        dry_run: Simulate the registry.
        fail_fast: Halt at the first failed package.

    Returns:
        RunReport with one PackageReport per plan entry, in plan order.
    """
    console = ctx.console
    if dry_run:
        registry = SimulatedRegistry()
        # Simulated versions are visible at once; delays are recorded, not waited
        ctx = dataclasses.replace(ctx, sleep=_no_wait)
    console.step(f"Publishing {len(plan.released)} package(s)" + (" (dry run)" if dry_run else ""))

    report = RunReport(
        dry_run=dry_run,
        packages=[PackageReport(name=e.name, target_version=e.target_version) for e in plan.entries],
    )
    failed: set[str] = set()
    blocked: set[str] = set()
    halt_reason = ""

    for entry, pkg_report in zip(plan.entries, report.packages):
        if halt_reason:
            pkg_report.state = PublishState.NOT_ATTEMPTED
            pkg_report.reason = halt_reason
            continue

        skip = _skip_reason(entry)
        if skip is not None:
            pkg_report.state = PublishState.SKIPPED
            pkg_report.reason = skip
            console.info(f"  {entry.name}: skipped ({skip})")
            continue

        blockers = sorted(d for d in entry.package.deps if d in failed or d in blocked)
        if blockers:
            blocked.add(entry.name)
            pkg_report.state = PublishState.NOT_ATTEMPTED
            pkg_report.reason = f"depends on failed {', '.join(blockers)}"
            console.warn(f"{entry.name}: not attempted, {pkg_report.reason}")
            continue

        if ctx.abort.is_set():
            report.halted = True
            halt_reason = "aborted"
            pkg_report.state = PublishState.NOT_ATTEMPTED
            pkg_report.reason = halt_reason
            continue

        console.info(f"  {entry.name} {entry.target_version}")
        try:
            ok = _submit(entry, registry, retry, ctx, pkg_report)
            if ok and pkg_report.state is not PublishState.SKIPPED:
                ok = _verify(entry, registry, retry, ctx, pkg_report)
                if ok:
                    pkg_report.state = PublishState.PUBLISHED
                    console.info(f"  ✓ {entry.name} {entry.target_version} published")
        except _Halted:
            report.halted = True
            halt_reason = "aborted"
            pkg_report.state = PublishState.NOT_ATTEMPTED
            submitted = any(
                a.phase == "publish" and a.outcome is AttemptOutcome.SUCCESS
                for a in pkg_report.attempts
            )
            pkg_report.reason = "aborted before verification" if submitted else halt_reason
            console.warn(f"Aborted while publishing {entry.name}")
            continue

        if not ok:
            failed.add(entry.name)
            if fail_fast:
                report.halted = True
                halt_reason = f"halted after {entry.name} failed"

    return report
