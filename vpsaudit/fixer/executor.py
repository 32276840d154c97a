"""
Execution engine: apply a remediation plan one step at a time.

For each step, in plan order:
  0. stop if the operator asked to abort (checked between steps only)
  1. confirm_required without acknowledgment  → skipped
  2. wait (bounded) for package manager locks → failed / LockContention
  3. snapshot every file the fix declares it mutates
  4. apply, through the safety guard for lockout_protected steps
  5. on failure with snapshots: restore, revert live state → rolled_back

Execution halts after a rolled_back outcome. Steps that never ran are
listed in ExecutionLog.halted with the reason, never silently dropped.
Steps are strictly sequential.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal

from vpsaudit.checks.base import FixResult, lock_held
from vpsaudit.errors import (
    REASON_ABORTED,
    REASON_HALTED,
    REASON_LOCK_CONTENTION,
    REASON_LOCKOUT_VERIFICATION,
    REASON_MANUAL_ONLY,
    REASON_NOT_ACKNOWLEDGED,
    LockoutVerificationFailure,
    PermissionDeniedError,
    RestoreTargetMissingError,
    RollbackFailedError,
)
from vpsaudit.fixer.backup import BackupStore, Snapshot
from vpsaudit.fixer.guard import SafetyGuard
from vpsaudit.fixer.plan import PlanStep, RemediationPlan
from vpsaudit.registry import ModuleRegistry

logger = logging.getLogger("vpsaudit.fixer.executor")

OutcomeResult = Literal["applied", "skipped", "failed", "rolled_back"]

_LOCK_POLL_INTERVAL = 1.0


# ── Data model ────────────────────────────────────────────────────────────────

@dataclass
class FixOutcome:
    fix_id: str
    result: OutcomeResult
    error: str | None = None
    backup_refs: list[str] = field(default_factory=list)
    finding_id: str = ""
    module_name: str = ""


@dataclass
class ExecutionLog:
    """Authoritative record of what one plan execution changed."""

    outcomes: list[FixOutcome] = field(default_factory=list)
    halted: list[FixOutcome] = field(default_factory=list)
    aborted: bool = False

    def record(self, outcome: FixOutcome) -> None:
        self.outcomes.append(outcome)
        level = logging.INFO if outcome.result == "applied" else logging.WARNING
        logger.log(level, "%s: %s%s", outcome.fix_id, outcome.result,
                   f" ({outcome.error})" if outcome.error else "")

    def all_outcomes(self) -> list[FixOutcome]:
        return self.outcomes + self.halted

    def count(self, result: OutcomeResult) -> int:
        return sum(1 for o in self.all_outcomes() if o.result == result)

    @property
    def rolled_back(self) -> bool:
        return any(o.result == "rolled_back" for o in self.outcomes)

    @property
    def has_failures(self) -> bool:
        return any(o.result in ("failed", "rolled_back") for o in self.outcomes)


# ── Public API ────────────────────────────────────────────────────────────────

def execute_plan(
    plan: RemediationPlan,
    acks: Iterable[str],
    modules: ModuleRegistry,
    backups: BackupStore,
    guard: SafetyGuard,
    cancel: threading.Event | None = None,
    lock_wait: float = 60.0,
) -> ExecutionLog:
    """
    Apply every step of plan in order and return the execution log.

    Args:
        plan:      The immutable plan to run.
        acks:      fix_ids the operator explicitly acknowledged.
        modules:   Registered modules; each step's fix is invoked through its owner.
        backups:   Snapshot store used for rollback.
        guard:     Safety guard (acknowledgment + lockout protocol).
        cancel:    Set by the caller to stop before the next step.
        lock_wait: Seconds to wait for package manager locks before failing.

    Raises:
        RollbackFailedError: a required rollback could not restore state.
                             The partial log is attached to the exception.
    """
    acked = set(acks)
    log = ExecutionLog()
    steps = list(plan)

    for idx, step in enumerate(steps):
        if cancel is not None and cancel.is_set():
            log.aborted = True
            _halt_remaining(log, steps[idx:], REASON_ABORTED)
            logger.warning("Execution aborted by operator before %s", step.fix_id)
            break

        try:
            outcome = _run_step(step, acked, modules, backups, guard, lock_wait, log)
        except RollbackFailedError:
            _halt_remaining(log, steps[idx + 1:], REASON_HALTED)
            raise
        log.record(outcome)

        if outcome.result == "rolled_back":
            _halt_remaining(log, steps[idx + 1:], REASON_HALTED)
            break

    return log


# ── Step execution ────────────────────────────────────────────────────────────

def _run_step(
    step: PlanStep,
    acked: set[str],
    modules: ModuleRegistry,
    backups: BackupStore,
    guard: SafetyGuard,
    lock_wait: float,
    log: ExecutionLog,
) -> FixOutcome:
    """Run one plan step and return its outcome."""
    module, spec = modules.resolve(step.fix_id)

    def outcome(result: OutcomeResult, error: str | None = None,
                snaps: list[Snapshot] | None = None) -> FixOutcome:
        return FixOutcome(
            fix_id=step.fix_id,
            result=result,
            error=error,
            backup_refs=[s.ref for s in snaps or []],
            finding_id=step.finding_id,
            module_name=step.module_name,
        )

    try:
        guard.require_ack(step.fix_id, step.danger, acked)
    except PermissionDeniedError:
        return outcome("skipped", REASON_NOT_ACKNOWLEDGED)

    held = _wait_for_locks(spec.locks, lock_wait)
    if held:
        return outcome("failed", f"{REASON_LOCK_CONTENTION}: {held} still held after {lock_wait:g}s")

    try:
        snaps = [backups.snapshot(path) for path in spec.mutates]
    except OSError as e:
        return outcome("failed", f"Could not snapshot before applying: {e}")

    def rollback() -> None:
        try:
            backups.restore_all(snaps)
        except (RestoreTargetMissingError, PermissionError, OSError) as e:
            log.record(outcome("failed", f"Rollback failed: {e}", snaps))
            raise RollbackFailedError(f"Rollback of {step.fix_id} failed: {e}", log) from e
        reverted = module.revert(step.fix_id)
        if not reverted.ok:
            logger.warning("Revert of %s reported: %s", step.fix_id, reverted.error)

    logger.info("Applying %s (%s)", step.fix_id, step.danger)

    if step.danger == "lockout_protected":
        try:
            result = guard.protect(step.fix_id, lambda: module.fix(step.fix_id))
        except LockoutVerificationFailure as e:
            if not e.applied:
                return outcome("failed", f"{REASON_LOCKOUT_VERIFICATION}: {e}", snaps)
            rollback()
            return outcome("rolled_back", f"{REASON_LOCKOUT_VERIFICATION}: {e}", snaps)
    else:
        result = module.fix(step.fix_id)

    return _settle(result, snaps, rollback, outcome)


def _settle(
    result: FixResult,
    snaps: list[Snapshot],
    rollback: Callable[[], None],
    outcome: Callable[..., FixOutcome],
) -> FixOutcome:
    """Map a module's FixResult to an outcome, rolling back where required."""
    if result.ok:
        return outcome("applied", None, snaps)

    if result.manual_only:
        return outcome("skipped", f"{REASON_MANUAL_ONLY}: {result.error}" if result.error
                       else REASON_MANUAL_ONLY)

    if result.lock_contention:
        return outcome("failed", f"{REASON_LOCK_CONTENTION}: {result.error}", snaps)

    if snaps:
        rollback()
        return outcome("rolled_back", result.error or "Fix failed", snaps)

    return outcome("failed", result.error or "Fix failed")


def _halt_remaining(log: ExecutionLog, steps: list[PlanStep], reason: str) -> None:
    for step in steps:
        log.halted.append(
            FixOutcome(
                fix_id=step.fix_id,
                result="skipped",
                error=reason,
                finding_id=step.finding_id,
                module_name=step.module_name,
            )
        )


# ── Package manager locks ─────────────────────────────────────────────────────

def _wait_for_locks(paths: tuple[str, ...], timeout: float) -> str | None:
    """
    Wait until none of the lock files is held, or timeout elapses.

    Returns the path still held at the deadline, or None when all are free.
    """
    deadline = time.monotonic() + timeout
    for path in paths:
        while lock_held(path):
            if time.monotonic() >= deadline:
                return path
            time.sleep(min(_LOCK_POLL_INTERVAL, max(0.0, deadline - time.monotonic())))
    return None
