"""
Error taxonomy for the remediation engine.

Exceptions are raised at the seams where the caller must decide what to
do (plan building, acknowledgment, rollback). Per-module failures never
raise past the orchestrator; they degrade into a Finding or a
FixOutcome carrying one of the reason strings below.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vpsaudit.fixer.executor import ExecutionLog


# ── Outcome reasons ───────────────────────────────────────────────────────────

REASON_NOT_ACKNOWLEDGED = "not-acknowledged"
REASON_MANUAL_ONLY = "manual-only"
REASON_LOCK_CONTENTION = "LockContention"
REASON_HALTED = "halted-by-prior-rollback"
REASON_ABORTED = "aborted-by-operator"
REASON_PROBE_TIMEOUT = "ProbeTimeout"
REASON_LOCKOUT_VERIFICATION = "LockoutVerificationFailure"


# ── Exceptions ────────────────────────────────────────────────────────────────

class VpsAuditError(Exception):
    """Base class for every error the core raises on purpose."""


class ModuleRegistrationError(VpsAuditError):
    """Two modules share a name or declare the same fix_id."""


class EmptySelectionError(VpsAuditError):
    """The selection produced a plan with zero steps, so there is nothing to do."""


class UnknownFixError(VpsAuditError):
    """A finding references a fix_id that no registered module declares."""

    def __init__(self, fix_id: str, finding_id: str | None = None) -> None:
        self.fix_id = fix_id
        self.finding_id = finding_id
        where = f" (finding {finding_id})" if finding_id else ""
        super().__init__(f"Unknown fix_id {fix_id!r}{where}")


class PermissionDeniedError(VpsAuditError):
    """A confirm_required step has no acknowledgment from the operator."""

    def __init__(self, fix_id: str) -> None:
        self.fix_id = fix_id
        super().__init__(f"Fix {fix_id!r} requires explicit acknowledgment")


class LockoutVerificationFailure(VpsAuditError):
    """
    The management channel could not be protected or verified.

    applied is False when protection failed before the fix ran, True when
    the fix ran and post-verify failed (the step must be rolled back).
    """

    def __init__(self, message: str, applied: bool = False) -> None:
        self.applied = applied
        super().__init__(message)


class RestoreTargetMissingError(VpsAuditError):
    """The parent directory of a snapshot's path no longer exists."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Cannot restore {path}: parent directory is missing")


class RollbackFailedError(VpsAuditError):
    """
    A required rollback could not be completed.

    Carries the execution log up to the failure so the caller can still
    report exactly what changed. The session must halt.
    """

    def __init__(self, message: str, log: "ExecutionLog") -> None:
        self.log = log
        super().__init__(message)
