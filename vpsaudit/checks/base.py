"""
Core data model for VPS Audit modules.

Finding   : the contract every audit observation must satisfy.
FixSpec   : a module's declaration of one remediation it can perform.
FixResult : what a module reports back after attempting a fix.
BaseModule: abstract base class all check modules inherit from.
Score     : output of calculate_score().

This file is the single source of truth for the data shape.
Do not deviate from the field names or types defined here.
"""

import fcntl
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal

from vpsaudit.errors import REASON_PROBE_TIMEOUT


Severity = Literal["info", "low", "medium", "high"]
Status = Literal["passed", "failed"]
DangerClass = Literal["safe", "confirm_required", "lockout_protected"]

SEVERITY_RANK: dict[str, int] = {"info": 0, "low": 1, "medium": 2, "high": 3}
DANGER_RANK: dict[str, int] = {"safe": 0, "confirm_required": 1, "lockout_protected": 2}

# dpkg/apt lock files. Fixes that call the package manager wait on these.
APT_LOCKS: tuple[str, ...] = (
    "/var/lib/dpkg/lock-frontend",
    "/var/lib/dpkg/lock",
    "/var/lib/apt/lists/lock",
)

# stderr fragments meaning another process holds the package manager lock
_LOCK_MARKERS = ("Could not get lock", "Unable to acquire the dpkg frontend lock")


def lock_held(path: str) -> bool:
    """Return True if another process holds an fcntl lock on path."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return False  # no lock file, nobody holds it
    try:
        fcntl.lockf(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
    except OSError:
        return True
    else:
        fcntl.lockf(fd, fcntl.LOCK_UN)
        return False
    finally:
        os.close(fd)


# ── Data model ────────────────────────────────────────────────────────────────

@dataclass
class Finding:
    # Identity
    id: str                     # "ufw.disabled", stable across runs
    module_name: str            # "ufw"

    # Result
    severity: Severity
    status: Status
    title: str                  # "UFW firewall is not enabled"

    # Opaque to the core
    description: str = ""
    suggestion: str = ""

    # Remediation; None means informational only
    fix_id: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def fixable(self) -> bool:
        return self.status == "failed" and bool(self.fix_id)


@dataclass(frozen=True)
class FixSpec:
    fix_id: str                            # "ufw.enable"
    danger: DangerClass = "safe"
    description: str = ""
    mutates: tuple[str, ...] = ()          # files snapshotted before apply
    locks: tuple[str, ...] = ()            # package manager lock files to wait on


@dataclass
class FixResult:
    ok: bool
    manual_only: bool = False
    lock_contention: bool = False
    error: str | None = None

    @classmethod
    def success(cls) -> "FixResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "FixResult":
        return cls(ok=False, error=error)

    @classmethod
    def manual(cls, reason: str) -> "FixResult":
        return cls(ok=False, manual_only=True, error=reason)

    @classmethod
    def locked(cls, reason: str) -> "FixResult":
        return cls(ok=False, lock_contention=True, error=reason)


@dataclass(frozen=True)
class Score:
    value: int = 100
    high: int = 0
    medium: int = 0
    low: int = 0
    passed: int = 0


# ── Base class ────────────────────────────────────────────────────────────────

class BaseModule(ABC):
    """
    Abstract base class for all VPS Audit check modules.

    Subclasses must:
      1. Set class attributes (name, title, icon, fixes, …)
      2. Override audit() to return a list of Finding
      3. Map every fix_id they can apply in fix_handlers()

    audit() is read-only with respect to system state. It is only called
    through run_audit(), which applies the tool gate and converts any
    unexpected exception into a single failed Finding so one broken check
    never crashes the whole run.
    """

    # Subclasses override these as class attributes
    name: str = "base"
    title: str = "Base Module"
    icon: str = "🧩"
    scan_description: str = "Running checks..."

    requires_tool: str | None = None

    # Immutable tuple prevents accidental mutation of the shared class attribute.
    fixes: tuple[FixSpec, ...] = ()

    # ── Public API ────────────────────────────────────────────────────────────

    def run_audit(self) -> list[Finding]:
        """
        Gate-check then delegate to audit().

        Call this from the orchestrator, not audit() directly.
        """
        if self.requires_tool and not self.has_tool(self.requires_tool):
            return [
                self._passed(
                    f"{self.name}.not_installed",
                    f"{self.requires_tool} is not installed",
                    severity="low",
                    description=f"{self.requires_tool} not found in PATH, checks skipped",
                )
            ]

        try:
            return list(self.audit())
        except Exception as e:
            return [
                self._failed(
                    f"{self.name}.error",
                    f"{self.title} checks could not complete",
                    severity="medium",
                    description=f"Unexpected error in {self.name}: {e}",
                )
            ]

    @abstractmethod
    def audit(self) -> Iterable[Finding]:
        """
        Implement the module's checks here.

        Must:
        - Wrap subprocess calls via self.shell() (bounded timeout)
        - Report "feature absent" as a passed Finding, never an exception
        - Never output to stdout/stderr directly
        """

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        """Return the typed map fix_id → handler for fixes this module can apply."""
        return {}

    def revert_handlers(self) -> dict[str, Callable[[], FixResult]]:
        """Return fix_id → handler that undoes live state after files are restored."""
        return {}

    def fix(self, fix_id: str) -> FixResult:
        """Apply one fix. Unknown or unhandled fix_ids are manual-only."""
        if fix_id not in self.fix_ids():
            return FixResult.failure(f"{self.name} does not declare fix {fix_id}")

        handler = self.fix_handlers().get(fix_id)
        if handler is None:
            return FixResult.manual(f"{fix_id} requires manual intervention")

        try:
            return handler()
        except Exception as e:
            return FixResult.failure(f"Unexpected error in {fix_id}: {e}")

    def revert(self, fix_id: str) -> FixResult:
        """Undo live effects of fix_id. Default: nothing beyond file restore."""
        handler = self.revert_handlers().get(fix_id)
        if handler is None:
            return FixResult.success()
        try:
            return handler()
        except Exception as e:
            return FixResult.failure(f"Unexpected error reverting {fix_id}: {e}")

    def fix_ids(self) -> set[str]:
        return {spec.fix_id for spec in self.fixes}

    # ── Helper methods ────────────────────────────────────────────────────────

    def has_tool(self, tool: str) -> bool:
        """Return True if tool is available in PATH."""
        return shutil.which(tool) is not None

    def shell(
        self,
        cmd: list[str],
        timeout: int = 10,
        input: str | None = None,
    ) -> tuple[int, str, str]:
        """
        Run a subprocess safely and return its output.

        Args:
            cmd:     Argument list, e.g. ["ufw", "status", "verbose"].
                     Never constructed from user-supplied data.
            timeout: Maximum seconds to wait before aborting (default 10).
            input:   Optional text fed to stdin (e.g. "y\\n" for ufw enable).

        Returns:
            (returncode, stdout, stderr), all strings, never None.
            On timeout or missing binary, returncode is -1 and stderr
            contains a human-readable error description.
        """
        # C locale keeps tool output in English so string matching holds.
        _env = {**os.environ, "LANG": "C", "LC_ALL": "C", "DEBIAN_FRONTEND": "noninteractive"}
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                env=_env,
                input=input,
            )
            return result.returncode, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            return -1, "", f"Command timed out after {timeout}s: {' '.join(cmd)}"
        except FileNotFoundError:
            return -1, "", f"Command not found: {cmd[0]}"
        except Exception as e:
            return -1, "", str(e)

    def _command_fix(
        self,
        cmd: list[str],
        timeout: int = 120,
        input: str | None = None,
    ) -> FixResult:
        """Run a fix command and translate its exit status into a FixResult."""
        rc, out, err = self.shell(cmd, timeout=timeout, input=input)
        if rc == 0:
            return FixResult.success()
        message = (err or out).strip() or f"{' '.join(cmd)} exited {rc}"
        if any(marker in message for marker in _LOCK_MARKERS):
            return FixResult.locked(message)
        return FixResult.failure(message)

    def _apt_install(self, *packages: str, timeout: int = 600) -> FixResult:
        """Refresh package lists, then install packages non-interactively."""
        result = self._command_fix(["apt-get", "update", "-qq"], timeout=timeout)
        if not result.ok:
            return result
        return self._command_fix(["apt-get", "install", "-y", *packages], timeout=timeout)

    def _finding(
        self,
        finding_id: str,
        status: Status,
        title: str,
        severity: Severity,
        description: str = "",
        suggestion: str = "",
        fix_id: str | None = None,
    ) -> Finding:
        """Convenience builder that fills module_name into a Finding."""
        return Finding(
            id=finding_id,
            module_name=self.name,
            severity=severity,
            status=status,
            title=title,
            description=description,
            suggestion=suggestion,
            fix_id=fix_id,
        )

    def _passed(
        self,
        finding_id: str,
        title: str,
        severity: Severity = "low",
        description: str = "",
    ) -> Finding:
        return self._finding(finding_id, "passed", title, severity, description=description)

    def _failed(
        self,
        finding_id: str,
        title: str,
        severity: Severity,
        description: str = "",
        suggestion: str = "",
        fix_id: str | None = None,
    ) -> Finding:
        return self._finding(
            finding_id, "failed", title, severity,
            description=description, suggestion=suggestion, fix_id=fix_id,
        )


def timeout_finding(module_name: str, timeout: float) -> Finding:
    """Synthetic finding recorded when a module's audit exceeds its time bound."""
    return Finding(
        id=f"{module_name}.timeout",
        module_name=module_name,
        severity="medium",
        status="failed",
        title=f"{module_name} checks timed out",
        description=f"{REASON_PROBE_TIMEOUT}: audit did not finish within {timeout:g}s and was abandoned",
        suggestion="Re-run with a larger module_timeout or investigate the hanging check",
    )


# ── Score ─────────────────────────────────────────────────────────────────────

SEVERITY_WEIGHTS: dict[str, int] = {"high": 15, "medium": 7, "low": 2, "info": 0}


def calculate_score(findings: Iterable[Finding]) -> Score:
    """
    Calculate the security score 0–100 from a run's findings.

    Args:
        findings: All Finding objects recorded by an audit run.

    Returns:
        Score with the clamped value plus per-severity failed counts and
        the number of passed findings.

    Algorithm:
      Start at 100.
      Failed high: -15, medium: -7, low: -2, info: 0.
      Passed findings never add points, whatever they carry.
      Floor at 0.
    """
    value = 100
    counts = {"high": 0, "medium": 0, "low": 0}
    passed = 0

    for finding in findings:
        if finding.status == "passed":
            passed += 1
            continue
        if finding.status != "failed":
            continue
        value -= SEVERITY_WEIGHTS.get(finding.severity, 0)
        if finding.severity in counts:
            counts[finding.severity] += 1

    return Score(
        value=max(0, min(100, value)),
        high=counts["high"],
        medium=counts["medium"],
        low=counts["low"],
        passed=passed,
    )
