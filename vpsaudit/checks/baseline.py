"""
Baseline hardening checks.

Checks:
  - AppArmor enabled
  - desktop-oriented services that have no place on a server
"""

from __future__ import annotations

from typing import Callable

from vpsaudit.checks.base import APT_LOCKS, BaseModule, Finding, FixResult, FixSpec


UNUSED_SERVICES = (
    "cups",           # printing
    "avahi-daemon",   # mDNS
    "bluetooth",
    "ModemManager",
    "whoopsie",       # error reporting
    "apport",         # crash reporting
)


class BaselineModule(BaseModule):
    """Mandatory access control and service surface."""

    name = "baseline"
    title = "Baseline"
    icon = "🛡️"
    scan_description = "Checking AppArmor and services a server does not need."

    requires_tool = "systemctl"

    fixes = (
        FixSpec("baseline.enable_apparmor", "confirm_required",
                "Install (if needed), enable and start AppArmor", locks=APT_LOCKS),
        FixSpec("baseline.disable_unused", "confirm_required",
                "Disable and stop unused desktop services"),
    )

    def audit(self) -> list[Finding]:
        return [self._audit_apparmor(), self._audit_unused_services()]

    def apparmor_enabled(self) -> bool:
        if not self.has_tool("aa-status"):
            return False
        rc, _, _ = self.shell(["aa-status", "--enabled"])
        return rc == 0

    def enabled_unused_services(self) -> list[str]:
        enabled = []
        for service in UNUSED_SERVICES:
            rc, out, _ = self.shell(["systemctl", "is-enabled", service])
            if rc == 0 and out.strip() == "enabled":
                enabled.append(service)
        return enabled

    def _audit_apparmor(self) -> Finding:
        if self.apparmor_enabled():
            return self._passed("baseline.apparmor_enabled", "AppArmor is enabled")
        return self._failed(
            "baseline.apparmor_disabled",
            "AppArmor is not enabled",
            severity="medium",
            description="No mandatory access control confines services",
            suggestion="Enable AppArmor",
            fix_id="baseline.enable_apparmor",
        )

    def _audit_unused_services(self) -> Finding:
        unused = self.enabled_unused_services()
        if not unused:
            return self._passed("baseline.no_unused_services", "No unused services enabled")
        return self._failed(
            "baseline.unused_services",
            f"{len(unused)} unused services enabled",
            severity="low",
            description=f"Services: {', '.join(unused)}",
            suggestion="Disable unused services",
            fix_id="baseline.disable_unused",
        )

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {
            "baseline.enable_apparmor": self._fix_enable_apparmor,
            "baseline.disable_unused": self._fix_disable_unused,
        }

    def _fix_enable_apparmor(self) -> FixResult:
        if not self.has_tool("aa-status"):
            result = self._apt_install("apparmor", "apparmor-utils")
            if not result.ok:
                return result

        result = self._command_fix(["systemctl", "enable", "--now", "apparmor"])
        if not result.ok:
            return result

        if not self.apparmor_enabled():
            return FixResult.failure("AppArmor service started but the kernel reports it disabled "
                                     "(check the apparmor= boot parameter)")
        return FixResult.success()

    def _fix_disable_unused(self) -> FixResult:
        """Disable every unused service, or none: a failure re-enables what was done."""
        done: list[str] = []
        for service in self.enabled_unused_services():
            result = self._command_fix(["systemctl", "disable", "--now", service])
            if not result.ok:
                for prior in reversed(done):
                    self.shell(["systemctl", "enable", "--now", prior])
                return FixResult.failure(f"Could not disable {service}: {result.error}")
            done.append(service)
        return FixResult.success()


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    BaselineModule,
]
