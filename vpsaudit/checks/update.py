"""
Package update checks (apt).

Checks:
  - apt/dpkg lock not held by another process
  - pending upgrades, with security upgrades counted separately
  - unattended-upgrades installed and enabled
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from vpsaudit.checks.base import APT_LOCKS, BaseModule, Finding, FixResult, FixSpec, lock_held
from vpsaudit.system_info import get_system_info


_AUTO_UPGRADES = Path("/etc/apt/apt.conf.d/20auto-upgrades")
_UU_CONFIG = Path("/etc/apt/apt.conf.d/50unattended-upgrades")

_AUTO_UPGRADES_CONTENT = """\
APT::Periodic::Update-Package-Lists "1";
APT::Periodic::Unattended-Upgrade "1";
APT::Periodic::AutocleanInterval "7";
"""

_UU_CONTENT = """\
// vpsaudit unattended-upgrades configuration
Unattended-Upgrade::Allowed-Origins {
    "${distro_id}:${distro_codename}";
    "${distro_id}:${distro_codename}-security";
    "${distro_id}ESMApps:${distro_codename}-apps-security";
    "${distro_id}ESM:${distro_codename}-infra-security";
};

Unattended-Upgrade::Remove-Unused-Dependencies "true";

// Reboots stay manual on servers
Unattended-Upgrade::Automatic-Reboot "false";

Unattended-Upgrade::SyslogEnable "true";
"""


def parse_upgradable(text: str) -> tuple[int, int]:
    """
    Count upgradable packages in `apt list --upgradable` output.

    Returns (total, security).
    """
    total = security = 0
    for line in text.splitlines():
        if "/" not in line or line.startswith("Listing"):
            continue
        total += 1
        origin = line.split(" ", 1)[0]
        if "-security" in origin:
            security += 1
    return total, security


def auto_upgrades_enabled(text: str) -> bool:
    """True if 20auto-upgrades turns on periodic unattended upgrades."""
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("APT::Periodic::Unattended-Upgrade"):
            return '"1"' in line or '"true"' in line.lower()
    return False


class UpdateModule(BaseModule):
    """Pending upgrades and automatic security updates."""

    name = "update"
    title = "System Updates"
    icon = "📦"
    scan_description = "Checking for pending package upgrades and automatic security updates."

    requires_tool = "apt-get"

    fixes = (
        FixSpec("update.apply_security", "confirm_required", "Apply pending upgrades",
                locks=APT_LOCKS),
        FixSpec("update.install_unattended", "confirm_required",
                "Install and configure unattended-upgrades",
                mutates=(str(_AUTO_UPGRADES), str(_UU_CONFIG)), locks=APT_LOCKS),
        FixSpec("update.enable_unattended", "safe",
                "Enable daily unattended security upgrades",
                mutates=(str(_AUTO_UPGRADES), str(_UU_CONFIG))),
    )

    def audit(self) -> list[Finding]:
        findings = [self._audit_apt_lock()]
        findings.append(self._audit_available())
        findings.append(self._audit_unattended())
        return findings

    def _audit_apt_lock(self) -> Finding:
        held = [path for path in APT_LOCKS if lock_held(path)]
        if held:
            return self._failed(
                "update.apt_locked",
                "APT is locked by another process",
                severity="medium",
                description=f"Lock held: {', '.join(held)}",
                suggestion="Wait for the other package operation to finish",
            )
        return self._passed("update.apt_available", "APT is available")

    def _audit_available(self) -> Finding:
        rc, out, err = self.shell(["apt", "list", "--upgradable"], timeout=30)
        if rc != 0:
            return self._failed(
                "update.check_failed",
                "Could not list upgradable packages",
                severity="low",
                description=(err or out).strip(),
            )

        total, security = parse_upgradable(out)
        if total == 0:
            return self._passed("update.no_updates", "System is up to date")

        severity = "high" if security else "medium"
        return self._failed(
            "update.updates_available",
            f"{total} package upgrades pending ({security} security)",
            severity=severity,
            description=f"{total} upgradable packages, {security} from security pockets",
            suggestion="Apply pending upgrades",
            fix_id="update.apply_security",
        )

    def _audit_unattended(self) -> Finding:
        rc, out, _ = self.shell(["dpkg-query", "-W", "-f=${Status}", "unattended-upgrades"])
        if rc != 0 or "install ok installed" not in out:
            return self._failed(
                "update.unattended_not_installed",
                "unattended-upgrades is not installed",
                severity="medium",
                description="Security updates are not applied automatically",
                suggestion="Install unattended-upgrades",
                fix_id="update.install_unattended",
            )

        try:
            enabled = auto_upgrades_enabled(_AUTO_UPGRADES.read_text())
        except OSError:
            enabled = False

        if enabled:
            return self._passed("update.unattended_enabled", "Automatic security updates are enabled")
        return self._failed(
            "update.unattended_disabled",
            "Automatic security updates are disabled",
            severity="medium",
            description=f"{_AUTO_UPGRADES} does not enable Unattended-Upgrade",
            suggestion="Enable unattended-upgrades",
            fix_id="update.enable_unattended",
        )

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {
            "update.apply_security": self._fix_apply_security,
            "update.install_unattended": self._fix_install_unattended,
            "update.enable_unattended": self._fix_enable_unattended,
        }

    def _fix_apply_security(self) -> FixResult:
        if self.has_tool("unattended-upgrade"):
            result = self._command_fix(["unattended-upgrade", "-d"], timeout=1800)
            if result.ok or result.lock_contention:
                return result
        return self._command_fix(
            ["apt-get", "upgrade", "-y",
             "-o", "Dpkg::Options::=--force-confdef",
             "-o", "Dpkg::Options::=--force-confold"],
            timeout=1800,
        )

    def _fix_install_unattended(self) -> FixResult:
        result = self._apt_install("unattended-upgrades", "apt-listchanges")
        if not result.ok:
            return result
        return self._fix_enable_unattended()

    def _fix_enable_unattended(self) -> FixResult:
        try:
            _AUTO_UPGRADES.write_text(_AUTO_UPGRADES_CONTENT)
            _UU_CONFIG.write_text(_UU_CONTENT)
        except OSError as e:
            return FixResult.failure(f"Could not write apt config: {e}")

        if get_system_info()["has_systemd"]:
            result = self._command_fix(["systemctl", "enable", "--now", "unattended-upgrades"])
            if not result.ok:
                return result
        return FixResult.success()


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    UpdateModule,
]
