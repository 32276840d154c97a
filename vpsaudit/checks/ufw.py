"""
UFW firewall checks.

Checks:
  - ufw installed
  - firewall enabled
  - default incoming policy is deny/reject
  - SSH port explicitly allowed

Also provides UfwFirewall, the ManagementChannel the safety guard uses to
keep the operator's SSH access open while firewall fixes run.
"""

from __future__ import annotations

import re
from typing import Callable

from vpsaudit.checks.base import APT_LOCKS, BaseModule, Finding, FixResult, FixSpec
from vpsaudit.fixer.guard import AllowRule, ManagementChannel
from vpsaudit.system_info import get_ssh_port


_UFW_CONF = "/etc/ufw/ufw.conf"
_UFW_DEFAULTS = "/etc/default/ufw"
_UFW_USER_RULES = ("/etc/ufw/user.rules", "/etc/ufw/user6.rules")

_RULE_COMMENT = "SSH (vpsaudit)"
_TEMP_COMMENT = "Current session (vpsaudit temp)"


# ── Output parsing ────────────────────────────────────────────────────────────

def parse_status(text: str) -> dict:
    """
    Parse `ufw status verbose` output.

    Returns {"active": bool, "incoming": str | None, "rules": [(to, action, from)]}.
    Rules are only listed by ufw while the firewall is active.
    """
    active = bool(re.search(r"^Status:\s+active", text, re.MULTILINE))

    incoming = None
    m = re.search(r"^Default:\s+(\w+)\s+\(incoming\)", text, re.MULTILINE)
    if m:
        incoming = m.group(1).lower()

    rules: list[tuple[str, str, str]] = []
    in_table = False
    for line in text.splitlines():
        if line.startswith("--"):
            in_table = True
            continue
        if not in_table or not line.strip():
            continue
        cols = re.split(r"\s{2,}", line.strip())
        if len(cols) >= 3:
            rules.append((cols[0], cols[1], cols[2].split("#")[0].strip()))
    return {"active": active, "incoming": incoming, "rules": rules}


def parse_added(text: str) -> list[str]:
    """Parse `ufw show added` into normalised rule commands ('allow 22/tcp')."""
    added = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("ufw "):
            continue
        cmd = line[len("ufw "):].split(" comment ")[0].strip()
        added.append(cmd)
    return added


def _rule_args(rule: AllowRule) -> list[str]:
    if rule.source and rule.port:
        return ["allow", "from", rule.source, "to", "any", "port", str(rule.port), "proto", rule.proto]
    if rule.source:
        return ["allow", "from", rule.source]
    return ["allow", f"{rule.port}/{rule.proto}"]


def _status_row_matches(rule: AllowRule, row: tuple[str, str, str]) -> bool:
    to, action, source = row
    if not action.upper().startswith("ALLOW") or "(v6)" in to:
        return False
    if rule.source:
        src_ok = source == rule.source
        if rule.port:
            return src_ok and to.split("/")[0] == str(rule.port)
        return src_ok and to == "Anywhere"
    return to in (f"{rule.port}/{rule.proto}", str(rule.port)) and source == "Anywhere"


# ── Management channel ────────────────────────────────────────────────────────

class UfwFirewall(ManagementChannel):
    """ManagementChannel backed by the ufw command line."""

    def __init__(self, runner: Callable[..., tuple[int, str, str]] | None = None) -> None:
        self._run = runner or UfwModule().shell

    def has_rule(self, rule: AllowRule) -> bool:
        rc, out, _ = self._run(["ufw", "show", "added"])
        if rc != 0:
            return False
        wanted = " ".join(_rule_args(rule))
        alternatives = {wanted}
        if not rule.source:
            alternatives.add(f"allow {rule.port}")
        return any(cmd in alternatives for cmd in parse_added(out))

    def add_rule(self, rule: AllowRule) -> bool:
        if self.has_rule(rule):
            return True
        comment = _TEMP_COMMENT if rule.temporary else _RULE_COMMENT
        rc, _, _ = self._run(["ufw", *_rule_args(rule), "comment", comment])
        return rc == 0

    def remove_rule(self, rule: AllowRule) -> bool:
        rc, _, _ = self._run(["ufw", "delete", *_rule_args(rule)])
        return rc == 0

    def is_active(self, rule: AllowRule) -> bool:
        if not self.has_rule(rule):
            return False
        rc, out, _ = self._run(["ufw", "status", "verbose"])
        if rc != 0:
            return False
        status = parse_status(out)
        if not status["active"]:
            # Inactive firewall filters nothing, so the channel is open.
            return True
        return any(_status_row_matches(rule, row) for row in status["rules"])


# ── Module ────────────────────────────────────────────────────────────────────

class UfwModule(BaseModule):
    """Host firewall state via ufw."""

    name = "ufw"
    title = "Firewall (UFW)"
    icon = "🧱"
    scan_description = "Checking the host firewall: is it on, does it deny by default, is SSH allowed?"

    fixes = (
        FixSpec("ufw.install", "confirm_required", "Install the ufw package with apt", locks=APT_LOCKS),
        FixSpec("ufw.enable", "lockout_protected", "Enable ufw (SSH is allowed first)",
                mutates=(_UFW_CONF,)),
        FixSpec("ufw.set_default_deny", "lockout_protected",
                "Set default incoming policy to deny, outgoing to allow",
                mutates=(_UFW_DEFAULTS,)),
        FixSpec("ufw.allow_ssh", "safe", "Add an allow rule for the SSH port",
                mutates=_UFW_USER_RULES),
    )

    def audit(self) -> list[Finding]:
        if not self.has_tool("ufw"):
            return [
                self._failed(
                    "ufw.not_installed",
                    "UFW firewall is not installed",
                    severity="medium",
                    description="No host firewall frontend found",
                    suggestion="Install ufw and enable it with SSH allowed",
                    fix_id="ufw.install",
                )
            ]

        rc, out, err = self.shell(["ufw", "status", "verbose"])
        if rc != 0:
            return [
                self._failed(
                    "ufw.status_unavailable",
                    "Could not read UFW status",
                    severity="low",
                    description=(err or out).strip() or "ufw status failed (are you root?)",
                    suggestion="Re-run vpsaudit as root",
                )
            ]

        status = parse_status(out)
        findings = [self._audit_enabled(status)]

        policy = self._audit_default_policy(status)
        if policy is not None:
            findings.append(policy)

        findings.append(self._audit_ssh_rule(status))
        return findings

    def _audit_enabled(self, status: dict) -> Finding:
        if status["active"]:
            return self._passed("ufw.enabled", "UFW firewall is enabled")
        return self._failed(
            "ufw.disabled",
            "UFW firewall is not enabled",
            severity="high",
            description="UFW is installed but not enabled",
            suggestion="Enable ufw after allowing SSH",
            fix_id="ufw.enable",
        )

    def _audit_default_policy(self, status: dict) -> Finding | None:
        incoming = status["incoming"]
        if incoming in ("deny", "reject"):
            return self._passed(
                "ufw.default_deny",
                "Default incoming policy denies traffic",
                description=f"Default incoming: {incoming}",
            )
        if incoming == "allow":
            return self._failed(
                "ufw.default_accept",
                "Default incoming policy accepts all traffic",
                severity="high",
                description="Default incoming policy is ALLOW",
                suggestion="Set the default incoming policy to deny",
                fix_id="ufw.set_default_deny",
            )
        return None

    def _audit_ssh_rule(self, status: dict) -> Finding:
        port = get_ssh_port()
        rule = AllowRule(port=port)

        if any(_status_row_matches(rule, row) for row in status["rules"]):
            return self._passed("ufw.ssh_allowed", f"SSH port {port} is allowed")

        # Inactive firewalls do not list rules in `ufw status`.
        if not status["active"] and UfwFirewall(self.shell).has_rule(rule):
            return self._passed("ufw.ssh_allowed", f"SSH port {port} is allowed")

        return self._failed(
            "ufw.no_ssh_rule",
            "SSH port is not explicitly allowed",
            severity="medium",
            description=f"SSH port {port} is not explicitly allowed",
            suggestion=f"Allow {port}/tcp before enabling the firewall",
            fix_id="ufw.allow_ssh",
        )

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {
            "ufw.install": lambda: self._apt_install("ufw", timeout=300),
            "ufw.enable": lambda: self._command_fix(["ufw", "--force", "enable"]),
            "ufw.set_default_deny": self._fix_default_deny,
            "ufw.allow_ssh": self._fix_allow_ssh,
        }

    def revert_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {
            "ufw.enable": lambda: self._command_fix(["ufw", "--force", "disable"]),
            "ufw.set_default_deny": lambda: self._command_fix(["ufw", "reload"]),
            "ufw.allow_ssh": lambda: self._command_fix(["ufw", "reload"]),
        }

    def _fix_default_deny(self) -> FixResult:
        result = self._command_fix(["ufw", "default", "deny", "incoming"])
        if not result.ok:
            return result
        return self._command_fix(["ufw", "default", "allow", "outgoing"])

    def _fix_allow_ssh(self) -> FixResult:
        ok = UfwFirewall(self.shell).add_rule(AllowRule(port=get_ssh_port()))
        return FixResult.success() if ok else FixResult.failure("ufw refused to add the SSH rule")


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    UfwModule,
]
