"""
Tests for checks/ufw.py.

Tests the parser helpers (pure functions, no mocking needed), the
UfwFirewall management channel against a scripted runner, and the
module's audit/fix paths with shell() replaced.
"""

import pytest

import vpsaudit.checks.ufw as ufw_mod
from vpsaudit.checks.ufw import UfwFirewall, UfwModule, parse_added, parse_status
from vpsaudit.fixer.guard import AllowRule


ACTIVE_STATUS = """\
Status: active
Logging: on (low)
Default: deny (incoming), allow (outgoing), disabled (routed)
New profiles: skip

To                         Action      From
--                         ------      ----
22/tcp                     ALLOW IN    Anywhere                   # SSH (vpsaudit)
80,443/tcp                 ALLOW IN    Anywhere
Anywhere                   ALLOW IN    203.0.113.7
22/tcp (v6)                ALLOW IN    Anywhere (v6)
"""

ALLOW_ALL_STATUS = """\
Status: active
Default: allow (incoming), allow (outgoing), disabled (routed)

To                         Action      From
--                         ------      ----
80/tcp                     ALLOW IN    Anywhere
"""

INACTIVE_STATUS = "Status: inactive\n"

ADDED = """\
Added user rules (see 'ufw status' for running firewall):
ufw allow 22/tcp comment 'SSH (vpsaudit)'
ufw allow from 203.0.113.7
"""


# ── Helpers ───────────────────────────────────────────────────────────────────

def _runner(responses):
    """Scripted shell: first matching command prefix wins, unknown commands fail."""
    calls = []

    def run(cmd, timeout=10, input=None):
        calls.append(cmd)
        for prefix, result in responses.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                return result
        return (1, "", f"unexpected command: {' '.join(cmd)}")

    run.calls = calls
    return run


@pytest.fixture
def module(monkeypatch):
    monkeypatch.setattr(ufw_mod, "get_ssh_port", lambda: 22)
    mod = UfwModule()
    monkeypatch.setattr(mod, "has_tool", lambda tool: True)
    return mod


# ── Parsers ───────────────────────────────────────────────────────────────────

class TestParseStatus:
    def test_active_with_rules(self):
        status = parse_status(ACTIVE_STATUS)
        assert status["active"] is True
        assert status["incoming"] == "deny"
        assert status["rules"][0] == ("22/tcp", "ALLOW IN", "Anywhere")
        assert ("Anywhere", "ALLOW IN", "203.0.113.7") in status["rules"]
        assert len(status["rules"]) == 4

    def test_inactive(self):
        assert parse_status(INACTIVE_STATUS) == {"active": False, "incoming": None, "rules": []}

    def test_default_allow(self):
        assert parse_status(ALLOW_ALL_STATUS)["incoming"] == "allow"


class TestParseAdded:
    def test_strips_prefix_and_comment(self):
        assert parse_added(ADDED) == ["allow 22/tcp", "allow from 203.0.113.7"]

    def test_no_rules(self):
        assert parse_added("Added user rules (see 'ufw status' for running firewall):\n(None)\n") == []


# ── UfwFirewall ───────────────────────────────────────────────────────────────

class TestUfwFirewall:
    def test_has_rule(self):
        fw = UfwFirewall(_runner({("ufw", "show", "added"): (0, ADDED, "")}))
        assert fw.has_rule(AllowRule(port=22))
        assert fw.has_rule(AllowRule(source="203.0.113.7", temporary=True))
        assert not fw.has_rule(AllowRule(port=2222))

    def test_add_existing_rule_is_noop(self):
        run = _runner({("ufw", "show", "added"): (0, ADDED, "")})
        assert UfwFirewall(run).add_rule(AllowRule(port=22))
        assert all(cmd[:2] != ["ufw", "allow"] for cmd in run.calls)

    def test_add_temporary_rule_uses_temp_comment(self):
        run = _runner({
            ("ufw", "show", "added"): (0, "", ""),
            ("ufw", "allow"): (0, "Rule added", ""),
        })
        assert UfwFirewall(run).add_rule(AllowRule(source="198.51.100.4", temporary=True))
        assert ["ufw", "allow", "from", "198.51.100.4", "comment", "Current session (vpsaudit temp)"] in run.calls

    def test_remove_rule(self):
        run = _runner({("ufw", "delete"): (0, "Rule deleted", "")})
        assert UfwFirewall(run).remove_rule(AllowRule(port=22))
        assert run.calls == [["ufw", "delete", "allow", "22/tcp"]]

    def test_is_active_on_active_firewall(self):
        fw = UfwFirewall(_runner({
            ("ufw", "show", "added"): (0, ADDED, ""),
            ("ufw", "status"): (0, ACTIVE_STATUS, ""),
        }))
        assert fw.is_active(AllowRule(port=22))
        assert fw.is_active(AllowRule(source="203.0.113.7"))

    def test_inactive_firewall_admits_everything(self):
        fw = UfwFirewall(_runner({
            ("ufw", "show", "added"): (0, ADDED, ""),
            ("ufw", "status"): (0, INACTIVE_STATUS, ""),
        }))
        assert fw.is_active(AllowRule(port=22))

    def test_missing_rule_is_not_active(self):
        fw = UfwFirewall(_runner({
            ("ufw", "show", "added"): (0, "", ""),
            ("ufw", "status"): (0, ACTIVE_STATUS, ""),
        }))
        assert not fw.is_active(AllowRule(port=22))


# ── Audit ─────────────────────────────────────────────────────────────────────

class TestUfwAudit:
    def test_hardened_firewall(self, module, monkeypatch):
        monkeypatch.setattr(module, "shell", _runner({("ufw", "status"): (0, ACTIVE_STATUS, "")}))
        findings = module.audit()
        assert [(f.id, f.status) for f in findings] == [
            ("ufw.enabled", "passed"),
            ("ufw.default_deny", "passed"),
            ("ufw.ssh_allowed", "passed"),
        ]

    def test_inactive_firewall(self, module, monkeypatch):
        monkeypatch.setattr(module, "shell", _runner({
            ("ufw", "status"): (0, INACTIVE_STATUS, ""),
            ("ufw", "show", "added"): (0, "", ""),
        }))
        findings = {f.id: f for f in module.audit()}
        assert set(findings) == {"ufw.disabled", "ufw.no_ssh_rule"}
        assert findings["ufw.disabled"].severity == "high"
        assert findings["ufw.disabled"].fix_id == "ufw.enable"
        assert findings["ufw.no_ssh_rule"].fix_id == "ufw.allow_ssh"

    def test_inactive_firewall_with_added_ssh_rule(self, module, monkeypatch):
        monkeypatch.setattr(module, "shell", _runner({
            ("ufw", "status"): (0, INACTIVE_STATUS, ""),
            ("ufw", "show", "added"): (0, ADDED, ""),
        }))
        ids = [f.id for f in module.audit()]
        assert "ufw.ssh_allowed" in ids

    def test_default_accept(self, module, monkeypatch):
        monkeypatch.setattr(module, "shell", _runner({("ufw", "status"): (0, ALLOW_ALL_STATUS, "")}))
        findings = {f.id: f for f in module.audit()}
        assert findings["ufw.default_accept"].fix_id == "ufw.set_default_deny"
        assert findings["ufw.no_ssh_rule"].status == "failed"

    def test_not_installed(self, module, monkeypatch):
        monkeypatch.setattr(module, "has_tool", lambda tool: False)
        findings = module.audit()
        assert [f.id for f in findings] == ["ufw.not_installed"]
        assert findings[0].fix_id == "ufw.install"

    def test_status_unreadable(self, module, monkeypatch):
        monkeypatch.setattr(module, "shell", _runner({("ufw", "status"): (1, "", "ERROR: You need to be root")}))
        findings = module.audit()
        assert findings[0].id == "ufw.status_unavailable"
        assert "root" in findings[0].description


# ── Fixes ─────────────────────────────────────────────────────────────────────

class TestUfwFixes:
    def test_allow_ssh_adds_commented_rule(self, module, monkeypatch):
        run = _runner({
            ("ufw", "show", "added"): (0, "", ""),
            ("ufw", "allow"): (0, "Rule added", ""),
        })
        monkeypatch.setattr(module, "shell", run)
        assert module.fix("ufw.allow_ssh").ok
        assert ["ufw", "allow", "22/tcp", "comment", "SSH (vpsaudit)"] in run.calls

    def test_enable_uses_force(self, module, monkeypatch):
        run = _runner({("ufw", "--force", "enable"): (0, "Firewall is active", "")})
        monkeypatch.setattr(module, "shell", run)
        assert module.fix("ufw.enable").ok

    def test_default_deny_stops_on_first_failure(self, module, monkeypatch):
        run = _runner({("ufw", "default", "deny"): (1, "", "ERROR: bad policy")})
        monkeypatch.setattr(module, "shell", run)
        result = module.fix("ufw.set_default_deny")
        assert not result.ok
        assert run.calls == [["ufw", "default", "deny", "incoming"]]

    def test_install_refreshes_package_lists_first(self, module, monkeypatch):
        run = _runner({("apt-get", "update"): (0, "", ""), ("apt-get", "install"): (0, "", "")})
        monkeypatch.setattr(module, "shell", run)
        assert module.fix("ufw.install").ok
        assert run.calls == [["apt-get", "update", "-qq"], ["apt-get", "install", "-y", "ufw"]]

    def test_install_skipped_when_refresh_fails(self, module, monkeypatch):
        run = _runner({("apt-get", "update"): (100, "", "E: Failed to fetch http://archive.ubuntu.com")})
        monkeypatch.setattr(module, "shell", run)
        result = module.fix("ufw.install")
        assert not result.ok
        assert "Failed to fetch" in result.error
        assert len(run.calls) == 1

    def test_revert_enable_disables(self, module, monkeypatch):
        run = _runner({("ufw", "--force", "disable"): (0, "", "")})
        monkeypatch.setattr(module, "shell", run)
        assert module.revert("ufw.enable").ok
        assert run.calls == [["ufw", "--force", "disable"]]

    def test_declared_fixes_are_classified(self):
        specs = {s.fix_id: s for s in UfwModule.fixes}
        assert specs["ufw.enable"].danger == "lockout_protected"
        assert specs["ufw.set_default_deny"].danger == "lockout_protected"
        assert specs["ufw.install"].locks
