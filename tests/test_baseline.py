"""Tests for checks/baseline.py."""

import pytest

from vpsaudit.checks.baseline import UNUSED_SERVICES, BaselineModule


def _systemctl(enabled=(), fail_disable=()):
    """Fake shell covering aa-status and the systemctl verbs baseline uses."""
    calls = []
    state = set(enabled)

    def run(cmd, timeout=10, input=None):
        calls.append(cmd)
        if cmd[:2] == ["aa-status", "--enabled"]:
            return (0, "", "") if run.apparmor else (1, "", "")
        if cmd[:2] == ["systemctl", "is-enabled"]:
            return (0, "enabled\n", "") if cmd[2] in state else (1, "disabled\n", "")
        if cmd[:3] == ["systemctl", "disable", "--now"]:
            if cmd[3] in fail_disable:
                return (1, "", f"Failed to disable unit {cmd[3]}")
            state.discard(cmd[3])
            return (0, "", "")
        if cmd[:3] == ["systemctl", "enable", "--now"]:
            state.add(cmd[3])
            return (0, "", "")
        return (1, "", f"unexpected command: {' '.join(cmd)}")

    run.calls = calls
    run.state = state
    run.apparmor = True
    return run


@pytest.fixture
def module(monkeypatch):
    mod = BaselineModule()
    monkeypatch.setattr(mod, "has_tool", lambda tool: True)
    return mod


# ── Audit ─────────────────────────────────────────────────────────────────────

class TestBaselineAudit:
    def test_clean_host(self, module, monkeypatch):
        monkeypatch.setattr(module, "shell", _systemctl())
        assert [(f.id, f.status) for f in module.audit()] == [
            ("baseline.apparmor_enabled", "passed"),
            ("baseline.no_unused_services", "passed"),
        ]

    def test_apparmor_disabled(self, module, monkeypatch):
        run = _systemctl()
        run.apparmor = False
        monkeypatch.setattr(module, "shell", run)
        finding = module.audit()[0]
        assert finding.id == "baseline.apparmor_disabled"
        assert finding.fix_id == "baseline.enable_apparmor"

    def test_apparmor_tools_missing(self, module, monkeypatch):
        monkeypatch.setattr(module, "has_tool", lambda tool: tool != "aa-status")
        monkeypatch.setattr(module, "shell", _systemctl())
        assert module.audit()[0].id == "baseline.apparmor_disabled"

    def test_unused_services_listed(self, module, monkeypatch):
        monkeypatch.setattr(module, "shell", _systemctl(enabled=("cups", "bluetooth")))
        finding = module.audit()[1]
        assert finding.id == "baseline.unused_services"
        assert finding.title == "2 unused services enabled"
        assert finding.description == "Services: cups, bluetooth"


# ── Fixes ─────────────────────────────────────────────────────────────────────

class TestDisableUnused:
    def test_disables_every_enabled_service(self, module, monkeypatch):
        run = _systemctl(enabled=("cups", "avahi-daemon"))
        monkeypatch.setattr(module, "shell", run)
        assert module.fix("baseline.disable_unused").ok
        assert run.state == set()

    def test_failure_reenables_services_already_disabled(self, module, monkeypatch):
        run = _systemctl(enabled=("cups", "avahi-daemon", "bluetooth"), fail_disable=("bluetooth",))
        monkeypatch.setattr(module, "shell", run)

        result = module.fix("baseline.disable_unused")

        assert not result.ok
        assert "bluetooth" in result.error
        assert run.state == {"cups", "avahi-daemon", "bluetooth"}
        reenabled = [cmd[3] for cmd in run.calls if cmd[:3] == ["systemctl", "enable", "--now"]]
        assert reenabled == ["avahi-daemon", "cups"]

    def test_services_cover_desktop_daemons(self):
        assert "cups" in UNUSED_SERVICES
        assert "sshd" not in UNUSED_SERVICES


class TestEnableApparmor:
    def test_reports_kernel_still_disabled(self, module, monkeypatch):
        run = _systemctl()
        run.apparmor = False
        monkeypatch.setattr(module, "shell", run)
        result = module.fix("baseline.enable_apparmor")
        assert not result.ok
        assert "boot parameter" in result.error

    def test_installs_when_missing(self, module, monkeypatch):
        installed = {"aa-status": False}
        monkeypatch.setattr(module, "has_tool", lambda tool: installed.get(tool, True))
        run = _systemctl()

        def shell(cmd, timeout=10, input=None):
            if cmd[:2] == ["apt-get", "update"]:
                run.calls.append(cmd)
                return (0, "", "")
            if cmd[:2] == ["apt-get", "install"]:
                installed["aa-status"] = True
                run.calls.append(cmd)
                return (0, "", "")
            return run(cmd, timeout, input)

        monkeypatch.setattr(module, "shell", shell)

        assert module.fix("baseline.enable_apparmor").ok
        assert [c[:2] for c in run.calls[:2]] == [["apt-get", "update"], ["apt-get", "install"]]
        assert ["systemctl", "enable", "--now", "apparmor"] in run.calls
