"""
Tests for checks/cloudflared.py.

Covers the config/tunnel-list parsers, the audit with a scripted shell
and temp config paths, and the template/service fixes.
"""

import pytest

import vpsaudit.checks.cloudflared as cf_mod
from vpsaudit.checks.cloudflared import CloudflaredModule, audit_ingress, parse_tunnel_list


GOOD_CONFIG = """\
tunnel: 6ff42ae2-765d-4adf-8112-31c55c1551ef
credentials-file: /etc/cloudflared/6ff42ae2-765d-4adf-8112-31c55c1551ef.json
originRequest:
  connectTimeout: 30s
ingress:
  - hostname: app.example.com
    service: http://localhost:8080
  - service: http_status:404
"""

LOOSE_CONFIG = """\
tunnel: 6ff42ae2-765d-4adf-8112-31c55c1551ef
ingress:
  - hostname: app.example.com
    service: https://localhost:8443
    originRequest:
      noTLSVerify: true
"""

TUNNEL_LIST = """\
You can obtain more detailed information for each tunnel with `cloudflared tunnel info <name/uuid>`
ID                                   NAME     CREATED              CONNECTIONS
6ff42ae2-765d-4adf-8112-31c55c1551ef web-01   2026-01-10T09:12:44Z 2xAMS, 2xFRA
1b9c1c4e-4a3f-4b4e-9e0c-2f6a9d6a1c11 staging  2026-03-02T17:01:05Z
"""


# ── Helpers ───────────────────────────────────────────────────────────────────

def _runner(responses):
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
def config_dir(tmp_path, monkeypatch):
    conf_dir = tmp_path / "cloudflared"
    conf_dir.mkdir()
    monkeypatch.setattr(cf_mod, "_CONFIG_DIR", conf_dir)
    monkeypatch.setattr(cf_mod, "_CONFIG", conf_dir / "config.yml")
    monkeypatch.setattr(cf_mod, "_USER_CONFIG", tmp_path / "home" / ".cloudflared" / "config.yml")
    monkeypatch.setattr(cf_mod, "_TEMPLATE_DIR", tmp_path / "templates" / "cloudflared")
    return conf_dir


@pytest.fixture
def module(monkeypatch):
    mod = CloudflaredModule()
    monkeypatch.setattr(mod, "has_tool", lambda tool: True)
    return mod


# ── Parsing ───────────────────────────────────────────────────────────────────

class TestAuditIngress:
    def test_hardened_config(self):
        assert audit_ingress(GOOD_CONFIG) == []

    def test_every_issue(self):
        assert audit_ingress(LOOSE_CONFIG) == [
            "no http_status catch-all ingress rule",
            "noTLSVerify: true disables origin certificate checks",
        ]

    def test_missing_origin_request(self):
        text = "ingress:\n  - service: http_status:404\n"
        assert audit_ingress(text) == ["no originRequest settings"]


class TestParseTunnelList:
    def test_names(self):
        assert parse_tunnel_list(TUNNEL_LIST) == ["web-01", "staging"]

    def test_no_tunnels(self):
        assert parse_tunnel_list("ID NAME CREATED CONNECTIONS\n") == []


# ── Audit ─────────────────────────────────────────────────────────────────────

class TestCloudflaredAudit:
    def test_healthy_tunnel(self, module, monkeypatch, config_dir):
        (config_dir / "config.yml").write_text(GOOD_CONFIG)
        monkeypatch.setattr(module, "shell", _runner({
            ("systemctl", "is-active", "--quiet", "cloudflared"): (0, "", ""),
            ("cloudflared", "tunnel", "list"): (0, TUNNEL_LIST, ""),
        }))
        service, config, tunnels = module.audit()

        assert service.id == "cloudflared.service_active"
        assert config.id == "cloudflared.config_ok"
        assert tunnels.title == "2 Cloudflare tunnels configured"

    def test_manual_tunnel_offers_service_install(self, module, monkeypatch, config_dir):
        monkeypatch.setattr(module, "shell", _runner({
            ("systemctl", "list-units"): (0, "", ""),
            ("pgrep",): (0, "4242\n", ""),
        }))
        service = module.audit()[0]
        assert service.id == "cloudflared.manual_tunnel"
        assert service.fix_id == "cloudflared.setup_service"

    def test_templated_unit_counts_as_active(self, module, monkeypatch, config_dir):
        monkeypatch.setattr(module, "shell", _runner({
            ("systemctl", "list-units"): (0, "cloudflared@web.service loaded active running Tunnel\n", ""),
        }))
        assert module.audit()[0].id == "cloudflared.service_active"

    def test_nothing_running(self, module, monkeypatch, config_dir):
        monkeypatch.setattr(module, "shell", _runner({}))
        service, config, tunnels = module.audit()
        assert service.id == "cloudflared.service_inactive"
        assert service.fix_id is None
        assert config.id == "cloudflared.no_config"
        assert config.fix_id == "cloudflared.generate_config"
        assert tunnels.id == "cloudflared.no_tunnels"

    def test_insecure_config_in_any_yml(self, module, monkeypatch, config_dir):
        (config_dir / "web.yml").write_text(LOOSE_CONFIG)
        monkeypatch.setattr(module, "shell", _runner({}))
        config = module.audit()[1]
        assert config.id == "cloudflared.config_issues"
        assert "noTLSVerify" in config.description
        assert config.description.startswith(str(config_dir / "web.yml"))

    def test_skipped_when_not_installed(self, monkeypatch):
        module = CloudflaredModule()
        monkeypatch.setattr(module, "has_tool", lambda tool: False)
        (finding,) = module.run_audit()
        assert finding.id == "cloudflared.not_installed"
        assert not finding.failed


# ── Fixes ─────────────────────────────────────────────────────────────────────

class TestCloudflaredFixes:
    def test_generate_config_writes_templates(self, module, config_dir, tmp_path):
        assert module.fix("cloudflared.generate_config").ok
        template = (tmp_path / "templates" / "cloudflared" / "config.yml.example").read_text()
        assert audit_ingress(template) == []
        assert (tmp_path / "templates" / "cloudflared" / "cloudflared.service.example").exists()

    def test_setup_service_needs_config(self, module, monkeypatch, config_dir):
        run = _runner({})
        monkeypatch.setattr(module, "shell", run)
        result = module.fix("cloudflared.setup_service")
        assert not result.ok
        assert run.calls == []

    def test_setup_service_installs_and_starts(self, module, monkeypatch, config_dir):
        (config_dir / "config.yml").write_text(GOOD_CONFIG)
        run = _runner({
            ("cloudflared", "service", "install"): (0, "", ""),
            ("systemctl", "enable", "--now", "cloudflared"): (0, "", ""),
            ("systemctl", "is-active", "--quiet", "cloudflared"): (0, "", ""),
        })
        monkeypatch.setattr(module, "shell", run)

        assert module.fix("cloudflared.setup_service").ok
        assert run.calls[:2] == [
            ["cloudflared", "service", "install"],
            ["systemctl", "enable", "--now", "cloudflared"],
        ]

    def test_setup_service_fails_when_unit_stays_down(self, module, monkeypatch, config_dir):
        (config_dir / "config.yml").write_text(GOOD_CONFIG)
        monkeypatch.setattr(module, "shell", _runner({
            ("cloudflared", "service", "install"): (0, "", ""),
            ("systemctl", "enable"): (0, "", ""),
            ("systemctl", "list-units"): (0, "", ""),
        }))
        result = module.fix("cloudflared.setup_service")
        assert not result.ok
        assert "journalctl" in result.error

    def test_revert_stops_service_and_reloads(self, module, monkeypatch):
        run = _runner({("systemctl",): (0, "", "")})
        monkeypatch.setattr(module, "shell", run)
        assert module.revert("cloudflared.setup_service").ok
        assert run.calls == [
            ["systemctl", "disable", "--now", "cloudflared"],
            ["systemctl", "daemon-reload"],
        ]

    def test_service_unit_declared_for_rollback(self):
        specs = {s.fix_id: s for s in CloudflaredModule.fixes}
        assert specs["cloudflared.setup_service"].danger == "confirm_required"
        assert specs["cloudflared.setup_service"].mutates == ("/etc/systemd/system/cloudflared.service",)
