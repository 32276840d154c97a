"""
Cloudflare Tunnel (cloudflared) checks.

Checks:
  - tunnel runs as a systemd service, not a hand-started process
  - config.yml exists and its ingress is safe:
      * ends in an http_status catch-all
      * no origin has noTLSVerify: true
      * originRequest settings are present
  - at least one tunnel exists

Skipped entirely when cloudflared is not installed.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

from vpsaudit.checks.base import BaseModule, Finding, FixResult, FixSpec


_CONFIG_DIR = Path("/etc/cloudflared")
_CONFIG = _CONFIG_DIR / "config.yml"
_USER_CONFIG = Path.home() / ".cloudflared" / "config.yml"
_SERVICE_UNIT = Path("/etc/systemd/system/cloudflared.service")
_TEMPLATE_DIR = Path("/etc/vpsaudit/templates/cloudflared")

SERVICE_NAMES = ("cloudflared", "cloudflared-tunnel")

_CATCHALL = re.compile(r"^\s*-?\s*service:\s*[\"']?http_status:\d{3}", re.MULTILINE)
_NO_TLS_VERIFY = re.compile(r"^\s*noTLSVerify:\s*true\b", re.MULTILINE | re.IGNORECASE)
_ORIGIN_REQUEST = re.compile(r"^\s*originRequest:", re.MULTILINE)
_TUNNEL_ID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\s", re.IGNORECASE)

_CONFIG_TEMPLATE = """\
# vpsaudit generated template: Cloudflare Tunnel configuration.
#
# 1. cloudflared tunnel create my-tunnel
# 2. Copy this file to /etc/cloudflared/config.yml
# 3. Replace <TUNNEL_ID> and adjust the ingress rules
# 4. cloudflared service install

tunnel: <TUNNEL_ID>
credentials-file: /etc/cloudflared/<TUNNEL_ID>.json

originRequest:
  connectTimeout: 30s
  tcpKeepAlive: 30s
  noTLSVerify: false

ingress:
  - hostname: app.example.com
    service: http://localhost:8080

  # - hostname: ssh.example.com
  #   service: ssh://localhost:22

  # Catch-all, must be last
  - service: http_status:404
"""

_SERVICE_TEMPLATE = """\
# vpsaudit generated template. Copy to /etc/systemd/system/cloudflared.service
[Unit]
Description=Cloudflare Tunnel
After=network-online.target
Wants=network-online.target

[Service]
Type=notify
ExecStart=/usr/bin/cloudflared tunnel --config /etc/cloudflared/config.yml run
Restart=on-failure
RestartSec=5s
User=cloudflared
Group=cloudflared
NoNewPrivileges=yes
ProtectSystem=strict
ProtectHome=read-only
PrivateTmp=yes
PrivateDevices=yes
ProtectKernelTunables=yes
ProtectKernelModules=yes
ProtectControlGroups=yes

[Install]
WantedBy=multi-user.target
"""

TEMPLATES = {
    "config.yml.example": _CONFIG_TEMPLATE,
    "cloudflared.service.example": _SERVICE_TEMPLATE,
}


def audit_ingress(config_text: str) -> list[str]:
    """Return human-readable problems with a cloudflared config, in a fixed order."""
    issues = []
    if not _CATCHALL.search(config_text):
        issues.append("no http_status catch-all ingress rule")
    if _NO_TLS_VERIFY.search(config_text):
        issues.append("noTLSVerify: true disables origin certificate checks")
    if not _ORIGIN_REQUEST.search(config_text):
        issues.append("no originRequest settings")
    return issues


def parse_tunnel_list(output: str) -> list[str]:
    """Tunnel names from `cloudflared tunnel list` (ID NAME CREATED CONNECTIONS)."""
    names = []
    for line in output.splitlines():
        if _TUNNEL_ID.match(line):
            parts = line.split()
            names.append(parts[1] if len(parts) > 1 else parts[0])
    return names


def find_config() -> Path | None:
    for path in (_CONFIG, _USER_CONFIG):
        if path.is_file():
            return path
    try:
        return next(iter(sorted(_CONFIG_DIR.glob("*.yml"))), None)
    except OSError:
        return None


class CloudflaredModule(BaseModule):
    """Cloudflare Tunnel service and ingress configuration."""

    name = "cloudflared"
    title = "Cloudflare Tunnel"
    icon = "🚇"
    scan_description = "Checking the cloudflared service, tunnels and ingress rules."

    requires_tool = "cloudflared"

    fixes = (
        FixSpec("cloudflared.generate_config", "safe",
                "Write a hardened config.yml and service unit template",
                mutates=tuple(str(_TEMPLATE_DIR / name) for name in TEMPLATES)),
        FixSpec("cloudflared.setup_service", "confirm_required",
                "Install cloudflared as a systemd service and start it",
                mutates=(str(_SERVICE_UNIT),)),
    )

    def audit(self) -> list[Finding]:
        return [self._audit_service(), self._audit_config(), self._audit_tunnels()]

    def service_active(self) -> bool:
        for service in SERVICE_NAMES:
            rc, _, _ = self.shell(["systemctl", "is-active", "--quiet", service])
            if rc == 0:
                return True
        rc, out, _ = self.shell(
            ["systemctl", "list-units", "--type=service", "--state=active",
             "--no-legend", "--plain", "cloudflared@*"]
        )
        return rc == 0 and bool(out.strip())

    def tunnel_process_running(self) -> bool:
        rc, _, _ = self.shell(["pgrep", "-f", "cloudflared.*tunnel"])
        return rc == 0

    def _audit_service(self) -> Finding:
        if self.service_active():
            return self._passed("cloudflared.service_active", "cloudflared service is active")
        if self.tunnel_process_running():
            return self._failed(
                "cloudflared.manual_tunnel",
                "Tunnel running outside systemd",
                severity="low",
                description="A cloudflared tunnel process is running but no service manages it",
                suggestion="Install it as a service so it restarts and survives reboots",
                fix_id="cloudflared.setup_service",
            )
        return self._failed(
            "cloudflared.service_inactive",
            "cloudflared service not running",
            severity="medium",
            description="No active Cloudflare tunnel detected",
            suggestion="Start it: systemctl enable --now cloudflared",
        )

    def _audit_config(self) -> Finding:
        config = find_config()
        if config is None:
            return self._failed(
                "cloudflared.no_config",
                "cloudflared configuration not found",
                severity="medium",
                description=f"No config.yml in {_CONFIG_DIR} or ~/.cloudflared",
                suggestion="Create one from the generated template",
                fix_id="cloudflared.generate_config",
            )

        try:
            issues = audit_ingress(config.read_text(errors="replace"))
        except OSError as e:
            return self._failed(
                "cloudflared.config_unreadable",
                "cloudflared configuration unreadable",
                severity="low",
                description=f"{config}: {e}",
                suggestion="Re-run vpsaudit as root",
            )

        if not issues:
            return self._passed("cloudflared.config_ok", "cloudflared configuration OK", description=str(config))
        return self._failed(
            "cloudflared.config_issues",
            f"cloudflared configuration has {len(issues)} security issues",
            severity="medium",
            description=f"{config}: {'; '.join(issues)}",
            suggestion="Compare with the generated template and fix the ingress rules",
            fix_id="cloudflared.generate_config",
        )

    def _audit_tunnels(self) -> Finding:
        rc, out, _ = self.shell(["cloudflared", "tunnel", "list"], timeout=20)
        tunnels = parse_tunnel_list(out) if rc == 0 else []
        if tunnels:
            return self._passed(
                "cloudflared.tunnels_configured",
                f"{len(tunnels)} Cloudflare tunnels configured",
                description=", ".join(tunnels),
            )
        return self._failed(
            "cloudflared.no_tunnels",
            "No Cloudflare tunnels configured",
            severity="low",
            description="cloudflared tunnel list returned no tunnels",
            suggestion="Create one: cloudflared tunnel create <name>",
        )

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {
            "cloudflared.generate_config": self._fix_generate_config,
            "cloudflared.setup_service": self._fix_setup_service,
        }

    def revert_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {"cloudflared.setup_service": self._revert_setup_service}

    def _fix_generate_config(self) -> FixResult:
        try:
            _TEMPLATE_DIR.mkdir(parents=True, exist_ok=True)
            for name, content in TEMPLATES.items():
                (_TEMPLATE_DIR / name).write_text(content)
        except OSError as e:
            return FixResult.failure(f"Could not write cloudflared templates: {e}")
        return FixResult.success()

    def _fix_setup_service(self) -> FixResult:
        if find_config() is None:
            return FixResult.failure("No cloudflared config.yml; generate and edit one first")

        result = self._command_fix(["cloudflared", "service", "install"])
        if not result.ok:
            return result
        result = self._command_fix(["systemctl", "enable", "--now", "cloudflared"])
        if not result.ok:
            return result
        if not self.service_active():
            return FixResult.failure("Service installed but not active; see journalctl -u cloudflared")
        return FixResult.success()

    def _revert_setup_service(self) -> FixResult:
        # the unit file is restored from its snapshot; stop whatever was started
        self.shell(["systemctl", "disable", "--now", "cloudflared"])
        return self._command_fix(["systemctl", "daemon-reload"])


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    CloudflaredModule,
]
