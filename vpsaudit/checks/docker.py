"""
Docker checks.

Checks:
  - published ports bound to every interface
  - privileged containers
  - containers running as root
  - containers with added capabilities
  - daemon.json: live-restore, no-new-privileges
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Callable

from vpsaudit.checks.base import BaseModule, Finding, FixResult, FixSpec


_DAEMON_JSON = Path("/etc/docker/daemon.json")
_TEMPLATE_DIR = Path("/etc/vpsaudit/templates/docker")
_COMPOSE_TEMPLATE = _TEMPLATE_DIR / "docker-compose.proxy.yml"
_TRAEFIK_TEMPLATE = _TEMPLATE_DIR / "traefik" / "traefik.yml"

_PUBLIC_BIND = re.compile(r"(?:0\.0\.0\.0|\[::\]|::):(\d+)->")

_COMPOSE_CONTENT = """\
# vpsaudit generated template: bind containers to localhost only and
# publish them through a reverse proxy.

services:
  # app:
  #   image: your-app:latest
  #   user: "1000:1000"
  #   security_opt:
  #     - no-new-privileges:true
  #   cap_drop:
  #     - ALL
  #   ports:
  #     - "127.0.0.1:8080:8080"
  #   networks:
  #     - internal
  #   labels:
  #     - "traefik.enable=true"
  #     - "traefik.http.routers.app.rule=Host(`app.example.com`)"
  #     - "traefik.http.routers.app.tls.certresolver=letsencrypt"

  traefik:
    image: traefik:v2.10
    restart: unless-stopped
    security_opt:
      - no-new-privileges:true
    ports:
      - "80:80"
      - "443:443"
    volumes:
      - /var/run/docker.sock:/var/run/docker.sock:ro
      - ./traefik/traefik.yml:/etc/traefik/traefik.yml:ro
      - ./traefik/acme.json:/acme.json
    networks:
      - proxy

networks:
  proxy:
    external: true
  internal:
    internal: true
"""

_TRAEFIK_CONTENT = """\
api:
  dashboard: false

entryPoints:
  web:
    address: ":80"
    http:
      redirections:
        entryPoint:
          to: websecure
          scheme: https
  websecure:
    address: ":443"

providers:
  docker:
    endpoint: "unix:///var/run/docker.sock"
    exposedByDefault: false
    network: proxy

certificatesResolvers:
  letsencrypt:
    acme:
      email: admin@example.com
      storage: /acme.json
      httpChallenge:
        entryPoint: web
"""


# ── Output parsing ────────────────────────────────────────────────────────────

def parse_exposed_ports(ps_output: str) -> list[int]:
    """Host ports published on all interfaces in `docker ps --format {{.Ports}}`."""
    return sorted({int(port) for port in _PUBLIC_BIND.findall(ps_output)})


def classify_containers(inspect: list[dict]) -> dict[str, list[str]]:
    """
    Split `docker inspect` output into privileged, root and cap-added containers.

    Returns {"privileged": [...], "root": [...], "caps": [...], "all": [...]}
    with container names (leading slash stripped).
    """
    result: dict[str, list[str]] = {"privileged": [], "root": [], "caps": [], "all": []}
    for container in inspect:
        name = container.get("Name", "").lstrip("/") or container.get("Id", "")[:12]
        host = container.get("HostConfig") or {}
        config = container.get("Config") or {}

        result["all"].append(name)
        if host.get("Privileged"):
            result["privileged"].append(name)
        if config.get("User", "") in ("", "root", "0", "0:0"):
            result["root"].append(name)
        if host.get("CapAdd"):
            result["caps"].append(name)
    return result


def _read_daemon_config() -> dict | None:
    """daemon.json as a dict: {} when absent or blank, None when unreadable."""
    try:
        text = _DAEMON_JSON.read_text()
    except FileNotFoundError:
        return {}
    except OSError:
        return None
    if not text.strip():
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class DockerModule(BaseModule):
    """Container runtime exposure and daemon hardening."""

    name = "docker"
    title = "Docker"
    icon = "🐳"
    scan_description = "Inspecting running containers and Docker daemon settings."

    requires_tool = "docker"

    fixes = (
        FixSpec("docker.generate_proxy_template", "safe",
                "Write a reverse proxy compose template binding services to localhost",
                mutates=(str(_COMPOSE_TEMPLATE), str(_TRAEFIK_TEMPLATE))),
        FixSpec("docker.enable_live_restore", "safe",
                "Set live-restore in daemon.json", mutates=(str(_DAEMON_JSON),)),
        FixSpec("docker.enable_no_new_privileges", "safe",
                "Set no-new-privileges in daemon.json", mutates=(str(_DAEMON_JSON),)),
    )

    def audit(self) -> list[Finding]:
        rc, _, _ = self.shell(["docker", "info", "--format", "{{.ServerVersion}}"])
        if rc != 0:
            return [
                self._passed(
                    "docker.not_running",
                    "Docker daemon is not running",
                    description="docker is installed but the daemon did not answer (skipped)",
                )
            ]

        findings = [self._audit_exposed_ports()]
        findings.extend(self._audit_containers())
        findings.extend(self._audit_daemon_settings())
        return findings

    def _audit_exposed_ports(self) -> Finding:
        rc, out, _ = self.shell(["docker", "ps", "--format", "{{.Ports}}"])
        ports = parse_exposed_ports(out) if rc == 0 else []
        if not ports:
            return self._passed("docker.no_exposed_ports", "No container ports published on all interfaces")
        port_list = ", ".join(str(p) for p in ports)
        return self._failed(
            "docker.exposed_ports",
            f"{len(ports)} container ports exposed on all interfaces",
            severity="medium",
            description=f"Exposed ports: {port_list}. Docker bypasses ufw for published ports.",
            suggestion="Bind to 127.0.0.1 and publish through a reverse proxy",
            fix_id="docker.generate_proxy_template",
        )

    def _inspect_running(self) -> list[dict]:
        rc, out, _ = self.shell(["docker", "ps", "-q"])
        ids = out.split() if rc == 0 else []
        if not ids:
            return []
        rc, out, _ = self.shell(["docker", "inspect", *ids], timeout=30)
        if rc != 0:
            return []
        try:
            data = json.loads(out)
        except json.JSONDecodeError:
            return []
        return data if isinstance(data, list) else []

    def _audit_containers(self) -> list[Finding]:
        groups = classify_containers(self._inspect_running())
        findings = []

        privileged = groups["privileged"]
        if privileged:
            findings.append(self._failed(
                "docker.privileged_containers",
                f"{len(privileged)} privileged containers running",
                severity="high",
                description=f"Privileged: {', '.join(privileged)}",
                suggestion="Remove --privileged and grant specific capabilities instead",
            ))
        else:
            findings.append(self._passed("docker.no_privileged", "No privileged containers"))

        root, total = groups["root"], len(groups["all"])
        if root and len(root) == total:
            findings.append(self._failed(
                "docker.all_root_containers",
                f"All containers running as root ({total})",
                severity="medium",
                description=f"Running as root: {', '.join(root)}",
                suggestion="Set USER in the Dockerfile or user: in compose (see the proxy template)",
                fix_id="docker.generate_proxy_template",
            ))
        elif root:
            findings.append(self._failed(
                "docker.some_root_containers",
                f"{len(root)} of {total} containers running as root",
                severity="low",
                description=f"Running as root: {', '.join(root)}",
                suggestion="Set USER in the Dockerfile or user: in compose (see the proxy template)",
                fix_id="docker.generate_proxy_template",
            ))
        else:
            findings.append(self._passed("docker.no_root_containers", "No containers running as root"))

        caps = groups["caps"]
        if caps:
            findings.append(self._failed(
                "docker.containers_with_caps",
                f"{len(caps)} containers with added capabilities",
                severity="medium",
                description=f"Containers: {', '.join(caps)}",
                suggestion="Review whether each added capability is necessary",
            ))
        else:
            findings.append(self._passed("docker.no_extra_caps", "No containers with added capabilities"))

        return findings

    def _audit_daemon_settings(self) -> list[Finding]:
        daemon = _read_daemon_config() or {}
        findings = []

        if daemon.get("live-restore") is not True:
            findings.append(self._failed(
                "docker.no_live_restore",
                "Docker live-restore not enabled",
                severity="low",
                description="Containers stop while the Docker daemon restarts",
                suggestion="Enable live-restore in daemon.json",
                fix_id="docker.enable_live_restore",
            ))

        if daemon.get("no-new-privileges") is not True:
            findings.append(self._failed(
                "docker.no_new_privileges_disabled",
                "Docker no-new-privileges not set as default",
                severity="medium",
                description="Containers can gain new privileges by default",
                suggestion="Enable no-new-privileges in daemon.json",
                fix_id="docker.enable_no_new_privileges",
            ))

        if not findings:
            findings.append(self._passed("docker.daemon_secure", "Docker daemon security settings OK"))
        return findings

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {
            "docker.generate_proxy_template": self._fix_proxy_template,
            "docker.enable_live_restore": lambda: self._set_daemon_option("live-restore"),
            "docker.enable_no_new_privileges": lambda: self._set_daemon_option("no-new-privileges"),
        }

    def _fix_proxy_template(self) -> FixResult:
        try:
            _TRAEFIK_TEMPLATE.parent.mkdir(parents=True, exist_ok=True)
            _COMPOSE_TEMPLATE.write_text(_COMPOSE_CONTENT)
            _TRAEFIK_TEMPLATE.write_text(_TRAEFIK_CONTENT)
        except OSError as e:
            return FixResult.failure(f"Could not write proxy template: {e}")
        return FixResult.success()

    def _set_daemon_option(self, key: str) -> FixResult:
        """Set key to true in daemon.json. Docker must be restarted to pick it up."""
        daemon = _read_daemon_config()
        if daemon is None:
            return FixResult.failure(f"{_DAEMON_JSON} is not valid JSON, refusing to rewrite it")

        daemon[key] = True
        try:
            _DAEMON_JSON.parent.mkdir(parents=True, exist_ok=True)
            _DAEMON_JSON.write_text(json.dumps(daemon, indent=2) + "\n")
        except OSError as e:
            return FixResult.failure(f"Could not write {_DAEMON_JSON}: {e}")
        return FixResult.success()


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    DockerModule,
]
