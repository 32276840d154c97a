"""
Preflight checks: is this host one vpsaudit knows how to harden?

Checks:
  - distribution and release are supported
  - virtualization type (informational)
  - outbound network reachability
  - tools the other modules shell out to
  - well-known plaintext/database ports listening on public addresses

Audit only; nothing here has a fix.
"""

from __future__ import annotations

import ipaddress

from vpsaudit.checks.base import BaseModule, Finding
from vpsaudit.system_info import get_system_info


SUPPORTED_RELEASES: dict[str, tuple[str, ...]] = {
    "debian": ("12", "13"),
    "ubuntu": ("22.04", "24.04"),
}

REACHABILITY_URLS = ("https://www.google.com", "https://www.baidu.com")

# tool → package that provides it
REQUIRED_TOOLS: dict[str, str] = {
    "ss": "iproute2",
    "systemctl": "systemd",
    "apt-get": "apt",
}
OPTIONAL_TOOLS = ("curl", "wget", "openssl")

DANGEROUS_PORTS: dict[int, str] = {
    21: "FTP",
    23: "Telnet",
    25: "SMTP",
    110: "POP3",
    143: "IMAP",
    3306: "MySQL",
    5432: "PostgreSQL",
    6379: "Redis",
    27017: "MongoDB",
}


def parse_listening(ss_output: str) -> list[tuple[str, int]]:
    """
    Extract (address, port) pairs from `ss -tlnH` output.

        LISTEN 0 4096   0.0.0.0:22     0.0.0.0:*
        LISTEN 0 511       [::]:80        [::]:*
        LISTEN 0 128  127.0.0.1%lo:6379   0.0.0.0:*
    """
    result = []
    for line in ss_output.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        local = parts[3]
        address, sep, port = local.rpartition(":")
        if not sep or not port.isdigit():
            continue
        address = address.strip("[]").split("%", 1)[0]
        result.append((address, int(port)))
    return result


def is_public_address(address: str) -> bool:
    """Wildcard and non-loopback binds are reachable from outside."""
    if address in ("*", "0.0.0.0", "::", ""):
        return True
    try:
        return not ipaddress.ip_address(address).is_loopback
    except ValueError:
        return True


class PreflightModule(BaseModule):
    """Host environment and prerequisites."""

    name = "preflight"
    title = "Preflight"
    icon = "🧭"
    scan_description = "Checking the distribution, network and required tools."

    def audit(self) -> list[Finding]:
        findings = [self._audit_os()]
        virt = self._audit_virtualization()
        if virt is not None:
            findings.append(virt)
        findings.append(self._audit_network())
        findings.append(self._audit_tools())
        findings.append(self._audit_ports())
        return findings

    def _audit_os(self) -> Finding:
        info = get_system_info()
        os_id, version = info["os_id"], info["os_version"]
        label = f"{info['os_name']} ({info['os_codename']})" if info["os_codename"] else info["os_name"]

        if version in SUPPORTED_RELEASES.get(os_id, ()):
            return self._passed("preflight.os_supported", "Operating system supported", description=label)
        return self._failed(
            "preflight.os_unsupported",
            "Operating system not supported",
            severity="medium",
            description=f"{label}: fixes are only tested on Debian and Ubuntu LTS",
            suggestion="Use Debian 12/13 or Ubuntu 22.04/24.04",
        )

    def _audit_virtualization(self) -> Finding | None:
        if not self.has_tool("systemd-detect-virt"):
            return None
        _, out, _ = self.shell(["systemd-detect-virt"])
        kind = out.strip() or "none"
        return self._passed("preflight.virtualization", f"Virtualization: {kind}", severity="info")

    def _audit_network(self) -> Finding:
        if self.has_tool("curl"):
            fetch = ["curl", "-s", "-o", "/dev/null", "--max-time", "5"]
        elif self.has_tool("wget"):
            fetch = ["wget", "-q", "--timeout=5", "-O", "/dev/null"]
        else:
            return self._passed(
                "preflight.network_unchecked",
                "Network reachability not checked",
                severity="info",
                description="Neither curl nor wget is installed",
            )

        for url in REACHABILITY_URLS:
            rc, _, _ = self.shell([*fetch, url], timeout=8)
            if rc == 0:
                return self._passed("preflight.network_ok", "External network reachable")

        return self._failed(
            "preflight.network_fail",
            "External network unreachable",
            severity="medium",
            description="Cannot reach external network; package installs will fail",
            suggestion="Check network configuration and DNS",
        )

    def _audit_tools(self) -> Finding:
        missing = [tool for tool in REQUIRED_TOOLS if not self.has_tool(tool)]
        if missing:
            packages = sorted({REQUIRED_TOOLS[tool] for tool in missing})
            return self._failed(
                "preflight.deps_missing",
                f"Required tools missing: {', '.join(missing)}",
                severity="high",
                description="Checks and fixes that shell out to these tools cannot run",
                suggestion=f"apt install {' '.join(packages)}",
            )

        absent = [tool for tool in OPTIONAL_TOOLS if not self.has_tool(tool)]
        note = f"Optional tools missing: {', '.join(absent)}" if absent else ""
        return self._passed("preflight.deps_ok", "Required tools present", description=note)

    def _audit_ports(self) -> Finding:
        rc, out, _ = self.shell(["ss", "-tlnH"])
        listening = parse_listening(out) if rc == 0 else []
        ports = sorted({port for _, port in listening})

        exposed = sorted({
            port for address, port in listening
            if port in DANGEROUS_PORTS and is_public_address(address)
        })
        if not exposed:
            return self._passed(
                "preflight.ports_ok",
                f"{len(ports)} listening ports",
                description="No commonly dangerous ports exposed",
            )

        named = ", ".join(f"{port} ({DANGEROUS_PORTS[port]})" for port in exposed)
        return self._failed(
            "preflight.dangerous_ports",
            f"{len(exposed)} sensitive ports listening publicly",
            severity="medium",
            description=f"Exposed: {named}",
            suggestion="Bind these services to 127.0.0.1 or deny the ports in ufw",
        )


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    PreflightModule,
]
