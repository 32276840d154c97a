"""
Linux host detection: distribution, kernel, management channel.
Every check module and the safety guard import from here. Must be rock-solid.
"""

import ipaddress
import os
import platform
import re
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path
from typing import Any


_OS_RELEASE = Path("/etc/os-release")
_SSHD_CONFIG = Path("/etc/ssh/sshd_config")
_DEFAULT_SSH_PORT = 22


def _run(cmd: list[str], timeout: int = 5) -> str:
    """Run a command and return stdout. Returns '' on any error."""
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        return result.stdout.strip()
    except Exception:
        return ""


@lru_cache(maxsize=1)
def get_system_info() -> dict[str, Any]:
    """
    Return a dict describing this host.

    Keys:
        os_id          "ubuntu" | "debian" | "unknown"
        os_version     "24.04"
        os_name        "Ubuntu 24.04.1 LTS"
        os_codename    "noble"
        kernel         "6.8.0-45-generic"
        architecture   "x86_64" | "aarch64"
        hostname       "web-01"
        is_root        True | False
        has_apt        True | False
        has_systemd    True | False
    """
    release = _parse_os_release(_OS_RELEASE)

    return {
        "os_id": release.get("ID", "unknown"),
        "os_version": release.get("VERSION_ID", ""),
        "os_name": release.get("PRETTY_NAME", platform.system()),
        "os_codename": release.get("VERSION_CODENAME", ""),
        "kernel": platform.release(),
        "architecture": platform.machine(),
        "hostname": platform.node(),
        "is_root": hasattr(os, "geteuid") and os.geteuid() == 0,
        "has_apt": shutil.which("apt-get") is not None,
        "has_systemd": shutil.which("systemctl") is not None,
    }


@lru_cache(maxsize=1)
def get_ssh_port() -> int:
    """
    Return the port sshd listens on.

    Prefers the effective config from `sshd -T` and falls back to the
    first Port directive in sshd_config, then 22.
    """
    effective = _run(["sshd", "-T"])
    for line in effective.splitlines():
        if line.lower().startswith("port "):
            port = _to_port(line.split()[1])
            if port:
                return port

    return _port_from_config(_SSHD_CONFIG) or _DEFAULT_SSH_PORT


def get_operator_address(environ: dict[str, str] | None = None) -> str | None:
    """
    Return the IP address the operator's SSH session originates from.

    Reads SSH_CONNECTION ("client_ip client_port server_ip server_port"),
    then SSH_CLIENT. Returns None when not in an SSH session or the value
    is not a valid address; the caller must cope without one.
    """
    env = os.environ if environ is None else environ
    for var in ("SSH_CONNECTION", "SSH_CLIENT"):
        raw = env.get(var, "").split()
        if not raw:
            continue
        try:
            return str(ipaddress.ip_address(raw[0]))
        except ValueError:
            continue
    return None


# ── Internal helpers ──────────────────────────────────────────────────────────

def _parse_os_release(path: Path) -> dict[str, str]:
    """Parse KEY=value lines of os-release into a dict (quotes stripped)."""
    try:
        text = path.read_text()
    except OSError:
        return {}

    data: dict[str, str] = {}
    for line in text.splitlines():
        if "=" not in line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        data[key.strip()] = value.strip().strip('"').strip("'")
    return data


def _port_from_config(path: Path) -> int | None:
    try:
        text = path.read_text()
    except OSError:
        return None

    for line in text.splitlines():
        m = re.match(r"^\s*Port\s+(\d+)", line, re.IGNORECASE)
        if m:
            return _to_port(m.group(1))
    return None


def _to_port(raw: str) -> int | None:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        return None
    return port if 0 < port < 65536 else None
