"""
Nginx checks.

Checks:
  - a catch-all default_server that drops unknown Host headers (return 444)
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

from vpsaudit.checks.base import BaseModule, Finding, FixResult, FixSpec


_SITES_AVAILABLE = Path("/etc/nginx/sites-available")
_SITES_ENABLED = Path("/etc/nginx/sites-enabled")
_CATCHALL_CONF = _SITES_AVAILABLE / "99-catchall.conf"
_CATCHALL_LINK = _SITES_ENABLED / "99-catchall.conf"
_SSL_DIR = Path("/etc/nginx/ssl")
_SSL_CERT = _SSL_DIR / "default.crt"
_SSL_KEY = _SSL_DIR / "default.key"

_SERVER_START = re.compile(r"\bserver\s*\{")
_DEFAULT_LISTEN = re.compile(r"^\s*listen\s+[^;]*\bdefault_server\b", re.MULTILINE)
_RETURN_444 = re.compile(r"^\s*return\s+444\s*;", re.MULTILINE)

_HTTP_BLOCK = """\
server {
    listen 80 default_server;
    listen [::]:80 default_server;
    server_name _;

    return 444;
}
"""

_HTTPS_BLOCK = f"""
server {{
    listen 443 ssl default_server;
    listen [::]:443 ssl default_server;
    server_name _;

    ssl_certificate {_SSL_CERT};
    ssl_certificate_key {_SSL_KEY};

    return 444;
}}
"""


def has_catchall(config_text: str) -> bool:
    """True if some server block listens as default_server and returns 444."""
    chunks = _SERVER_START.split(config_text)[1:]
    return any(_DEFAULT_LISTEN.search(c) and _RETURN_444.search(c) for c in chunks)


class NginxModule(BaseModule):
    """Default-server hygiene for nginx."""

    name = "nginx"
    title = "Nginx"
    icon = "🌐"
    scan_description = "Checking that nginx drops requests for unknown hostnames."

    requires_tool = "nginx"

    fixes = (
        FixSpec("nginx.add_catchall", "safe",
                "Add a default_server that closes unknown-host connections (444)",
                mutates=(str(_CATCHALL_CONF), str(_CATCHALL_LINK), str(_SSL_CERT), str(_SSL_KEY))),
    )

    def audit(self) -> list[Finding]:
        rc, out, err = self.shell(["nginx", "-T"], timeout=15)
        if rc != 0:
            return [
                self._failed(
                    "nginx.config_invalid",
                    "nginx configuration could not be loaded",
                    severity="medium",
                    description=(err or out).strip().splitlines()[-1:][0] if (err or out).strip() else "",
                    suggestion="Run `nginx -t` and fix the reported error",
                )
            ]

        if has_catchall(out):
            return [self._passed("nginx.catchall_exists", "Catch-all default server is configured")]

        return [
            self._failed(
                "nginx.no_catchall",
                "No catch-all default server",
                severity="medium",
                description="Requests for unknown hostnames are served by the first site",
                suggestion="Add a default_server that returns 444",
                fix_id="nginx.add_catchall",
            )
        ]

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {"nginx.add_catchall": self._fix_add_catchall}

    def revert_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {"nginx.add_catchall": self._reload}

    def _fix_add_catchall(self) -> FixResult:
        content = _HTTP_BLOCK
        if self._ensure_certificate():
            content += _HTTPS_BLOCK

        try:
            _SITES_AVAILABLE.mkdir(parents=True, exist_ok=True)
            _CATCHALL_CONF.write_text(content)
            if _SITES_ENABLED.is_dir() and not (_CATCHALL_LINK.is_symlink() or _CATCHALL_LINK.exists()):
                _CATCHALL_LINK.symlink_to(_CATCHALL_CONF)
        except OSError as e:
            return FixResult.failure(f"Could not write {_CATCHALL_CONF}: {e}")

        rc, out, err = self.shell(["nginx", "-t"])
        if rc != 0:
            return FixResult.failure(f"nginx -t failed: {(err or out).strip()}")

        return self._reload()

    def _ensure_certificate(self) -> bool:
        """Self-signed cert for the HTTPS catch-all. False if none can be made."""
        if _SSL_CERT.exists() and _SSL_KEY.exists():
            return True
        if not self.has_tool("openssl"):
            return False
        try:
            _SSL_DIR.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        rc, _, _ = self.shell(
            ["openssl", "req", "-x509", "-nodes", "-days", "3650", "-newkey", "rsa:2048",
             "-keyout", str(_SSL_KEY), "-out", str(_SSL_CERT), "-subj", "/CN=invalid"],
            timeout=60,
        )
        if rc != 0:
            return False
        _SSL_KEY.chmod(0o600)
        return True

    def _reload(self) -> FixResult:
        if self.has_tool("systemctl"):
            return self._command_fix(["systemctl", "reload", "nginx"])
        return self._command_fix(["nginx", "-s", "reload"])


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    NginxModule,
]
