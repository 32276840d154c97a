"""
Alert hook checks.

Checks:
  - alerts.json exists and names a webhook URL or an email address
  - the host can actually deliver: curl for webhooks, mail/sendmail/msmtp for email

setup_config writes an alerts.json skeleton and the hook scripts that read
it (SSH login, firewall change and service-down monitors).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

from vpsaudit.checks.base import APT_LOCKS, BaseModule, Finding, FixResult, FixSpec


_ALERTS_CONFIG = Path("/etc/vpsaudit/alerts.json")
_TEMPLATE_DIR = Path("/etc/vpsaudit/templates/alerts")

MAIL_TOOLS = ("mail", "sendmail", "msmtp")

DEFAULT_ALERTS_CONFIG = {
    "webhook_url": "",
    "email": "",
    "events": {
        "ssh_login_failure": True,
        "firewall_change": True,
        "service_restart": True,
        "security_audit": True,
    },
    "throttle_minutes": 5,
}

_ALERT_LIB = """\
#!/bin/bash
# vpsaudit alert library. Source it from monitoring scripts:
#   source /etc/vpsaudit/templates/alerts/alert-lib.sh
#   vpsaudit_alert "Title" "Message" warning

VPSAUDIT_ALERTS_CONFIG="/etc/vpsaudit/alerts.json"

vpsaudit_alert_load_config() {
    WEBHOOK_URL=""; ALERT_EMAIL=""; THROTTLE_MINUTES=5
    [[ -f "$VPSAUDIT_ALERTS_CONFIG" ]] || return 0
    WEBHOOK_URL=$(jq -r '.webhook_url // empty' "$VPSAUDIT_ALERTS_CONFIG")
    ALERT_EMAIL=$(jq -r '.email // empty' "$VPSAUDIT_ALERTS_CONFIG")
    THROTTLE_MINUTES=$(jq -r '.throttle_minutes // 5' "$VPSAUDIT_ALERTS_CONFIG")
}

vpsaudit_alert_webhook() {
    local title="$1" message="$2" severity="${3:-info}" color
    [[ -n "$WEBHOOK_URL" ]] || return 0
    case "$severity" in
        critical) color="#FF0000" ;;
        warning)  color="#FFA500" ;;
        *)        color="#00FF00" ;;
    esac
    # Slack-compatible attachment; jq does the escaping
    jq -n --arg color "$color" --arg title "$title" --arg text "$message" \\
          --arg host "$(hostname)" --arg time "$(date -Iseconds)" \\
        '{attachments: [{color: $color, title: $title, text: $text,
          fields: [{title: "Host", value: $host, short: true},
                   {title: "Time", value: $time, short: true}]}]}' |
        curl -s -X POST -H "Content-Type: application/json" -d @- "$WEBHOOK_URL" >/dev/null
}

vpsaudit_alert_email() {
    local subject="$1" body="$2"
    [[ -n "$ALERT_EMAIL" ]] || return 0
    body="$body

Host: $(hostname)
Time: $(date)"
    if command -v mail >/dev/null; then
        printf '%s\\n' "$body" | mail -s "[vpsaudit] $subject" "$ALERT_EMAIL"
    elif command -v msmtp >/dev/null; then
        printf 'Subject: [vpsaudit] %s\\n\\n%s\\n' "$subject" "$body" | msmtp "$ALERT_EMAIL"
    fi
}

vpsaudit_alert() {
    local title="$1" message="$2" severity="${3:-info}"
    vpsaudit_alert_load_config

    local stamp="/tmp/vpsaudit-alert-$(printf '%s' "$title" | md5sum | cut -d' ' -f1)"
    if [[ -f "$stamp" ]]; then
        local elapsed=$(( $(date +%s) - $(cat "$stamp") ))
        (( elapsed < THROTTLE_MINUTES * 60 )) && return 0
    fi

    vpsaudit_alert_webhook "$title" "$message" "$severity"
    vpsaudit_alert_email "$title" "$message"
    date +%s > "$stamp"
}
"""

_SSH_MONITOR = """\
#!/bin/bash
# SSH login monitor. Add to /etc/pam.d/sshd:
#   session optional pam_exec.so /etc/vpsaudit/templates/alerts/ssh-login-monitor.sh
source /etc/vpsaudit/templates/alerts/alert-lib.sh

case "${PAM_TYPE:-}" in
    open_session)
        vpsaudit_alert "SSH login: ${PAM_USER:-unknown}" \\
            "User '${PAM_USER:-unknown}' logged in from ${PAM_RHOST:-unknown}" info
        ;;
esac
"""

_UFW_MONITOR = """\
#!/bin/bash
# Firewall change monitor. Cron: */10 * * * * /etc/vpsaudit/templates/alerts/ufw-monitor.sh
source /etc/vpsaudit/templates/alerts/alert-lib.sh

RULES="/etc/ufw/user.rules"
STATE="/var/lib/vpsaudit/ufw-rules.sha256"

current=$(sha256sum "$RULES" 2>/dev/null | cut -d' ' -f1)
previous=$(cat "$STATE" 2>/dev/null || true)

if [[ -n "$previous" && "$current" != "$previous" ]]; then
    vpsaudit_alert "Firewall rules changed" "UFW rules were modified. Review the change." warning
fi
mkdir -p "$(dirname "$STATE")"
echo "$current" > "$STATE"
"""

_SERVICE_MONITOR = """\
#!/bin/bash
# Critical service monitor. Cron: */5 * * * * /etc/vpsaudit/templates/alerts/service-monitor.sh
source /etc/vpsaudit/templates/alerts/alert-lib.sh

for service in ssh ufw docker nginx cloudflared; do
    if systemctl is-enabled "$service" >/dev/null 2>&1 && ! systemctl is-active --quiet "$service"; then
        vpsaudit_alert "Service down: $service" "Enabled service '$service' is not running" critical
    fi
done
"""

_README = """\
# Alert hooks (vpsaudit)

1. Edit /etc/vpsaudit/alerts.json and set `webhook_url` (Slack, Discord,
   or any endpoint accepting a Slack-style JSON body) and/or `email`.
2. Install the monitors you want:

       # SSH logins, in /etc/pam.d/sshd
       session optional pam_exec.so /etc/vpsaudit/templates/alerts/ssh-login-monitor.sh

       # root crontab
       */5 * * * * /etc/vpsaudit/templates/alerts/service-monitor.sh
       */10 * * * * /etc/vpsaudit/templates/alerts/ufw-monitor.sh

3. Test:

       source /etc/vpsaudit/templates/alerts/alert-lib.sh
       vpsaudit_alert "Test" "Hello from $(hostname)" info

The scripts need jq and curl (webhooks) or mail/msmtp (email).
"""

# name → (content, mode)
TEMPLATES: dict[str, tuple[str, int]] = {
    "alert-lib.sh": (_ALERT_LIB, 0o755),
    "ssh-login-monitor.sh": (_SSH_MONITOR, 0o755),
    "ufw-monitor.sh": (_UFW_MONITOR, 0o755),
    "service-monitor.sh": (_SERVICE_MONITOR, 0o755),
    "README.md": (_README, 0o644),
}


def load_alerts_config(path: Path) -> dict | None:
    """Parsed alerts.json; {} when absent, None when it cannot be parsed."""
    try:
        text = path.read_text()
    except FileNotFoundError:
        return {}
    except OSError:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class AlertsModule(BaseModule):
    """Webhook and email notification hooks."""

    name = "alerts"
    title = "Alerts"
    icon = "🔔"
    scan_description = "Checking whether security events reach anyone."

    fixes = (
        FixSpec("alerts.setup_config", "safe",
                "Write an alerts.json skeleton and the alert hook scripts",
                mutates=(str(_ALERTS_CONFIG), *(str(_TEMPLATE_DIR / name) for name in TEMPLATES))),
        FixSpec("alerts.install_curl", "confirm_required",
                "Install curl so webhooks can be delivered", locks=APT_LOCKS),
    )

    def audit(self) -> list[Finding]:
        return [self._audit_config(), self._audit_capabilities()]

    def _audit_config(self) -> Finding:
        if not _ALERTS_CONFIG.exists():
            return self._failed(
                "alerts.no_config",
                "Alert configuration not found",
                severity="low",
                description=f"{_ALERTS_CONFIG} not present",
                suggestion="Set up alert configuration",
                fix_id="alerts.setup_config",
            )

        config = load_alerts_config(_ALERTS_CONFIG)
        if config is None:
            return self._failed(
                "alerts.invalid_config",
                "Alert configuration is not valid JSON",
                severity="low",
                description=f"{_ALERTS_CONFIG} could not be parsed",
                suggestion="Fix the JSON by hand",
            )

        webhook = str(config.get("webhook_url") or "").strip()
        email = str(config.get("email") or "").strip()
        if not (webhook or email):
            return self._failed(
                "alerts.not_configured",
                "Alert notifications not configured",
                severity="low",
                description="No webhook or email configured",
                suggestion=f"Set webhook_url or email in {_ALERTS_CONFIG}",
                fix_id="alerts.setup_config",
            )
        return self._passed(
            "alerts.configured",
            "Alert notifications configured",
            description=f"Webhook: {'yes' if webhook else 'no'}, Email: {'yes' if email else 'no'}",
        )

    def _audit_capabilities(self) -> Finding:
        capabilities = []
        if self.has_tool("curl"):
            capabilities.append("webhook")
        if any(self.has_tool(tool) for tool in MAIL_TOOLS):
            capabilities.append("email")

        if capabilities:
            return self._passed(
                "alerts.capabilities_ok",
                "Alert delivery available",
                description=f"Available: {', '.join(capabilities)}",
            )
        return self._failed(
            "alerts.no_capabilities",
            "No way to deliver alerts",
            severity="low",
            description="Neither curl nor a mail command is available",
            suggestion="Install curl for webhook support",
            fix_id="alerts.install_curl",
        )

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {
            "alerts.setup_config": self._fix_setup_config,
            "alerts.install_curl": lambda: self._apt_install("curl", timeout=300),
        }

    def _fix_setup_config(self) -> FixResult:
        current = load_alerts_config(_ALERTS_CONFIG)
        if current is None:
            return FixResult.failure(f"{_ALERTS_CONFIG} is not valid JSON, refusing to rewrite it")

        merged = {**DEFAULT_ALERTS_CONFIG, **current}
        try:
            _ALERTS_CONFIG.parent.mkdir(parents=True, exist_ok=True)
            _ALERTS_CONFIG.write_text(json.dumps(merged, indent=2) + "\n")
            _ALERTS_CONFIG.chmod(0o600)

            _TEMPLATE_DIR.mkdir(parents=True, exist_ok=True)
            for name, (content, mode) in TEMPLATES.items():
                path = _TEMPLATE_DIR / name
                path.write_text(content)
                path.chmod(mode)
        except OSError as e:
            return FixResult.failure(f"Could not write alert configuration: {e}")
        return FixResult.success()


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    AlertsModule,
]
