"""
Backup checks.

Checks:
  - a backup tool is installed (restic, borg, rclone)
  - backups are scheduled (root crontab, /etc/cron.d, systemd timers)
  - which critical paths exist on this host (informational)

The only fix writes ready-to-edit restic/borg scripts and a systemd
timer under the template directory; nothing is installed or enabled.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

from vpsaudit.checks.base import BaseModule, Finding, FixResult, FixSpec


BACKUP_TOOLS = ("restic", "borg", "rclone")
CRITICAL_PATHS = (
    Path("/etc"),
    Path("/home"),
    Path("/var/www"),
    Path("/var/lib/docker/volumes"),
    Path("/opt"),
)

_CRON_D = Path("/etc/cron.d")
_TEMPLATE_DIR = Path("/etc/vpsaudit/templates/backup")
_SCHEDULE_PATTERN = re.compile(r"restic|borg|rclone|backup", re.IGNORECASE)

_RESTIC_SCRIPT = """\
#!/bin/bash
# vpsaudit generated template: restic backup. Edit before use.
set -euo pipefail

export RESTIC_REPOSITORY="s3:s3.amazonaws.com/your-bucket/restic"
# export RESTIC_REPOSITORY="/mnt/backup/restic"
# export RESTIC_REPOSITORY="b2:bucket-name:restic"
export RESTIC_PASSWORD_FILE="/root/.restic-password"

BACKUP_PATHS=(/etc /home /var/www /opt)
EXCLUDES=(--exclude "*.tmp" --exclude "*.cache" --exclude node_modules --exclude __pycache__)
LOG_FILE="/var/log/restic-backup.log"

log() { echo "[$(date '+%Y-%m-%d %H:%M:%S')] $*" | tee -a "$LOG_FILE"; }

restic snapshots >/dev/null 2>&1 || { log "Initializing repository"; restic init; }

log "Starting backup"
restic backup "${BACKUP_PATHS[@]}" "${EXCLUDES[@]}" 2>&1 | tee -a "$LOG_FILE"

log "Pruning old snapshots"
restic forget --keep-last 7 --keep-daily 7 --keep-weekly 4 --keep-monthly 12 --keep-yearly 3 \\
    --prune 2>&1 | tee -a "$LOG_FILE"

# integrity check on Sundays
if [[ $(date +%u) -eq 7 ]]; then
    restic check 2>&1 | tee -a "$LOG_FILE"
fi

log "Backup completed"
"""

_BORG_SCRIPT = """\
#!/bin/bash
# vpsaudit generated template: borg backup. Edit before use.
set -euo pipefail

export BORG_REPO="/mnt/backup/borg"
# export BORG_REPO="user@backup-server:/path/to/repo"
export BORG_PASSCOMMAND="cat /root/.borg-passphrase"

BACKUP_PATHS=(/etc /home /var/www /opt)
EXCLUDES=(--exclude "*.tmp" --exclude "*.cache" --exclude node_modules --exclude __pycache__)
LOG_FILE="/var/log/borg-backup.log"

log() { echo "[$(date '+%Y-%m-%d %H:%M:%S')] $*" | tee -a "$LOG_FILE"; }

borg info >/dev/null 2>&1 || { log "Initializing repository"; borg init --encryption=repokey; }

ARCHIVE="$(hostname)-$(date +%Y%m%d-%H%M%S)"
log "Starting backup: $ARCHIVE"
borg create --stats --compression lz4 "${EXCLUDES[@]}" "::$ARCHIVE" "${BACKUP_PATHS[@]}" 2>&1 | tee -a "$LOG_FILE"

log "Pruning old archives"
borg prune --keep-last 7 --keep-daily 7 --keep-weekly 4 --keep-monthly 12 2>&1 | tee -a "$LOG_FILE"
borg compact 2>&1 | tee -a "$LOG_FILE"

log "Backup completed"
"""

_SERVICE_UNIT = """\
# vpsaudit generated template. Copy to /etc/systemd/system/backup.service
[Unit]
Description=System Backup
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
ExecStart=/usr/local/bin/backup.sh
NoNewPrivileges=yes
ProtectSystem=strict
ReadWritePaths=/var/log /mnt/backup
PrivateTmp=yes

[Install]
WantedBy=multi-user.target
"""

_TIMER_UNIT = """\
# vpsaudit generated template. Copy to /etc/systemd/system/backup.timer
[Unit]
Description=Daily Backup Timer

[Timer]
OnCalendar=*-*-* 03:00:00
RandomizedDelaySec=3600
Persistent=true

[Install]
WantedBy=timers.target
"""

_README = """\
# Backup templates (vpsaudit)

1. Install a tool: `apt install restic` or `apt install borgbackup`.
2. Copy one script to /usr/local/bin/backup.sh, `chmod 700` it and set
   the repository and credentials.
3. Store the password: `install -m 600 /dev/null /root/.restic-password`
   (or /root/.borg-passphrase) and write it there.
4. Run /usr/local/bin/backup.sh once by hand.
5. Schedule it:

       cp backup.service backup.timer /etc/systemd/system/
       systemctl daemon-reload
       systemctl enable --now backup.timer

Restore: `restic restore <snapshot> --target /restore` or
`borg extract ::<archive>`.
"""

# name → (content, mode)
TEMPLATES: dict[str, tuple[str, int]] = {
    "restic-backup.sh": (_RESTIC_SCRIPT, 0o700),
    "borg-backup.sh": (_BORG_SCRIPT, 0o700),
    "backup.service": (_SERVICE_UNIT, 0o644),
    "backup.timer": (_TIMER_UNIT, 0o644),
    "README.md": (_README, 0o644),
}


class BackupModule(BaseModule):
    """Backup tooling and scheduling."""

    name = "backup"
    title = "Backups"
    icon = "💾"
    scan_description = "Looking for backup tools and a backup schedule."

    fixes = (
        FixSpec("backup.generate_templates", "safe",
                "Write restic/borg backup scripts and a systemd timer template",
                mutates=tuple(str(_TEMPLATE_DIR / name) for name in TEMPLATES)),
    )

    def audit(self) -> list[Finding]:
        return [self._audit_tools(), self._audit_schedule(), self._audit_critical_paths()]

    def _audit_tools(self) -> Finding:
        found = [tool for tool in BACKUP_TOOLS if self.has_tool(tool)]
        if found:
            return self._passed(
                "backup.tools_installed",
                f"Backup tools installed: {', '.join(found)}",
            )
        return self._failed(
            "backup.no_tools",
            "No backup tool installed",
            severity="medium",
            description="None of restic, borg or rclone was found",
            suggestion="Install restic or borgbackup and configure a repository",
            fix_id="backup.generate_templates",
        )

    def scheduled_jobs(self) -> list[str]:
        """Where a backup job is scheduled: 'crontab', 'cron.d/<file>', 'timer'."""
        sources = []

        rc, out, _ = self.shell(["crontab", "-l"])
        if rc == 0 and any(_SCHEDULE_PATTERN.search(line) for line in _active_lines(out)):
            sources.append("crontab")

        try:
            entries = sorted(p for p in _CRON_D.iterdir() if p.is_file())
        except OSError:
            entries = []
        for entry in entries:
            try:
                text = entry.read_text(errors="replace")
            except OSError:
                continue
            if any(_SCHEDULE_PATTERN.search(line) for line in _active_lines(text)):
                sources.append(f"cron.d/{entry.name}")

        if self.has_tool("systemctl"):
            rc, out, _ = self.shell(["systemctl", "list-timers", "--all", "--no-pager", "--no-legend"])
            if rc == 0 and _SCHEDULE_PATTERN.search(out):
                sources.append("timer")

        return sources

    def _audit_schedule(self) -> Finding:
        sources = self.scheduled_jobs()
        if sources:
            return self._passed(
                "backup.scheduled",
                "Backups are scheduled",
                description=f"Found in: {', '.join(sources)}",
            )
        return self._failed(
            "backup.no_schedule",
            "No scheduled backups",
            severity="medium",
            description="No cron job or systemd timer runs a backup",
            suggestion="Schedule the backup script with a systemd timer",
            fix_id="backup.generate_templates",
        )

    def _audit_critical_paths(self) -> Finding:
        existing = [str(path) for path in CRITICAL_PATHS if path.is_dir()]
        return self._passed(
            "backup.critical_paths",
            "Critical paths identified",
            severity="info",
            description=f"Include in backups: {', '.join(existing) or 'none found'}",
        )

    # ── Fixes ─────────────────────────────────────────────────────────────────

    def fix_handlers(self) -> dict[str, Callable[[], FixResult]]:
        return {"backup.generate_templates": self._fix_generate_templates}

    def _fix_generate_templates(self) -> FixResult:
        try:
            _TEMPLATE_DIR.mkdir(parents=True, exist_ok=True)
            for name, (content, mode) in TEMPLATES.items():
                path = _TEMPLATE_DIR / name
                path.write_text(content)
                path.chmod(mode)
        except OSError as e:
            return FixResult.failure(f"Could not write backup templates: {e}")
        return FixResult.success()


def _active_lines(text: str) -> list[str]:
    return [line for line in text.splitlines() if line.strip() and not line.lstrip().startswith("#")]


# ── Export ────────────────────────────────────────────────────────────────────

ALL_MODULES = [
    BackupModule,
]
