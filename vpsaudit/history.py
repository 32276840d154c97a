"""
Persisted report and scan history.

build_payload() produces the structured report (findings + score + plan +
execution log) printed by --json. save_scan() stores it as one JSON file
per run in ~/.config/vpsaudit/history/, keeping the newest _MAX_SCANS.
"""

import dataclasses
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from vpsaudit import __version__
from vpsaudit.checks.base import calculate_score
from vpsaudit.fixer.executor import ExecutionLog
from vpsaudit.fixer.plan import RemediationPlan
from vpsaudit.registry import Registry


# ── Constants ────────────────────────────────────────────────────────────────

SCHEMA_VERSION = 1

_HISTORY_DIR = Path.home() / ".config" / "vpsaudit" / "history"
_MAX_SCANS = 10


# ── Public API ───────────────────────────────────────────────────────────────

def build_payload(
    registry: Registry,
    plan: RemediationPlan | None = None,
    log: ExecutionLog | None = None,
) -> dict:
    """Build the machine-readable report for one run."""
    from vpsaudit.system_info import get_system_info

    info = get_system_info()
    score = calculate_score(registry.findings())

    return {
        "schema_version": SCHEMA_VERSION,
        "vpsaudit_version": __version__,
        "scan_time": datetime.now(timezone.utc).isoformat(),
        "system": {
            "os": info["os_name"],
            "kernel": info["kernel"],
            "architecture": info["architecture"],
            "hostname": info["hostname"],
        },
        "score": dataclasses.asdict(score),
        "findings": [dataclasses.asdict(f) for f in registry.findings()],
        "plan": [dataclasses.asdict(s) for s in plan] if plan is not None else [],
        "outcomes": [dataclasses.asdict(o) for o in log.outcomes] if log is not None else [],
        "halted": [dataclasses.asdict(o) for o in log.halted] if log is not None else [],
        "aborted": bool(log and log.aborted),
    }


def save_scan(payload: dict) -> Optional[Path]:
    """
    Persist a report payload to the history directory.

    Returns the path of the written file, or None on failure.
    """
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
    path = _HISTORY_DIR / f"{ts}.json"

    try:
        _HISTORY_DIR.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2))
    except OSError:
        return None

    prune_history()
    return path


def load_previous_scan() -> Optional[dict]:
    """
    Return the parsed JSON of the most recent history file, or None.

    Catches JSONDecodeError and OSError gracefully.
    """
    try:
        files = sorted(_HISTORY_DIR.glob("*.json"))
    except OSError:
        return None

    if not files:
        return None

    try:
        return json.loads(files[-1].read_text())
    except (json.JSONDecodeError, OSError):
        return None


def prune_history() -> None:
    """Keep only the newest _MAX_SCANS history files, delete the rest."""
    try:
        files = sorted(_HISTORY_DIR.glob("*.json"))
    except OSError:
        return

    for old in files[:-_MAX_SCANS]:
        try:
            old.unlink()
        except OSError:
            pass
