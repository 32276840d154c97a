"""
Scan diffing: compare two report payloads and return structured changes.

Pure logic, no I/O. Takes two dicts (same shape as --json output)
and returns a diff dict describing what improved, regressed, appeared,
or disappeared between scans. Findings are matched by their stable id.
"""

from typing import Optional


# ── Finding risk ranking ─────────────────────────────────────────────────────

_SEVERITY_RISK: dict[str, int] = {
    "info": 1,
    "low": 2,
    "medium": 3,
    "high": 4,
}


def _risk(finding: dict) -> int:
    """0 for a passed finding, otherwise its severity rank."""
    if finding.get("status") != "failed":
        return 0
    return _SEVERITY_RISK.get(finding.get("severity", ""), 0)


# ── Public API ───────────────────────────────────────────────────────────────

def compute_diff(current: dict, previous: dict) -> Optional[dict]:
    """
    Compare two report payloads and return a structured diff.

    Returns None if:
      - schema_version mismatch (payloads from incompatible versions)
      - nothing changed (identical scores and finding risk)

    Args:
        current:  The just-completed report payload.
        previous: The most recent historical report payload.
    """
    if current.get("schema_version") != previous.get("schema_version"):
        return None

    score_before = previous.get("score", {}).get("value", 0)
    score_after = current.get("score", {}).get("value", 0)
    score_delta = score_after - score_before

    prev_by_id: dict[str, dict] = {f["id"]: f for f in previous.get("findings", [])}
    curr_by_id: dict[str, dict] = {f["id"]: f for f in current.get("findings", [])}

    improved: list[dict] = []
    regressed: list[dict] = []
    new_findings: list[dict] = []
    removed_findings: list[dict] = []

    for finding_id in set(prev_by_id) & set(curr_by_id):
        prev_f = prev_by_id[finding_id]
        curr_f = curr_by_id[finding_id]
        entry = {
            "id": finding_id,
            "title": curr_f.get("title", ""),
            "module_name": curr_f.get("module_name", ""),
            "before_status": prev_f.get("status", ""),
            "after_status": curr_f.get("status", ""),
            "severity": curr_f.get("severity", ""),
        }
        if _risk(curr_f) < _risk(prev_f):
            improved.append(entry)
        elif _risk(curr_f) > _risk(prev_f):
            regressed.append(entry)

    # Modules emit different ids for the passing and failing case
    # (e.g. "ufw.disabled" vs "ufw.enabled"), so appear/disappear matters.
    for finding_id in set(curr_by_id) - set(prev_by_id):
        f = curr_by_id[finding_id]
        new_findings.append({
            "id": finding_id,
            "title": f.get("title", ""),
            "module_name": f.get("module_name", ""),
            "status": f.get("status", ""),
            "severity": f.get("severity", ""),
        })

    for finding_id in set(prev_by_id) - set(curr_by_id):
        f = prev_by_id[finding_id]
        removed_findings.append({
            "id": finding_id,
            "title": f.get("title", ""),
            "module_name": f.get("module_name", ""),
            "status": f.get("status", ""),
            "severity": f.get("severity", ""),
        })

    # Sort for deterministic output
    for items in (improved, regressed, new_findings, removed_findings):
        items.sort(key=lambda d: d["id"])

    diff = {
        "previous_scan_time": previous.get("scan_time", ""),
        "score_before": score_before,
        "score_after": score_after,
        "score_delta": score_delta,
        "improved": improved,
        "regressed": regressed,
        "new_findings": new_findings,
        "removed_findings": removed_findings,
    }

    # Module filter suppression: if the set of modules differs, appearing
    # and disappearing findings reflect --only/--skip, not real changes.
    prev_modules = {f.get("module_name") for f in prev_by_id.values()}
    curr_modules = {f.get("module_name") for f in curr_by_id.values()}
    if prev_modules != curr_modules:
        diff["new_findings"] = [f for f in new_findings if f["module_name"] in prev_modules]
        diff["removed_findings"] = [f for f in removed_findings if f["module_name"] in curr_modules]

    if is_empty_diff(diff):
        return None

    return diff


def is_empty_diff(diff: dict) -> bool:
    """Return True if the diff has no meaningful changes."""
    return (
        diff.get("score_delta", 0) == 0
        and not diff.get("improved")
        and not diff.get("regressed")
        and not diff.get("new_findings")
        and not diff.get("removed_findings")
    )
