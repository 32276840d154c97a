"""
Tests for vpsaudit/history.py: report payload and scan history I/O.

Uses tmp_path + monkeypatch to redirect _HISTORY_DIR to a temp directory.
"""

import json

import vpsaudit.history as history_mod
from vpsaudit.fixer.executor import ExecutionLog, FixOutcome
from vpsaudit.fixer.plan import PlanStep, RemediationPlan
from vpsaudit.history import build_payload, load_previous_scan, prune_history, save_scan
from vpsaudit.registry import Registry


# ── Helpers ──────────────────────────────────────────────────────────────────

def _patch_history_dir(monkeypatch, tmp_path):
    """Point _HISTORY_DIR to a temp directory for isolated tests."""
    monkeypatch.setattr(history_mod, "_HISTORY_DIR", tmp_path / "history")


def _registry(finding):
    return Registry([
        finding(id="ufw.disabled", module_name="ufw", severity="high", fix_id="ufw.enable"),
        finding(id="update.no_updates", module_name="update", severity="low", status="passed"),
    ])


# ── build_payload ────────────────────────────────────────────────────────────

class TestBuildPayload:
    def test_audit_only_payload(self, finding):
        payload = build_payload(_registry(finding))
        assert payload["schema_version"] == 1
        assert payload["score"] == {"value": 85, "high": 1, "medium": 0, "low": 0, "passed": 1}
        assert [f["id"] for f in payload["findings"]] == ["ufw.disabled", "update.no_updates"]
        assert payload["findings"][0]["fix_id"] == "ufw.enable"
        assert payload["plan"] == []
        assert payload["outcomes"] == []
        assert payload["aborted"] is False
        assert {"os", "kernel", "architecture", "hostname"} <= set(payload["system"])

    def test_payload_with_plan_and_log(self, finding):
        step = PlanStep("ufw.enable", "ufw", "ufw.disabled", "lockout_protected", "high")
        log = ExecutionLog(
            outcomes=[FixOutcome("ufw.enable", "applied", finding_id="ufw.disabled", module_name="ufw")],
            halted=[FixOutcome("docker.x", "skipped", error="aborted-by-operator")],
            aborted=True,
        )
        payload = build_payload(_registry(finding), RemediationPlan((step,)), log)

        assert payload["plan"][0]["danger"] == "lockout_protected"
        assert payload["outcomes"][0]["result"] == "applied"
        assert payload["halted"][0]["error"] == "aborted-by-operator"
        assert payload["aborted"] is True

    def test_payload_is_json_serialisable(self, finding):
        json.dumps(build_payload(_registry(finding)))


# ── save / load / prune ──────────────────────────────────────────────────────

class TestSaveScan:
    def test_save_creates_json_file(self, tmp_path, monkeypatch, finding):
        _patch_history_dir(monkeypatch, tmp_path)
        path = save_scan(build_payload(_registry(finding)))
        assert path is not None
        data = json.loads(path.read_text())
        assert data["findings"][0]["id"] == "ufw.disabled"

    def test_save_returns_none_on_unwritable_dir(self, tmp_path, monkeypatch):
        blocker = tmp_path / "file"
        blocker.write_text("")
        monkeypatch.setattr(history_mod, "_HISTORY_DIR", blocker / "history")
        assert save_scan({"schema_version": 1}) is None


class TestLoadPreviousScan:
    def test_empty_dir_returns_none(self, tmp_path, monkeypatch):
        _patch_history_dir(monkeypatch, tmp_path)
        assert load_previous_scan() is None

    def test_returns_most_recent(self, tmp_path, monkeypatch):
        _patch_history_dir(monkeypatch, tmp_path)
        hist = tmp_path / "history"
        hist.mkdir()
        (hist / "2026-01-01T00-00-00-000000.json").write_text(json.dumps({"n": 1}))
        (hist / "2026-02-01T00-00-00-000000.json").write_text(json.dumps({"n": 2}))
        assert load_previous_scan() == {"n": 2}

    def test_corrupt_file_returns_none(self, tmp_path, monkeypatch):
        _patch_history_dir(monkeypatch, tmp_path)
        hist = tmp_path / "history"
        hist.mkdir()
        (hist / "2026-01-01T00-00-00-000000.json").write_text("{not json")
        assert load_previous_scan() is None


class TestPruneHistory:
    def test_keeps_max_scans(self, tmp_path, monkeypatch):
        _patch_history_dir(monkeypatch, tmp_path)
        hist = tmp_path / "history"
        hist.mkdir()
        for i in range(history_mod._MAX_SCANS + 3):
            (hist / f"2026-01-{i + 1:02d}T00-00-00-000000.json").write_text("{}")

        prune_history()

        remaining = sorted(p.name for p in hist.glob("*.json"))
        assert len(remaining) == history_mod._MAX_SCANS
        assert remaining[0] == "2026-01-04T00-00-00-000000.json"
