"""Tests for ui/narrator.py."""

from io import StringIO

from rich.console import Console

from vpsaudit.ui.narrator import ScanNarrator, _format_finding

from conftest import FakeModule, make_finding


def _console() -> Console:
    return Console(file=StringIO(), no_color=True, width=120)


class TestScanNarrator:
    def test_prints_modules_in_call_order(self):
        console = _console()
        first = FakeModule("ufw")
        second = FakeModule("docker")

        with ScanNarrator(console, total=2) as narrator:
            narrator.print_scan_header()
            narrator.module_done(first, [make_finding(title="Firewall disabled", module_name="ufw")])
            narrator.module_done(second, [make_finding(title="No privileged containers",
                                                       status="passed", module_name="docker")])

        out = console.file.getvalue()
        assert narrator.completed == 2
        assert out.index("Ufw") < out.index("Firewall disabled") < out.index("Docker")
        assert "No privileged containers" in out

    def test_finding_line_has_icon(self):
        line = _format_finding(make_finding(title="Default incoming policy accepts all", severity="high"))
        assert "🔴" in line.plain
        assert line.plain.endswith("Default incoming policy accepts all")
