"""
ScanNarrator: live narrated audit output.

Finished modules are printed above a live progress line as they complete,
in module order. The progress line is a rich.progress.Progress kept
inside the Live display:

    ⠋ Auditing  [██████████░░░░░░░░░░░░]  3/6 modules

Usage:
    with ScanNarrator(console, total=len(modules)) as narrator:
        narrator.print_scan_header()
        run_audit(modules, on_module_done=narrator.module_done)
"""

from rich.console import Console, Group
from rich.live import Live
from rich.padding import Padding
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.text import Text

from vpsaudit.checks.base import BaseModule, Finding
from vpsaudit.ui.theme import (
    BAR_WIDTH,
    COLOR_DIM,
    COLOR_TEXT,
    PROGRESS_BAR_COLOR,
    PROGRESS_COMPLETE_COLOR,
    finding_icon,
    finding_style,
)


class ScanNarrator:
    """
    Context manager for live audit feedback.

    run_audit() calls module_done() from the calling thread in module
    order, so output never interleaves even though modules run in parallel.
    """

    def __init__(self, console: Console, total: int) -> None:
        self.console = console
        self.total = total
        self.completed = 0

        self._progress = Progress(
            SpinnerColumn("dots", style="cyan", finished_text=" "),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(
                bar_width=BAR_WIDTH,
                style=COLOR_DIM,
                complete_style=PROGRESS_BAR_COLOR,
                finished_style=PROGRESS_COMPLETE_COLOR,
            ),
            MofNCompleteColumn(),
            TextColumn("modules", style=COLOR_DIM),
            console=console,
        )
        self._task = self._progress.add_task(f"[{COLOR_DIM}]Auditing", total=total)
        self._live = Live(
            Padding(self._progress, pad=(1, 0, 0, 2)),
            console=console,
            refresh_per_second=12,
        )

    def __enter__(self) -> "ScanNarrator":
        self._live.__enter__()
        return self

    def __exit__(self, *args) -> None:
        self._progress.update(self._task, description=f"[{COLOR_DIM}]Done")
        self._live.__exit__(*args)
        self.console.print()

    # ── Public API ────────────────────────────────────────────────────────────

    def module_done(self, module: BaseModule, findings: list[Finding]) -> None:
        """Print a finished module's header and findings, then advance the bar."""
        if self.completed:
            self._live.console.print()
        self._live.console.print(_format_module_header(module, self.console.width))
        for finding in findings:
            self._live.console.print(_format_finding(finding))
        self.completed += 1
        self._progress.advance(self._task)

    def print_scan_header(self) -> None:
        label = Text()
        label.append("  Auditing", style="bold magenta")
        label.append("  ·  ", style=COLOR_DIM)
        label.append("modules run in parallel, read-only", style=COLOR_DIM)
        self._live.console.print()
        self._live.console.print(label)
        self._live.console.print()


# ── Formatting ────────────────────────────────────────────────────────────────

def _format_module_header(module: BaseModule, console_width: int = 80) -> Group:
    header = Text()
    header.append(f"  {module.icon}  ", style="bold")
    header.append(module.title, style=f"bold {COLOR_TEXT}")
    rule = Text("  " + "─" * min(44, console_width - 6), style=COLOR_DIM)
    return Group(header, rule)


def _format_finding(finding: Finding) -> Text:
    """One line per finding; passed titles are dimmed."""
    style = finding_style(finding.status, finding.severity)
    line = Text()
    line.append(f"  {finding_icon(finding.status, finding.severity)}  ", style=style)
    line.append(finding.title, style=style if finding.failed else COLOR_DIM)
    return line
