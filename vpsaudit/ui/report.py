"""
Report renderer.

Renders the post-audit output:
  1. Summary panel        : security score + bar + severity counts + verdict
  2. Diff panel           : changes since the last saved scan (optional)
  3. Module panels        : one Rich Panel per module
  4. Recommendations panel: what to fix next

and the remediation views used by the fix session:
  5. Plan panel   : ordered steps with danger class
  6. Results panel: every step's outcome, non-applied ones with their reason

Failed findings: up to 3 lines
  • Line 1: severity icon + title
  • Line 2: description  (what was observed)
  • Line 3: suggestion   (what to do) + fix marker

Passed findings: 1 line in a compact table
"""

from typing import Iterable, Optional

from rich.console import Console, Group
from rich.padding import Padding
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from vpsaudit.checks.base import SEVERITY_RANK, BaseModule, Finding, calculate_score
from vpsaudit.fixer.executor import ExecutionLog
from vpsaudit.fixer.plan import RemediationPlan
from vpsaudit.registry import Registry
from vpsaudit.ui.theme import (
    APP_NAME,
    BAR_WIDTH,
    COLOR_DIM,
    COLOR_HIGH,
    COLOR_PASS,
    COLOR_TEXT,
    DANGER_LABELS,
    DANGER_STYLES,
    ICON_FIX,
    ICON_PASS,
    OUTCOME_ICONS,
    OUTCOME_STYLES,
    SEVERITY_ICONS,
    finding_icon,
    finding_style,
    score_color,
)


# ── Constants ─────────────────────────────────────────────────────────────────

_INDENT = 8
_MAX_RECOMMENDATIONS = 6


# ── Public API ────────────────────────────────────────────────────────────────

def print_report(
    findings: list[Finding],
    console: Console,
    modules: Iterable[BaseModule] = (),
    issues_only: bool = False,
    scan_duration: float = 0.0,
    mode: str = "scan",
    diff: Optional[dict] = None,
) -> None:
    """
    Render the complete post-audit report to the console.

    Args:
        findings:      All findings, in discovery order.
        console:       Rich Console to print to.
        modules:       Audited modules (for panel titles and order).
        issues_only:   If True, show only panels with failed findings.
        scan_duration: Wall-clock seconds the audit took (0 = not tracked).
        mode:          "scan" or "fix"; recommendations are skipped in fix mode.
        diff:          Structured diff from compute_diff(), or None.
    """
    if not findings:
        console.print("[dim]  No findings to display.[/dim]")
        return

    console.print()
    console.print(build_summary_panel(findings, scan_duration=scan_duration))

    if diff is not None:
        console.print(build_diff_panel(diff))

    for panel in build_module_panels(findings, modules=modules, issues_only=issues_only):
        console.print(panel)

    recs = build_recommendations_panel(findings, mode=mode)
    if recs is not None:
        console.print(recs)

    console.print()


def build_summary_panel(findings: list[Finding], scan_duration: float = 0.0) -> Panel:
    """Return the top-level Summary Panel."""
    score = calculate_score(findings)
    sc = score_color(score.value)

    filled = round(BAR_WIDTH * score.value / 100)
    empty = BAR_WIDTH - filled

    # ── Line 1: score ─────────────────────────────────────────────────────────
    score_line = Text()
    score_line.append("   Security Score  ", style=f"bold {COLOR_TEXT}")
    score_line.append(f"{score.value:>3}", style=f"bold {sc}")
    score_line.append("  [", style=COLOR_DIM)
    score_line.append("█" * filled, style=sc)
    score_line.append("░" * empty, style=COLOR_DIM)
    score_line.append("]", style=COLOR_DIM)
    score_line.append("  / 100", style=COLOR_DIM)

    # ── Line 2: severity counts ───────────────────────────────────────────────
    counts_line = Text()
    counts_line.append("\n   ")

    def _count_chip(icon: str, n: int, label: str, active_style: str) -> None:
        counts_line.append(icon + " ", style="bold")
        counts_line.append(f"{n}  {label}", style=active_style if n > 0 else COLOR_DIM)
        counts_line.append("    ")

    _count_chip(SEVERITY_ICONS["high"], score.high, "High", "bold bright_red")
    _count_chip(SEVERITY_ICONS["medium"], score.medium, "Medium", "bold yellow")
    _count_chip(SEVERITY_ICONS["low"], score.low, "Low", "yellow")
    _count_chip(ICON_PASS, score.passed, "Passed", "bold bright_green")

    # ── Line 3: verdict ───────────────────────────────────────────────────────
    high_findings = [f for f in findings if f.failed and f.severity == "high"]
    verdict_line = Text()
    verdict_line.append(f"\n   {_score_verdict(score.value, high_findings)}", style=COLOR_DIM)

    # ── Line 4: duration ──────────────────────────────────────────────────────
    duration_line = Text()
    if scan_duration > 0:
        dur_str = f"{scan_duration:.0f}s" if scan_duration >= 10 else f"{scan_duration:.1f}s"
        duration_line.append(f"\n   {len(findings)} findings in {dur_str}", style=COLOR_DIM)

    border = (
        "bright_red" if score.high
        else "yellow" if score.medium or score.low
        else "bright_green"
    )

    return Panel(
        Group(score_line, counts_line, verdict_line, duration_line),
        title="[bold]Summary[/bold]",
        border_style=border,
        padding=(1, 2),
    )


def build_diff_panel(diff: dict) -> Panel:
    """
    Build the "Changes Since Last Scan" panel from a structured diff dict.

    Sections with no items are omitted entirely.
    """
    parts: list = []

    score_before = diff.get("score_before", 0)
    score_after = diff.get("score_after", 0)
    score_delta = diff.get("score_delta", 0)

    score_line = Text()
    score_line.append("   Score  ", style=f"bold {COLOR_TEXT}")
    score_line.append(str(score_before), style=COLOR_DIM)
    score_line.append(" → ", style=COLOR_DIM)
    score_line.append(str(score_after), style=f"bold {score_color(score_after)}")
    score_line.append("  ")
    if score_delta > 0:
        score_line.append(f"(+{score_delta})", style=f"bold {COLOR_PASS}")
    elif score_delta < 0:
        score_line.append(f"({score_delta})", style=f"bold {COLOR_HIGH}")
    else:
        score_line.append("(±0)", style=COLOR_DIM)
    parts.append(score_line)

    prev_time = diff.get("previous_scan_time", "")
    if prev_time:
        from datetime import datetime
        try:
            dt = datetime.fromisoformat(prev_time)
            time_str = f"{dt.day} {dt.strftime('%b %Y')}  ·  {dt.strftime('%H:%M')} UTC"
        except (ValueError, TypeError):
            time_str = prev_time
        parts.append(Text(f"   Previous scan: {time_str}", style=COLOR_DIM))

    sections = (
        ("improved", "Improved", f"bold {COLOR_PASS}"),
        ("regressed", "Regressed", f"bold {COLOR_HIGH}"),
        ("new_findings", "New findings", f"bold {COLOR_TEXT}"),
        ("removed_findings", "No longer reported", f"bold {COLOR_DIM}"),
    )
    for key, label, style in sections:
        items = diff.get(key, [])
        if not items:
            continue
        parts.append(Text(""))
        parts.append(Text(f"   {label}", style=style))
        for item in items:
            status = item.get("after_status", item.get("status", ""))
            line = Text()
            line.append(f"   {finding_icon(status, item.get('severity', ''))}  ")
            line.append(item.get("title", "") or item.get("id", ""), style="bold")
            if "before_status" in item:
                line.append(f"   {item['before_status']} → {item['after_status']}", style=COLOR_DIM)
            parts.append(line)

    regressed = bool(diff.get("regressed"))
    if score_delta > 0 and not regressed:
        border = COLOR_PASS
    elif score_delta < 0:
        border = COLOR_HIGH
    else:
        border = "bright_blue"

    return Panel(
        Group(*parts),
        title="[bold]Changes Since Last Scan[/bold]",
        border_style=border,
        padding=(1, 2),
    )


def build_module_panels(
    findings: list[Finding],
    modules: Iterable[BaseModule] = (),
    issues_only: bool = False,
) -> list[Panel]:
    """Return one Panel per module that has findings worth showing."""
    by_module = Registry(findings).by_module()

    titles = {m.name: f"{m.icon} {m.title}" for m in modules}
    order = [name for name in titles if name in by_module]
    order += [name for name in by_module if name not in titles]

    panels = []
    for name in order:
        panel = _build_module_panel(titles.get(name, name), by_module[name], issues_only)
        if panel is not None:
            panels.append(panel)
    return panels


def build_recommendations_panel(findings: list[Finding], mode: str = "scan") -> Optional[Panel]:
    """
    Build a "What to do next" panel summarising fixable findings.

    Returns None in fix mode (the session IS the next step).
    """
    if mode == "fix":
        return None

    fixable = sorted(
        (f for f in findings if f.fixable),
        key=lambda f: -SEVERITY_RANK.get(f.severity, 0),
    )
    total = len(fixable)

    if total == 0:
        body = Text()
        body.append("\n  ✨  Nothing to fix automatically.\n", style="bold bright_green")
        return Panel(body, title="[bold]Recommendations[/bold]", border_style="bright_green", padding=(0, 1))

    shown = fixable[:_MAX_RECOMMENDATIONS]
    parts: list = []

    lede = Text()
    lede.append(f"  {total} fixable finding{'s' if total != 1 else ''}", style=f"bold {COLOR_TEXT}")
    lede.append(" — top issues:", style=COLOR_DIM)
    parts.append(lede)
    parts.append(Text(""))

    for f in shown:
        style = finding_style(f.status, f.severity)
        line = Text()
        line.append(f"  {finding_icon(f.status, f.severity)}  ", style=style)
        line.append(f.title, style="bold")
        parts.append(line)
        if f.suggestion:
            fix_text = Text()
            fix_text.append(f"· {ICON_FIX} {f.fix_id}", style="dim cyan")
            fix_text.append(f"  —  {f.suggestion}", style=COLOR_DIM)
            parts.append(Padding(fix_text, (0, 2, 0, _INDENT)))
        parts.append(Text(""))

    remainder = total - len(shown)
    if remainder > 0:
        parts.append(Text(f"  … and {remainder} more", style=COLOR_DIM))
        parts.append(Text(""))

    parts.append(Text("  " + "─" * 50, style=COLOR_DIM))
    cta = Text()
    cta.append("\n  Run  ", style=COLOR_DIM)
    cta.append(f"sudo {APP_NAME} --fix", style=f"bold {COLOR_TEXT}")
    cta.append("  to choose findings and review a plan before anything changes.\n", style=COLOR_DIM)
    cta.append("  Add  ", style=COLOR_DIM)
    cta.append("--dry-run", style=f"bold {COLOR_TEXT}")
    cta.append("  to see the plan without applying it.\n", style=COLOR_DIM)
    parts.append(cta)

    border = "bright_red" if any(f.severity == "high" for f in fixable) else "yellow"
    return Panel(Group(*parts), title="[bold]Recommendations[/bold]", border_style=border, padding=(0, 1))


def build_plan_panel(plan: RemediationPlan, dry_run: bool = False) -> Panel:
    """Numbered plan steps with their danger class, in execution order."""
    table = Table(show_header=True, show_edge=False, box=None, padding=(0, 2), header_style="bold")
    table.add_column("#", justify="right", style=COLOR_DIM)
    table.add_column("Fix", no_wrap=True)
    table.add_column("Class", no_wrap=True)
    table.add_column("What it does", ratio=1, style=COLOR_DIM)

    for i, step in enumerate(plan, 1):
        table.add_row(
            str(i),
            step.fix_id,
            Text(DANGER_LABELS.get(step.danger, step.danger), style=DANGER_STYLES.get(step.danger, "")),
            step.description or step.finding_id,
        )

    parts: list = [table]
    confirm = plan.requiring_ack()
    if confirm:
        parts.append(Text(""))
        parts.append(Text(
            f"  {len(confirm)} step{'s' if len(confirm) != 1 else ''} need explicit confirmation.",
            style=DANGER_STYLES["confirm_required"],
        ))
    if plan.only("lockout_protected"):
        parts.append(Text(
            "  SSH access is allowed first and verified after each firewall change.",
            style=COLOR_DIM,
        ))
    if dry_run:
        parts.append(Text(""))
        parts.append(Text("  [DRY RUN] No changes will be made.", style="bold yellow"))

    return Panel(
        Group(*parts),
        title=f"[bold]Remediation plan — {len(plan)} step{'s' if len(plan) != 1 else ''}[/bold]",
        title_align="left",
        border_style="magenta",
        padding=(1, 1),
    )


def build_results_panel(log: ExecutionLog) -> Panel:
    """
    Every step's outcome in plan order.

    Non-applied outcomes always show their reason so nothing is silently dropped.
    """
    parts: list = []
    for outcome in log.all_outcomes():
        style = OUTCOME_STYLES.get(outcome.result, "")
        line = Text()
        line.append(f"  {OUTCOME_ICONS.get(outcome.result, '?')}  ", style=style)
        line.append(outcome.fix_id.ljust(34), style="bold")
        line.append(outcome.result.replace("_", " "), style=style)
        parts.append(line)
        if outcome.result != "applied" and outcome.error:
            parts.append(Padding(Text(outcome.error, style=COLOR_DIM), (0, 2, 0, _INDENT)))
        if outcome.backup_refs and outcome.result == "rolled_back":
            parts.append(Padding(
                Text(f"restored from {', '.join(outcome.backup_refs)}", style=COLOR_DIM),
                (0, 2, 0, _INDENT),
            ))

    counts = Text()
    counts.append("\n  ")
    for result in ("applied", "skipped", "failed", "rolled_back"):
        n = log.count(result)  # type: ignore[arg-type]
        counts.append(f"{n} {result.replace('_', ' ')}", style=OUTCOME_STYLES[result] if n else COLOR_DIM)
        counts.append("   ")
    parts.append(counts)

    if log.aborted:
        parts.append(Text("\n  Session aborted by operator.", style="bold yellow"))

    rerun = Text()
    rerun.append("\n  Run  ", style=COLOR_DIM)
    rerun.append(APP_NAME, style=f"bold {COLOR_TEXT}")
    rerun.append("  again to rescan and confirm changes took effect.\n", style=COLOR_DIM)
    parts.append(rerun)

    if log.rolled_back or log.count("failed"):
        border = "bright_red"
    elif log.count("applied"):
        border = "bright_green"
    else:
        border = "dim"

    return Panel(Group(*parts), title="[bold]Fix session complete[/bold]", title_align="left",
                 border_style=border)


# ── Internal: module panel ────────────────────────────────────────────────────

def _build_module_panel(title: str, findings: list[Finding], issues_only: bool) -> Optional[Panel]:
    """Build one module panel; returns None if there is nothing to show."""
    issues = sorted((f for f in findings if f.failed), key=lambda f: -SEVERITY_RANK.get(f.severity, 0))
    passes = [f for f in findings if not f.failed]

    if issues_only and not issues:
        return None

    parts: list = []
    for f in issues:
        parts.extend(_render_issue(f))
        parts.append(Text(""))

    if passes and not issues_only:
        parts.append(_compact_table(passes))

    if not parts:
        return None

    if any(f.severity == "high" for f in issues):
        border = "bright_red"
    elif issues:
        border = "yellow"
    else:
        border = COLOR_PASS

    return Panel(Group(*parts), title=f"[bold]{title}[/bold]", border_style=border, padding=(0, 1))


def _render_issue(finding: Finding) -> list:
    style = finding_style(finding.status, finding.severity)
    parts: list = []

    line1 = Text()
    line1.append(f"  {finding_icon(finding.status, finding.severity)}  ", style=style)
    line1.append(finding.title, style="bold")
    line1.append(f"   [{finding.severity}]", style=style)
    parts.append(line1)

    if finding.description:
        parts.append(Padding(Text(finding.description, style=COLOR_DIM), (0, 2, 0, _INDENT)))

    if finding.suggestion:
        rec = Text()
        rec.append("→ ", style=f"bold {COLOR_TEXT}")
        rec.append(finding.suggestion, style=COLOR_TEXT)
        if finding.fix_id:
            rec.append(f"   {ICON_FIX} {finding.fix_id}", style="dim cyan")
        parts.append(Padding(rec, (0, 2, 0, _INDENT)))

    return parts


def _compact_table(findings: list[Finding]) -> Table:
    table = Table(show_header=False, show_edge=False, box=None, padding=(0, 0), expand=False)
    table.add_column("title", no_wrap=True, min_width=40, max_width=56)
    table.add_column("detail", ratio=1)

    for f in findings:
        name_cell = Text()
        name_cell.append(f"  {ICON_PASS}  ", style="bright_green")
        name_cell.append(f.title, style="dim")
        table.add_row(name_cell, Text(f"  {f.description}", style="dim"))

    return table


# ── Verdict copy ──────────────────────────────────────────────────────────────

def _score_verdict(score: int, high_findings: list[Finding]) -> str:
    """Emoji + one-line verdict from the score and the high-severity failures."""
    if len(high_findings) == 1:
        return f"🚨  {high_findings[0].title}. Address this first."
    if len(high_findings) == 2:
        return f"🚨  {high_findings[0].title} and {high_findings[1].title.lower()}. Address these first."
    if len(high_findings) >= 3:
        return f"🚨  {len(high_findings)} high-severity issues — review the red items immediately."
    if score >= 95:
        return "✨  Excellent — this server is well hardened."
    if score >= 85:
        return "👍  Very good — a few things worth tightening."
    if score >= 70:
        return "📋  Good — some settings could be tightened."
    if score >= 55:
        return "⚠️   Fair — several issues should be addressed soon."
    return "🚨  Poor — significant exposure detected. Start with the red items."
