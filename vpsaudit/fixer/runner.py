"""
Guided fix session.

Drives one remediation pass through an Interaction:

  welcome → select modules → select findings → build plan
          → review plan → acknowledge + confirm → execute → results

--dry-run stops after the plan review; nothing is executed.
--auto skips every prompt and runs only the plan's safe steps.
Ctrl-C during execution stops before the next step, never mid-step.
"""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass

from vpsaudit.checks.base import Finding
from vpsaudit.errors import EmptySelectionError, RollbackFailedError, UnknownFixError
from vpsaudit.fixer.backup import BackupStore
from vpsaudit.fixer.executor import ExecutionLog, execute_plan
from vpsaudit.fixer.guard import SafetyGuard
from vpsaudit.fixer.plan import RemediationPlan, build_plan
from vpsaudit.registry import ModuleRegistry, Registry
from vpsaudit.ui.interaction import Interaction, Option, Prompt
from vpsaudit.ui.report import build_plan_panel, build_results_panel

logger = logging.getLogger("vpsaudit.fixer.runner")


@dataclass
class SessionResult:
    plan: RemediationPlan | None = None
    log: ExecutionLog | None = None
    aborted: bool = False
    nothing_to_do: bool = False
    error: str | None = None
    rollback_failed: bool = False

    @property
    def failed(self) -> bool:
        """True for plan errors, rollback failures and failed/rolled_back steps."""
        if self.error or self.rollback_failed:
            return True
        return bool(self.log and self.log.has_failures)


# ── Public API ────────────────────────────────────────────────────────────────

def run_fix_session(
    registry: Registry,
    modules: ModuleRegistry,
    interaction: Interaction,
    backups: BackupStore,
    guard: SafetyGuard,
    danger_overrides: dict[str, str] | None = None,
    lock_wait: float = 60.0,
    auto: bool = False,
    dry_run: bool = False,
    assume_yes: bool = False,
) -> SessionResult:
    """
    Run one guided remediation session.

    Args:
        registry:         Findings from the audit that just ran.
        modules:          Registered modules.
        interaction:      Operator dialog.
        backups:          Snapshot store for rollback.
        guard:            Safety guard (acks + SSH lockout protection).
        danger_overrides: fix_id → stricter danger class, from config.
        lock_wait:        Seconds to wait for apt locks per step.
        auto:             No prompts; run only safe steps.
        dry_run:          Render the plan and stop.
        assume_yes:       Acknowledge every confirm_required step and skip
                          the final go/no-go.
    """
    fixable = [f for f in registry.findings() if f.fixable]
    if not fixable:
        interaction.ask(Prompt(
            kind="show_results",
            title="Nothing to fix",
            message="✨  No failed finding has an automatic fix.",
        ))
        return SessionResult(nothing_to_do=True)

    if auto:
        selected_modules, selected_ids = _module_names(fixable), None
    else:
        picked = _select(interaction, fixable, modules)
        if picked is None:
            return SessionResult(aborted=True)
        selected_modules, selected_ids = picked

    try:
        plan = build_plan(selected_modules, selected_ids, registry, modules, danger_overrides)
    except EmptySelectionError:
        interaction.ask(Prompt(kind="show_results", title="Nothing to fix",
                               message="Nothing selected, no changes made."))
        return SessionResult(nothing_to_do=True)
    except UnknownFixError as e:
        logger.error("Plan build failed: %s", e)
        interaction.ask(Prompt(kind="show_error", title="Cannot build plan", message=str(e)))
        return SessionResult(error=str(e))

    if auto:
        plan = plan.only("safe")
        if not len(plan):
            interaction.ask(Prompt(
                kind="show_results",
                title="Nothing to fix",
                message="No safe fixes available. Run without --auto to review the rest.",
            ))
            return SessionResult(plan=plan, nothing_to_do=True)

    if dry_run:
        interaction.ask(Prompt(kind="show_results", title="Dry run", body=build_plan_panel(plan, dry_run=True)))
        return SessionResult(plan=plan)

    acks: list[str] = []
    if not auto:
        review = interaction.ask(Prompt(kind="review_plan", title="Review plan", body=build_plan_panel(plan)))
        if review.aborted or not review.confirmed:
            return SessionResult(plan=plan, aborted=True)

        confirm_steps = plan.requiring_ack()
        if assume_yes:
            acks = [s.fix_id for s in confirm_steps]
        else:
            answer = interaction.ask(Prompt(
                kind="confirm_execute",
                title="Acknowledge steps that need confirmation",
                message="Unticked steps are skipped.",
                options=[
                    Option(s.fix_id, s.fix_id, s.description, preselected=False)
                    for s in confirm_steps
                ],
                default=False,
            ))
            if answer.aborted or not answer.confirmed:
                return SessionResult(plan=plan, aborted=True)
            acks = answer.selected

    result = SessionResult(plan=plan)
    try:
        result.log = _execute(plan, acks, modules, backups, guard, lock_wait)
    except RollbackFailedError as e:
        logger.critical("%s", e)
        result.log = e.log
        result.rollback_failed = True
        interaction.ask(Prompt(
            kind="show_error",
            title="Rollback failed",
            message=f"{e}\nFiles may be in a partial state. Snapshots are kept in {backups.root}.",
        ))

    result.aborted = result.log.aborted
    interaction.ask(Prompt(kind="show_results", title="Results", body=build_results_panel(result.log)))
    return result


# ── Selection ─────────────────────────────────────────────────────────────────

def _module_names(findings: list[Finding]) -> list[str]:
    return list(dict.fromkeys(f.module_name for f in findings))


def _select(
    interaction: Interaction,
    fixable: list[Finding],
    modules: ModuleRegistry,
) -> tuple[list[str], list[str]] | None:
    """Welcome, module pick, finding pick. Returns None when the operator quits."""
    counts: dict[str, int] = {}
    for f in fixable:
        counts[f.module_name] = counts.get(f.module_name, 0) + 1

    welcome = interaction.ask(Prompt(
        kind="welcome",
        title="Fix Mode",
        message=(
            f"{len(fixable)} fixable finding{'s' if len(fixable) != 1 else ''} "
            f"across {len(counts)} module{'s' if len(counts) != 1 else ''}. "
            "You will review the full plan before anything changes."
        ),
    ))
    if welcome.aborted or not welcome.confirmed:
        return None

    module_options = []
    for name, n in counts.items():
        module = modules.get(name)
        label = f"{module.icon} {module.title}" if module else name
        module_options.append(Option(name, label, f"{n} fixable"))

    picked_modules = interaction.ask(Prompt(
        kind="select_modules", title="Which modules?", options=module_options,
    ))
    if picked_modules.aborted:
        return None

    finding_options = [
        Option(f.id, f.title, f"({f.severity})")
        for f in fixable
        if f.module_name in picked_modules.selected
    ]
    if not finding_options:
        return picked_modules.selected, []

    picked_findings = interaction.ask(Prompt(
        kind="select_findings", title="Which findings?", options=finding_options,
    ))
    if picked_findings.aborted:
        return None

    return picked_modules.selected, picked_findings.selected


# ── Execution ─────────────────────────────────────────────────────────────────

def _execute(
    plan: RemediationPlan,
    acks: list[str],
    modules: ModuleRegistry,
    backups: BackupStore,
    guard: SafetyGuard,
    lock_wait: float,
) -> ExecutionLog:
    """execute_plan with Ctrl-C mapped to a between-steps cancel."""
    cancel = threading.Event()

    def _on_sigint(signum, frame) -> None:
        logger.warning("Interrupt received, stopping after the current step")
        cancel.set()

    in_main = threading.current_thread() is threading.main_thread()
    previous = signal.signal(signal.SIGINT, _on_sigint) if in_main else None
    try:
        return execute_plan(plan, acks, modules, backups, guard, cancel=cancel, lock_wait=lock_wait)
    finally:
        if in_main:
            signal.signal(signal.SIGINT, previous)
