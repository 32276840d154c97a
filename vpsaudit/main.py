"""
VPS Audit entry point and orchestrator.

CLI flags, audit run, report dispatch, fix session, exit codes.

Exit codes:
  0  success
  1  a fix failed or was rolled back, the plan could not be built,
     a rollback failed, or the command line / config was invalid
  2  --fail-on-high and at least one high-severity finding failed
  3  the operator aborted the fix session
"""

import json
import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from vpsaudit import __version__
from vpsaudit.checks.base import BaseModule, calculate_score
from vpsaudit.config import load_config
from vpsaudit.errors import ModuleRegistrationError
from vpsaudit.log import configure_logging
from vpsaudit.registry import ModuleRegistry, run_audit
from vpsaudit.ui.theme import APP_NAME, APP_TAGLINE, COLOR_DIM, COLOR_TEXT, VPSAUDIT_THEME


# ── Console (shared across the tool) ─────────────────────────────────────────

console = Console(theme=VPSAUDIT_THEME)


# ── Exit codes ────────────────────────────────────────────────────────────────

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_HIGH = 2
EXIT_ABORTED = 3


# ── CLI ───────────────────────────────────────────────────────────────────────

@click.command(name="vpsaudit", context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", prog_name="vpsaudit")
# Module filters
@click.option("--only", metavar="MODULES", default=None,
              help="Comma-separated modules to run, e.g. ufw,update")
@click.option("--skip", metavar="MODULES", default=None,
              help="Comma-separated modules to skip.")
# Output modes
@click.option("--issues-only", is_flag=True, default=False, help="Show only failed findings.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output the report as JSON.")
@click.option("--quiet", is_flag=True, default=False, help="Print only the score and high count.")
# Fix modes
@click.option("--fix", is_flag=True, default=False, help="Enter the guided fix session after the audit.")
@click.option("--auto", is_flag=True, default=False,
              help="With --fix: apply only safe fixes, without prompts.")
@click.option("--dry-run", is_flag=True, default=False,
              help="With --fix: build and show the plan without changing anything.")
@click.option("--yes", "-y", is_flag=True, default=False,
              help="With --fix: acknowledge every step that needs confirmation.")
@click.option("--plain", is_flag=True, default=False,
              help="Use line prompts instead of arrow-key menus.")
# Exit code contract
@click.option("--fail-on-high", is_flag=True, default=False,
              help="Exit with code 2 if any high-severity finding fails (useful in CI).")
# Ambient
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug detail to stderr.")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Also write a debug log to this file.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Config file (default ~/.config/vpsaudit/config.toml).")
def cli(
    only: Optional[str],
    skip: Optional[str],
    issues_only: bool,
    as_json: bool,
    quiet: bool,
    fix: bool,
    auto: bool,
    dry_run: bool,
    yes: bool,
    plain: bool,
    fail_on_high: bool,
    verbose: bool,
    log_file: Optional[Path],
    config_path: Optional[Path],
) -> None:
    """Linux Server Security Auditor & Guided Hardener.

    Audits firewall, updates, Docker, nginx, baseline hardening and cloud
    agents on Debian/Ubuntu servers. Read-only by default; use --fix to
    choose findings, review a plan, and apply it with rollback.

    \b
    Environment variables:
      NO_COLOR=1   Disable all colour output.
    """
    # ── Flag validation ───────────────────────────────────────────────────────
    for flag, value in (("--auto", auto), ("--dry-run", dry_run), ("--yes", yes)):
        if value and not fix:
            console.print(f"[red]Error:[/red] {flag} requires --fix.")
            raise SystemExit(EXIT_FAILED)

    config = load_config(config_path)
    logger = configure_logging(verbose=verbose, log_file=log_file or config["log_file"])

    # ── Collect modules ───────────────────────────────────────────────────────
    only_names = _split(only)
    skip_names = _split(skip) or set()
    try:
        modules = _collect_modules(config, only_names, skip_names)
        module_registry = ModuleRegistry(modules)
    except (click.BadParameter, ModuleRegistrationError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(EXIT_FAILED)

    if not modules:
        console.print("[dim]No modules match the specified filters.[/dim]")
        return

    if fix and not dry_run:
        from vpsaudit.system_info import get_system_info
        if not get_system_info()["is_root"]:
            console.print("[red]Error:[/red] --fix changes system configuration and must run as root "
                          "(use --dry-run to preview).")
            raise SystemExit(EXIT_FAILED)

    narrated = not (quiet or as_json)
    if narrated:
        _print_header(console)

    # ── Audit ─────────────────────────────────────────────────────────────────
    logger.debug("Auditing modules: %s", ", ".join(m.name for m in modules))
    scan_start = time.monotonic()
    registry = _run_modules(modules, config, narrated)
    scan_elapsed = time.monotonic() - scan_start

    if config["suppress"]:
        registry = registry.without(config["suppress"])

    findings = registry.findings()
    score = calculate_score(findings)

    from vpsaudit.diff import compute_diff
    from vpsaudit.history import build_payload, load_previous_scan, save_scan

    if narrated:
        previous = load_previous_scan()
        diff = compute_diff(build_payload(registry), previous) if previous else None

        from vpsaudit.ui.report import print_report
        print_report(findings, console, modules=modules, issues_only=issues_only,
                     scan_duration=scan_elapsed, mode="fix" if fix else "scan", diff=diff)

    # ── Fix session ───────────────────────────────────────────────────────────
    session = None
    if fix:
        session = _run_session(registry, module_registry, config, auto=auto, dry_run=dry_run,
                               assume_yes=yes, plain=plain, as_json=as_json)

    # ── Persist + output ──────────────────────────────────────────────────────
    payload = build_payload(
        registry,
        plan=session.plan if session else None,
        log=session.log if session else None,
    )
    save_scan(payload)

    if as_json:
        click.echo(json.dumps(payload, indent=2))
    elif quiet:
        console.print(f"Security score: {score.value}/100  |  High: {score.high}")

    # ── Exit code contract ────────────────────────────────────────────────────
    if session is not None:
        if session.failed:
            raise SystemExit(EXIT_FAILED)
        if session.aborted:
            raise SystemExit(EXIT_ABORTED)

    if fail_on_high and score.high:
        raise SystemExit(EXIT_HIGH)


# ── Module registry ───────────────────────────────────────────────────────────

def _split(value: Optional[str]) -> Optional[set]:
    if not value:
        return None
    return {name.strip().lower() for name in value.split(",") if name.strip()}


def _collect_modules(config: dict, only: Optional[set], skip: set) -> list[BaseModule]:
    """
    Return instantiated modules to audit, in display order.

    Order: preflight (host facts), firewall (it gates the rest of the
    report), packages, baseline, services, backups and alerting, cloud.
    """
    from vpsaudit.checks.alerts import ALL_MODULES as ALERTS
    from vpsaudit.checks.backups import ALL_MODULES as BACKUPS
    from vpsaudit.checks.baseline import ALL_MODULES as BASELINE
    from vpsaudit.checks.cloud import ALL_MODULES as CLOUD
    from vpsaudit.checks.cloudflared import ALL_MODULES as CLOUDFLARED
    from vpsaudit.checks.docker import ALL_MODULES as DOCKER
    from vpsaudit.checks.nginx import ALL_MODULES as NGINX
    from vpsaudit.checks.preflight import ALL_MODULES as PREFLIGHT
    from vpsaudit.checks.ufw import ALL_MODULES as UFW
    from vpsaudit.checks.update import ALL_MODULES as UPDATE

    all_classes = (PREFLIGHT + UFW + UPDATE + BASELINE + DOCKER + NGINX
                   + CLOUDFLARED + BACKUPS + ALERTS + CLOUD)

    known = {cls.name for cls in all_classes}
    unknown = ((only or set()) | skip) - known
    if unknown:
        raise click.BadParameter(
            f"unknown module(s): {', '.join(sorted(unknown))} (choose from {', '.join(sorted(known))})"
        )

    options = {
        "cloud": {
            "policy": config["cloud_agent_policy"],
            "threshold": config["cloud_provider_threshold"],
        },
    }

    modules = [cls(**options.get(cls.name, {})) for cls in all_classes]
    if only:
        modules = [m for m in modules if m.name in only]
    if skip:
        modules = [m for m in modules if m.name not in skip]
    return modules


# ── Audit loop ────────────────────────────────────────────────────────────────

def _run_modules(modules: list[BaseModule], config: dict, narrated: bool):
    """
    Audit every module with live narration.

    In quiet/JSON mode the narrator is bypassed and modules run silently.
    """
    if not narrated:
        return run_audit(modules, timeout=config["module_timeout"], max_workers=config["max_workers"])

    from vpsaudit.ui.narrator import ScanNarrator

    with ScanNarrator(console, total=len(modules)) as narrator:
        narrator.print_scan_header()
        return run_audit(
            modules,
            timeout=config["module_timeout"],
            max_workers=config["max_workers"],
            on_module_done=narrator.module_done,
        )


# ── Fix session ───────────────────────────────────────────────────────────────

def _run_session(registry, module_registry, config: dict, auto: bool, dry_run: bool,
                 assume_yes: bool, plain: bool, as_json: bool):
    """Wire the guard, backups and interaction together and run the session."""
    from vpsaudit.checks.ufw import UfwFirewall
    from vpsaudit.fixer.backup import BackupStore
    from vpsaudit.fixer.guard import SafetyGuard
    from vpsaudit.fixer.runner import run_fix_session
    from vpsaudit.system_info import get_operator_address, get_ssh_port
    from vpsaudit.ui.interaction import default_interaction

    # JSON owns stdout; the dialog moves to stderr.
    session_console = Console(theme=VPSAUDIT_THEME, stderr=True) if as_json else console

    backups = BackupStore(config["backup_dir"])
    guard = SafetyGuard(UfwFirewall(), get_ssh_port(), get_operator_address())

    session = run_fix_session(
        registry,
        module_registry,
        default_interaction(session_console, plain=plain, err=as_json),
        backups,
        guard,
        danger_overrides=config["danger_overrides"],
        lock_wait=config["lock_wait"],
        auto=auto,
        dry_run=dry_run,
        assume_yes=assume_yes,
    )

    if session.log is not None:
        backups.prune(config["backup_keep"])
    return session


# ── Header ────────────────────────────────────────────────────────────────────

def _print_header(console: Console) -> None:
    from vpsaudit.system_info import get_system_info

    info = get_system_info()
    console.print()
    console.print(
        f"  [bold magenta]{APP_NAME}[/bold magenta] [dim]{__version__}[/dim]"
        f"  [{COLOR_DIM}]·  {APP_TAGLINE}[/{COLOR_DIM}]"
    )
    console.print(
        f"  [{COLOR_TEXT}]{info['hostname']}[/{COLOR_TEXT}]"
        f"  [{COLOR_DIM}]{info['os_name']}  ·  kernel {info['kernel']}"
        f"{'' if info['is_root'] else '  ·  not root, some checks may be limited'}[/{COLOR_DIM}]"
    )


# ── Entry ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    cli()
