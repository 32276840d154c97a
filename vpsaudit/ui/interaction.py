"""
Interaction adapter: how the fix session talks to the operator.

The session never renders or reads input itself. It emits a Prompt at each
step and acts on the Response:

  welcome         : intro panel; confirmed=False ends the session
  select_modules  : multi-select over modules with fixable findings
  select_findings : multi-select over fixable findings
  review_plan     : show the plan; confirmed=False ends the session
  confirm_execute : tick confirm_required steps to acknowledge, then go/no-go
  show_results    : outcome panel (no input)
  show_error      : error panel (no input)

TerminalInteraction draws arrow-key menus with simple-term-menu.
PlainInteraction reads line input through click, for pipes, dumb
terminals and --plain.
"""

from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

import click
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from simple_term_menu import TerminalMenu

from vpsaudit.ui.theme import COLOR_BRAND, COLOR_DIM, COLOR_HIGH

PromptKind = Literal[
    "welcome",
    "select_modules",
    "select_findings",
    "review_plan",
    "confirm_execute",
    "show_results",
    "show_error",
]


# ── Request / response ────────────────────────────────────────────────────────

@dataclass
class Option:
    key: str
    label: str
    hint: str = ""
    preselected: bool = True


@dataclass
class Prompt:
    kind: PromptKind
    title: str
    message: str = ""
    options: list[Option] = field(default_factory=list)
    default: bool = True
    body: Any = None            # rich renderable shown above the question


@dataclass
class Response:
    selected: list[str] = field(default_factory=list)
    confirmed: bool = False
    aborted: bool = False

    @classmethod
    def abort(cls) -> "Response":
        return cls(aborted=True)


class Interaction(ABC):
    """Abstract operator dialog."""

    def __init__(self, console: Console) -> None:
        self.console = console

    @abstractmethod
    def ask(self, prompt: Prompt) -> Response:
        """Present prompt and return the operator's answer."""

    # ── Shared rendering ──────────────────────────────────────────────────────

    def _show(self, prompt: Prompt) -> None:
        if prompt.body is not None:
            self.console.print()
            self.console.print(prompt.body)
        elif prompt.kind == "show_error":
            self.console.print()
            self.console.print(Panel(
                Text(f"\n  {prompt.message}\n"),
                title=f"[bold]{prompt.title}[/bold]",
                title_align="left",
                border_style=COLOR_HIGH,
            ))
        elif prompt.message:
            self.console.print()
            self.console.print(Panel(
                Text(f"\n  {prompt.message}\n", style=COLOR_DIM),
                title=f"[bold]{prompt.title}[/bold]",
                title_align="left",
                border_style=COLOR_BRAND,
            ))


# ── Terminal (arrow-key menus) ────────────────────────────────────────────────

class TerminalInteraction(Interaction):
    """simple-term-menu menus with rich panels."""

    def ask(self, prompt: Prompt) -> Response:
        self._show(prompt)

        if prompt.kind in ("show_results", "show_error"):
            return Response(confirmed=True)

        if prompt.kind in ("select_modules", "select_findings"):
            return self._multi_select(prompt)

        if prompt.kind == "confirm_execute" and prompt.options:
            acks = self._multi_select(prompt)
            if acks.aborted:
                return acks
            go = self._yes_no("Apply the plan now?", prompt.default)
            return Response(selected=acks.selected, confirmed=go.confirmed, aborted=go.aborted)

        question = {
            "welcome": "Continue to fix selection?",
            "review_plan": "Proceed with this plan?",
            "confirm_execute": "Apply the plan now?",
        }.get(prompt.kind, prompt.title)
        return self._yes_no(question, prompt.default)

    def _multi_select(self, prompt: Prompt) -> Response:
        self.console.print()
        self.console.print(f"  [bold]{prompt.title}[/bold]")
        if prompt.message and prompt.body is None:
            self.console.print(f"  [dim]{prompt.message}[/dim]")
        self.console.print("  [dim]space toggles · enter accepts · q cancels[/dim]")

        entries = [f"{o.label}  {o.hint}".rstrip() for o in prompt.options]
        menu = TerminalMenu(
            entries,
            multi_select=True,
            show_multi_select_hint=False,
            multi_select_select_on_accept=False,
            multi_select_empty_ok=True,
            preselected_entries=[i for i, o in enumerate(prompt.options) if o.preselected] or None,
            menu_cursor="› ",
            menu_cursor_style=("fg_cyan", "bold"),
            menu_highlight_style=("fg_cyan", "bold"),
        )
        chosen = menu.show()
        if chosen is None:
            return Response.abort()
        if isinstance(chosen, int):
            chosen = (chosen,)
        return Response(selected=[prompt.options[i].key for i in chosen], confirmed=True)

    def _yes_no(self, question: str, default: bool) -> Response:
        self.console.print()
        self.console.print(f"  [bold]{question}[/bold]")
        menu = TerminalMenu(
            ["Yes", "No", "Quit"],
            menu_cursor="› ",
            menu_cursor_style=("fg_cyan", "bold"),
            menu_highlight_style=("fg_cyan", "bold"),
            cursor_index=0 if default else 1,
        )
        choice = menu.show()
        if choice is None or choice == 2:
            return Response.abort()
        return Response(confirmed=choice == 0)


# ── Plain (line input) ────────────────────────────────────────────────────────

class PlainInteraction(Interaction):
    """Numbered lists and y/N questions via click.

    With err=True the question text goes to stderr as well, leaving stdout
    to the report.
    """

    def __init__(self, console: Console, err: bool = False) -> None:
        super().__init__(console)
        self.err = err

    def ask(self, prompt: Prompt) -> Response:
        self._show(prompt)

        if prompt.kind in ("show_results", "show_error"):
            return Response(confirmed=True)

        try:
            if prompt.kind in ("select_modules", "select_findings"):
                return self._multi_select(prompt)

            if prompt.kind == "confirm_execute" and prompt.options:
                acks = self._multi_select(prompt)
                go = click.confirm("  Apply the plan now?", default=prompt.default, err=self.err)
                return Response(selected=acks.selected, confirmed=go)

            question = {
                "welcome": "  Continue to fix selection?",
                "review_plan": "  Proceed with this plan?",
                "confirm_execute": "  Apply the plan now?",
            }.get(prompt.kind, f"  {prompt.title}?")
            return Response(confirmed=click.confirm(question, default=prompt.default, err=self.err))
        except click.Abort:
            return Response.abort()

    def _multi_select(self, prompt: Prompt) -> Response:
        self.console.print()
        self.console.print(f"  [bold]{prompt.title}[/bold]")
        if prompt.message and prompt.body is None:
            self.console.print(f"  [dim]{prompt.message}[/dim]")
        for i, option in enumerate(prompt.options, 1):
            mark = "x" if option.preselected else " "
            hint = f"  [dim]{option.hint}[/dim]" if option.hint else ""
            self.console.print(f"  \\[{mark}] {i:>2}. {option.label}{hint}", highlight=False)

        default = ",".join(str(i) for i, o in enumerate(prompt.options, 1) if o.preselected)
        raw = click.prompt(
            "  Numbers (comma-separated), 'all' or 'none'",
            default=default or "none",
            show_default=True,
            err=self.err,
        )
        return Response(selected=parse_selection(raw, prompt.options), confirmed=True)


def parse_selection(raw: str, options: list[Option]) -> list[str]:
    """
    Turn '1,3-4', 'all' or 'none' into option keys, in option order.

    Out-of-range and unparseable entries are ignored.
    """
    raw = raw.strip().lower()
    if raw in ("", "none", "-"):
        return []
    if raw in ("all", "*"):
        return [o.key for o in options]

    picked: set[int] = set()
    for part in raw.replace(" ", "").split(","):
        if not part:
            continue
        lo, _, hi = part.partition("-")
        try:
            start = int(lo)
            end = int(hi) if hi else start
        except ValueError:
            continue
        picked.update(range(start, end + 1))

    return [o.key for i, o in enumerate(options, 1) if i in picked]


def default_interaction(console: Console, plain: bool = False, err: bool = False) -> Interaction:
    """
    Arrow-key menus on a real terminal, plain prompts otherwise.

    err=True keeps every prompt off stdout and always picks plain prompts.
    """
    if plain or err or not (sys.stdin.isatty() and sys.stdout.isatty()):
        return PlainInteraction(console, err=err)
    return TerminalInteraction(console)
