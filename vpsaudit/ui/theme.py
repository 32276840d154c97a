"""
VPS Audit visual design system.

All colors, styles, and icons as named constants.
Import from here; never hardcode markup strings in other modules.

The palette is picked at import time from the terminal's COLORFGBG hint
(set by xterm, rxvt, Konsole, iTerm2). Servers are mostly reached over SSH
from dark terminals, so dark is the default.
"""

import os

from rich.style import Style
from rich.theme import Theme


# ── Brand ─────────────────────────────────────────────────────────────────────

from vpsaudit import __version__

APP_NAME = "vpsaudit"
APP_TAGLINE = "Linux Server Security Auditor"
APP_VERSION = __version__


# ── Dark/light detection ──────────────────────────────────────────────────────

def _is_dark_background(environ: dict | None = None) -> bool:
    """
    Guess the terminal background from COLORFGBG ("fg;bg", bg 0-6 or 8 is dark).

    Returns True when unset or unparseable.
    """
    env = os.environ if environ is None else environ
    value = env.get("COLORFGBG", "")
    try:
        bg = int(value.split(";")[-1])
    except ValueError:
        return True
    return bg in (0, 1, 2, 3, 4, 5, 6, 8)


DARK_MODE: bool = _is_dark_background()


# ── Color palette ─────────────────────────────────────────────────────────────

if DARK_MODE:
    COLOR_HIGH     = "#E05252"      # severity red
    COLOR_MEDIUM   = "#D4870A"      # amber
    COLOR_LOW      = "#C9B458"      # muted yellow
    COLOR_PASS     = "#4DBD74"      # sage-green
    COLOR_INFO     = "#5BA3C9"      # slate blue
    COLOR_BRAND    = "#7B9FD4"      # periwinkle
    COLOR_DIM      = "#787878"
    COLOR_COMMAND  = "#C0C0C0"
    COLOR_TEXT     = "#F0F0F0"

    COLOR_SCORE_HIGH = "#4DBD74"    # ≥ 90
    COLOR_SCORE_MID  = "#7EC67E"    # 75–89
    COLOR_SCORE_LOW  = "#D4870A"    # 55–74
    COLOR_SCORE_POOR = "#E05252"    # < 55

    PROGRESS_BAR_COLOR      = "#7B9FD4"
    PROGRESS_COMPLETE_COLOR = "#4DBD74"

else:
    # WCAG AA contrast (≥ 4.5:1) on white
    COLOR_HIGH     = "#B91C1C"
    COLOR_MEDIUM   = "#92400E"
    COLOR_LOW      = "#854D0E"
    COLOR_PASS     = "#166534"
    COLOR_INFO     = "#0369A1"
    COLOR_BRAND    = "#1D4ED8"
    COLOR_DIM      = "#4B5563"
    COLOR_COMMAND  = "#1F2937"
    COLOR_TEXT     = "#0F172A"

    COLOR_SCORE_HIGH = "#166534"
    COLOR_SCORE_MID  = "#15803D"
    COLOR_SCORE_LOW  = "#92400E"
    COLOR_SCORE_POOR = "#B91C1C"

    PROGRESS_BAR_COLOR      = "#1D4ED8"
    PROGRESS_COMPLETE_COLOR = "#166534"


# ── Rich styles ───────────────────────────────────────────────────────────────

STYLE_HIGH     = Style(color=COLOR_HIGH,   bold=True)
STYLE_MEDIUM   = Style(color=COLOR_MEDIUM, bold=True)
STYLE_LOW      = Style(color=COLOR_LOW)
STYLE_PASS     = Style(color=COLOR_PASS,   bold=True)
STYLE_INFO     = Style(color=COLOR_INFO)
STYLE_BRAND    = Style(color=COLOR_BRAND,  bold=True)
STYLE_DIM      = Style(color=COLOR_DIM)
STYLE_SECTION  = Style(color=COLOR_BRAND,  bold=True)
STYLE_COMMAND  = Style(color=COLOR_COMMAND)
STYLE_SPINNER  = Style(color=COLOR_BRAND)

# Width of the audit progress bar and the score gauge.
BAR_WIDTH = 22


# ── Finding icons ─────────────────────────────────────────────────────────────

ICON_PASS = "✅"
ICON_HIGH = "🔴"
ICON_MEDIUM = "⚠️ "
ICON_LOW = "🔸"
ICON_INFO = "ℹ️ "
ICON_FIX = "🔧"
ICON_LOCK = "🔐"
ICON_SHIELD = "🛡️ "

SEVERITY_ICONS: dict[str, str] = {
    "high": ICON_HIGH,
    "medium": ICON_MEDIUM,
    "low": ICON_LOW,
    "info": ICON_INFO,
}

SEVERITY_STYLES: dict[str, Style] = {
    "high": STYLE_HIGH,
    "medium": STYLE_MEDIUM,
    "low": STYLE_LOW,
    "info": STYLE_INFO,
}


def finding_icon(status: str, severity: str) -> str:
    return ICON_PASS if status == "passed" else SEVERITY_ICONS.get(severity, ICON_INFO)


def finding_style(status: str, severity: str) -> Style:
    return STYLE_PASS if status == "passed" else SEVERITY_STYLES.get(severity, STYLE_INFO)


# ── Outcome icons ─────────────────────────────────────────────────────────────

OUTCOME_ICONS: dict[str, str] = {
    "applied": "✅",
    "skipped": "⏭️ ",
    "failed": "❌",
    "rolled_back": "↩️ ",
}

OUTCOME_STYLES: dict[str, Style] = {
    "applied": STYLE_PASS,
    "skipped": STYLE_DIM,
    "failed": STYLE_HIGH,
    "rolled_back": STYLE_MEDIUM,
}


# ── Danger class labels ───────────────────────────────────────────────────────

DANGER_LABELS: dict[str, str] = {
    "safe": f"{ICON_FIX} Safe",
    "confirm_required": f"{ICON_LOCK} Needs confirmation",
    "lockout_protected": f"{ICON_SHIELD}SSH-protected",
}

DANGER_STYLES: dict[str, str] = {
    "safe": COLOR_PASS,
    "confirm_required": COLOR_MEDIUM,
    "lockout_protected": COLOR_HIGH,
}


# ── Score color ───────────────────────────────────────────────────────────────

def score_color(value: int) -> str:
    if value >= 90:
        return COLOR_SCORE_HIGH
    if value >= 75:
        return COLOR_SCORE_MID
    if value >= 55:
        return COLOR_SCORE_LOW
    return COLOR_SCORE_POOR


# ── Rich Theme ────────────────────────────────────────────────────────────────

VPSAUDIT_THEME = Theme(
    {
        "high":     f"{COLOR_HIGH} bold",
        "medium":   f"{COLOR_MEDIUM} bold",
        "low":      COLOR_LOW,
        "pass":     f"{COLOR_PASS} bold",
        "info":     COLOR_INFO,
        "brand":    f"{COLOR_BRAND} bold",
        "dim":      COLOR_DIM,
        "section":  f"{COLOR_BRAND} bold",
        "command":  COLOR_COMMAND,
        "text":     COLOR_TEXT,
    }
)
