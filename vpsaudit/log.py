"""
Logging setup.

Library code only ever calls logging.getLogger("vpsaudit.<area>").
The CLI calls configure_logging() once to attach handlers:

  stderr: rich.logging.RichHandler, WARNING (DEBUG with --verbose)
  file  : optional plain-text handler, always DEBUG, for an audit trail
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, log_file: Path | None = None) -> logging.Logger:
    """Attach handlers to the 'vpsaudit' logger and return it. Safe to call twice."""
    root = logging.getLogger("vpsaudit")
    root.setLevel(logging.DEBUG)
    root.propagate = False

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(console_handler)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            root.warning("Cannot open log file %s: %s", log_file, e)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            root.addHandler(file_handler)

    return root
