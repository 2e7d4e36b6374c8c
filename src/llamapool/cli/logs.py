"""Console logging for the CLI."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

from llamapool.log_context import install_log_context

_FORMAT = "[%(workflow_id)s/%(job_id)s] %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Send llamapool logs to stderr through rich.

    Warnings and errors normally; everything from DEBUG up with ``--verbose``.
    """
    install_log_context()
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="[%X]"))

    root = logging.getLogger("llamapool")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False
