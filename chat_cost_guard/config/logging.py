"""
Logging setup.

Installs a rich console handler on the root logger.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(name)s: %(message)s"


def configure_logging(level: str = "INFO", console: Console = None) -> None:
    """Configure root logging once for the process.

    Args:
        level: Name of the log level
        console: Console to write to (defaults to stderr)
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # The OpenAI SDK logs every HTTP request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
