"""Logging configuration for dotkeeper.

Console output goes through a rich handler; an optional log file receives
everything at debug level in a plain, parseable format.

Example:
    ```python
    from dotkeeper.core.logging import setup_logging

    setup_logging(debug=True, log_file="~/.dotkeeper/dotkeeper.log")
    ```
"""

import logging
import sys
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from rich.console import Console
from rich.logging import RichHandler

# Log records go to stderr so command output on stdout stays clean
console = Console(stderr=True)

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    debug: bool = False,
    log_file: Optional[str] = None,
    log_format: str = DEFAULT_FORMAT,
) -> None:
    """Set up logging configuration.

    Args:
        debug: Whether to enable debug logging (default: False).
        log_file: Optional path to a log file, written in addition to the
            console. ``~`` is expanded.
        log_format: Format string for the file handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    root_logger.handlers.clear()

    console_handler = RichHandler(
        console=console,
        show_path=debug,
        enable_link_path=debug,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=debug,
    )
    # Routine progress is shown by the commands themselves
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(log_format))
        root_logger.addHandler(file_handler)

    logger = logging.getLogger(__name__)
    logger.debug("Logging initialized (debug=%s)", debug)
    if log_file:
        logger.debug("Log file: %s", log_file)

    logging.getLogger("filelock").setLevel(logging.WARNING)

    def handle_exception(
        exc_type: Type[BaseException],
        exc_value: BaseException,
        exc_traceback: Optional[TracebackType],
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical(
            "Uncaught exception",
            exc_info=(exc_type, exc_value, exc_traceback),
        )

    sys.excepthook = handle_exception
