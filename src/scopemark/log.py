"""Logging setup for the scopemark command line."""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from scopemark.config import Config

LOGGER_NAME = "scopemark"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: Config, root: Path, console: Console | None = None, verbose: bool = False) -> logging.Logger:
    """Attach a rich console handler and, if enabled, a file handler to the package logger.

    Calling it again replaces the handlers installed by the previous call.
    """
    log = logging.getLogger(LOGGER_NAME)
    for handler in list(log.handlers):
        if getattr(handler, "_scopemark", False):
            log.removeHandler(handler)
            handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler._scopemark = True  # type: ignore[attr-defined]
    log.addHandler(console_handler)

    levels = [console_handler.level]
    if config.log_enabled:
        file_handler = logging.FileHandler(root / config.log_filepath, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(getattr(logging, config.log_level, logging.INFO))
        file_handler._scopemark = True  # type: ignore[attr-defined]
        log.addHandler(file_handler)
        levels.append(file_handler.level)

    log.setLevel(min(levels))
    return log
