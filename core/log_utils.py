from __future__ import annotations

import logging
import sys

from colorama import Fore, Style, just_fix_windows_console

SEPARATOR = "-" * 100
SUCCESS = 25

_LEVEL_COLOURS = {
    logging.DEBUG: Style.DIM,
    logging.INFO: "",
    SUCCESS: Fore.GREEN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}


class ColourFormatter(logging.Formatter):
    """Colour whole records by level; plain text when not on a terminal."""

    def __init__(self, fmt: str, *, use_colour: bool = True) -> None:
        super().__init__(fmt)
        self.use_colour = use_colour

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        colour = _LEVEL_COLOURS.get(record.levelno, "")
        if not self.use_colour or not colour:
            return text
        return f"{colour}{text}{Style.RESET_ALL}"


def setup_logging(level: int = logging.INFO) -> None:
    just_fix_windows_console()
    logging.addLevelName(SUCCESS, "SUCCESS")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ColourFormatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            use_colour=sys.stderr.isatty(),
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    # aiohttp logs every connection hiccup at DEBUG/INFO; the client reports its own.
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))


def success(logger: logging.Logger, msg: str, *args: object) -> None:
    logger.log(SUCCESS, msg, *args)


def format_elapsed(seconds: float) -> str:
    """``3723.5`` -> ``"1h2m3s (3723500.0ms)"``."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours}h{minutes}m{secs}s ({round(seconds * 1000, 2)}ms)"
