"""Shared utility functions."""

import logging
import shutil
import subprocess
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("agentvps")


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    goes through the logging system instead of directly to the terminal.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level
        self._buf = ""

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.log(self.level, line)

    def flush(self) -> None:
        if self._buf.strip():
            logger.log(self.level, self._buf)
            self._buf = ""


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl, propagate in [
        ("urllib3", logging.WARNING, True),
        ("httpx", logging.WARNING, True),
        ("httpcore", logging.WARNING, True),
        ("paramiko", logging.WARNING, True),
        ("fabric", logging.WARNING, True),
        ("invoke", logging.WARNING, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def missing_tools(tools: list[str]) -> list[str]:
    """:return: names from ``tools`` that are not on PATH"""
    return [tool for tool in tools if shutil.which(tool) is None]


def run_cmd(*args, check: bool = True, input: str | None = None) -> str:
    """Execute local command and return stdout.

    :raises subprocess.CalledProcessError: If ``check`` and the command fails
    """
    result = subprocess.run(args, capture_output=True, text=True, input=input)
    if check and result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, args, result.stdout, result.stderr
        )
    return result.stdout.strip()
