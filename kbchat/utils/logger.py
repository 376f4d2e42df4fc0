"""Structured logging setup using Loguru."""
from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}"


def setup_logger(
    log_level: str = "INFO",
    log_file: str | None = "logs/kbchat.log",
    serialize: bool = False,
) -> None:
    """
    Configure loguru for the API server and the CLI.

    - Console: coloured, human-readable
    - File: rotating and compressed; JSON lines when `serialize` is set.
      No file sink when log_file is None.
    """
    logger.remove()
    logger.add(sys.stderr, level=log_level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=log_level,
            format=FILE_FORMAT,
            serialize=serialize,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
        )

    logger.info(f"[Logger] level={log_level} | file={log_file or '-'} | json={serialize}")


def mask_secret(value: str | None, visible: int = 8) -> str:
    """Render a token for logs: first `visible` characters then '...'."""
    if not value:
        return "<none>"
    return value[:visible] + "..."
