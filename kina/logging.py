"""Logging configuration for kina.

Structured logging via loguru. Logging is disabled by default, as befits a
library; the CLI (or any embedding program) enables it with a LogConfig.

Example:
    from kina.logging import LogConfig, setup_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="kina.log"))
    ...
    teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal, TypeAlias

from loguru import logger

logger.disable("kina")

LogLevel: TypeAlias = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)

VERBOSE_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level (DEBUG, INFO, WARNING, ERROR).
        file: Path to a log file. If provided, everything at DEBUG and above
            is written there as well.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g., "10 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "WARNING"
    file: str | None = None
    console: bool = True
    rotation: str = "10 MB"
    retention: int = 5


def setup_logging(config: LogConfig) -> list[int]:
    """Enable kina logging and return the handler ids that were added."""
    logger.enable("kina")
    handler_ids: list[int] = []

    if config.console:
        fmt = VERBOSE_CONSOLE_FORMAT if config.level == "DEBUG" else CONSOLE_FORMAT
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=config.level,
                format=fmt,
                colorize=True,
                filter="kina",
            )
        )

    if config.file:
        handler_ids.append(
            logger.add(
                config.file,
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                diagnose=False,
                filter="kina",
            )
        )

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("kina")
