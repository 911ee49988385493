"""Loguru setup for the chat engine.

Console output is always on; a rotating file sink (optionally JSON
lines) is added when ``AppConfig.log_file`` is set.  Records from the
standard ``logging`` module, mostly httpx request lines, are forwarded
to Loguru at ``AppConfig.library_log_level``.
"""

from __future__ import annotations

import sys
import logging
from pathlib import Path
from typing import Dict

from loguru import logger

from ..config.app_config import AppConfig, get_app_config

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


class LoguruHandler(logging.Handler):
    """Forward standard logging records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except (KeyError, ValueError):
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def level_filter(app_config: AppConfig) -> Dict[str, str]:
    """Loguru filter mapping module names to their minimum level.

    ``""`` carries ``log_level`` for every module without an override.
    """
    levels = {"": app_config.log_level}
    levels.update(app_config.log_module_levels)
    return levels


def setup_logging(app_config: AppConfig | None = None) -> "loguru.Logger":
    """Replace Loguru's default sink with the engine's console and file sinks."""
    app_config = app_config or get_app_config()
    logger.remove()

    levels = level_filter(app_config)
    logger.add(
        sys.stdout,
        level="TRACE",
        filter=levels,
        format=CONSOLE_FORMAT,
        colorize=True,
        backtrace=True,
        diagnose=app_config.app_debug,
    )

    if app_config.log_file:
        Path(app_config.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            app_config.log_file,
            level="TRACE",
            filter=levels,
            format=FILE_FORMAT,
            serialize=app_config.log_serialize,
            rotation="10 MB",
            retention="30 days",
            compression="zip",
            backtrace=True,
            diagnose=app_config.app_debug,
        )

    logging.basicConfig(handlers=[LoguruHandler()], level=app_config.library_log_level, force=True)

    logger.debug(
        "Logging ready (env={}, level={}, overrides={})",
        app_config.app_env,
        app_config.log_level,
        app_config.log_module_levels,
    )
    return logger
