"""Logging for the csl daemon and CLI, routed through one loguru sink.

`csl run` is usually started by launchd or systemd, which capture stderr, so
the sink is stderr with a compact `time | level | message` line. Components
log `key=value` pairs after a `|` (path, session, offset) so a journal can be
grepped per transcript.

Environment:
    CSL_LOG_LEVEL       minimum level (default INFO)
    CSL_LOG_COLOR       force ANSI colour on or off (default: stderr is a TTY)
    CSL_LOG_WATCHFILES  show watchfiles backend records (default off)
"""

from __future__ import annotations

import logging
import os
import sys

from loguru import logger as _BASE_LOGGER


_logger = _BASE_LOGGER

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    """Return boolean environment flag with common truthy values."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level:<8}</level> | <level>{message}</level>\n"


def _log_filter(record: dict) -> bool:
    """Drop watchfiles batch dumps (unless opted in) and event-loop noise."""
    logger_name = str(record.get("name") or "")
    if logger_name.startswith("watchfiles"):
        return _env_flag("CSL_LOG_WATCHFILES", default=False)
    if logger_name == "asyncio":
        return False
    return True


class _InterceptHandler(logging.Handler):
    """Re-emit stdlib records (watchfiles and friends) through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        """Forward one stdlib log record into loguru."""
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        _logger.opt(exception=record.exc_info).patch(
            lambda r: r.update(name=record.name)
        ).log(level, record.getMessage())


def configure_logging(level: str | None = None) -> None:
    """Install the stderr sink and route stdlib logging into it.

    Safe to call repeatedly; `csl` calls it again at startup so a
    CSL_LOG_LEVEL changed after import still applies.
    """
    global _logger
    level = level or os.getenv("CSL_LOG_LEVEL", "INFO")
    colorize = _env_flag("CSL_LOG_COLOR", default=sys.stderr.isatty())

    _BASE_LOGGER.remove()
    _logger = _BASE_LOGGER
    _logger.add(
        sys.stderr,
        level=level,
        format=_FORMAT,
        filter=_log_filter,
        colorize=colorize,
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for name in list(logging.root.manager.loggerDict.keys()):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    # watchfiles logs every raw batch at DEBUG
    logging.getLogger("watchfiles").setLevel(logging.WARNING)


configure_logging()

logger = _logger

__all__ = ["logger", "configure_logging"]
