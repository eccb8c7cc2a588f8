"""Logger configuration for runfeed.

Modules log through loguru with a bracketed component prefix, e.g.
``logger.info("[RELAY_POOL] ...")``. Keyword context passed to a log call
(cache_key, kinds, failed, ...) lands in ``extra`` and is written to the file sink.
"""

import logging
import sys
from pathlib import Path

from loguru import logger

from runfeed.config.settings import settings

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message} | {extra}"

# Third-party libraries that log per frame or per request through stdlib logging
NOISY_LOGGERS = ("websockets", "httpx", "httpcore")


def setup_logger(
    level: str | None = None,
    log_file: str | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """Configure loguru sinks for the CLI or an embedding application.

    Args:
        level: Logging level; defaults to settings.log_level
        log_file: Optional path to a rotated log file; defaults to settings.log_file
        rotation: Log rotation size (e.g., "10 MB", "1 day")
        retention: Log retention period (e.g., "7 days", "1 month")
    """
    level = (level or settings.log_level).upper()
    log_file = log_file or settings.log_file

    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
        )

    if level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(f"Logger initialized with level={level}, file={log_file or 'none'}")
