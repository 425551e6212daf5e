"""Rotating logger setup for the wizard backend."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def resolve_level(level: int | str) -> int:
    """Accept logging.INFO or a name such as "debug"; unknown names fall back to INFO."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logger(
    name: str = "wizard",
    log_file: str = "./logs/wizard.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int | str = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure the wizard logger with a rotating file and optional console output.

    Child loggers ("wizard.orchestrator", "wizard.tasks", ...) propagate to
    the handlers installed here. Calling this again (e.g. with a different
    WIZARD_LOG_FILE) replaces the handlers from the previous call instead of
    stacking duplicates.

    Args:
        name: Logger name
        log_file: Path to log file (parent directory is created)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level, as an int or a level name
        console: Also log to stderr

    Returns:
        Configured logger instance
    """
    level = resolve_level(level)
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    for handler in [h for h in logger.handlers if getattr(h, "wizard_managed", False)]:
        logger.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [
        RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.wizard_managed = True
        logger.addHandler(handler)

    return logger
