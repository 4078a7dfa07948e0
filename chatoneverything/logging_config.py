import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from . import config


_LOGGER_NAME = "chatoneverything"
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _silence_uvicorn() -> None:
    """Detach uvicorn loggers so a disabled setup stays quiet."""
    for name in _UVICORN_LOGGERS:
        ul = logging.getLogger(name)
        ul.handlers.clear()
        ul.propagate = False
        ul.setLevel(logging.CRITICAL)


def setup_logging() -> logging.Logger:
    """Logging is off unless CHATONEVERYTHING_LOG=1 or CHATONEVERYTHING_CONSOLE=1."""
    logger = logging.getLogger(_LOGGER_NAME)
    level = logging.DEBUG if config.DEBUG else logging.INFO
    logger.setLevel(level)

    if not config.LOG_ENABLED:
        logger.handlers.clear()
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        _silence_uvicorn()
        return logger

    if logger.handlers and not all(isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger
    logger.handlers.clear()

    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    os.makedirs(config.DATA_DIR, exist_ok=True)
    file_handler = RotatingFileHandler(config.LOG_FILE, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    console = None
    if config.CONSOLE_LOG:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(fmt)
        console.setLevel(level)
        logger.addHandler(console)

    for name in _UVICORN_LOGGERS:
        ul = logging.getLogger(name)
        ul.handlers.clear()
        ul.propagate = False
        ul.setLevel(level)
        ul.addHandler(file_handler)
        if console is not None:
            ul.addHandler(console)

    return logger


log = setup_logging()


def reload_logging() -> logging.Logger:
    """Rebuild handlers after configuration was reloaded from the environment."""
    logger = logging.getLogger(_LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True
    for name in _UVICORN_LOGGERS:
        ul = logging.getLogger(name)
        ul.handlers.clear()
        ul.propagate = True
    return setup_logging()
