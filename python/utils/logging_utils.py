import logging
import os
import traceback
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_FORMAT = "[%(asctime)s %(levelname)s] %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"


def resolve_log_level(level: Optional[str] = None) -> int:
    """Turn a level name (or the LOG_LEVEL environment variable) into a logging level.

    Unknown names fall back to INFO rather than failing, so a typo in the
    environment never keeps the daemon from starting.
    """
    name = (level or os.environ.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().upper()
    resolved = logging.getLevelName(name)
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure root logging once. Subsequent calls only adjust the level.
    If fmt is not provided, a sensible default is used.
    """
    root = logging.getLogger()
    if root.handlers:
        if level is not None:
            root.setLevel(resolve_log_level(level))
        return
    logging.basicConfig(
        level=resolve_log_level(level),
        format=fmt or DEFAULT_FORMAT,
        datefmt=DEFAULT_DATE_FORMAT,
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module/logger by name, after ensuring logging is configured."""
    setup_logging()
    return logging.getLogger(name) if name else logging.getLogger(__name__)


def log_exception(logger: logging.Logger, message: str = "An error occurred", exc_info: Exception = None) -> None:
    """Centralized exception logging with full traceback.

    Args:
        logger: Logger instance to use
        message: Custom error message to log before the traceback
        exc_info: Exception instance (if None, uses current exception context)
    """
    logger.error(message)
    if exc_info is not None:
        logger.error(f"Exception type: {type(exc_info).__name__}")
        logger.error(f"Exception message: {str(exc_info)}")
    logger.debug("Full traceback:")
    logger.debug(traceback.format_exc())
