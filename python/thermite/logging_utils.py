import logging
import sys
import traceback
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(level: int = logging.INFO, fmt: Optional[str] = None) -> None:
    """Configure root logging once. Subsequent calls are no-ops.

    Logs go to stderr so that stdout carries only image references.
    """
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=fmt or DEFAULT_FORMAT, stream=sys.stderr)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module/logger by name, after ensuring logging is configured."""
    setup_logging()
    return logging.getLogger(name) if name else logging.getLogger("thermite")


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
        logger.error(f"Exception message: {exc_info}")
        logger.debug("".join(traceback.format_exception(type(exc_info), exc_info, exc_info.__traceback__)))
        return
    logger.debug(traceback.format_exc())
