"""
modguard logging utilities

Logger setup shared by the validation pipeline, the sandbox orchestrator
and the API server.
"""

import logging
from typing import Optional, Union

# Default logging format
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are chatty at INFO while we poll container state
NOISY_LOGGERS = ("docker", "urllib3")


def resolve_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    """
    Turn a level name ("debug", "WARNING") or number into a logging level.

    Unknown names fall back to ``default``.
    """
    if level is None:
        return default
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else default


def get_logger(name: str, level: Union[int, str, None] = None) -> logging.Logger:
    """
    Get a logger with standard configuration.

    Args:
        name: Logger name (usually __name__)
        level: Optional log level override (number or name)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        logger.addHandler(handler)

    if level is not None:
        logger.setLevel(resolve_level(level))
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)

    return logger


def configure_logging(
    level: Union[int, str] = logging.INFO,
    format: str = DEFAULT_FORMAT,
    file_path: Optional[str] = None,
    quiet_third_party: bool = True,
) -> None:
    """
    Configure root logging for the application.

    Args:
        level: Log level (number or name)
        format: Log format string
        file_path: Optional file path for file logging
        quiet_third_party: Raise docker/urllib3 loggers to WARNING
    """
    formatter = logging.Formatter(format)

    root_logger = logging.getLogger()
    root_logger.setLevel(resolve_level(level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if quiet_third_party:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
