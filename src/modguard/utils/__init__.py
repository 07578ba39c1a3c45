"""
modguard utilities

Logging helpers.
"""

from modguard.utils.logger import (
    get_logger,
    configure_logging,
    resolve_level,
    DEFAULT_FORMAT,
)

__all__ = [
    "get_logger",
    "configure_logging",
    "resolve_level",
    "DEFAULT_FORMAT",
]
