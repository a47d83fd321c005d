"""Observability package for DocSkills."""

from .logging import (
    ColoredFormatter,
    JSONFormatter,
    get_logger,
    level_for_verbosity,
    setup_logging
)

__all__ = [
    'ColoredFormatter',
    'JSONFormatter',
    'get_logger',
    'level_for_verbosity',
    'setup_logging'
]
