"""
Logging configuration for the face pipeline.

Log records carry a ``photo_id`` field so interleaved worker output can be
attributed to the photo being processed.
"""

import logging
import sys
import threading
from contextlib import contextmanager

_context = threading.local()


class PhotoContextFilter(logging.Filter):
    """Add the current photo id (if any) to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.photo_id = getattr(_context, "photo_id", "-")
        return True


@contextmanager
def photo_context(photo_id):
    """Tag log records emitted on this thread with ``photo_id``."""
    previous = getattr(_context, "photo_id", "-")
    _context.photo_id = photo_id
    try:
        yield
    finally:
        _context.photo_id = previous


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for the pipeline.

    Args:
        debug: Enable debug level logging
    """
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("[%(levelname)s] [photo=%(photo_id)s] %(name)s: %(message)s")
    )
    console_handler.addFilter(PhotoContextFilter())

    root_logger.addHandler(console_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (usually for ``__name__``)."""
    return logging.getLogger(name)
