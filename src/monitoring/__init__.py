"""
Logging infrastructure for the Mycelix Music API.

This package provides:
- Structured logging with JSON or colored console output
- Redaction of keys, signatures and wallet addresses
- Request ID and timing middleware

Usage:
    from monitoring import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
    logger.info("Song registered", extra={"song_id": "artist-song"})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.middleware import setup_request_logging

__all__ = [
    "LoggingContext",
    "configure_logging",
    "get_logger",
    "setup_request_logging",
]
