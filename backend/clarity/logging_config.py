"""
Centralized logging configuration.

Call setup_logging() once at application startup.
"""

import logging


class SuppressHealthCheckFilter(logging.Filter):
    """Filter to suppress noisy health check access logs."""

    def filter(self, record):
        return "/health" not in record.getMessage()


def setup_logging(log_level: str | int = logging.INFO) -> None:
    """
    Configure application-wide logging.

    Args:
        log_level: Level name ("INFO") or numeric level for the root logger
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    logging.getLogger("uvicorn.access").addFilter(SuppressHealthCheckFilter())

    logging.getLogger(__name__).info(
        "Logging configured with level: %s", logging.getLevelName(log_level)
    )
