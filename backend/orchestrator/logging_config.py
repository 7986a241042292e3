"""Logging setup for the orchestration service."""
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once per process.

    Args:
        level: Log level name, e.g. ``INFO`` or ``DEBUG``.
    """
    global _configured
    if _configured:
        return
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # Provider SDK request logs are noisy at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
