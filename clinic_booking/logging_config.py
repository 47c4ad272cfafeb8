"""Logging setup shared by the client, the reservation helper and the facade."""
import logging
import sys

from . import config

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(log_level: str | None = None) -> None:
    """
    Configure root logging once for the process.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR (defaults to CLINIC_LOG_LEVEL)
    """
    level = (log_level or config.LOG_LEVEL).upper()
    logging.basicConfig(
        format=LOG_FORMAT,
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
