"""Logging setup shared by the API and the scripts."""

import logging

from invoicehub.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings.

    Args:
        settings: Application settings providing log_level
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    # httpx logs every request at INFO, which leaks presigned URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)
