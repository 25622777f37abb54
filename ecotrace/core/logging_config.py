"""
Logging setup shared by the API process and background tasks
"""

import logging

from ecotrace.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = None) -> None:
    """Configure root logging once, using LOG_LEVEL unless overridden"""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    # Third-party clients are chatty at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
