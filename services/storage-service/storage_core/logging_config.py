# services/storage-service/storage_core/logging_config.py

import logging
import sys


def setup_logging(level: int = logging.INFO):
    """
    Configures the root logger for the service.
    Call once at startup (see main.lifespan).
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
        stream=sys.stdout,
    )
    # Silence noisy libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
