"""
Process logging setup (loguru)
"""

import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None,
                      rotation: str = "1 day", retention: str = "7 days") -> None:
    """Replace the default loguru sink with a stderr sink and an optional rotating file"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)

    if log_file:
        logger.add(
            log_file,
            rotation=rotation,
            retention=retention,
            level=level.upper(),
            enqueue=True,
        )
