"""
Package logging for AuctionMind.

Every module logs through a child of the "auctionmind" logger, e.g.
get_logger("cache.result_cache") -> "auctionmind.cache.result_cache". The
package logger writes to stdout and does not propagate to the root logger.
Level comes from AUCTIONMIND_LOG_LEVEL, then LOG_LEVEL, default INFO; the
configured level can be applied later with configure_logging().
"""
import logging
import os
import sys
from typing import Optional

PACKAGE_LOGGER = "auctionmind"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(PACKAGE_LOGGER)


def _env_level() -> str:
    return (os.getenv("AUCTIONMIND_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO").upper()


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attach the stdout handler once and set the package level.

    Args:
        level: Level name such as "DEBUG"; the environment level when omitted

    Returns:
        The package logger
    """
    level = (level or _env_level()).upper()
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)
    logger.propagate = False
    return logger


configure_logging()


def get_logger(name: str = None) -> logging.Logger:
    """Child logger under "auctionmind", or the package logger itself."""
    if name:
        return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
    return logger
