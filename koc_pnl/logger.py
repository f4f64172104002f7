"""
Logging configuration
"""
import sys
from pathlib import Path

from loguru import logger

from koc_pnl.config import get_settings


def setup_logger(level=None):
    """Configure loguru sinks for the dashboard process"""
    settings = get_settings()
    logger.remove()

    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level or settings.log_level,
    )

    log_dir = Path(settings.log_dir)
    logger.add(
        str(log_dir / "koc_pnl_{time:YYYY-MM-DD}.log"),
        rotation="00:00",
        retention="14 days",
        level="INFO",
    )
    return logger
