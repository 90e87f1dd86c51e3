from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import LOG_FILE


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """Configure loguru logger with the specified level.

    Call once from the entry point. Library code only calls ``logger.*``.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
            "{message}"
        ),
    )
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / LOG_FILE,
            level="DEBUG",
            rotation="5 MB",
            retention=3,
            encoding="utf-8",
        )
