"""Logging configuration using loguru."""

import sys
from pathlib import Path

from loguru import logger

from hodwatch.config.settings import get_settings


def setup_logging(component: str = "hodwatch") -> None:
    """Configure logging for one service process.

    Args:
        component: Process name, used for the per-component log file
    """
    settings = get_settings()

    # Remove default handler
    logger.remove()

    # Console logging format
    if settings.log_format == "json":
        console_format = (
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{name}:{function}:{line} | "
            "{message}"
        )
    else:
        console_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )

    logger.add(
        sys.stderr,
        format=console_format,
        level=settings.log_level,
        colorize=settings.log_format != "json",
    )

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(exist_ok=True)

    logger.add(
        log_dir / "error.log",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
        level="ERROR",
        rotation="10 MB",
        retention="30 days",
        compression="gz",
    )

    # Alerts only, shared by every component so the scanner's output is easy to tail
    logger.add(
        log_dir / "alerts.log",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {message}",
        level="INFO",
        rotation="50 MB",
        retention="90 days",
        filter=lambda record: "hod alert" in record["message"].lower(),
    )

    logger.add(
        log_dir / f"{component}.log",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
        level=settings.log_level,
        rotation="50 MB",
        retention="7 days",
        compression="gz",
    )

    logger.info(
        f"Logging configured - component: {component}, "
        f"level: {settings.log_level}, format: {settings.log_format}"
    )
