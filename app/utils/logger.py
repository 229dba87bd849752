"""
Logging configuration

Sync code logs through a connection-bound logger so every line from one
connection's quick sync or bulk import can be grepped by connection id.
"""
from loguru import logger
import sys
from app.config import get_settings

settings = get_settings()

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
    "<magenta>{extra[connection]}</magenta> - <level>{message}</level>"
)


def setup_logger():
    """Configure logger with appropriate settings"""
    logger.remove()  # Remove default handler
    logger.configure(extra={"connection": "-"})

    # Console logging
    logger.add(
        sys.stdout,
        colorize=True,
        format=CONSOLE_FORMAT,
        level=settings.log_level
    )

    # File sinks are skipped when log_dir is blank (e.g. read-only containers)
    if settings.log_dir:
        logger.add(
            f"{settings.log_dir}/platform_sync_{{time:YYYY-MM-DD}}.log",
            rotation="00:00",
            retention="30 days",
            compression="zip",
            level="INFO"
        )
        logger.add(
            f"{settings.log_dir}/sync_errors_{{time:YYYY-MM-DD}}.log",
            rotation="00:00",
            retention="90 days",
            level="ERROR"
        )

    return logger


def connection_log(connection_id, platform: str = ""):
    """Logger bound to one connection (shows as `shopify:42` in the console)"""
    label = f"{platform}:{connection_id}" if platform else str(connection_id)
    return log.bind(connection=label)


# Initialize logger
log = setup_logger()
