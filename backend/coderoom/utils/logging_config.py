"""
Structured Logging Configuration for the CodeRoom backend

Uses loguru for production-ready logging with:
- Human readable console output (or JSON lines when LOG_JSON is set)
- File rotation with compression
- A separate websocket log for relay debugging
- Interception of standard logging (uvicorn, SQLAlchemy)
"""

import sys
import logging
from pathlib import Path

from loguru import logger as loguru_logger

from coderoom.config import settings


FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message} | {extra}"


class InterceptHandler(logging.Handler):
    """
    Intercept standard logging messages and redirect to Loguru.
    This allows compatibility with third-party libraries using standard logging.
    """

    def emit(self, record: logging.LogRecord) -> None:
        # Get corresponding Loguru level if it exists
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        loguru_logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging() -> None:
    """
    Configure Loguru for production use.
    Call this once at application startup.
    """
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    loguru_logger.remove()
    loguru_logger.configure(extra={"name": "coderoom"})

    if settings.LOG_JSON:
        loguru_logger.add(sys.stdout, level=settings.LOG_LEVEL, serialize=True)
    else:
        loguru_logger.add(
            sys.stdout,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "<level>{message}</level>"
            ),
            level=settings.LOG_LEVEL,
            colorize=True,
            backtrace=True,
            diagnose=settings.DEBUG,
        )

    # All logs (INFO and above)
    loguru_logger.add(
        log_dir / "app.log",
        format=FILE_FORMAT,
        level="INFO",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        backtrace=True,
        diagnose=settings.DEBUG,
        encoding="utf-8",
    )

    # Error logs only
    loguru_logger.add(
        log_dir / "error.log",
        format=FILE_FORMAT,
        level="ERROR",
        rotation="00:00",
        retention="90 days",
        compression="zip",
        backtrace=True,
        diagnose=True,
        encoding="utf-8",
    )

    # Relay traffic (join/leave/dispatch), kept apart for debugging room sync
    loguru_logger.add(
        log_dir / "websocket.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="500 MB",
        retention="7 days",
        compression="zip",
        filter=lambda record: "websocket" in str(record["extra"].get("name", "")).lower(),
        encoding="utf-8",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str):
    """
    Get a logger for a specific module.

    Usage:
        from coderoom.utils.logging_config import get_logger
        logger = get_logger(__name__)
    """
    return loguru_logger.bind(name=name)


fastapi_logger = loguru_logger.bind(name="fastapi")
websocket_logger = loguru_logger.bind(name="websocket")
database_logger = loguru_logger.bind(name="database")
auth_logger = loguru_logger.bind(name="auth")
room_logger = loguru_logger.bind(name="room")


__all__ = [
    "setup_logging",
    "get_logger",
    "loguru_logger",
    "fastapi_logger",
    "websocket_logger",
    "database_logger",
    "auth_logger",
    "room_logger",
]
