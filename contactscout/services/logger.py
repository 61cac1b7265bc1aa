"""Centralized logging service using loguru.

Structured records are single lines tagged ``PROVIDER_CALL``, ``SEARCH_STAGE``,
``DB_OPERATION`` or ``EVENT`` followed by a JSON payload, so the daily log
files can be grepped by tag and parsed line by line.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from contactscout.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

# Stdlib loggers of the HTTP stack, LLM client and database driver
NOISY_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "openai._base_client",
    "asyncpg",
    "asyncio",
)


def configure_logging(
    level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    retention_days: Optional[int] = None,
) -> Path:
    """Install the console and daily file sinks. Returns the log directory."""
    log_dir = Path(log_dir or settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    # Drop the default handler and anything installed by an earlier call
    logger.remove()

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=(level or settings.app_log_level).upper(),
        colorize=True,
    )

    # One file per day, zipped once rotated
    logger.add(
        log_dir / "contactscout_{time:YYYY-MM-DD}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention=f"{retention_days or settings.log_retention_days} days",
        compression="zip",
    )

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())
    return log_dir


configure_logging()


def _emit(level: str, tag: str, payload: dict[str, Any]) -> None:
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **payload}
    logger.opt(depth=2).log(level, f"{tag}: {json.dumps(record, default=str)}")


def log_provider_call(
    service: str,
    operation: str,
    duration_ms: int = 0,
    status: str = "success",
    attempts: int = 1,
    error: Optional[str] = None,
) -> None:
    """Log a call to an external provider (LLM, search, scraper)."""
    _emit(
        "INFO" if status == "success" else "WARNING",
        "PROVIDER_CALL",
        {
            "service": service,
            "operation": operation,
            "duration_ms": duration_ms,
            "status": status,
            "attempts": attempts,
            "error": error,
        },
    )


def log_search_stage(
    search_id: str,
    stage: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    _emit("INFO", "SEARCH_STAGE", {"search_id": search_id, "stage": stage, "status": status, "data": data})


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a database operation. Failures go out at ERROR, the rest at DEBUG."""
    _emit(
        "ERROR" if error else "DEBUG",
        "DB_OPERATION",
        {"operation": operation, "table": table, "status": status, "details": details, "error": error},
    )


def log_event(event_type: str, message: str, **kwargs: Any) -> None:
    _emit("INFO", "EVENT", {"event_type": event_type, "message": message, **kwargs})
