"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from deepresearch.config import settings

LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "deepresearch_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

# Reduce noise from framework/network libraries
for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "hpack",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_external_api_call(
    service: str,
    method: str,
    url: str,
    status: int,
    duration_ms: int = 0,
    request_meta: Optional[dict[str, Any]] = None,
    response_meta: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
) -> None:
    """Log one outbound call. Metadata only, never payload content or credentials."""
    call_data = {
        "timestamp": _now(),
        "service": service,
        "method": method,
        "url": url,
        "status": status,
        "duration_ms": duration_ms,
        "request": request_meta or {},
        "response": response_meta or {},
        "error": error,
    }
    if error:
        logger.error(f"API_CALL_FAILED: {call_data}")
    else:
        logger.info(f"API_CALL: {call_data}")


def log_job_step(
    run_id: str,
    section_id: str,
    step: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a research job life-cycle step."""
    step_data = {
        "timestamp": _now(),
        "run_id": run_id,
        "section_id": section_id,
        "step": step,
        "status": status,
        "data": data,
    }
    if status in ("failed", "timed_out"):
        logger.warning(f"JOB_STEP: {step_data}")
    else:
        logger.info(f"JOB_STEP: {step_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
