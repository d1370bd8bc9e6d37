"""Centralized logging service using loguru.

Importing this module configures the sinks. Pipeline code logs through
``loguru.logger`` directly and uses the helpers below for the structured
lines (``LLM_CALL``, ``PROVIDER_CALL``, ``RESEARCH_STEP``, ``EVENT``) that
carry a JSON payload.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from medresearch.config import settings

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

if settings.log_dir:
    logger.add(
        Path(settings.log_dir) / "medresearch_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="00:00",
        retention=f"{settings.log_retention_days} days",
        compression="zip",
    )

# Framework and network libraries log through the standard library.
for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _payload(**fields: Any) -> str:
    return json.dumps({"timestamp": datetime.now(timezone.utc).isoformat(), **fields}, default=str)


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    payload = _payload(
        model=model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        duration_ms=duration_ms,
        status=status,
        error=error,
    )
    if error:
        logger.error(f"LLM_CALL_FAILED: {payload}")
    else:
        logger.info(f"LLM_CALL: {payload}")


def log_provider_call(
    provider: str,
    query: str,
    retrieved: int,
    duration_ms: int,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """One knowledge-provider call; timeouts and failures log as warnings
    because the round carries on without that provider."""
    payload = _payload(
        provider=provider,
        query=query[:120],
        retrieved=retrieved,
        duration_ms=duration_ms,
        status=status,
        error=error,
    )
    if status == "success":
        logger.info(f"PROVIDER_CALL: {payload}")
    else:
        logger.warning(f"PROVIDER_CALL_{status.upper()}: {payload}")


def log_research_step(
    request_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    logger.info(
        "RESEARCH_STEP: "
        + _payload(request_id=request_id, step_type=step_type, status=status, data=data)
    )


def log_event(event_type: str, message: str, **kwargs) -> None:
    """Log a generic event."""
    logger.info(f"EVENT: {_payload(event_type=event_type, message=message, **kwargs)}")
