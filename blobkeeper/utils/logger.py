"""Structured logging setup using structlog"""

import logging
import os
import sys
from typing import Any, Optional

import structlog

from blobkeeper.config import settings


def configure_third_party_loggers(log_level: int):
    """Configure third-party library loggers to reduce verbosity - ERROR only"""

    error_level = logging.ERROR

    # Uvicorn
    logging.getLogger("uvicorn.access").setLevel(error_level)
    logging.getLogger("uvicorn.error").setLevel(error_level)

    # APScheduler
    logging.getLogger("apscheduler").setLevel(error_level)
    logging.getLogger("apscheduler.executors").setLevel(error_level)
    logging.getLogger("apscheduler.scheduler").setLevel(error_level)

    # Aiohttp
    logging.getLogger("aiohttp").setLevel(error_level)
    logging.getLogger("aiohttp.client").setLevel(error_level)
    logging.getLogger("aiohttp.server").setLevel(error_level)

    # SQLAlchemy
    logging.getLogger("sqlalchemy").setLevel(error_level)
    logging.getLogger("sqlalchemy.engine").setLevel(error_level)
    logging.getLogger("sqlalchemy.pool").setLevel(error_level)

    # Alembic migrations only report problems
    logging.getLogger("alembic").setLevel(error_level)

    logging.getLogger("asyncio").setLevel(error_level)
    logging.getLogger("multipart").setLevel(error_level)


def configure_logging():
    """Configure structured logging with environment-aware settings"""

    if settings.environment == "production" and not os.getenv("LOG_LEVEL"):
        log_level = logging.ERROR
    else:
        log_level = getattr(logging, settings.log_level.upper(), logging.ERROR)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    configure_third_party_loggers(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a logger instance"""
    return structlog.get_logger(name)


def short_certificate(certificate: Optional[str], length: int = 16) -> str:
    """
    Shorten a blob certificate for log lines.

    Args:
        certificate: Hex certificate (with or without prefix)
        length: Number of leading characters to keep

    Returns:
        Truncated certificate safe for logging
    """
    if not certificate:
        return "[NONE]"
    if len(certificate) <= length:
        return certificate
    return f"{certificate[:length]}..."


def redact_url(url: Optional[str]) -> str:
    """Strip user info from a URL before logging it"""
    if not url:
        return "[NOT_SET]"
    if "@" in url and "://" in url:
        scheme, rest = url.split("://", 1)
        return f"{scheme}://[REDACTED]@{rest.split('@', 1)[1]}"
    return url


def log_storage_config(logger: Any, config: Any) -> None:
    """
    Log blob network, payment and renewal configuration without exposing credentials.

    Args:
        logger: Logger instance
        config: Settings object
    """
    logger.info(
        "storage_config_loaded",
        blob_proxy_url=redact_url(config.blob_proxy_url),
        blob_mode=config.blob_mode,
        blob_timeout_seconds=config.effective_blob_timeout,
        bucket_sizes_mib=config.blob_bucket_sizes_mib,
        max_file_size=config.max_file_size,
        payment_bypass=config.payment_bypass,
        ledger_api_url=redact_url(config.ledger_api_url),
        ledger_api_key="[REDACTED]" if config.ledger_api_key else "[NOT_SET]",
        renewal_enabled=config.renewal_enabled,
        renewal_interval_minutes=config.renewal_interval_minutes,
        renewal_lookahead_hours=config.renewal_lookahead_hours,
        renewal_period_days=config.renewal_period_days,
    )


# Configure logging on import
configure_logging()
