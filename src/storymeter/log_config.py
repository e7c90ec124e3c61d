"""Logging and Sentry setup for the metering service."""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0

_SENSITIVE_HEADERS = ("authorization", "cookie", "x-razorpay-signature")
_HEALTH_TRANSACTIONS = ("/health", "health_check")


def configure_logging(
    service_name: str,
    log_level: int | str = logging.INFO,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure stdlib logging and structlog to share one stdout handler.

    Call this once at startup, after init_sentry().

    Args:
        service_name: Name of the service for log context
        log_level: Minimum log level, as an int or a level name
        json_format: JSON output (True) or console output (False). If None,
                     JSON is used everywhere except ENVIRONMENT=development.

    Returns:
        Logger bound to the service name
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    if json_format is None:
        environment = os.environ.get("ENVIRONMENT", "development")
        json_format = environment != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def _before_send(event: Event, _hint: dict[str, Any]) -> Event | None:
    """Scrub credentials and webhook signatures from request headers."""
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in list(headers):
                if header.lower() in _SENSITIVE_HEADERS:
                    headers[header] = "[Filtered]"
    return event


def _before_send_transaction(event: Event, _hint: dict[str, Any]) -> Event | None:
    """Drop health check transactions."""
    if event.get("transaction", "") in _HEALTH_TRANSACTIONS:
        return None
    return event


def init_sentry(
    service_name: str,
    dsn: str | None = None,
    environment: str | None = None,
    release: str | None = None,
    traces_sample_rate: float | None = None,
) -> bool:
    """
    Initialize Sentry with the web, HTTP client, database and Redis integrations.

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    effective_dsn = dsn or os.environ.get("SENTRY_DSN")
    if not effective_dsn:
        return False

    effective_env = environment or os.environ.get("ENVIRONMENT", "development")
    if traces_sample_rate is None:
        traces_sample_rate = (
            DEFAULT_TRACES_SAMPLE_RATE if effective_env == "production" else DEV_TRACES_SAMPLE_RATE
        )

    sentry_sdk.init(
        dsn=effective_dsn,
        environment=effective_env,
        release=release or f"{service_name}@unknown",
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            SqlalchemyIntegration(),
            RedisIntegration(),
        ],
        before_send=_before_send,
        before_send_transaction=_before_send_transaction,
    )
    sentry_sdk.set_tag("service", service_name)
    return True
