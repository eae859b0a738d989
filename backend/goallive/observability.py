"""Logfire cloud observability initialization and instrumentation."""

import logging

import logfire
from fastapi import FastAPI

from goallive import __version__
from goallive.config import Settings

logger = logging.getLogger(__name__)

_initialized = False


def initialize_logfire(settings: Settings) -> bool:
    """
    Initialize Logfire with instrumentation.

    Must be called once at application startup. When a token is configured
    this instruments:
    - SQLAlchemy (ledger store queries)
    - HTTPX clients (custody service)
    - Python logging (bridges to Logfire)

    Returns:
        True if Logfire is active. Without a token it logs a warning and
        returns False.
    """
    global _initialized

    if not settings.logfire_token:
        logger.warning("Logfire token not set - observability disabled")
        return False

    try:
        logfire.configure(
            token=settings.logfire_token,
            service_name="goallive",
            service_version=__version__,
            environment=settings.environment,
        )

        logfire.instrument_sqlalchemy()
        logfire.instrument_httpx()

        root_logger = logging.getLogger()
        root_logger.addHandler(logfire.LogfireLoggingHandler())

        _initialized = True
        logger.info("Logfire cloud tracking initialized")

    except Exception as e:
        logger.warning(f"Failed to initialize Logfire: {e}")

    return _initialized


def instrument_app(app: FastAPI, settings: Settings) -> None:
    """Trace FastAPI requests once Logfire is up."""
    if not _initialized:
        return
    try:
        logfire.instrument_fastapi(app)
    except Exception as e:
        logger.warning(f"FastAPI instrumentation skipped: {e}")
