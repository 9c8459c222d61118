"""Centralized logging configuration with Pydantic Logfire integration."""

import hashlib
import logging
from typing import Any

import logfire
from fastapi import FastAPI

from pagecrawl.config import get_settings
from pagecrawl.constants import SERVICE_NAME, SERVICE_VERSION


def setup_logfire(app: FastAPI | None = None) -> None:
    """
    Initialize and configure Pydantic Logfire for observability.

    Sets up:
    - FastAPI instrumentation when an app is given (request/response tracing)
    - Pydantic instrumentation (model validation logging)
    - Python logging levels by environment
    """
    settings = get_settings()

    logfire_config: dict[str, Any] = {
        "service_name": SERVICE_NAME,
        "service_version": SERVICE_VERSION,
        "environment": settings.env,
        # Without a token nothing is sent; logs still reach the console.
        "send_to_logfire": "if-token-present",
    }
    if settings.logfire_token:
        logfire_config["token"] = settings.logfire_token

    logfire.configure(**logfire_config)

    if app is not None:
        logfire.instrument_fastapi(app)
    logfire.instrument_pydantic()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if settings.env == "local":
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    else:
        # Logfire handles structured formatting
        logging.basicConfig(level=log_level, format="%(message)s")


def source_fingerprint(source: str | None) -> str:
    """
    Summarize operator code for logs without logging the code itself.

    Args:
        source: Page function source

    Returns:
        ``"<chars> chars, sha256:<first 12 hex digits>"``
    """
    if not source:
        return "empty"
    digest = hashlib.sha256(source.encode("utf-8")).hexdigest()[:12]
    return f"{len(source)} chars, sha256:{digest}"
