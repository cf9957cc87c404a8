# backend/consultflow/monitoring/sentry.py
from __future__ import annotations

import logging
import os
from typing import Any, Mapping

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

DEFAULT_TRACES_SAMPLE_RATE = 0.1
FAILED_REQUEST_STATUS_CODES = {403, *range(500, 600)}

_HEALTHCHECK_PATH_SUFFIXES = ("/health",)


def _resolve_environment() -> str | None:
    environment = (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "").strip()
    if environment:
        return environment
    from consultflow.core.config import settings

    return str(settings.environment) if settings.environment else None


def _resolve_release() -> str | None:
    release = (os.getenv("GIT_SHA") or "").strip()
    return release or None


def _is_healthcheck_path(path: str | None) -> bool:
    if not path:
        return False
    normalized = path.rstrip("/") or "/"
    return any(normalized.endswith(suffix) for suffix in _HEALTHCHECK_PATH_SUFFIXES)


def _traces_sampler(sampling_context: Mapping[str, Any]) -> float:
    scope = sampling_context.get("asgi_scope")
    path = scope.get("path") if isinstance(scope, Mapping) else None
    if _is_healthcheck_path(path if isinstance(path, str) else None):
        return 0.0
    return DEFAULT_TRACES_SAMPLE_RATE


def init_sentry(dsn: str | None = None) -> bool:
    dsn = (dsn or os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        logger.debug("Sentry disabled: SENTRY_DSN not set")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=_resolve_environment(),
        release=_resolve_release(),
        integrations=[
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            FastApiIntegration(
                transaction_style="endpoint",
                failed_request_status_codes=FAILED_REQUEST_STATUS_CODES,
            ),
            CeleryIntegration(monitor_beat_tasks=True),
        ],
        send_default_pii=False,
        traces_sampler=_traces_sampler,
    )
    logger.info("Sentry initialized")
    return True


def capture_tagged_exception(exc: BaseException, *, stage: str, context: Mapping[str, Any] | None = None) -> None:
    """Report an exception with a ``stage`` tag; no-op when Sentry is not initialised."""
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("stage", stage)
        for key, value in (context or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exc)


def capture_tagged_message(message: str, *, stage: str, context: Mapping[str, Any] | None = None) -> None:
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("stage", stage)
        for key, value in (context or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level="warning")
