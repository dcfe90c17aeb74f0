from __future__ import annotations

import logging
from typing import Any

from app.core.config import settings

_EXPECTED_ASSET_ERROR_KINDS = {"VALIDATION", "SOURCE_MISSING"}


def _drop_expected_errors(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """Client-caused asset failures are answered with a 4xx and are not reported."""
    exc_info = hint.get("exc_info")
    if exc_info:
        kind = getattr(exc_info[1], "kind", None)
        if getattr(kind, "value", kind) in _EXPECTED_ASSET_ERROR_KINDS:
            return None
    return event


def init_sentry() -> None:
    if not settings.sentry_dsn:
        return

    import sentry_sdk
    from sentry_sdk.integrations import Integration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations: list[Integration] = [FastApiIntegration(), SqlalchemyIntegration()]
    if settings.sentry_enable_logs:
        event_level = getattr(logging, str(settings.sentry_log_level or "error").strip().upper(), logging.ERROR)
        integrations.append(LoggingIntegration(level=event_level, event_level=event_level))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
        integrations=integrations,
        before_send=_drop_expected_errors,
        attach_stacktrace=True,
        send_default_pii=False,
    )
    sentry_sdk.set_tag("s3_bucket", settings.s3_bucket)
