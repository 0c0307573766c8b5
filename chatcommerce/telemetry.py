"""Sentry error reporting for failed turns."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger("chatcommerce.telemetry")

_sentry_initialized = False


def init_telemetry(dsn: Optional[str], environment: str = "production", traces_sample_rate: float = 0.0) -> bool:
    """Purpose: Initialize Sentry when a DSN is configured.
    Inputs/Outputs: Inputs are the DSN, environment name and trace sample rate; output
        tells whether reporting is active.
    Side Effects / State: Initializes the global Sentry client and module flag.
    Dependencies: Uses sentry_sdk.init with the logging integration.
    Failure Modes: An empty DSN disables reporting; SDK errors propagate at startup.
    If Removed: Turn failures only reach local logs.
    Testing Notes: init_telemetry(None) returns False and report_exception becomes a no-op.
    """
    # Only errors are forwarded as events; INFO logs become breadcrumbs.
    global _sentry_initialized
    if not dsn:
        logger.info("telemetry status=disabled reason=no_dsn")
        return False
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
    )
    _sentry_initialized = True
    logger.info("telemetry status=enabled environment=%s", environment)
    return True


def report_exception(error: BaseException, tags: Optional[Dict[str, Any]] = None) -> Optional[str]:
    # Tags land on an isolated scope so concurrent turns do not leak into each other.
    if not _sentry_initialized:
        return None
    with sentry_sdk.new_scope() as scope:
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        event_id = sentry_sdk.capture_exception(error)
    return str(event_id) if event_id else None
