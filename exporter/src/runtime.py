from __future__ import annotations

import logging

from exporter.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def handle_error(err: BaseException, *, context: str = "") -> None:
    """Process-wide sink for errors that must be surfaced but are not fatal.

    Used for keys dropped after exhausting their retries and for lifecycle
    failures such as a cache that never syncs.  The error is logged with its
    traceback (when it has one) and counted; the caller carries on.
    """
    METRICS.reported_errors_total.inc()
    message = f"{context}: {err}" if context else str(err)
    exc_info = (type(err), err, err.__traceback__) if err.__traceback__ is not None else None
    LOGGER.error("Unhandled error: %s", message, exc_info=exc_info)
