from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Sequence
from http.server import ThreadingHTTPServer

from kubernetes.client import CoreV1Api

from exporter.src.cache import EventInformer, EventStore
from exporter.src.config import ConfigError, ExporterConfig, load_config
from exporter.src.controller import CacheSyncError, EventExporter
from exporter.src.health import start_health_server
from exporter.src.kube import build_core_client, load_kube_configuration
from exporter.src.metrics import METRICS
from exporter.src.sink import StdoutSink
from exporter.src.workqueue import RateLimitingQueue

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    """Send JSON logs to stderr; stdout carries nothing but exported events."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def build_exporter(core_api: CoreV1Api, exporter_config: ExporterConfig) -> EventExporter:
    """Wire queue, cache, informer and sink into an :class:`EventExporter`."""
    queue = RateLimitingQueue(name="events")
    store = EventStore()
    informer = EventInformer(
        core_api=core_api,
        store=store,
        on_key=queue.add,
        namespace=exporter_config.namespace,
    )
    return EventExporter(
        queue=queue,
        store=store,
        informer=informer,
        filters=exporter_config.filters,
        sink=StdoutSink(),
        cache_sync_timeout_seconds=exporter_config.cache_sync_timeout_seconds,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Exporter entrypoint: configure logging, connect, and run until SIGTERM/SIGINT.

    Returns the process exit status: ``0`` after a requested stop, ``1`` when
    startup fails (bad configuration, unreachable cluster, cache never synced).
    """
    try:
        exporter_config = load_config(argv)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(exporter_config.log_level)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        load_kube_configuration(
            kubeconfig=exporter_config.kubeconfig,
            master=exporter_config.master,
        )
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1

    exporter = build_exporter(build_core_client(), exporter_config)

    health_server: ThreadingHTTPServer | None = None
    if exporter_config.health_port:
        try:
            health_server = start_health_server(
                ready=exporter.ready, port=exporter_config.health_port
            )
        except OSError as exc:
            logger.error(
                "Cannot start health server on port %d: %s", exporter_config.health_port, exc
            )
            return 1

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        exporter.run(threadiness=exporter_config.threadiness, stop_event=shutdown_event)
    except CacheSyncError as exc:
        logger.error("Event exporter failed to start: %s", exc)
        return 1
    finally:
        if health_server is not None:
            health_server.shutdown()

    logger.info("Event exporter stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
