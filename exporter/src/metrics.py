from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ExporterMetrics:
    """Prometheus metrics exported by the event exporter on ``/metrics``.

    Queue metrics follow the client-go workqueue naming.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "event_exporter_workqueue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_workqueue_adds_total",
            "Total keys added to the work queue",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_workqueue_retries_total",
            "Total rate-limited re-adds of failed keys",
        )
    )
    records_emitted_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_records_emitted_total",
            "Total events written to the output sink",
        )
    )
    records_filtered_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_records_filtered_total",
            "Total events rejected by the type/kind/reason allow-lists",
        )
    )
    serialization_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_serialization_errors_total",
            "Total events skipped because they could not be serialized",
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_sync_errors_total",
            "Total failed attempts to process a key",
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_dropped_keys_total",
            "Total keys dropped after exhausting their retries",
        )
    )
    reported_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_reported_errors_total",
            "Total errors surfaced to the process-wide error reporter",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "event_exporter_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    cached_events: Gauge = field(
        default_factory=lambda: Gauge(
            "event_exporter_cached_events",
            "Current number of events held in the local cache",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "event_exporter",
            "Build information for the event exporter",
        )
    )


METRICS = ExporterMetrics()
