from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

from exporter.src import runtime
from exporter.src.cache import CacheLookupError, RecordLookup
from exporter.src.metrics import METRICS
from exporter.src.records import RecordSerializationError, serialize_record
from exporter.src.selector import FilterConfig, accept, describe
from exporter.src.sink import StdoutSink
from exporter.src.workqueue import RateLimitingQueue

RETRY_CEILING = 5


class CacheSyncError(RuntimeError):
    """Raised when the event cache does not finish its initial sync in time."""


class ControllerState(enum.Enum):
    CREATED = "created"
    SYNCING = "syncing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Informer(Protocol):
    def run(self, stop_event: threading.Event) -> None: ...

    def has_synced(self) -> bool: ...

    def request_stop(self) -> None: ...


class RecordSink(Protocol):
    def write(self, line: str) -> None: ...


def wait_for_cache_sync(
    stop_event: threading.Event,
    *has_synced: Callable[[], bool],
    timeout: float | None = None,
    poll_interval: float = 0.1,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll until every ``has_synced`` callable returns True.

    Returns False if ``stop_event`` is set first or ``timeout`` seconds pass.
    A ``timeout`` of ``None`` or ``0`` waits for as long as it takes.
    """
    deadline = clock() + timeout if timeout else None
    while True:
        if all(check() for check in has_synced):
            return True
        if stop_event.is_set():
            return False
        if deadline is not None and clock() >= deadline:
            return False
        stop_event.wait(timeout=poll_interval)


class EventExporter:
    """Exports Kubernetes Events that pass the allow-lists as JSON lines.

    The informer mirrors events into ``store`` and pushes changed keys into
    ``queue``.  A fixed pool of worker threads pulls keys, resolves them
    against the store, filters, and writes accepted events to ``sink``.

    Retry policy per key:
        * success (including "not found", "filtered out" and "cannot be
          serialized") forgets the key's retry history;
        * a :class:`CacheLookupError` re-adds the key with per-key
          exponential backoff while it has been requeued fewer than
          ``retry_ceiling`` times;
        * after that the key is forgotten and the error is handed to
          :func:`runtime.handle_error`.  Other keys are unaffected.

    Lifecycle: ``CREATED -> SYNCING -> RUNNING -> SHUTTING_DOWN -> STOPPED``.
    A cache that never syncs goes from ``SYNCING`` straight to ``STOPPED``.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        store: RecordLookup,
        informer: Informer,
        filters: FilterConfig,
        sink: RecordSink | None = None,
        cache_sync_timeout_seconds: float | None = 120.0,
        retry_ceiling: int = RETRY_CEILING,
        worker_restart_seconds: float = 1.0,
        shutdown_timeout_seconds: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.informer = informer
        self.filters = filters
        self.sink = sink or StdoutSink()
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.retry_ceiling = retry_ceiling
        self.worker_restart_seconds = worker_restart_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._state = ControllerState.CREATED
        self._state_lock = threading.Lock()
        self._workers: list[threading.Thread] = []

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def _transition(self, state: ControllerState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        self.logger.debug("Controller state %s -> %s", previous.value, state.value)

    def process_next_item(self) -> bool:
        """Handle one key from the queue.  Returns False once the queue is shut down."""
        item, shutdown = self.queue.get()
        if shutdown:
            return False

        key = str(item)
        try:
            try:
                self.sync_to_sink(key)
            except CacheLookupError as exc:
                self.handle_err(exc, key)
            else:
                self.handle_err(None, key)
        finally:
            self.queue.done(key)
        return True

    def sync_to_sink(self, key: str) -> bool:
        """Resolve ``key`` and export the event if it passes the filters.

        Returns True when a record was written.  Raises
        :class:`CacheLookupError` when the cache cannot answer; every other
        outcome counts as done.
        """
        record, exists = self.store.get_by_key(key)
        if not exists or record is None:
            # Deleted between notification and processing.
            self.logger.debug("Event %s no longer exists; nothing to export", key)
            return False

        if not accept(self.filters, record.category, record.related_kind, record.reason_code):
            METRICS.records_filtered_total.inc()
            return False

        try:
            line = serialize_record(record)
        except RecordSerializationError:
            METRICS.serialization_errors_total.inc()
            self.logger.exception("Skipping event %s that cannot be serialized", key)
            return False

        self.sink.write(line)
        return True

    def handle_err(self, err: Exception | None, key: str) -> None:
        """Forget the key on success, otherwise retry with backoff or drop it."""
        if err is None:
            self.queue.forget(key)
            return

        METRICS.sync_errors_total.inc()
        if self.queue.num_requeues(key) < self.retry_ceiling:
            self.logger.warning("Can't sync event %s: %s", key, err)
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        METRICS.dropped_keys_total.inc()
        runtime.handle_error(err, context=f"dropping event {key}")
        self.logger.info("Dropping event %r from the queue: %s", key, err)

    def run_worker(self) -> None:
        while self.process_next_item():
            pass

    def _worker_loop(self, stop_event: threading.Event) -> None:
        """Keep one worker alive until stop; a crashed worker restarts after a pause."""
        while not stop_event.is_set():
            try:
                self.run_worker()
            except Exception:
                self.logger.exception(
                    "Worker crashed; restarting in %.1fs", self.worker_restart_seconds
                )
            if self.queue.shutting_down:
                return
            stop_event.wait(timeout=self.worker_restart_seconds)

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Sync the cache, run ``threadiness`` workers, and block until ``stop_event``.

        Raises :class:`CacheSyncError` if the cache does not sync within
        ``cache_sync_timeout_seconds``.  A stop requested while syncing is a
        clean return.  The queue is shut down on every exit path.
        """
        if threadiness < 1:
            raise ValueError(f"threadiness must be >= 1, got: {threadiness}")

        try:
            self.logger.info(
                "Starting event exporter selecting types=%s involvedObjects=%s reasons=%s",
                describe(self.filters.event_types),
                describe(self.filters.involved_objects),
                describe(self.filters.reasons),
            )

            self._transition(ControllerState.SYNCING)
            threading.Thread(
                target=self.informer.run,
                args=(stop_event,),
                name="event-informer",
                daemon=True,
            ).start()

            if not wait_for_cache_sync(
                stop_event,
                self.informer.has_synced,
                timeout=self.cache_sync_timeout_seconds,
            ):
                if stop_event.is_set():
                    self.logger.info("Stop requested before the event cache synced")
                    return
                err = CacheSyncError("timed out waiting for caches to sync")
                runtime.handle_error(err)
                raise err

            self._transition(ControllerState.RUNNING)
            for index in range(threadiness):
                worker = threading.Thread(
                    target=self._worker_loop,
                    args=(stop_event,),
                    name=f"event-worker-{index}",
                    daemon=True,
                )
                worker.start()
                self._workers.append(worker)
            self.ready.set()
            self.logger.info("Event cache synced; started %d worker(s)", threadiness)

            stop_event.wait()
            self.logger.info("Stopping event exporter")
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        if self.state is ControllerState.RUNNING:
            self._transition(ControllerState.SHUTTING_DOWN)
        self.ready.clear()
        self.queue.shutdown()
        self.informer.request_stop()

        for worker in self._workers:
            worker.join(timeout=self.shutdown_timeout_seconds)
        stuck = [worker.name for worker in self._workers if worker.is_alive()]
        if stuck:
            self.logger.warning(
                "Worker(s) still running after %.1fs: %s",
                self.shutdown_timeout_seconds,
                ", ".join(stuck),
            )
        self._workers = []
        self._transition(ControllerState.STOPPED)
