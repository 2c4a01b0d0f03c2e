from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiClient, ApiException, CoreV1Api

from exporter.src.metrics import METRICS
from exporter.src.records import ChangeRecord


class CacheLookupError(RuntimeError):
    """Transient failure while resolving a key against the cache.

    Drives the retry path of the reconciliation loop.  Not raised for missing
    keys: a key that is simply gone resolves to ``(None, False)``.
    """

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"fetching event with key {key} from store failed: {reason}")
        self.key = key


class RecordLookup(Protocol):
    def get_by_key(self, key: str) -> tuple[ChangeRecord | None, bool]: ...


class EventStore:
    """Thread-safe local mirror of the watched events, keyed by ``namespace/name``."""

    def __init__(self) -> None:
        self._items: dict[str, ChangeRecord] = {}
        self._lock = threading.Lock()

    def get_by_key(self, key: str) -> tuple[ChangeRecord | None, bool]:
        with self._lock:
            record = self._items.get(key)
        return record, record is not None

    def upsert(self, record: ChangeRecord) -> None:
        with self._lock:
            self._items[record.key] = record
            METRICS.cached_events.set(len(self._items))

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)
            METRICS.cached_events.set(len(self._items))

    def replace(self, records: Iterable[ChangeRecord]) -> set[str]:
        """Swap in a full listing and return the keys that disappeared."""
        fresh = {record.key: record for record in records}
        with self._lock:
            removed = set(self._items) - set(fresh)
            self._items = fresh
            METRICS.cached_events.set(len(self._items))
        return removed

    def list_keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class EventInformer:
    """Lists then watches Kubernetes Events and keeps an :class:`EventStore` in sync.

    Every add, update or delete pushes the affected key to ``on_key`` (the
    work queue's ``add``); the informer never processes events itself.
    :meth:`has_synced` turns true once the first full listing is in the
    store and stays true afterwards.

    Error policy:

    * the initial list is retried with jittered exponential backoff (1 s
      doubling to 30 s) until it succeeds or a stop is requested;
    * ``410 Gone`` on the watch means the resourceVersion was compacted
      away, so the events are re-listed and the watch resumes;
    * ``401`` / ``403`` are RBAC or credential problems and end the
      informer immediately instead of retrying forever;
    * any other error backs off and reconnects.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        store: EventStore,
        on_key: Callable[[str], None],
        namespace: str = "",
        watch_timeout_seconds: int = 30,
        sanitize: Callable[[Any], Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.store = store
        self.on_key = on_key
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._sanitize = sanitize or ApiClient().sanitize_for_serialization

        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_function(self) -> Callable[..., Any]:
        if self.namespace:
            return self.core_api.list_namespaced_event
        return self.core_api.list_event_for_all_namespaces

    def _list_kwargs(self) -> dict[str, Any]:
        if self.namespace:
            return {"namespace": self.namespace}
        return {}

    def _to_record(self, obj: Any) -> ChangeRecord | None:
        try:
            return ChangeRecord.from_event(obj, self._sanitize)
        except ValueError as exc:
            self.logger.warning("Skipping malformed event: %s", exc)
            return None

    def _list_and_replace(self) -> str | None:
        """List all events, replace the store, and enqueue every affected key.

        Returns the listing's ``resourceVersion`` to resume the watch from.
        """
        listing = self._list_function()(**self._list_kwargs())
        records = [
            record
            for record in (self._to_record(item) for item in (getattr(listing, "items", None) or []))
            if record is not None
        ]
        removed = self.store.replace(records)
        for record in records:
            self.on_key(record.key)
        for key in sorted(removed):
            self.on_key(key)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def handle_watch_event(self, event_type: str, obj: Any) -> str | None:
        """Apply one watch event to the store and enqueue its key.

        Returns the key, or ``None`` when the event was ignored.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        record = self._to_record(obj)
        if record is None:
            return None

        if event_type == "DELETED":
            self.store.delete(record.key)
        else:
            self.store.upsert(record)
        self.on_key(record.key)
        return record.key

    def _backoff_wait(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, mark synced, then watch until stopped."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_replace()
                self._synced.set()
                self.logger.info(
                    "Cached %d events; starting watch from resourceVersion %s",
                    len(self.store),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial event list (status=%s). "
                        "Check RBAC permissions to list and watch events.",
                        exc.status,
                    )
                    return
                self.logger.exception("Initial Kubernetes event list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial event list")
                METRICS.watch_errors_total.inc()

            startup_backoff_seconds = self._backoff_wait(stop, startup_backoff_seconds)

        # Reset to 1 after every clean stream; doubled on error up to 30 s.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_function(),
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    self.handle_watch_event(event_type=str(event.get("type", "")), obj=obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing events")
                    try:
                        resource_version = self._list_and_replace()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check RBAC permissions to list and watch events.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list events after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    except Exception:
                        self.logger.exception("Unexpected error re-listing events after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API event watch denied (status=%s). "
                        "Check RBAC permissions to list and watch events.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff_wait(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
