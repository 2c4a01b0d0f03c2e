from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any


class RecordSerializationError(ValueError):
    """Raised when an event payload cannot be rendered as JSON."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"cannot serialize event {key}: {reason}")
        self.key = key


@dataclass(frozen=True)
class ChangeRecord:
    """Immutable snapshot of one Kubernetes Event as seen by the watch cache.

    The three filter dimensions are lifted out of the payload once, at the
    cache boundary, so the reconciliation loop never has to inspect raw
    client objects.  ``payload`` is the event in its Kubernetes JSON shape
    (camelCase keys, RFC 3339 timestamps) and is treated as read-only.
    """

    key: str
    category: str
    related_kind: str
    reason_code: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ChangeRecord:
        data = dict(payload)
        involved = data.get("involvedObject") or {}
        return cls(
            key=meta_namespace_key(data),
            category=str(data.get("type") or ""),
            related_kind=str(involved.get("kind") or ""),
            reason_code=str(data.get("reason") or ""),
            payload=data,
        )

    @classmethod
    def from_event(
        cls,
        event: Any,
        sanitize: Callable[[Any], Any],
    ) -> ChangeRecord:
        """Build a record from a ``CoreV1Event`` (or an already-decoded dict).

        ``sanitize`` is normally ``ApiClient().sanitize_for_serialization``,
        which maps client model attributes back to their wire names.
        """
        payload = sanitize(event)
        if not isinstance(payload, Mapping):
            raise ValueError(f"unexpected event payload type {type(payload).__name__}")
        return cls.from_payload(payload)


def meta_namespace_key(payload: Mapping[str, Any]) -> str:
    """Return ``namespace/name`` for namespaced objects, ``name`` otherwise."""
    metadata = payload.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def serialize_record(record: ChangeRecord) -> str:
    """Render a record as one compact JSON line (no trailing newline)."""
    try:
        return json.dumps(record.payload, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise RecordSerializationError(record.key, str(exc)) from exc
