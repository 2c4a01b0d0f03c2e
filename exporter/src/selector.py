from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field


@dataclass(frozen=True)
class FilterConfig:
    """Allow-lists deciding which events are exported.

    Each dimension is matched independently.  An empty set means "accept any
    value" for that dimension, so the default config exports everything.

    Attributes:
        event_types:      Accepted event ``type`` values (``Normal``, ``Warning``).
        involved_objects: Accepted ``involvedObject.kind`` values (``Pod``, ...).
        reasons:          Accepted ``reason`` values (``FailedMount``, ...).
    """

    event_types: frozenset[str] = field(default_factory=frozenset)
    involved_objects: frozenset[str] = field(default_factory=frozenset)
    reasons: frozenset[str] = field(default_factory=frozenset)


def split_parameter(value: str) -> frozenset[str]:
    """Split a comma-separated allow-list.

    An empty string yields the empty set.  Items are kept verbatim, so a
    trailing comma contributes ``""`` which only matches empty values.
    """
    if not value:
        return frozenset()
    return frozenset(value.split(","))


def _selected(items: Collection[str], value: str) -> bool:
    return not items or value in items


def accept(config: FilterConfig, category: str, related_kind: str, reason_code: str) -> bool:
    """Return True if the event passes all three allow-lists.

    Membership is exact, case-sensitive string equality.
    """
    return (
        _selected(config.event_types, category)
        and _selected(config.involved_objects, related_kind)
        and _selected(config.reasons, reason_code)
    )


def describe(items: frozenset[str]) -> str:
    """Render an allow-list for log lines; ``*`` stands for "any value"."""
    if not items:
        return "*"
    return ",".join(sorted(items))
