from __future__ import annotations

import argparse
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from exporter.src.selector import FilterConfig, split_parameter


class ConfigError(RuntimeError):
    """Raised when the exporter configuration is invalid."""


@dataclass(frozen=True)
class ExporterConfig:
    """Immutable exporter configuration resolved at startup.

    Attributes:
        filters:     Allow-lists for event type, involved-object kind, reason.
        threadiness: Number of concurrent workers draining the queue.
        kubeconfig:  Path to a kubeconfig file; empty means in-cluster.
        master:      API server URL overriding the kubeconfig's server.
        namespace:   Namespace to watch; empty means all namespaces.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``; 0 disables it.
        cache_sync_timeout_seconds: How long to wait for the first full list; 0 waits forever.
        log_level:   Root logger level name.
    """

    filters: FilterConfig = field(default_factory=FilterConfig)
    threadiness: int = 1
    kubeconfig: str = ""
    master: str = ""
    namespace: str = ""
    health_port: int = 8080
    cache_sync_timeout_seconds: int = 120
    log_level: str = "INFO"


def parse_int(
    name: str,
    raw: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        raw = str(default)
    return parse_int(name, raw, minimum=minimum, maximum=maximum)


def parse_allow_list(name: str, value: str) -> frozenset[str]:
    """Split a comma-separated allow-list, rejecting entries with whitespace.

    Entries are not trimmed; ``" Pod"`` would never match a kind.
    """
    items = split_parameter(value)
    malformed = sorted(item for item in items if any(ch.isspace() for ch in item))
    if malformed:
        raise ConfigError(f"{name} contains entries with whitespace: {malformed!r}")
    return items


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="event-exporter",
        description=(
            "Watch Kubernetes Events and print the ones matching the given "
            "types, involved objects and reasons as JSON lines on stdout."
        ),
    )
    parser.add_argument("--types", default=None, help="event types, e.g. Warning (env: EVENT_TYPES)")
    parser.add_argument(
        "--involved-objects",
        "--involvedObjects",
        dest="involved_objects",
        default=None,
        help="involved object kinds, e.g. Pod,ConfigMap (env: INVOLVED_OBJECTS)",
    )
    parser.add_argument(
        "--reasons",
        default=None,
        help="reasons, e.g. FailedGetResourceMetric (env: EVENT_REASONS)",
    )
    parser.add_argument("--kubeconfig", default=None, help="absolute path to the kubeconfig file")
    parser.add_argument("--master", default=None, help="Kubernetes API server URL")
    parser.add_argument(
        "--namespace",
        default=None,
        help="namespace to watch; all namespaces when empty (env: WATCH_NAMESPACE)",
    )
    parser.add_argument("--threads", default=None, help="number of workers (env: THREADINESS)")
    parser.add_argument(
        "--health-port",
        default=None,
        help="health and metrics port, 0 disables (env: HEALTH_PORT)",
    )
    parser.add_argument(
        "--cache-sync-timeout",
        default=None,
        help="seconds to wait for the initial event list, 0 waits forever "
        "(env: CACHE_SYNC_TIMEOUT_SECONDS)",
    )
    parser.add_argument("--log-level", default=None, help="log level (env: LOG_LEVEL)")
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> ExporterConfig:
    """Resolve configuration from command-line flags, falling back to the environment.

    A flag always wins over its environment variable.  Raises
    :class:`ConfigError` on malformed values.
    """
    values = env if env is not None else os.environ
    args = build_parser().parse_args(argv)

    def pick(flag_value: str | None, env_name: str, default: str = "") -> str:
        if flag_value is not None:
            return flag_value
        return values.get(env_name, default)

    filters = FilterConfig(
        event_types=parse_allow_list("types", pick(args.types, "EVENT_TYPES")),
        involved_objects=parse_allow_list(
            "involvedObjects", pick(args.involved_objects, "INVOLVED_OBJECTS")
        ),
        reasons=parse_allow_list("reasons", pick(args.reasons, "EVENT_REASONS")),
    )

    if args.threads is not None:
        threadiness = parse_int("--threads", args.threads, minimum=1)
    else:
        threadiness = env_int("THREADINESS", 1, minimum=1, env=values)

    if args.health_port is not None:
        health_port = parse_int("--health-port", args.health_port, minimum=0, maximum=65535)
    else:
        health_port = env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, env=values)

    if args.cache_sync_timeout is not None:
        cache_sync_timeout = parse_int("--cache-sync-timeout", args.cache_sync_timeout, minimum=0)
    else:
        cache_sync_timeout = env_int("CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=0, env=values)

    return ExporterConfig(
        filters=filters,
        threadiness=threadiness,
        kubeconfig=pick(args.kubeconfig, "KUBECONFIG").strip(),
        master=pick(args.master, "KUBE_MASTER").strip(),
        namespace=pick(args.namespace, "WATCH_NAMESPACE").strip(),
        health_port=health_port,
        cache_sync_timeout_seconds=cache_sync_timeout,
        log_level=pick(args.log_level, "LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
