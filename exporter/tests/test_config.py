from __future__ import annotations

import pytest

from exporter.src.config import ConfigError, ExporterConfig, env_int, load_config, parse_int
from exporter.src.selector import FilterConfig

# ---------------------------------------------------------------------------
# env_int() / parse_int()
# ---------------------------------------------------------------------------


def test_env_int_returns_default_when_not_set(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_ENV_INT", raising=False)
    assert env_int("TEST_ENV_INT", 7) == 7


def test_env_int_parses_value(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_ENV_INT", "12")
    assert env_int("TEST_ENV_INT", 7, minimum=1) == 12


def test_env_int_rejects_non_integer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_ENV_INT", "")
    with pytest.raises(ConfigError, match="TEST_ENV_INT must be an integer"):
        env_int("TEST_ENV_INT", 7)


def test_env_int_enforces_minimum(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_ENV_INT", "0")
    with pytest.raises(ConfigError, match="TEST_ENV_INT must be >= 1, got: 0"):
        env_int("TEST_ENV_INT", 7, minimum=1)


def test_env_int_reads_explicit_mapping() -> None:
    assert env_int("THREADINESS", 1, env={"THREADINESS": "4"}) == 4


def test_parse_int_enforces_maximum() -> None:
    with pytest.raises(ConfigError, match="--health-port must be <= 65535, got: 70000"):
        parse_int("--health-port", "70000", minimum=0, maximum=65535)


# ---------------------------------------------------------------------------
# load_config()
# ---------------------------------------------------------------------------


def test_defaults_with_empty_environment() -> None:
    config = load_config([], env={})

    assert config == ExporterConfig()
    assert config.filters == FilterConfig()
    assert config.threadiness == 1
    assert config.health_port == 8080
    assert config.cache_sync_timeout_seconds == 120
    assert config.log_level == "INFO"


def test_flags_populate_every_field() -> None:
    config = load_config(
        [
            "--types",
            "Warning",
            "--involved-objects",
            "Pod,ConfigMap",
            "--reasons",
            "FailedMount",
            "--kubeconfig",
            "/tmp/kubeconfig",
            "--master",
            "https://api:6443",
            "--namespace",
            "team-a",
            "--threads",
            "4",
            "--health-port",
            "0",
            "--cache-sync-timeout",
            "0",
            "--log-level",
            "debug",
        ],
        env={},
    )

    assert config.filters.event_types == frozenset({"Warning"})
    assert config.filters.involved_objects == frozenset({"Pod", "ConfigMap"})
    assert config.filters.reasons == frozenset({"FailedMount"})
    assert config.kubeconfig == "/tmp/kubeconfig"
    assert config.master == "https://api:6443"
    assert config.namespace == "team-a"
    assert config.threadiness == 4
    assert config.health_port == 0
    assert config.cache_sync_timeout_seconds == 0
    assert config.log_level == "DEBUG"


def test_camel_case_involved_objects_flag_is_accepted() -> None:
    config = load_config(["--involvedObjects", "Node"], env={})

    assert config.filters.involved_objects == frozenset({"Node"})


def test_environment_fallbacks() -> None:
    config = load_config(
        [],
        env={
            "EVENT_TYPES": "Warning,Normal",
            "INVOLVED_OBJECTS": "Pod",
            "EVENT_REASONS": "BackOff",
            "KUBECONFIG": " /etc/kube/config ",
            "WATCH_NAMESPACE": "kube-system",
            "THREADINESS": "3",
            "HEALTH_PORT": "9090",
            "CACHE_SYNC_TIMEOUT_SECONDS": "30",
            "LOG_LEVEL": "warning",
        },
    )

    assert config.filters.event_types == frozenset({"Warning", "Normal"})
    assert config.filters.involved_objects == frozenset({"Pod"})
    assert config.filters.reasons == frozenset({"BackOff"})
    assert config.kubeconfig == "/etc/kube/config"
    assert config.namespace == "kube-system"
    assert config.threadiness == 3
    assert config.health_port == 9090
    assert config.cache_sync_timeout_seconds == 30
    assert config.log_level == "WARNING"


def test_flag_wins_over_environment() -> None:
    config = load_config(
        ["--types", "Normal", "--threads", "2"],
        env={"EVENT_TYPES": "Warning", "THREADINESS": "8"},
    )

    assert config.filters.event_types == frozenset({"Normal"})
    assert config.threadiness == 2


def test_empty_flag_overrides_environment_allow_list() -> None:
    config = load_config(["--types", ""], env={"EVENT_TYPES": "Warning"})

    assert config.filters.event_types == frozenset()


def test_trailing_comma_keeps_empty_entry() -> None:
    config = load_config(["--reasons", "BackOff,"], env={})

    assert config.filters.reasons == frozenset({"BackOff", ""})


def test_rejects_allow_list_entries_with_whitespace() -> None:
    with pytest.raises(ConfigError, match="involvedObjects contains entries with whitespace"):
        load_config(["--involved-objects", "Pod, ConfigMap"], env={})


@pytest.mark.parametrize(
    ("argv", "env", "message"),
    [
        (["--threads", "many"], {}, "--threads must be an integer"),
        (["--threads", "0"], {}, "--threads must be >= 1, got: 0"),
        ([], {"THREADINESS": "0"}, "THREADINESS must be >= 1, got: 0"),
        ([], {"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535, got: 70000"),
        (["--health-port", "-1"], {}, "--health-port must be >= 0, got: -1"),
        ([], {"CACHE_SYNC_TIMEOUT_SECONDS": "soon"}, "CACHE_SYNC_TIMEOUT_SECONDS must be an integer"),
    ],
)
def test_rejects_invalid_integers(argv: list[str], env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(argv, env=env)
