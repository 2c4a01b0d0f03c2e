from __future__ import annotations

import pytest

from exporter.src.selector import FilterConfig, accept, describe, split_parameter


def _config(types: str = "", involved_objects: str = "", reasons: str = "") -> FilterConfig:
    return FilterConfig(
        event_types=split_parameter(types),
        involved_objects=split_parameter(involved_objects),
        reasons=split_parameter(reasons),
    )


# ---------------------------------------------------------------------------
# accept()
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("config", "category", "related_kind", "reason_code", "expected"),
    [
        pytest.param(_config("Warning"), "Warning", "", "", True, id="match_type"),
        pytest.param(_config(involved_objects="Pod"), "", "Pod", "", True, id="match_involved_object"),
        pytest.param(_config(reasons="Failed"), "", "", "Failed", True, id="match_reason"),
        pytest.param(_config("Warning"), "Normal", "", "", False, id="mismatch_type"),
        pytest.param(
            _config("Warning", "ConfigMap"), "Warning", "", "", False, id="mismatch_involved_object"
        ),
        pytest.param(
            _config("Warning", reasons="Completed"),
            "Warning",
            "",
            "Failed,Evicted,FailedMount",
            False,
            id="mismatch_reason",
        ),
    ],
)
def test_accept_table(
    config: FilterConfig, category: str, related_kind: str, reason_code: str, expected: bool
) -> None:
    assert accept(config, category, related_kind, reason_code) is expected


@pytest.mark.parametrize(
    ("category", "related_kind", "reason_code"),
    [
        ("Warning", "Pod", "FailedMount"),
        ("Normal", "Node", "Starting"),
        ("", "", ""),
        ("weird value", "🙂", "x" * 300),
    ],
)
def test_empty_allow_lists_accept_everything(
    category: str, related_kind: str, reason_code: str
) -> None:
    assert accept(FilterConfig(), category, related_kind, reason_code) is True


def test_all_dimensions_must_match() -> None:
    config = _config("Warning", "Pod,ConfigMap", "FailedMount,BackOff")

    assert accept(config, "Warning", "ConfigMap", "BackOff") is True
    assert accept(config, "Warning", "ConfigMap", "Pulled") is False
    assert accept(config, "Warning", "Deployment", "BackOff") is False
    assert accept(config, "Normal", "ConfigMap", "BackOff") is False


def test_membership_is_case_sensitive() -> None:
    config = _config("Warning")

    assert accept(config, "warning", "", "") is False
    assert accept(config, "WARNING", "", "") is False


def test_empty_string_entry_only_matches_empty_values() -> None:
    config = FilterConfig(reasons=frozenset({""}))

    assert accept(config, "Warning", "Pod", "") is True
    assert accept(config, "Warning", "Pod", "FailedMount") is False


def test_order_of_allow_list_entries_does_not_matter() -> None:
    assert _config("Normal,Warning") == _config("Warning,Normal")


# ---------------------------------------------------------------------------
# split_parameter() / describe()
# ---------------------------------------------------------------------------


def test_split_parameter_empty_string_is_empty_set() -> None:
    assert split_parameter("") == frozenset()


def test_split_parameter_splits_on_commas() -> None:
    assert split_parameter("Pod,ConfigMap") == frozenset({"Pod", "ConfigMap"})


def test_split_parameter_keeps_trailing_empty_item() -> None:
    assert split_parameter("Warning,") == frozenset({"Warning", ""})


def test_describe_renders_any_value_as_star() -> None:
    assert describe(frozenset()) == "*"
    assert describe(frozenset({"Warning", "Normal"})) == "Normal,Warning"
