# tests/test_config_loader.py
from __future__ import annotations

import pytest

from common.config_loader import (
    RestaurantSettings,
    Threshold,
    cfg_get,
    load_config,
    load_core_config,
)


def test_missing_file_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "nope.yaml"))
    assert load_config() == {}
    core = load_core_config()
    assert core.booking.alternatives_limit == 3
    assert core.callbacks.max_attempts == 3
    assert core.health.window_minutes == 10


def test_yaml_sections_are_applied(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(
        "\n".join(
            [
                "booking:",
                "  alternatives_limit: 5",
                "  store_timeout_seconds: 2.5",
                "  safety_keywords: [Allergy, Sesame]",
                "callbacks:",
                "  max_attempts: 4",
                "health:",
                "  window_minutes: 15",
                "  thresholds:",
                "    call_error_rate: {warning: 2, critical: 10}",
                "    made_up_metric: {warning: 1, critical: 2}",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("CONFIG_PATH", str(path))

    core = load_core_config()

    assert core.booking.alternatives_limit == 5
    assert core.booking.store_timeout_seconds == 2.5
    assert core.booking.safety_keywords == ("allergy", "sesame")
    assert core.callbacks.max_attempts == 4
    assert core.health.window_minutes == 15
    assert core.health.thresholds["call_error_rate"] == Threshold(2.0, 10.0)
    assert "made_up_metric" not in core.health.thresholds
    # untouched thresholds keep their defaults
    assert core.health.thresholds["booking_success_rate"].critical == 75


def test_broken_yaml_is_ignored(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("booking: [unterminated", encoding="utf-8")
    monkeypatch.setenv("CONFIG_PATH", str(path))
    assert load_config() == {}


def test_cfg_get():
    cfg = {"health": {"thresholds": {"pending_callbacks": {"warning": 5}}}}
    assert cfg_get(cfg, "health.thresholds.pending_callbacks.warning") == 5
    assert cfg_get(cfg, "health.missing", "dflt") == "dflt"
    assert cfg_get(cfg, "health.thresholds.pending_callbacks.warning.deeper") is None


@pytest.mark.parametrize(
    "value, expected",
    [(4.9, None), (5, "warning"), (19.9, "warning"), (20, "critical")],
)
def test_threshold_higher_is_worse(value, expected):
    assert Threshold(5, 20).severity(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(90, None), (89.9, "warning"), (85, "warning"), (84.9, "critical")],
)
def test_threshold_lower_is_worse(value, expected):
    assert Threshold(90, 85, higher_is_worse=False).severity(value) == expected


def test_restaurant_settings_from_mapping():
    s = RestaurantSettings.from_mapping(
        {"max_party_size": "12", "allow_same_day_booking": 0, "unknown": 1, "slot_interval_minutes": None}
    )
    assert s.max_party_size == 12
    assert s.allow_same_day_booking is False
    assert s.slot_interval_minutes == 30
    assert RestaurantSettings.from_mapping(None) == RestaurantSettings()
    with pytest.raises(ValueError):
        RestaurantSettings.from_mapping({"large_party_threshold": "lots"})
