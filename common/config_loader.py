# common/config_loader.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

_log = logging.getLogger("reservation-core")

DEFAULT_SAFETY_KEYWORDS: Tuple[str, ...] = (
    "allergy",
    "allergic",
    "anaphylaxis",
    "anaphylactic",
    "epipen",
    "severe allergy",
    "nut allergy",
    "peanut allergy",
    "shellfish allergy",
    "gluten free",
    "celiac",
    "food sensitivity",
)


def load_config() -> Dict[str, Any]:
    """Load YAML from CONFIG_PATH or ./config.yaml, with safe defaults."""
    config_path = Path(os.getenv("CONFIG_PATH", "config.yaml"))
    if not config_path.exists():
        _log.warning("Config file not found at %s. Using built-in defaults.", config_path)
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        _log.error("Failed to parse %s: %s. Using built-in defaults.", config_path, e)
        return {}
    if not isinstance(data, dict):
        _log.error("Config at %s is not a mapping. Using built-in defaults.", config_path)
        return {}
    return data


def cfg_get(d: Mapping[str, Any], path: str, default=None):
    """Safely fetch a nested key via dotted path, e.g. cfg_get(cfg, 'health.window_minutes')."""
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return default
        cur = cur[part]
    return cur


# ---------- Core configuration ----------
@dataclass(frozen=True)
class Threshold:
    warning: float
    critical: float
    higher_is_worse: bool = True

    def severity(self, value: float) -> Optional[str]:
        """Return "critical", "warning" or None for an observed value."""
        if self.higher_is_worse:
            if value >= self.critical:
                return "critical"
            if value >= self.warning:
                return "warning"
            return None
        if value < self.critical:
            return "critical"
        if value < self.warning:
            return "warning"
        return None


def _default_thresholds() -> Dict[str, Threshold]:
    return {
        "call_error_rate": Threshold(5, 20),
        "call_completion_rate": Threshold(90, 85, higher_is_worse=False),
        "pending_callbacks": Threshold(5, 10),
        "oldest_callback_minutes": Threshold(30, 60),
        "booking_success_rate": Threshold(90, 75, higher_is_worse=False),
    }


@dataclass(frozen=True)
class BookingPolicy:
    alternatives_limit: int = 3
    alternatives_search_minutes: int = 120
    confirmation_code_length: int = 6
    # no 0/O, 1/I/L
    confirmation_code_alphabet: str = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
    confirmation_code_retries: int = 5
    store_timeout_seconds: float = 5.0
    safety_keywords: Tuple[str, ...] = DEFAULT_SAFETY_KEYWORDS


@dataclass(frozen=True)
class CallbackPolicy:
    max_attempts: int = 3


@dataclass(frozen=True)
class HealthConfig:
    window_minutes: int = 10
    interval_seconds: int = 30
    thresholds: Dict[str, Threshold] = field(default_factory=_default_thresholds)

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "HealthConfig":
        """Merge {"metric": {"warning": x, "critical": y}} over the current thresholds."""
        if not overrides:
            return self
        merged = dict(self.thresholds)
        for metric, raw in overrides.items():
            base = merged.get(metric)
            if base is None or not isinstance(raw, Mapping):
                _log.warning("Ignoring unknown health threshold override %r", metric)
                continue
            merged[metric] = Threshold(
                warning=float(raw.get("warning", base.warning)),
                critical=float(raw.get("critical", base.critical)),
                higher_is_worse=base.higher_is_worse,
            )
        return replace(self, thresholds=merged)


@dataclass(frozen=True)
class CoreConfig:
    booking: BookingPolicy = field(default_factory=BookingPolicy)
    callbacks: CallbackPolicy = field(default_factory=CallbackPolicy)
    health: HealthConfig = field(default_factory=HealthConfig)


@dataclass(frozen=True)
class RestaurantSettings:
    max_party_size: int = 20
    large_party_threshold: int = 8
    last_seating_offset_minutes: int = 60
    max_future_booking_days: int = 30
    cancellation_notice_hours: int = 24
    allow_same_day_booking: bool = True
    slot_interval_minutes: int = 30
    dining_duration_minutes: int = 90
    health_thresholds: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "RestaurantSettings":
        raw = raw or {}
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in raw or raw[f.name] is None:
                continue
            val = raw[f.name]
            if f.name == "allow_same_day_booking":
                kwargs[f.name] = bool(val)
            elif f.name == "health_thresholds":
                kwargs[f.name] = dict(val) if isinstance(val, Mapping) else {}
            else:
                kwargs[f.name] = int(val)
        return cls(**kwargs)


def _pick(section: Mapping[str, Any], cls, cast: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name in cast and f.name in section and section[f.name] is not None:
            out[f.name] = cast[f.name](section[f.name])
    return out


def load_core_config(cfg: Optional[Mapping[str, Any]] = None) -> CoreConfig:
    """Build CoreConfig from the YAML mapping (booking.*, callbacks.*, health.*)."""
    if cfg is None:
        cfg = load_config()

    booking = cfg_get(cfg, "booking", {}) or {}
    booking_kwargs = _pick(
        booking,
        BookingPolicy,
        {
            "alternatives_limit": int,
            "alternatives_search_minutes": int,
            "confirmation_code_length": int,
            "confirmation_code_alphabet": str,
            "confirmation_code_retries": int,
            "store_timeout_seconds": float,
            "safety_keywords": lambda v: tuple(str(k).lower() for k in v),
        },
    )

    callbacks = cfg_get(cfg, "callbacks", {}) or {}
    callback_kwargs = _pick(callbacks, CallbackPolicy, {"max_attempts": int})

    health = cfg_get(cfg, "health", {}) or {}
    health_kwargs = _pick(health, HealthConfig, {"window_minutes": int, "interval_seconds": int})
    health_cfg = HealthConfig(**health_kwargs).with_overrides(cfg_get(cfg, "health.thresholds"))

    return CoreConfig(
        booking=BookingPolicy(**booking_kwargs),
        callbacks=CallbackPolicy(**callback_kwargs),
        health=health_cfg,
    )


__all__ = [
    "load_config",
    "cfg_get",
    "Threshold",
    "BookingPolicy",
    "CallbackPolicy",
    "HealthConfig",
    "CoreConfig",
    "RestaurantSettings",
    "load_core_config",
    "DEFAULT_SAFETY_KEYWORDS",
]
