# tests/test_health.py
from __future__ import annotations

import pytest
from sqlalchemy import update

from common.config_loader import HealthConfig
from db.models import Callback
from services.health import HealthMetrics, evaluate_metrics

from conftest import HOURS

THRESHOLDS = HealthConfig().thresholds


def _status(**metrics):
    return evaluate_metrics(HealthMetrics(window_minutes=10, **metrics), THRESHOLDS)


@pytest.mark.parametrize(
    "error_rate, status",
    [(0.0, "healthy"), (4.9, "healthy"), (5.0, "degraded"), (19.9, "degraded"), (20.0, "critical"), (55.0, "critical")],
)
def test_error_rate_boundaries(error_rate, status):
    assert _status(call_error_rate=error_rate).status == status


@pytest.mark.parametrize(
    "success_rate, status",
    [(100.0, "healthy"), (90.0, "healthy"), (89.9, "degraded"), (75.0, "degraded"), (74.9, "critical")],
)
def test_booking_success_rate_boundaries(success_rate, status):
    assert _status(booking_success_rate=success_rate).status == status


def test_worst_alert_wins():
    snap = _status(call_error_rate=6.0, pending_callbacks=11, oldest_callback_minutes=5.0)
    assert snap.status == "critical"
    assert {(a.metric, a.severity) for a in snap.alerts} == {
        ("call_error_rate", "warning"),
        ("pending_callbacks", "critical"),
    }


def test_callback_age_ignored_when_queue_is_empty():
    assert _status(pending_callbacks=0, oldest_callback_minutes=500.0).status == "healthy"


async def test_stale_urgent_callback_is_critical(core, restaurant, clock):
    await core.create_callback(restaurant.id, {"phone": "5552010001"}, "SAFETY_TRIGGER")
    clock.advance(minutes=65)

    health = await core.get_health(restaurant.id)

    assert health["status"] == "critical"
    age = [a for a in health["alerts"] if a["metric"] == "oldest_callback_minutes"]
    assert len(age) == 1
    assert age[0]["severity"] == "critical"
    assert age[0]["value"] == 65.0
    assert health["metrics"]["urgent_callbacks"] == 1


async def test_fresh_callback_is_healthy(core, restaurant, clock):
    await core.create_callback(restaurant.id, {"phone": "5552010001"}, "CUSTOMER_REQUEST")
    clock.advance(minutes=10)
    health = await core.get_health(restaurant.id)
    assert health["status"] == "healthy"
    assert health["alerts"] == []
    assert health["metrics"]["pending_callbacks"] == 1


async def _log_calls(core, restaurant, clock, total, errors):
    for i in range(total):
        await core.log_call(
            restaurant.id,
            f"call-{i}",
            started_at=clock(),
            status="error" if i < errors else "completed",
        )


async def test_call_error_rate_critical(core, restaurant, clock):
    await _log_calls(core, restaurant, clock, total=10, errors=2)
    health = await core.get_health(restaurant.id)
    assert health["metrics"]["call_error_rate"] == 20.0
    assert health["status"] == "critical"
    assert ("call_error_rate", "critical") in {(a["metric"], a["severity"]) for a in health["alerts"]}


async def test_call_error_rate_degraded(core, restaurant, clock):
    await _log_calls(core, restaurant, clock, total=20, errors=1)
    health = await core.get_health(restaurant.id)
    assert health["metrics"]["call_error_rate"] == 5.0
    assert health["metrics"]["call_completion_rate"] == 95.0
    assert health["status"] == "degraded"


async def test_error_calls_stay_errors_after_redelivery(core, restaurant, clock):
    await _log_calls(core, restaurant, clock, total=5, errors=5)
    for i in range(5):
        await core.log_call(restaurant.id, f"call-{i}", metadata={"recording": "uploaded"})
    health = await core.get_health(restaurant.id)
    assert health["metrics"]["call_error_rate"] == 100.0
    assert health["status"] == "critical"


async def test_calls_logged_without_start_use_the_core_clock(core, restaurant, clock):
    for i in range(2):
        await core.log_call(restaurant.id, f"call-{i}", status="error")
    assert (await core.get_health(restaurant.id))["metrics"]["calls_total"] == 2
    clock.advance(minutes=11)
    assert (await core.get_health(restaurant.id))["metrics"]["calls_total"] == 0


async def test_calls_outside_the_window_are_ignored(core, restaurant, clock):
    await _log_calls(core, restaurant, clock, total=4, errors=4)
    clock.advance(minutes=11)
    health = await core.get_health(restaurant.id)
    assert health["metrics"]["calls_total"] == 0
    assert health["status"] == "healthy"


async def test_booking_failures_lower_success_rate(core, restaurant, make_slot, booking_args):
    await make_slot("19:00", capacity=10)
    for i in range(3):
        out = await core.create_booking(**booking_args(phone=f"555201000{i}"))
        assert out["success"]
    await core.create_callback(restaurant.id, {"phone": "5552010009"}, "SYSTEM_TIMEOUT")

    health = await core.get_health(restaurant.id)

    assert health["metrics"]["reservations_created"] == 3
    assert health["metrics"]["booking_failures"] == 1
    assert health["metrics"]["booking_success_rate"] == 75.0
    assert health["status"] == "degraded"


async def test_per_restaurant_threshold_overrides(core):
    strict = await core.create_restaurant(
        "Strict Kitchen",
        business_hours=HOURS,
        settings={"health_thresholds": {"pending_callbacks": {"warning": 1, "critical": 2}}},
    )
    relaxed = await core.create_restaurant("Relaxed Kitchen", business_hours=HOURS)
    for rid in (strict["id"], relaxed["id"]):
        await core.create_callback(rid, {"phone": "5552010001"}, "CUSTOMER_REQUEST")

    assert (await core.get_health(strict["id"]))["status"] == "degraded"
    assert (await core.get_health(relaxed["id"]))["status"] == "healthy"


async def test_run_health_checks_covers_every_restaurant(core, restaurant, clock, session_factory):
    other = await core.create_restaurant("Second Site", business_hours=HOURS)
    cb_id = await core.create_callback(restaurant.id, {"phone": "5552010001"}, "SAFETY_TRIGGER")
    async with session_factory() as db:
        await db.execute(update(Callback).values(attempt_count=5))
        await db.commit()
    clock.advance(minutes=90)

    results = await core.run_health_checks()

    by_id = {r["restaurant_id"]: r for r in results}
    assert set(by_id) == {str(restaurant.id), other["id"]}
    # swept before evaluation, so nothing is waiting
    assert by_id[str(restaurant.id)]["metrics"]["pending_callbacks"] == 0
    assert by_id[str(restaurant.id)]["status"] == "healthy"
    assert (await core.callbacks.get(cb_id))["status"] == "failed"
