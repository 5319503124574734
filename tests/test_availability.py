# tests/test_availability.py
from __future__ import annotations

import asyncio
import uuid
from datetime import date, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from common.config_loader import BookingPolicy, CoreConfig
from common.errors import NotFound
from db.models import Restaurant
from services.reservation_service import ReservationCore

from conftest import DAY


async def test_available_slot_is_offered(core, restaurant, make_slot):
    slot = await make_slot("19:00", capacity=4)
    out = await core.check_availability(restaurant.id, DAY.isoformat(), "19:00", 2, "indoor")
    assert out["available"] is True
    assert out["status"] == "available"
    assert out["requested_slot"]["slot_id"] == str(slot.id)
    assert out["requested_slot"]["available_capacity"] == 4
    assert out["alternatives"] == []


async def test_requested_time_snaps_to_grid(core, restaurant, make_slot):
    await make_slot("19:00", capacity=4)
    out = await core.check_availability(restaurant.id, DAY, "19:10", 2, "any")
    assert out["available"] is True
    assert out["requested_slot"]["local_datetime"].startswith("2026-06-02T19:00")


async def test_party_must_fit_remaining_capacity(core, restaurant, make_slot):
    await make_slot("19:00", capacity=4, booked=3)
    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "indoor")
    assert out["available"] is False


async def test_full_slot_returns_nearest_alternatives(core, restaurant, make_slot):
    await make_slot("19:00", capacity=4, booked=4)
    await make_slot("17:30", capacity=4)
    await make_slot("20:00", capacity=4)
    await make_slot("19:30", capacity=4)
    await make_slot("18:30", capacity=4)

    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "indoor")

    assert out["available"] is False
    assert out["status"] == "partial_match"
    assert out["reason"] == "SLOT_UNAVAILABLE"
    # distance first, earlier time breaks the 30-minute tie, capped at three
    assert [a["local_time"] for a in out["alternatives"]] == ["18:30", "19:30", "20:00"]
    assert out["alternative_times"] == ["18:30", "19:30", "20:00"]


async def test_alternatives_for_any_prefer_seating_order(core, restaurant, make_slot):
    await make_slot("19:00", capacity=2, booked=2)
    await make_slot("19:30", seating="bar", capacity=4)
    await make_slot("19:30", seating="indoor", capacity=4)

    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "any")

    assert [(a["local_time"], a["seating_type"]) for a in out["alternatives"]] == [
        ("19:30", "indoor"),
        ("19:30", "bar"),
    ]


async def test_alternatives_respect_seating_preference(core, restaurant, make_slot):
    await make_slot("19:00", seating="outdoor", capacity=2, booked=2)
    await make_slot("19:30", seating="indoor", capacity=4)
    await make_slot("20:00", seating="outdoor", capacity=4)

    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "outdoor")

    assert [a["seating_type"] for a in out["alternatives"]] == ["outdoor"]
    assert out["alternatives"][0]["local_time"] == "20:00"


async def test_alternatives_stay_within_bookable_hours(core, restaurant, make_slot):
    await make_slot("21:00", capacity=2, booked=2)
    # after last seating; never offered
    await make_slot("21:30", capacity=4)
    out = await core.check_availability(restaurant.id, DAY, "21:00", 2, "indoor")
    assert out["status"] == "unavailable"
    assert out["reason"] == "NO_AVAILABILITY"
    assert out["alternatives"] == []


async def test_blocked_slot_is_not_available(core, restaurant, make_slot):
    await make_slot("19:00", capacity=4, blocked=True)
    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "indoor")
    assert out["available"] is False


async def test_date_beyond_booking_window_is_rejected_regardless_of_capacity(core, restaurant, make_slot):
    far = DAY + timedelta(days=44)
    await make_slot("19:00", capacity=40, day=far)

    out = await core.check_availability(restaurant.id, far.isoformat(), "19:00", 2, "any")

    assert out["available"] is False
    assert out["reason"] == "DATE_TOO_FAR"
    assert "30 days" in out["message"]


async def test_closed_block_has_no_alternatives(core, restaurant, make_slot):
    await make_slot("19:00", capacity=4)
    await make_slot("19:30", capacity=4)
    await core.add_blocked_dates(restaurant.id, DAY, DAY, "closed", reason="Renovation", public_message="Closed for renovation.")

    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "any")

    assert out["available"] is False
    assert out["reason"] == "DATE_BLOCKED"
    assert out["message"] == "Closed for renovation."
    assert out["alternatives"] == []


async def test_special_hours_open_a_lunch_service(core, restaurant, make_slot):
    await make_slot("12:00", capacity=4)
    await core.add_blocked_dates(
        restaurant.id, DAY, DAY, "special_hours", special_hours={"open": "11:00", "close": "15:00"}, reason="Holiday"
    )
    out = await core.check_availability(restaurant.id, DAY, "12:00", 2, "any")
    assert out["available"] is True

    # regular evening hours no longer apply that day
    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "any")
    assert out["reason"] == "OUTSIDE_HOURS"


async def test_after_last_seating_is_outside_hours(core, restaurant, make_slot):
    await make_slot("21:30", capacity=4)
    out = await core.check_availability(restaurant.id, DAY, "21:30", 2, "any")
    assert out["available"] is False
    assert out["reason"] == "OUTSIDE_HOURS"
    assert "9:00 PM" in out["message"]


@pytest.mark.parametrize("asked", ["21:10", "16:50"])
async def test_hours_apply_before_snapping_to_the_grid(core, restaurant, make_slot, asked):
    await make_slot("17:00", capacity=4)
    await make_slot("21:00", capacity=4)
    out = await core.check_availability(restaurant.id, DAY, asked, 2, "indoor")
    assert out["available"] is False
    assert out["reason"] == "OUTSIDE_HOURS"


async def test_snapped_time_inside_hours_is_offered(core, restaurant, make_slot):
    await make_slot("21:00", capacity=4)
    out = await core.check_availability(restaurant.id, DAY, "20:50", 2, "indoor")
    assert out["available"] is True
    assert out["requested_slot"]["local_datetime"].startswith("2026-06-02T21:00")


async def test_large_party_needs_special_handling(core, restaurant, make_slot):
    await make_slot("19:00", capacity=40)
    out = await core.check_availability(restaurant.id, DAY, "19:00", 12, "any")
    assert out["available"] is False
    assert out["status"] == "requires_special_handling"
    assert out["reason"] == "LARGE_PARTY"
    assert out["transfer_required"] is True


async def test_invalid_inputs_are_validation_results(core, restaurant):
    out = await core.check_availability(restaurant.id, DAY, "19:00", 0, "any")
    assert out["status"] == "error" and out["reason"] == "INVALID_PARTY_SIZE"

    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "rooftop")
    assert out["reason"] == "INVALID_SEATING"

    out = await core.check_availability(restaurant.id, "June 2nd", "19:00", 2, "any")
    assert out["reason"] == "INVALID_DATE"

    out = await core.check_availability(restaurant.id, date(2026, 5, 30), "19:00", 2, "any")
    assert out["reason"] == "INVALID_DATE"


async def test_party_above_max_but_within_threshold_is_invalid(core, session_factory, make_slot):
    async with session_factory() as db:
        r = Restaurant(
            name="Small Bar",
            timezone="America/New_York",
            business_hours={"tuesday": {"open": "17:00", "close": "22:00"}},
            settings={"max_party_size": 4, "large_party_threshold": 10},
        )
        db.add(r)
        await db.commit()
    await make_slot("19:00", capacity=20, restaurant_id=r.id)

    out = await core.check_availability(r.id, DAY, "19:00", 6, "any")
    assert out["reason"] == "INVALID_PARTY_SIZE"


async def test_unknown_restaurant_is_not_found(core):
    with pytest.raises(NotFound):
        await core.check_availability(uuid.uuid4(), DAY, "19:00", 2, "any")


# ---------- store failures ----------
@pytest_asyncio.fixture
async def slow_core(session_factory, clock):
    core = ReservationCore(session_factory, CoreConfig(booking=BookingPolicy(store_timeout_seconds=0.05)), clock=clock)
    yield core
    await core.aclose()


async def test_store_timeout_is_not_reported_as_unavailable(slow_core, restaurant, make_slot, monkeypatch):
    await make_slot("19:00", capacity=4)

    async def hang(*args, **kwargs):
        await asyncio.sleep(5)

    monkeypatch.setattr(slow_core.resolver, "resolve", hang)

    out = await slow_core.check_availability(
        restaurant.id, DAY, "19:00", 2, "indoor", caller_phone="(555) 201-0009", customer_name="Ada"
    )

    assert out["status"] == "system_unavailable"
    assert out["available"] is False
    assert out["follow_up"] is True
    assert "call you back" in out["message"]
    cb = await slow_core.callbacks.get(out["callback_id"])
    assert cb["error_code"] == "SYSTEM_TIMEOUT"
    assert cb["priority"] in ("high", "urgent")
    assert cb["customer_phone"] == "+15552010009"
    assert cb["party_size"] == 2
    assert cb["error_details"]["operation"] == "check_availability"


async def test_unreachable_store_queues_callback(core, restaurant, monkeypatch):
    async def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(core.resolver, "resolve", broken)

    out = await core.check_availability(restaurant.id, DAY, "19:00", 2, "any")

    assert out["status"] == "system_unavailable"
    pending = await core.list_callbacks(restaurant.id)
    assert [c["id"] for c in pending] == [out["callback_id"]]
    assert pending[0]["failure_reason"] == "SYSTEM_TIMEOUT"
