# tests/test_call_service.py
from __future__ import annotations

import uuid

import pytest

from common.errors import NotFound, ValidationError


async def test_log_call_creates_then_merges(core, restaurant, clock):
    first = await core.log_call(
        restaurant.id,
        "twilio-CA123",
        caller_phone="+15552010001",
        started_at=clock(),
        status="completed",
        metadata={"language": "en"},
    )
    assert first["status"] == "created"
    assert first["is_new"] is True
    assert first["call"]["caller_phone_masked"] == "+1***-***-0001"

    later = await core.log_call(
        restaurant.id,
        "twilio-CA123",
        ended_at=clock.advance(minutes=4),
        status="transferred",
        outcome="transferred_safety",
        safety_trigger=True,
        safety_type="allergy",
        metadata={"duration_seconds": 240},
    )

    assert later["status"] == "updated"
    assert later["call_id"] == first["call_id"]
    call = later["call"]
    assert call["status"] == "transferred"
    assert call["outcome"] == "transferred_safety"
    assert call["safety_trigger_activated"] is True
    assert call["metadata"] == {"language": "en", "duration_seconds": 240}
    assert call["ended_at"] is not None


async def test_later_delivery_does_not_erase_fields(core, restaurant, clock):
    await core.log_call(restaurant.id, "call-9", started_at=clock(), outcome="booking_made", safety_trigger=True)
    out = await core.log_call(restaurant.id, "call-9", status="completed")
    assert out["call"]["outcome"] == "booking_made"
    assert out["call"]["safety_trigger_activated"] is True


async def test_unknown_status_is_recorded_as_completed(core, restaurant, clock):
    out = await core.log_call(restaurant.id, "call-10", started_at=clock(), status="exploded", outcome="mystery")
    assert out["call"]["status"] == "completed"
    assert out["call"]["outcome"] is None


async def test_log_call_validation(core, restaurant):
    with pytest.raises(ValidationError):
        await core.log_call(restaurant.id, "  ")
    with pytest.raises(NotFound):
        await core.log_call(uuid.uuid4(), "call-1")
    with pytest.raises(ValidationError):
        await core.log_call(restaurant.id, "call-2", reservation_id="not-a-uuid")


async def test_list_calls_newest_first(core, restaurant, clock):
    await core.log_call(restaurant.id, "call-a", started_at=clock())
    await core.log_call(restaurant.id, "call-b", started_at=clock.advance(minutes=1))
    calls = await core.list_calls(restaurant.id)
    assert [c["external_call_id"] for c in calls] == ["call-b", "call-a"]


async def test_redelivery_without_status_keeps_error(core, restaurant, clock):
    await core.log_call(restaurant.id, "call-err", started_at=clock(), status="error")
    out = await core.log_call(restaurant.id, "call-err", metadata={"retry": 1})
    assert out["call"]["status"] == "error"
    assert out["call"]["metadata"] == {"retry": 1}


async def test_missing_status_defaults_to_completed_on_insert(core, restaurant, clock):
    out = await core.log_call(restaurant.id, "call-new", started_at=clock())
    assert out["call"]["status"] == "completed"


async def test_start_time_defaults_to_the_core_clock(core, restaurant, clock):
    out = await core.log_call(restaurant.id, "call-clock")
    assert out["call"]["started_at"] == clock().isoformat()
