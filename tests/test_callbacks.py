# tests/test_callbacks.py
from __future__ import annotations

import pytest

from common.errors import InvalidTransition, NotFound, ValidationError
from common.event_bus import CallbackCreated, CallbackResolved
from db.models import CallbackPriority
from services.callbacks import classify_priority


@pytest.mark.parametrize(
    "reason, expected",
    [
        ("SAFETY_TRIGGER", CallbackPriority.urgent),
        ("allergy", CallbackPriority.urgent),
        ("SYSTEM_TIMEOUT", CallbackPriority.high),
        ("LARGE_PARTY", CallbackPriority.high),
        ("BOOKING_CONFLICT", CallbackPriority.normal),
        ("CUSTOMER_REQUEST", CallbackPriority.low),
        ("something new", CallbackPriority.normal),
        (None, CallbackPriority.normal),
    ],
)
def test_classify_priority(reason, expected):
    assert classify_priority(reason) == expected


async def _create(core, restaurant, reason="CUSTOMER_REQUEST", phone="(555) 201-0001", **kw):
    cb_id = await core.create_callback(restaurant.id, {"phone": phone, "name": "Ada Lovelace"}, reason, **kw)
    return await core.callbacks.get(cb_id)


async def test_create_requires_a_phone(core, restaurant):
    with pytest.raises(ValidationError) as ei:
        await core.create_callback(restaurant.id, {"name": "Ada"}, "CUSTOMER_REQUEST")
    assert ei.value.code == "INVALID_PHONE"


async def test_create_stores_context(core, restaurant):
    cb = await _create(
        core,
        restaurant,
        "BOOKING_CONFLICT",
        error_code="SLOT_UNAVAILABLE",
        context={"party_size": 4, "requested_datetime": "2026-06-02T23:00:00+00:00", "call_id": "call-7", "note": "wants patio"},
    )
    assert cb["status"] == "pending"
    assert cb["customer_phone"] == "+15552010001"
    assert cb["party_size"] == 4
    assert cb["call_id"] == "call-7"
    assert cb["requested_datetime"].startswith("2026-06-02T23:00")
    assert cb["error_details"] == {"note": "wants patio"}
    assert cb["attempt_count"] == 0


async def test_explicit_priority_can_raise_but_not_lower(core, restaurant):
    raised = await _create(core, restaurant, "CUSTOMER_REQUEST", priority="high")
    kept = await _create(core, restaurant, "SYSTEM_TIMEOUT", priority="low", phone="5552010002")
    assert raised["priority"] == "high"
    assert kept["priority"] == "high"


async def test_urgent_callbacks_need_immediate_transfer(core, restaurant):
    events = []
    core.bus.on(CallbackCreated, events.append)
    cb = await _create(core, restaurant, "SAFETY_TRIGGER")
    assert cb["priority"] == "urgent"
    assert cb["immediate_transfer"] is True
    assert events[0].immediate_transfer is True
    assert str(events[0].callback_id) == cb["id"]


async def test_queue_orders_by_priority_then_age(core, restaurant, clock):
    low = await _create(core, restaurant, "CUSTOMER_REQUEST", phone="5552010001")
    clock.advance(minutes=1)
    normal_old = await _create(core, restaurant, "BOOKING_CONFLICT", phone="5552010002")
    clock.advance(minutes=1)
    urgent = await _create(core, restaurant, "SAFETY_TRIGGER", phone="5552010003")
    clock.advance(minutes=1)
    normal_new = await _create(core, restaurant, "VALIDATION_ERROR", phone="5552010004")
    clock.advance(minutes=10)

    queue = await core.list_callbacks(restaurant.id)

    assert [c["id"] for c in queue] == [urgent["id"], normal_old["id"], normal_new["id"], low["id"]]
    assert queue[-1]["age_minutes"] == 13.0

    top = await core.list_callbacks(restaurant.id, limit=2)
    assert [c["id"] for c in top] == [urgent["id"], normal_old["id"]]


async def test_complete_flow(core, restaurant):
    cb = await _create(core, restaurant, "BOOKING_CONFLICT")

    with pytest.raises(InvalidTransition):
        await core.advance_callback(cb["id"], "complete", outcome="booked", notes="Booked 7:30")

    started = await core.advance_callback(cb["id"], "start", staff="maria")
    assert started["status"] == "in_progress"
    assert started["assigned_to"] == "maria"
    assert started["attempt_count"] == 1

    with pytest.raises(ValidationError) as ei:
        await core.advance_callback(cb["id"], "complete", outcome="teleported", notes="x")
    assert ei.value.code == "INVALID_OUTCOME"
    with pytest.raises(ValidationError) as ei:
        await core.advance_callback(cb["id"], "complete", outcome="booked", notes="  ")
    assert ei.value.code == "MISSING_NOTES"

    done = await core.advance_callback(cb["id"], "complete", outcome="booked", notes="Booked 7:30 instead")
    assert done["status"] == "completed"
    assert done["resolution_outcome"] == "booked"
    assert done["resolved_by"] == "maria"
    assert done["resolved_at"] is not None

    with pytest.raises(InvalidTransition):
        await core.advance_callback(cb["id"], "start", staff="maria")


async def test_start_is_idempotent_for_the_same_staff_member(core, restaurant):
    cb = await _create(core, restaurant)
    await core.advance_callback(cb["id"], "start", staff="maria")
    again = await core.advance_callback(cb["id"], "start", staff="maria")
    assert again["attempt_count"] == 1
    with pytest.raises(InvalidTransition):
        await core.advance_callback(cb["id"], "start", staff="omar")


async def test_attempts_beyond_the_limit_auto_fail(core, restaurant):
    resolved = []
    core.bus.on(CallbackResolved, resolved.append)
    cb = await _create(core, restaurant)

    await core.advance_callback(cb["id"], "start", staff="maria")
    await core.advance_callback(cb["id"], "attempt", note="voicemail")
    third = await core.advance_callback(cb["id"], "attempt", note="no answer")
    assert third["status"] == "in_progress"
    assert third["attempt_count"] == 3

    fourth = await core.advance_callback(cb["id"], "attempt", note="line busy")

    assert fourth["status"] == "failed"
    assert fourth["attempt_count"] == 4
    assert fourth["resolved_by"] == "system"
    assert "Auto-failed" in fourth["resolution_notes"]
    assert "line busy" in fourth["resolution_notes"]
    assert [e.status for e in resolved] == ["failed"]

    with pytest.raises(InvalidTransition):
        await core.advance_callback(cb["id"], "attempt")


async def test_sweep_fails_exhausted_rows(core, restaurant, session_factory):
    from sqlalchemy import update

    from db.models import Callback

    cb = await _create(core, restaurant)
    async with session_factory() as db:
        await db.execute(update(Callback).values(attempt_count=7))
        await db.commit()

    assert await core.callbacks.fail_exhausted(restaurant.id) == 1
    assert (await core.callbacks.get(cb["id"]))["status"] == "failed"
    assert await core.callbacks.fail_exhausted(restaurant.id) == 0


async def test_fail_and_cancel(core, restaurant):
    failed = await _create(core, restaurant, phone="5552010001")
    out = await core.advance_callback(failed["id"], "fail", reason="Wrong number", resolved_by="maria")
    assert out["status"] == "failed"
    assert out["resolution_notes"] == "Wrong number"

    cancelled = await _create(core, restaurant, phone="5552010002")
    first = await core.advance_callback(cancelled["id"], "cancel", reason="Customer called back")
    second = await core.advance_callback(cancelled["id"], "cancel")
    assert first["status"] == second["status"] == "cancelled"
    assert second["resolution_notes"] == "Customer called back"

    assert await core.list_callbacks(restaurant.id) == []
    closed = await core.list_callbacks(restaurant.id, statuses=["failed", "cancelled"])
    assert {c["id"] for c in closed} == {failed["id"], cancelled["id"]}


async def test_unknown_action_and_callback(core, restaurant):
    cb = await _create(core, restaurant)
    with pytest.raises(ValidationError):
        await core.advance_callback(cb["id"], "escalate")
    with pytest.raises(NotFound):
        await core.advance_callback("not-a-uuid", "start", staff="maria")


async def test_oldest_pending_age(core, restaurant, clock):
    assert await core.callbacks.oldest_pending_age(restaurant.id) is None
    await _create(core, restaurant)
    clock.advance(minutes=42)
    assert await core.callbacks.oldest_pending_age(restaurant.id) == pytest.approx(42.0)
