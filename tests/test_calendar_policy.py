# tests/test_calendar_policy.py
from __future__ import annotations

from datetime import date, datetime, time, timedelta

import pytest

from common.config_loader import RestaurantSettings
from common.errors import ValidationError
from db.models import BlockedDate, BlockType, Restaurant
from services.calendar_policy import (
    RestaurantContext,
    check_booking_window,
    effective_hours,
    parse_hhmm,
    weekday_hours,
)
from services.slot_catalog import snap_to_grid

from conftest import DAY, HOURS, TZ


def _ctx(hours=None, **settings) -> RestaurantContext:
    r = Restaurant(name="Test", timezone="America/New_York", business_hours=hours if hours is not None else dict(HOURS))
    return RestaurantContext(restaurant=r, settings=RestaurantSettings(**settings), tz=TZ)


def _block(kind, start=DAY, end=DAY, special=None, message=None) -> BlockedDate:
    return BlockedDate(
        start_date=start,
        end_date=end,
        block_type=kind,
        special_hours=special,
        reason="test",
        public_message=message,
    )


def test_weekday_hours_missing_day_is_closed():
    hours = dict(HOURS)
    hours["tuesday"] = None
    assert weekday_hours(hours, DAY) is None
    assert weekday_hours(HOURS, DAY) == {"open": "17:00", "close": "22:00"}


def test_effective_hours_default_and_last_seating():
    h = effective_hours(_ctx(), DAY)
    assert not h.closed
    assert h.open_at == datetime(2026, 6, 2, 17, 0, tzinfo=TZ)
    assert h.last_seating == datetime(2026, 6, 2, 21, 0, tzinfo=TZ)
    assert h.accepts(datetime(2026, 6, 2, 21, 0, tzinfo=TZ))
    assert not h.accepts(datetime(2026, 6, 2, 21, 30, tzinfo=TZ))
    assert not h.accepts(datetime(2026, 6, 2, 16, 30, tzinfo=TZ))


def test_closed_weekday_message_names_the_day():
    hours = dict(HOURS)
    hours["tuesday"] = None
    h = effective_hours(_ctx(hours), DAY)
    assert h.closed
    assert h.reason == "closed"
    assert "Tuesdays" in h.message


def test_special_hours_replace_weekday_default():
    h = effective_hours(_ctx(), DAY, [_block(BlockType.special_hours, special={"open": "11:00", "close": "15:00"})])
    assert h.special
    assert h.open_at.time() == time(11, 0)
    assert h.last_seating.time() == time(14, 0)


def test_closed_block_beats_special_hours():
    blocks = [
        _block(BlockType.special_hours, special={"open": "11:00", "close": "15:00"}),
        _block(BlockType.closed, start=DAY - timedelta(days=1), end=DAY + timedelta(days=1), message="Private buyout"),
    ]
    h = effective_hours(_ctx(), DAY, blocks)
    assert h.closed
    assert h.reason == "blocked"
    assert h.message == "Private buyout"


def test_private_event_closes_the_day():
    h = effective_hours(_ctx(), DAY, [_block(BlockType.private_event)])
    assert h.closed and h.reason == "blocked"


def test_block_outside_range_is_ignored():
    h = effective_hours(_ctx(), DAY, [_block(BlockType.closed, start=DAY + timedelta(days=1), end=DAY + timedelta(days=3))])
    assert not h.closed


def test_close_after_midnight_rolls_to_next_day():
    hours = dict(HOURS)
    hours["tuesday"] = {"open": "18:00", "close": "01:00"}
    h = effective_hours(_ctx(hours), DAY)
    assert h.close_at == datetime(2026, 6, 3, 1, 0, tzinfo=TZ)
    assert h.last_seating == datetime(2026, 6, 3, 0, 0, tzinfo=TZ)
    assert h.accepts(datetime(2026, 6, 2, 23, 30, tzinfo=TZ))


def test_last_seating_offset_comes_from_settings():
    h = effective_hours(_ctx(last_seating_offset_minutes=90), DAY)
    assert h.last_seating.time() == time(20, 30)


# ---------- booking window ----------
NOW_LOCAL = datetime(2026, 6, 1, 12, 0, tzinfo=TZ)


def test_window_rejects_past():
    with pytest.raises(ValidationError) as ei:
        check_booking_window(RestaurantSettings(), NOW_LOCAL, NOW_LOCAL - timedelta(hours=1))
    assert ei.value.code == "INVALID_DATE"


def test_window_same_day_policy():
    later_today = NOW_LOCAL + timedelta(hours=7)
    check_booking_window(RestaurantSettings(), NOW_LOCAL, later_today)
    with pytest.raises(ValidationError) as ei:
        check_booking_window(RestaurantSettings(allow_same_day_booking=False), NOW_LOCAL, later_today)
    assert ei.value.code == "SAME_DAY_NOT_ALLOWED"


def test_window_too_far_cites_the_window():
    with pytest.raises(ValidationError) as ei:
        check_booking_window(RestaurantSettings(), NOW_LOCAL, NOW_LOCAL + timedelta(days=45))
    assert ei.value.code == "DATE_TOO_FAR"
    assert "30 days" in ei.value.message


def test_window_edge_is_inclusive():
    check_booking_window(RestaurantSettings(), NOW_LOCAL, NOW_LOCAL + timedelta(days=30))


# ---------- parsing / grid ----------
def test_parse_hhmm():
    assert parse_hhmm("7:05") == time(7, 5)
    assert parse_hhmm(time(19, 30)) == time(19, 30)
    with pytest.raises(ValidationError):
        parse_hhmm("seven")


@pytest.mark.parametrize(
    "given, expected",
    [("19:00", "19:00"), ("19:14", "19:00"), ("19:15", "19:30"), ("19:44", "19:30"), ("19:46", "20:00")],
)
def test_snap_to_grid(given, expected):
    local = datetime.combine(date(2026, 6, 2), time.fromisoformat(given), tzinfo=TZ)
    assert snap_to_grid(local, 30).strftime("%H:%M") == expected
