# services/calendar_policy.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config_loader import RestaurantSettings
from common.errors import NotFound, ValidationError
from db.models import BlockedDate, BlockType, Restaurant

_log = logging.getLogger("reservation-core")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_CLOSING_BLOCKS = (BlockType.closed, BlockType.private_event)


@dataclass(frozen=True)
class RestaurantContext:
    restaurant: Restaurant
    settings: RestaurantSettings
    tz: ZoneInfo

    @property
    def id(self) -> uuid.UUID:
        return self.restaurant.id

    def local_now(self, now_utc: datetime) -> datetime:
        return now_utc.astimezone(self.tz)

    def localize(self, day: date, at: time) -> datetime:
        return datetime.combine(day, at.replace(tzinfo=None), tzinfo=self.tz)


@dataclass(frozen=True)
class DayHours:
    day: date
    closed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    open_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    last_seating: Optional[datetime] = None
    special: bool = False

    def accepts(self, local_dt: datetime) -> bool:
        if self.closed or self.open_at is None or self.last_seating is None:
            return False
        return self.open_at <= local_dt <= self.last_seating


def parse_hhmm(value: Any) -> time:
    if isinstance(value, time):
        return value
    try:
        hh, mm = str(value).strip().split(":")[:2]
        return time(int(hh), int(mm))
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid time {value!r}; expected HH:MM.", code="INVALID_FIELD") from e


def fmt_time(dt: datetime | time) -> str:
    return dt.strftime("%I:%M %p").lstrip("0")


async def get_restaurant(db: AsyncSession, restaurant_id: uuid.UUID) -> RestaurantContext:
    r = await db.get(Restaurant, restaurant_id)
    if not r or not r.is_active:
        raise NotFound("Restaurant not found or inactive.")
    try:
        tz = ZoneInfo(r.timezone or "UTC")
    except ZoneInfoNotFoundError:
        _log.error("Restaurant %s has unknown timezone %r; using UTC", r.id, r.timezone)
        tz = ZoneInfo("UTC")
    return RestaurantContext(restaurant=r, settings=RestaurantSettings.from_mapping(r.settings), tz=tz)


def weekday_hours(business_hours: Optional[Mapping[str, Any]], day: date) -> Optional[Dict[str, Any]]:
    """Configured {open, close} for the weekday of `day`, or None when closed."""
    hours = (business_hours or {}).get(WEEKDAYS[day.weekday()])
    if not hours or not isinstance(hours, Mapping) or not hours.get("open") or not hours.get("close"):
        return None
    return dict(hours)


def effective_hours(ctx: RestaurantContext, day: date, blocks: Sequence[BlockedDate] = ()) -> DayHours:
    """
    Hours that actually apply on `day`.
    Closed/private-event blocks win over special-hours blocks, which replace the weekday default.
    A close time at or before the open time belongs to the next calendar day.
    """
    covering = [b for b in blocks if b.start_date <= day <= b.end_date]
    for b in covering:
        if b.block_type in _CLOSING_BLOCKS:
            return DayHours(
                day=day,
                closed=True,
                reason="blocked",
                message=b.public_message or "We are closed on that date. Would you like to try a different day?",
            )

    special = next((b for b in covering if b.block_type == BlockType.special_hours and b.special_hours), None)
    if special is not None:
        hours: Optional[Dict[str, Any]] = dict(special.special_hours or {})
    else:
        hours = weekday_hours(ctx.restaurant.business_hours, day)

    if not hours or not hours.get("open") or not hours.get("close"):
        name = WEEKDAYS[day.weekday()].capitalize()
        return DayHours(
            day=day,
            closed=True,
            reason="closed",
            message=f"We are closed on {name}s. Would you like to try a different day?",
        )

    open_at = ctx.localize(day, parse_hhmm(hours["open"]))
    close_at = ctx.localize(day, parse_hhmm(hours["close"]))
    if close_at <= open_at:
        close_at = ctx.localize(day + timedelta(days=1), parse_hhmm(hours["close"]))
    last_seating = close_at - timedelta(minutes=ctx.settings.last_seating_offset_minutes)
    return DayHours(
        day=day,
        closed=False,
        open_at=open_at,
        close_at=close_at,
        last_seating=last_seating,
        special=special is not None,
    )


def check_booking_window(settings: RestaurantSettings, now_local: datetime, target_local: datetime) -> None:
    """Raise ValidationError when the target is in the past, same-day-disallowed or too far out."""
    today = now_local.date()
    target_day = target_local.date()
    if target_local <= now_local:
        raise ValidationError("Reservation date must be in the future.", code="INVALID_DATE")
    if target_day == today and not settings.allow_same_day_booking:
        raise ValidationError(
            "We don't take same-day reservations. Would you like to book for another day?",
            code="SAME_DAY_NOT_ALLOWED",
        )
    if (target_day - today).days > settings.max_future_booking_days:
        raise ValidationError(
            f"Reservations can only be made up to {settings.max_future_booking_days} days in advance.",
            code="DATE_TOO_FAR",
        )


async def load_blocks(db: AsyncSession, restaurant_id: uuid.UUID, day: date) -> List[BlockedDate]:
    q = select(BlockedDate).where(
        BlockedDate.restaurant_id == restaurant_id,
        BlockedDate.start_date <= day,
        BlockedDate.end_date >= day,
    )
    return list((await db.execute(q)).scalars())


async def add_blocked_dates(
    db: AsyncSession,
    restaurant_id: uuid.UUID,
    start_date: date,
    end_date: date,
    block_type: BlockType | str = BlockType.closed,
    *,
    special_hours: Optional[Mapping[str, str]] = None,
    reason: str = "",
    public_message: Optional[str] = None,
) -> BlockedDate:
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date.", code="INVALID_DATE")
    try:
        block_type = BlockType(block_type)
    except ValueError as e:
        raise ValidationError(f"Unknown block type {block_type!r}.", code="INVALID_FIELD") from e
    if block_type == BlockType.special_hours:
        if not special_hours or "open" not in special_hours or "close" not in special_hours:
            raise ValidationError("special_hours blocks need open and close times.", code="INVALID_FIELD")
        parse_hhmm(special_hours["open"])
        parse_hhmm(special_hours["close"])

    row = BlockedDate(
        restaurant_id=restaurant_id,
        start_date=start_date,
        end_date=end_date,
        block_type=block_type,
        special_hours=dict(special_hours) if special_hours else None,
        reason=reason,
        public_message=public_message,
    )
    db.add(row)
    await db.flush()
    _log.info("Blocked %s..%s (%s) for restaurant %s", start_date, end_date, block_type.value, restaurant_id)
    return row


def blocked_date_to_dict(b: BlockedDate) -> Dict[str, Any]:
    return {
        "id": str(b.id),
        "restaurant_id": str(b.restaurant_id),
        "start_date": b.start_date.isoformat(),
        "end_date": b.end_date.isoformat(),
        "block_type": b.block_type.value,
        "special_hours": b.special_hours,
        "reason": b.reason,
        "public_message": b.public_message,
    }
