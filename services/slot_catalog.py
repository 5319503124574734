# services/slot_catalog.py
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.errors import NotFound, ValidationError
from db.models import AvailabilitySlot, SeatingType, utcnow
from services.calendar_policy import effective_hours, fmt_time, get_restaurant, load_blocks
from services.store import store_guard

_log = logging.getLogger("reservation-core")


def snap_to_grid(local_dt: datetime, interval_minutes: int = 30) -> datetime:
    """Round a wall-clock time to the nearest grid minute; exact halves round up."""
    minutes = local_dt.hour * 60 + local_dt.minute
    snapped = ((minutes + interval_minutes // 2) // interval_minutes) * interval_minutes
    midnight = datetime.combine(local_dt.date(), time(0), tzinfo=local_dt.tzinfo)
    return midnight + timedelta(minutes=snapped)


def slot_to_dict(s: AvailabilitySlot, tz=None) -> Dict[str, Any]:
    local = s.slot_datetime.astimezone(tz) if tz else s.slot_datetime
    return {
        "slot_id": str(s.id),
        "datetime": s.slot_datetime.isoformat(),
        "local_time": local.strftime("%H:%M"),
        "time_display": fmt_time(local),
        "seating_type": s.seating_type.value,
        "total_capacity": s.total_capacity,
        "booked_count": s.booked_count,
        "available_capacity": s.remaining,
        "is_blocked": s.is_blocked,
    }


class SlotCatalog:
    """
    Per-restaurant capacity units keyed by (slot_datetime, seating_type).

    claim() and release() are the only writers of booked_count. Both are single
    conditional UPDATEs so the capacity bound holds without any read-then-write.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ---------- reads ----------
    async def get_slot(self, db: AsyncSession, slot_id: uuid.UUID) -> Optional[AvailabilitySlot]:
        q = select(AvailabilitySlot).where(AvailabilitySlot.id == slot_id).execution_options(populate_existing=True)
        return (await db.execute(q)).scalar_one_or_none()

    async def slots_at(
        self,
        db: AsyncSession,
        restaurant_id: uuid.UUID,
        at_utc: datetime,
        seating: Optional[SeatingType] = None,
    ) -> List[AvailabilitySlot]:
        q = select(AvailabilitySlot).where(
            AvailabilitySlot.restaurant_id == restaurant_id,
            AvailabilitySlot.slot_datetime == at_utc,
        )
        if seating is not None:
            q = q.where(AvailabilitySlot.seating_type == seating)
        q = q.execution_options(populate_existing=True)
        return list((await db.execute(q)).scalars())

    async def slots_between(
        self,
        db: AsyncSession,
        restaurant_id: uuid.UUID,
        start_utc: datetime,
        end_utc: datetime,
    ) -> List[AvailabilitySlot]:
        q = (
            select(AvailabilitySlot)
            .where(
                AvailabilitySlot.restaurant_id == restaurant_id,
                AvailabilitySlot.slot_datetime >= start_utc,
                AvailabilitySlot.slot_datetime <= end_utc,
            )
            .order_by(AvailabilitySlot.slot_datetime, AvailabilitySlot.seating_type)
            .execution_options(populate_existing=True)
        )
        return list((await db.execute(q)).scalars())

    async def counts(self, db: AsyncSession, slot_id: uuid.UUID) -> Tuple[int, int]:
        """(booked_count, total_capacity) straight from the row, bypassing the identity map."""
        q = select(AvailabilitySlot.booked_count, AvailabilitySlot.total_capacity).where(AvailabilitySlot.id == slot_id)
        row = (await db.execute(q)).one()
        return int(row[0]), int(row[1])

    # ---------- atomic writes ----------
    async def claim(self, db: AsyncSession, slot_id: uuid.UUID, seats: int) -> bool:
        if seats < 1:
            raise ValidationError("Seat count must be positive.", code="INVALID_PARTY_SIZE")
        stmt = (
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.is_blocked.is_(False),
                AvailabilitySlot.booked_count + seats <= AvailabilitySlot.total_capacity,
            )
            .values(booked_count=AvailabilitySlot.booked_count + seats, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        res = await db.execute(stmt)
        return res.rowcount == 1

    async def release(self, db: AsyncSession, slot_id: uuid.UUID, seats: int) -> bool:
        if seats < 1:
            return False
        stmt = (
            update(AvailabilitySlot)
            .where(AvailabilitySlot.id == slot_id, AvailabilitySlot.booked_count >= seats)
            .values(booked_count=AvailabilitySlot.booked_count - seats, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        res = await db.execute(stmt)
        if res.rowcount != 1:
            _log.error("Release of %s seat(s) on slot %s matched no row", seats, slot_id)
            return False
        return True

    # ---------- staff configuration ----------
    async def publish_slots(
        self,
        *,
        restaurant_id: uuid.UUID,
        start_date: date,
        end_date: date,
        capacities: Mapping[str, int],
        weekdays: Optional[Iterable[int]] = None,  # 0=Mon..6=Sun. None=every day
    ) -> Dict[str, int]:
        """
        Create grid slots for each matching day in [start_date, end_date], from opening
        time to last seating in the restaurant timezone. Existing keys are left alone.
        """
        if end_date < start_date:
            raise ValidationError("end_date must be >= start_date", code="INVALID_DATE")
        caps: Dict[SeatingType, int] = {}
        for seating, cap in capacities.items():
            try:
                st = SeatingType(seating)
            except ValueError as e:
                raise ValidationError(f"Unknown seating type {seating!r}.", code="INVALID_SEATING") from e
            if int(cap) > 0:
                caps[st] = int(cap)
        if not caps:
            raise ValidationError("At least one positive capacity is required.", code="INVALID_FIELD")
        days_filter: Optional[Set[int]] = set(weekdays) if weekdays is not None else None

        async with store_guard("publish_slots"), self._session_factory() as db:
            ctx = await get_restaurant(db, restaurant_id)
            step = timedelta(minutes=ctx.settings.slot_interval_minutes)

            range_start = ctx.localize(start_date, time(0)).astimezone(timezone.utc)
            range_end = ctx.localize(end_date + timedelta(days=2), time(0)).astimezone(timezone.utc)
            existing = {
                (s.slot_datetime, s.seating_type)
                for s in await self.slots_between(db, restaurant_id, range_start, range_end)
            }

            cur = start_date
            created = 0
            days = 0
            while cur <= end_date:
                if days_filter is None or cur.weekday() in days_filter:
                    hours = effective_hours(ctx, cur, await load_blocks(db, restaurant_id, cur))
                    if not hours.closed:
                        days += 1
                        t = hours.open_at
                        while t <= hours.last_seating:
                            t_utc = t.astimezone(timezone.utc)
                            for st, cap in caps.items():
                                if (t_utc, st) in existing:
                                    continue
                                db.add(
                                    AvailabilitySlot(
                                        restaurant_id=restaurant_id,
                                        slot_datetime=t_utc,
                                        seating_type=st,
                                        total_capacity=cap,
                                        booked_count=0,
                                    )
                                )
                                existing.add((t_utc, st))
                                created += 1
                            t = t + step
                cur = cur + timedelta(days=1)

            await db.commit()
            _log.info("Published %d slot(s) over %d day(s) for restaurant %s", created, days, restaurant_id)
            return {"slots_created": created, "days": days}

    async def set_slot_blocked(self, slot_id: uuid.UUID, blocked: bool, reason: Optional[str] = None) -> Dict[str, Any]:
        async with store_guard("set_slot_blocked"), self._session_factory() as db:
            slot = await self.get_slot(db, slot_id)
            if slot is None:
                raise NotFound("Slot not found")
            slot.is_blocked = blocked
            slot.block_reason = reason if blocked else None
            await db.commit()
            return slot_to_dict(slot)
