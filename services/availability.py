# services/availability.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.config_loader import BookingPolicy
from common.errors import ValidationError
from common.safety import is_large_party
from db.models import AvailabilitySlot, SeatingType, utcnow
from services.calendar_policy import (
    DayHours,
    RestaurantContext,
    check_booking_window,
    effective_hours,
    fmt_time,
    get_restaurant,
    load_blocks,
    parse_hhmm,
)
from services.slot_catalog import SlotCatalog, slot_to_dict, snap_to_grid
from services.store import store_guard

_log = logging.getLogger("reservation-core")

SEATING_ORDER = (SeatingType.indoor, SeatingType.outdoor, SeatingType.bar, SeatingType.private)
ANY = "any"


def parse_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as e:
        raise ValidationError(f"Invalid date {value!r}; expected YYYY-MM-DD.", code="INVALID_DATE") from e


def parse_time(value: Union[str, time]) -> time:
    return parse_hhmm(value)


def parse_seating(value: Optional[str]) -> Optional[SeatingType]:
    """None means any seating type."""
    if value is None:
        return None
    v = str(value).strip().lower()
    if v in ("", ANY):
        return None
    try:
        return SeatingType(v)
    except ValueError as e:
        raise ValidationError(f"Unknown seating preference {value!r}.", code="INVALID_SEATING") from e


def _seating_rank(seating: SeatingType) -> int:
    return SEATING_ORDER.index(seating) if seating in SEATING_ORDER else len(SEATING_ORDER)


@dataclass(frozen=True)
class SlotRequest:
    ctx: RestaurantContext
    local_dt: datetime
    party_size: int
    seating: Optional[SeatingType]
    # wall-clock time as asked, before grid snapping
    asked_dt: Optional[datetime] = None

    @property
    def utc_dt(self) -> datetime:
        return self.local_dt.astimezone(timezone.utc)

    @property
    def seating_label(self) -> str:
        return self.seating.value if self.seating else ANY


@dataclass
class AvailabilityResult:
    available: bool
    status: str  # available | partial_match | unavailable | requires_special_handling
    message: str
    reason: Optional[str] = None
    requested: Dict[str, Any] = field(default_factory=dict)
    alternatives: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "available": self.available,
            "status": self.status,
            "message": self.message,
            "requested_slot": self.requested,
            "alternatives": self.alternatives,
        }
        if self.reason:
            d["reason"] = self.reason
        return d


class AvailabilityResolver:
    """
    Read-only view over CalendarPolicy + SlotCatalog.

    The answer is a snapshot; BookingCoordinator re-validates capacity at commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: Optional[BookingPolicy] = None,
        *,
        catalog: Optional[SlotCatalog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or BookingPolicy()
        self.catalog = catalog or SlotCatalog(session_factory)
        self._clock = clock

    # ---------- request validation ----------
    async def validate_request(
        self,
        db: AsyncSession,
        restaurant_id: uuid.UUID,
        day: date,
        at: time,
        party_size: int,
        seating_pref: Optional[str],
    ) -> SlotRequest:
        """Non-capacity checks: party size floor, seating, restaurant, booking window."""
        if not isinstance(party_size, int) or isinstance(party_size, bool) or party_size < 1:
            raise ValidationError("Party size must be at least 1 guest.", code="INVALID_PARTY_SIZE")
        seating = parse_seating(seating_pref)
        ctx = await get_restaurant(db, restaurant_id)
        asked_dt = ctx.localize(day, at)
        local_dt = snap_to_grid(asked_dt, ctx.settings.slot_interval_minutes)
        check_booking_window(ctx.settings, ctx.local_now(self._clock()), local_dt)
        return SlotRequest(ctx=ctx, local_dt=local_dt, party_size=party_size, seating=seating, asked_dt=asked_dt)

    def check_party_size(self, req: SlotRequest) -> Optional[AvailabilityResult]:
        """Large parties are never evaluated against ordinary slots."""
        s = req.ctx.settings
        if is_large_party(req.party_size, s.large_party_threshold):
            return AvailabilityResult(
                available=False,
                status="requires_special_handling",
                reason="LARGE_PARTY",
                message=(
                    f"For parties larger than {s.large_party_threshold}, I'll connect you with our "
                    "events team who can arrange that for you."
                ),
                requested=self._requested(req, False),
            )
        if req.party_size > s.max_party_size:
            raise ValidationError(
                f"Party size must be between 1 and {s.max_party_size} guests.", code="INVALID_PARTY_SIZE"
            )
        return None

    async def hours_for(self, db: AsyncSession, req: SlotRequest) -> DayHours:
        day = (req.asked_dt or req.local_dt).date()
        return effective_hours(req.ctx, day, await load_blocks(db, req.ctx.id, day))

    def hours_problem(self, req: SlotRequest, hours: DayHours) -> Optional[AvailabilityResult]:
        if hours.closed:
            return AvailabilityResult(
                available=False,
                status="unavailable",
                reason="DATE_BLOCKED" if hours.reason == "blocked" else "RESTAURANT_CLOSED",
                message=hours.message or "We are closed that day.",
                requested=self._requested(req, False, reason=hours.reason),
            )
        # hours apply to the time asked for, not the slot it snaps to
        if not hours.accepts(req.asked_dt or req.local_dt):
            day_name = req.local_dt.strftime("%A")
            return AvailabilityResult(
                available=False,
                status="unavailable",
                reason="OUTSIDE_HOURS",
                message=(
                    "That time is outside our hours. We accept reservations between "
                    f"{fmt_time(hours.open_at)} and {fmt_time(hours.last_seating)} on {day_name}s."
                ),
                requested=self._requested(req, False, reason="outside_hours"),
            )
        return None

    # ---------- slot lookups ----------
    async def candidate_slots(self, db: AsyncSession, req: SlotRequest) -> List[AvailabilitySlot]:
        """Unblocked slots at the requested time for the preference, in booking order."""
        slots = await self.catalog.slots_at(db, req.ctx.id, req.utc_dt, req.seating)
        slots = [s for s in slots if not s.is_blocked]
        slots.sort(key=lambda s: (_seating_rank(s.seating_type), -s.remaining))
        return slots

    @staticmethod
    def fits(slot: AvailabilitySlot, party_size: int) -> bool:
        return not slot.is_blocked and slot.booked_count + party_size <= slot.total_capacity

    async def alternatives(self, db: AsyncSession, req: SlotRequest, hours: DayHours) -> List[Dict[str, Any]]:
        if hours.closed or hours.open_at is None or hours.last_seating is None:
            return []
        span = timedelta(minutes=self.policy.alternatives_search_minutes)
        start = max(req.local_dt - span, hours.open_at).astimezone(timezone.utc)
        end = min(req.local_dt + span, hours.last_seating).astimezone(timezone.utc)
        if end < start:
            return []
        target = req.utc_dt
        pool = [
            s
            for s in await self.catalog.slots_between(db, req.ctx.id, start, end)
            if s.slot_datetime != target
            and self.fits(s, req.party_size)
            and (req.seating is None or s.seating_type == req.seating)
        ]
        pool.sort(
            key=lambda s: (
                abs((s.slot_datetime - target).total_seconds()),
                s.slot_datetime,
                0 if req.seating is not None and s.seating_type == req.seating else 1,
                _seating_rank(s.seating_type),
            )
        )
        return [slot_to_dict(s, req.ctx.tz) for s in pool[: self.policy.alternatives_limit]]

    # ---------- entry point ----------
    async def resolve(
        self,
        restaurant_id: uuid.UUID,
        day: date,
        at: time,
        party_size: int,
        seating_pref: Optional[str] = ANY,
    ) -> AvailabilityResult:
        async with store_guard("check_availability"):
            async with self._session_factory() as db:
                req = await self.validate_request(db, restaurant_id, day, at, party_size, seating_pref)
                special = self.check_party_size(req)
                if special is not None:
                    _log.info("Large party of %d at restaurant %s needs special handling", party_size, restaurant_id)
                    return special
                return await self.resolve_slot(db, req)

    async def resolve_slot(self, db: AsyncSession, req: SlotRequest) -> AvailabilityResult:
        hours = await self.hours_for(db, req)
        problem = self.hours_problem(req, hours)
        if problem is not None:
            return problem

        matches = [s for s in await self.candidate_slots(db, req) if self.fits(s, req.party_size)]
        if matches:
            best = matches[0]
            requested = self._requested(req, True)
            requested.update(
                slot_id=str(best.id),
                seating_type=best.seating_type.value,
                available_capacity=best.remaining,
            )
            return AvailabilityResult(
                available=True,
                status="available",
                message=(
                    f"Great news! I have {fmt_time(req.local_dt)} available for a party of {req.party_size}."
                ),
                requested=requested,
            )

        alts = await self.alternatives(db, req, hours)
        if alts:
            times = " or ".join(a["time_display"] for a in alts)
            return AvailabilityResult(
                available=False,
                status="partial_match",
                reason="SLOT_UNAVAILABLE",
                message=f"That time isn't available, but I do have {times}. Would any of those work?",
                requested=self._requested(req, False, reason="full"),
                alternatives=alts,
            )
        return AvailabilityResult(
            available=False,
            status="unavailable",
            reason="NO_AVAILABILITY",
            message=(
                "I'm sorry, I don't have any tables available around that time. "
                "Would you like to try a different date?"
            ),
            requested=self._requested(req, False, reason="full"),
        )

    async def fresh_alternatives(self, req: SlotRequest) -> List[Dict[str, Any]]:
        """Alternatives from a new session, used after a lost capacity race."""
        async with store_guard("alternatives"):
            async with self._session_factory() as db:
                hours = await self.hours_for(db, req)
                return await self.alternatives(db, req, hours)

    @staticmethod
    def _requested(req: SlotRequest, available: bool, reason: Optional[str] = None) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "datetime": req.utc_dt.isoformat(),
            "local_datetime": req.local_dt.isoformat(),
            "party_size": req.party_size,
            "seating_preference": req.seating_label,
            "available": available,
        }
        if reason:
            d["reason"] = reason
        return d
