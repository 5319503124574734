# services/booking.py
"""
Booking commit engine.

Every write to availability_slots.booked_count goes through SlotCatalog.claim/release
inside the same transaction as the reservation row change, so a failure or a
cancelled task at any point leaves either no capacity debit or a fully committed one.
"""
from __future__ import annotations

import asyncio
import logging
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.config_loader import BookingPolicy, RestaurantSettings
from common.errors import (
    CapacityConflict,
    ConcurrentModification,
    ConfirmationCodeExhausted,
    DuplicateBooking,
    InvalidTransition,
    NotFound,
    SafetyTrigger,
    ValidationError,
)
from common.event_bus import EventBus, SlotBooked, SlotReleased
from common.phone import mask_phone, normalize_phone
from common.safety import find_safety_keywords
from db.models import AvailabilitySlot, Reservation, ReservationStatus, Restaurant, utcnow
from services.availability import AvailabilityResolver, SlotRequest, parse_date, parse_time
from services.calendar_policy import get_restaurant
from services.customer_service import record_visit, upsert_customer
from services.store import store_guard
from utils.logger import truncate

_log = logging.getLogger("reservation-core")

ACTIVE_STATUSES = (ReservationStatus.pending, ReservationStatus.confirmed, ReservationStatus.seated)
UPCOMING_STATUSES = (ReservationStatus.pending, ReservationStatus.confirmed)

# forward-only
ALLOWED_TRANSITIONS: Dict[ReservationStatus, Set[ReservationStatus]] = {
    ReservationStatus.pending: {
        ReservationStatus.confirmed,
        ReservationStatus.seated,
        ReservationStatus.cancelled,
        ReservationStatus.no_show,
    },
    ReservationStatus.confirmed: {
        ReservationStatus.seated,
        ReservationStatus.cancelled,
        ReservationStatus.no_show,
    },
    ReservationStatus.seated: {ReservationStatus.completed},
    ReservationStatus.completed: set(),
    ReservationStatus.cancelled: set(),
    ReservationStatus.no_show: set(),
}

UPDATABLE_FIELDS = {
    "party_size",
    "seating_type",
    "date",
    "time",
    "special_requests",
    "customer_name",
    "customer_email",
    "internal_notes",
}


class ConfirmationNotifier(Protocol):
    async def send_confirmation(self, reservation: Dict[str, Any]) -> None: ...


@dataclass
class BookingRequest:
    restaurant_id: uuid.UUID
    customer_name: str
    phone: str
    day: date
    at: time
    party_size: int
    seating_pref: Optional[str] = "any"
    email: Optional[str] = None
    special_requests: Optional[str] = None
    sms_consent: bool = False
    request_id: Optional[str] = None
    call_id: Optional[str] = None
    source: str = "voice_ai"


@dataclass
class BookingOutcome:
    reservation: Dict[str, Any]
    replayed: bool = False


class _ReplayDetected(Exception):
    """A concurrent delivery of the same request_id committed first."""


def generate_confirmation_code(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if isinstance(dt, datetime) else None


def reservation_to_dict(r: Reservation, tz=None) -> Dict[str, Any]:
    local = r.reservation_datetime.astimezone(tz) if tz else r.reservation_datetime
    return {
        "id": str(r.id),
        "restaurant_id": str(r.restaurant_id),
        "confirmation_code": r.confirmation_code,
        "status": r.status.value,
        "reservation_datetime": _iso(r.reservation_datetime),
        "date": local.date().isoformat(),
        "time": local.strftime("%H:%M"),
        "party_size": r.party_size,
        "seating_type": r.seating_type.value,
        "customer_name": r.customer_name,
        "customer_phone": r.customer_phone,
        "customer_phone_masked": mask_phone(r.customer_phone),
        "customer_email": r.customer_email,
        "special_requests": r.special_requests,
        "slot_id": str(r.slot_id) if r.slot_id else None,
        "customer_id": str(r.customer_id) if r.customer_id else None,
        "call_id": r.call_id,
        "request_id": r.request_id,
        "source": r.source,
        "sms_consent": r.sms_consent,
        "sms_confirmation_sent": r.sms_confirmation_sent,
        "cancelled_at": _iso(r.cancelled_at),
        "cancellation_reason": r.cancellation_reason,
        "internal_notes": r.internal_notes,
        "created_at": _iso(r.created_at),
    }


class BookingCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: AvailabilityResolver,
        policy: Optional[BookingPolicy] = None,
        *,
        bus: Optional[EventBus] = None,
        notifier: Optional[ConfirmationNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
        code_generator: Optional[Callable[[], str]] = None,
    ) -> None:
        self._session_factory = session_factory
        self.resolver = resolver
        self.catalog = resolver.catalog
        self.policy = policy or resolver.policy
        self.bus = bus or EventBus()
        self.notifier = notifier
        self._clock = clock
        self._new_code = code_generator or (
            lambda: generate_confirmation_code(
                self.policy.confirmation_code_alphabet, self.policy.confirmation_code_length
            )
        )
        self._tasks: Set[asyncio.Task] = set()

    # ---------- lookups ----------
    async def _resolve(self, db: AsyncSession, ref: Any) -> Optional[Reservation]:
        """
        Accept the reservation UUID or its confirmation code (case-insensitive).
        """
        if ref is None:
            return None
        if isinstance(ref, uuid.UUID):
            return await db.get(Reservation, ref, populate_existing=True)
        s = str(ref).strip()
        try:
            u = uuid.UUID(s)
        except ValueError:
            u = None
        if u is not None:
            return await db.get(Reservation, u, populate_existing=True)
        code = re.sub(r"[\s\-]", "", s).upper()
        if not code:
            return None
        q = select(Reservation).where(Reservation.confirmation_code == code).execution_options(populate_existing=True)
        return (await db.execute(q)).scalar_one_or_none()

    async def _must_resolve(self, db: AsyncSession, ref: Any) -> Reservation:
        r = await self._resolve(db, ref)
        if r is None:
            raise NotFound("Reservation not found")
        return r

    async def _by_request_id(self, db: AsyncSession, restaurant_id: uuid.UUID, request_id: str) -> Optional[Reservation]:
        q = select(Reservation).where(Reservation.restaurant_id == restaurant_id, Reservation.request_id == request_id)
        return (await db.execute(q)).scalar_one_or_none()

    async def _tz_for(self, db: AsyncSession, restaurant_id: uuid.UUID):
        try:
            return (await get_restaurant(db, restaurant_id)).tz
        except NotFound:
            return timezone.utc

    async def get_reservation(self, ref: Any) -> Dict[str, Any]:
        async with store_guard("get_reservation"):
            async with self._session_factory() as db:
                r = await self._must_resolve(db, ref)
                return reservation_to_dict(r, await self._tz_for(db, r.restaurant_id))

    async def list_reservations_for_day(
        self, restaurant_id: uuid.UUID, day: date, *, include_cancelled: bool = False
    ) -> List[Dict[str, Any]]:
        """Host-stand view of one local day, ordered by time."""
        async with store_guard("list_reservations"):
            async with self._session_factory() as db:
                ctx = await get_restaurant(db, restaurant_id)
                start = ctx.localize(day, time(0)).astimezone(timezone.utc)
                end = ctx.localize(day + timedelta(days=1), time(0)).astimezone(timezone.utc)
                q = (
                    select(Reservation)
                    .where(
                        Reservation.restaurant_id == restaurant_id,
                        Reservation.reservation_datetime >= start,
                        Reservation.reservation_datetime < end,
                    )
                    .order_by(Reservation.reservation_datetime, Reservation.created_at)
                )
                if not include_cancelled:
                    q = q.where(Reservation.status != ReservationStatus.cancelled)
                return [reservation_to_dict(r, ctx.tz) for r in (await db.execute(q)).scalars()]

    # ---------- booking ----------
    async def _guard_duplicate(
        self, db: AsyncSession, req: SlotRequest, phone: str, exclude_id: Optional[uuid.UUID] = None
    ) -> None:
        span = timedelta(minutes=req.ctx.settings.dining_duration_minutes)
        q = select(Reservation.confirmation_code).where(
            Reservation.restaurant_id == req.ctx.id,
            Reservation.customer_phone == phone,
            Reservation.status.in_(ACTIVE_STATUSES),
            Reservation.reservation_datetime > req.utc_dt - span,
            Reservation.reservation_datetime < req.utc_dt + span,
        )
        if exclude_id is not None:
            q = q.where(Reservation.id != exclude_id)
        existing = (await db.execute(q.limit(1))).scalar_one_or_none()
        if existing:
            raise DuplicateBooking(
                f"You already have a reservation around that time (confirmation {existing}).",
            )

    async def _insert_with_code(self, db: AsyncSession, r: Reservation) -> Reservation:
        """Insert under a SAVEPOINT, drawing a new code on a unique-constraint collision."""
        attempts = self.policy.confirmation_code_retries + 1
        for attempt in range(attempts):
            r.confirmation_code = self._new_code()
            try:
                async with db.begin_nested():
                    db.add(r)
                    await db.flush()
                return r
            except IntegrityError:
                if r.request_id and await self._by_request_id(db, r.restaurant_id, r.request_id) is not None:
                    raise _ReplayDetected()
                taken = (
                    await db.execute(
                        select(Reservation.id).where(Reservation.confirmation_code == r.confirmation_code)
                    )
                ).first()
                if taken is None:
                    raise
                _log.info("Confirmation code collision (attempt %d/%d); redrawing", attempt + 1, attempts)
        _log.error("Confirmation code retries exhausted for restaurant %s", r.restaurant_id)
        raise ConfirmationCodeExhausted("Could not allocate a unique confirmation code.")

    def _check_contact(self, req: BookingRequest) -> Tuple[str, str]:
        name = (req.customer_name or "").strip()
        if not name:
            raise ValidationError("Customer name is required.", code="MISSING_NAME")
        phone = normalize_phone(req.phone)
        hits = find_safety_keywords(req.special_requests, self.policy.safety_keywords)
        if hits:
            raise SafetyTrigger(
                "Because of the allergy concern, I'm connecting you with a team member who can help.",
                kind="SAFETY_TRIGGER",
                keywords=hits,
            )
        return name, phone

    async def book(self, req: BookingRequest) -> BookingOutcome:
        name, phone = self._check_contact(req)
        sreq: Optional[SlotRequest] = None
        try:
            async with store_guard("create_booking"):
                async with self._session_factory() as db:
                    try:
                        if req.request_id:
                            prior = await self._by_request_id(db, req.restaurant_id, req.request_id)
                            if prior is not None:
                                _log.info("Replayed booking request %s -> %s", req.request_id, prior.confirmation_code)
                                return BookingOutcome(reservation_to_dict(prior, await self._tz_for(db, prior.restaurant_id)), replayed=True)

                        sreq = await self.resolver.validate_request(
                            db, req.restaurant_id, req.day, req.at, req.party_size, req.seating_pref
                        )
                        special = self.resolver.check_party_size(sreq)
                        if special is not None:
                            raise SafetyTrigger(special.message, kind="LARGE_PARTY")
                        problem = self.resolver.hours_problem(sreq, await self.resolver.hours_for(db, sreq))
                        if problem is not None:
                            raise ValidationError(problem.message, code=problem.reason)
                        await self._guard_duplicate(db, sreq, phone)

                        slot = await self._claim_any(db, sreq)
                        if slot is None:
                            raise CapacityConflict("That time was just booked.")

                        customer = await upsert_customer(
                            db,
                            req.restaurant_id,
                            name=name,
                            phone=phone,
                            email=req.email,
                            sms_consent=req.sms_consent,
                            consent_source=req.source,
                        )
                        now = self._clock()
                        r = Reservation(
                            restaurant_id=req.restaurant_id,
                            customer_id=customer.id,
                            slot_id=slot.id,
                            call_id=req.call_id,
                            request_id=req.request_id,
                            reservation_datetime=sreq.utc_dt,
                            party_size=req.party_size,
                            seating_type=slot.seating_type,
                            special_requests=(req.special_requests or None),
                            customer_name=name,
                            customer_phone=phone,
                            customer_email=(req.email.strip().lower() if req.email else None),
                            status=ReservationStatus.confirmed,
                            status_changed_at=now,
                            status_changed_by=req.source,
                            source=req.source,
                            sms_consent=req.sms_consent,
                            created_at=now,
                        )
                        await self._insert_with_code(db, r)
                        booked_count, total = await self.catalog.counts(db, slot.id)
                        await db.commit()
                    except Exception:
                        await db.rollback()
                        raise
        except _ReplayDetected:
            return await self._load_replay(req)
        except CapacityConflict as e:
            if sreq is not None:
                e.alternatives = await self.resolver.fresh_alternatives(sreq)
            _log.info(
                "Capacity conflict for restaurant %s at %s (party %d); %d alternative(s)",
                req.restaurant_id,
                sreq.utc_dt.isoformat() if sreq else "?",
                req.party_size,
                len(e.alternatives),
            )
            raise

        out = reservation_to_dict(r, sreq.ctx.tz)
        _log.info(
            "Booked %s for %s party=%d at %s (%s)",
            r.confirmation_code,
            mask_phone(phone),
            r.party_size,
            out["reservation_datetime"],
            truncate(req.special_requests or "", 200),
        )
        await self.bus.emit(
            SlotBooked(
                restaurant_id=r.restaurant_id,
                slot_id=slot.id,
                reservation_id=r.id,
                seats=r.party_size,
                booked_count=booked_count,
                total_capacity=total,
            )
        )
        if req.sms_consent:
            self._spawn_confirmation(out)
        return BookingOutcome(out)

    async def _claim_any(self, db: AsyncSession, sreq: SlotRequest) -> Optional[AvailabilitySlot]:
        # one attempt per seating pool; a full pool is never retried
        for slot in await self.resolver.candidate_slots(db, sreq):
            if await self.catalog.claim(db, slot.id, sreq.party_size):
                return slot
        return None

    async def _load_replay(self, req: BookingRequest) -> BookingOutcome:
        async with store_guard("create_booking"):
            async with self._session_factory() as db:
                prior = await self._by_request_id(db, req.restaurant_id, req.request_id or "")
                if prior is None:
                    raise ConcurrentModification("Booking request collided but no prior reservation was found.")
                _log.info("Concurrent replay of request %s -> %s", req.request_id, prior.confirmation_code)
                return BookingOutcome(
                    reservation_to_dict(prior, await self._tz_for(db, prior.restaurant_id)), replayed=True
                )

    # ---------- confirmation delivery ----------
    def _spawn_confirmation(self, reservation: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        task = asyncio.create_task(self._deliver_confirmation(reservation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver_confirmation(self, reservation: Dict[str, Any]) -> None:
        try:
            await self.notifier.send_confirmation(reservation)
        except Exception:  # noqa: BLE001
            _log.exception("Confirmation delivery failed for %s", reservation.get("confirmation_code"))
            return
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(Reservation)
                    .where(Reservation.id == uuid.UUID(reservation["id"]))
                    .values(sms_confirmation_sent=True, sms_confirmation_sent_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception:  # noqa: BLE001
            _log.exception("Could not mark confirmation sent for %s", reservation.get("confirmation_code"))

    async def drain(self) -> None:
        """Wait for in-flight confirmation deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------- cancellation ----------
    async def cancel(self, ref: Any, reason: Optional[str] = None, source: str = "voice_ai") -> Dict[str, Any]:
        async with store_guard("cancel_booking"):
            async with self._session_factory() as db:
                try:
                    r = await self._must_resolve(db, ref)
                    restaurant = await db.get(Restaurant, r.restaurant_id)
                    settings = RestaurantSettings.from_mapping(restaurant.settings if restaurant else None)
                    tz = await self._tz_for(db, r.restaurant_id)
                    now = self._clock()
                    if r.status == ReservationStatus.cancelled:
                        _log.info("Cancel replay on %s; nothing to release", r.confirmation_code)
                        return self._cancel_result(r, settings, now, released=False, replayed=True, tz=tz)
                    if r.status not in UPCOMING_STATUSES:
                        raise InvalidTransition(f"A {r.status.value} reservation cannot be cancelled.")

                    released = await self._cancel_in(db, r, reason, source, now)
                    await db.commit()
                    await db.refresh(r)
                except Exception:
                    await db.rollback()
                    raise

        _log.info("Cancelled %s (%s): %s", r.confirmation_code, source, truncate(reason or "", 200))
        if released:
            await self.bus.emit(
                SlotReleased(
                    restaurant_id=r.restaurant_id,
                    slot_id=r.slot_id,
                    reservation_id=r.id,
                    seats=r.party_size,
                    reason="cancelled",
                )
            )
        return self._cancel_result(r, settings, now, released=released, replayed=False, tz=tz)

    async def _cancel_in(
        self, db: AsyncSession, r: Reservation, reason: Optional[str], source: str, now: datetime
    ) -> bool:
        prev_status = r.status
        res = await db.execute(
            update(Reservation)
            .where(Reservation.id == r.id, Reservation.status == prev_status)
            .values(
                status=ReservationStatus.cancelled,
                status_changed_at=now,
                status_changed_by=source,
                cancelled_at=now,
                cancellation_reason=reason,
                cancellation_source=source,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConcurrentModification("Reservation changed while cancelling; please retry.")
        if r.slot_id is None:
            return False
        return await self.catalog.release(db, r.slot_id, r.party_size)

    def _cancel_result(
        self,
        r: Reservation,
        settings: RestaurantSettings,
        now: datetime,
        *,
        released: bool,
        replayed: bool,
        tz=None,
    ) -> Dict[str, Any]:
        notice = timedelta(hours=settings.cancellation_notice_hours)
        return {
            "success": True,
            "reservation": reservation_to_dict(r, tz),
            "released": released,
            "replayed": replayed,
            "late_cancellation": (r.reservation_datetime - (r.cancelled_at or now)) < notice,
            "message": f"Your reservation {r.confirmation_code} has been cancelled.",
        }

    # ---------- updates ----------
    async def update(self, ref: Any, fields: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}", code="INVALID_FIELD")
        if not fields:
            raise ValidationError("Nothing to update.", code="INVALID_FIELD")
        if "special_requests" in fields:
            hits = find_safety_keywords(fields.get("special_requests"), self.policy.safety_keywords)
            if hits:
                raise SafetyTrigger(
                    "Because of the allergy concern, I'm connecting you with a team member who can help.",
                    kind="SAFETY_TRIGGER",
                    keywords=hits,
                )

        booked_ev: Optional[SlotBooked] = None
        released_ev: Optional[SlotReleased] = None
        async with store_guard("update_booking"):
            async with self._session_factory() as db:
                try:
                    r = await self._must_resolve(db, ref)
                    if r.status not in UPCOMING_STATUSES:
                        raise InvalidTransition(f"A {r.status.value} reservation cannot be changed.")
                    ctx = await get_restaurant(db, r.restaurant_id)
                    old_slot, old_party, old_status = r.slot_id, r.party_size, r.status
                    values: Dict[str, Any] = {}

                    if "customer_name" in fields:
                        name = (fields["customer_name"] or "").strip()
                        if not name:
                            raise ValidationError("Customer name is required.", code="MISSING_NAME")
                        values["customer_name"] = name
                    if "customer_email" in fields:
                        email = fields["customer_email"]
                        values["customer_email"] = email.strip().lower() if email else None
                    for key in ("special_requests", "internal_notes"):
                        if key in fields:
                            values[key] = fields[key] or None

                    moving = any(k in fields for k in ("party_size", "seating_type", "date", "time"))
                    if moving:
                        new_party = fields.get("party_size", old_party)
                        local = r.reservation_datetime.astimezone(ctx.tz)
                        day = parse_date(fields["date"]) if "date" in fields else local.date()
                        at = parse_time(fields["time"]) if "time" in fields else local.time()
                        seating = fields.get("seating_type", r.seating_type.value)
                        sreq = await self.resolver.validate_request(db, r.restaurant_id, day, at, new_party, seating)
                        special = self.resolver.check_party_size(sreq)
                        if special is not None:
                            raise SafetyTrigger(special.message, kind="LARGE_PARTY")
                        problem = self.resolver.hours_problem(sreq, await self.resolver.hours_for(db, sreq))
                        if problem is not None:
                            raise ValidationError(problem.message, code=problem.reason)

                        same_slot = (
                            old_slot is not None
                            and sreq.utc_dt == r.reservation_datetime
                            and (sreq.seating is None or sreq.seating == r.seating_type)
                        )
                        if same_slot:
                            delta = new_party - old_party
                            if delta > 0 and not await self.catalog.claim(db, old_slot, delta):
                                raise CapacityConflict(
                                    f"There isn't room to add {delta} more guest(s) at that time.", slot_id=old_slot
                                )
                            if delta < 0:
                                await self.catalog.release(db, old_slot, -delta)
                            new_slot_id, new_seating = old_slot, r.seating_type
                            if delta:
                                booked, total = await self.catalog.counts(db, old_slot)
                                if delta > 0:
                                    booked_ev = SlotBooked(r.restaurant_id, old_slot, r.id, delta, booked, total)
                                else:
                                    released_ev = SlotReleased(r.restaurant_id, old_slot, r.id, -delta, "party_size_reduced")
                        else:
                            await self._guard_duplicate(db, sreq, r.customer_phone, exclude_id=r.id)
                            target = await self._claim_any(db, sreq)
                            if target is None:
                                raise CapacityConflict("That time isn't available.")
                            if old_slot is not None:
                                await self.catalog.release(db, old_slot, old_party)
                                released_ev = SlotReleased(r.restaurant_id, old_slot, r.id, old_party, "moved")
                            new_slot_id, new_seating = target.id, target.seating_type
                            booked, total = await self.catalog.counts(db, target.id)
                            booked_ev = SlotBooked(r.restaurant_id, target.id, r.id, new_party, booked, total)

                        values.update(
                            party_size=new_party,
                            slot_id=new_slot_id,
                            seating_type=new_seating,
                            reservation_datetime=sreq.utc_dt,
                        )

                    values["updated_at"] = self._clock()
                    res = await db.execute(
                        update(Reservation)
                        .where(
                            Reservation.id == r.id,
                            Reservation.status == old_status,
                            Reservation.party_size == old_party,
                            Reservation.slot_id == old_slot,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        raise ConcurrentModification("Reservation changed while updating; please retry.")
                    await db.commit()
                    await db.refresh(r)
                except CapacityConflict as e:
                    await db.rollback()
                    if moving:
                        e.alternatives = await self.resolver.fresh_alternatives(sreq)
                    raise
                except Exception:
                    await db.rollback()
                    raise

        _log.info("Updated %s: %s", r.confirmation_code, truncate(sorted(fields), 200))
        if released_ev is not None:
            await self.bus.emit(released_ev)
        if booked_ev is not None:
            await self.bus.emit(booked_ev)
        return {"success": True, "reservation": reservation_to_dict(r, ctx.tz)}

    # ---------- status ----------
    async def set_status(self, ref: Any, status: ReservationStatus | str, changed_by: str = "staff") -> Dict[str, Any]:
        try:
            target = ReservationStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown reservation status {status!r}.", code="INVALID_FIELD") from e
        if target == ReservationStatus.cancelled:
            return await self.cancel(ref, reason="Cancelled by staff", source=changed_by)

        async with store_guard("set_reservation_status"):
            async with self._session_factory() as db:
                try:
                    r = await self._must_resolve(db, ref)
                    tz = await self._tz_for(db, r.restaurant_id)
                    if r.status == target:
                        return {"success": True, "reservation": reservation_to_dict(r, tz), "replayed": True}
                    if target not in ALLOWED_TRANSITIONS[r.status]:
                        raise InvalidTransition(f"Cannot move a reservation from {r.status.value} to {target.value}.")
                    now = self._clock()
                    values: Dict[str, Any] = {
                        "status": target,
                        "status_changed_at": now,
                        "status_changed_by": changed_by,
                        "updated_at": now,
                    }
                    if target == ReservationStatus.seated:
                        values["seated_at"] = now
                    res = await db.execute(
                        update(Reservation)
                        .where(Reservation.id == r.id, Reservation.status == r.status)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        raise ConcurrentModification("Reservation changed concurrently; please retry.")
                    await record_visit(db, r.customer_id, target, r.reservation_datetime.astimezone(tz).date())
                    await db.commit()
                    await db.refresh(r)
                except Exception:
                    await db.rollback()
                    raise

        _log.info("Reservation %s -> %s by %s", r.confirmation_code, target.value, changed_by)
        return {"success": True, "reservation": reservation_to_dict(r, tz), "replayed": False}


__all__ = [
    "BookingCoordinator",
    "BookingRequest",
    "BookingOutcome",
    "ConfirmationNotifier",
    "generate_confirmation_code",
    "reservation_to_dict",
]
