"""
Reservation operations (async)
------------------------------
ReservationCore wires the components together and exposes the operations the
voice front-end, the staff dashboard and the workflow glue call:

  - check_availability(restaurant_id, date, time, party_size, seating_pref)
  - create_booking(restaurant_id, customer_name, phone, email, date, time, party_size,
                   seating_pref, special_requests, sms_consent, request_id=None, call_id=None)
  - update_booking(ref, fields) / cancel_booking(ref, reason) / set_reservation_status(ref, status)
  - create_callback(restaurant_id, contact, reason, error_code, priority, context) -> callback_id
  - advance_callback(callback_id, action, **kwargs)
  - list_callbacks(restaurant_id) / get_health(restaurant_id) / log_call(...)
  - publish_slots(...) / add_blocked_dates(...) / set_slot_blocked(...)

Notes:
  - Caller-facing results are plain dicts.
  - A store timeout never reads as "no availability": a high-priority SYSTEM_TIMEOUT
    callback is queued and the caller is told we will follow up.
  - Safety keywords and oversized parties return transfer_required and never book.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.config_loader import CoreConfig, RestaurantSettings, load_core_config
from common.errors import (
    CapacityConflict,
    ConfirmationCodeExhausted,
    SafetyTrigger,
    SystemUnavailable,
    ValidationError,
)
from common.event_bus import EventBus
from common.phone import mask_phone, normalize_phone
from db.models import BlockType, Restaurant, utcnow
from db.session import Session
from services import call_service
from services.availability import AvailabilityResolver, parse_date, parse_time
from services.booking import BookingCoordinator, BookingRequest, ConfirmationNotifier
from services.calendar_policy import WEEKDAYS, add_blocked_dates, blocked_date_to_dict, get_restaurant, parse_hhmm
from services.callbacks import CallbackQueue
from services.customer_service import customer_to_dict, get_customer_by_phone
from services.health import HealthMonitor
from services.slot_catalog import SlotCatalog
from services.store import store_guard, with_timeout

_log = logging.getLogger("reservation-core")

FOLLOW_UP_MESSAGE = (
    "I'm having trouble accessing our reservation system right now. "
    "I've noted your details and a team member will call you back shortly to finish this."
)
CALLBACK_ACTIONS = ("start", "attempt", "complete", "fail", "cancel")


def _as_uuid(value: Any, what: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid {what} {value!r}.", code="INVALID_FIELD") from e


def _requested_at(day: Any, at: Any) -> Optional[str]:
    try:
        return datetime.combine(parse_date(day), parse_time(at)).isoformat()
    except ValidationError:
        return None


class ReservationCore:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        config: Optional[CoreConfig] = None,
        *,
        bus: Optional[EventBus] = None,
        notifier: Optional[ConfirmationNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory or Session
        self.config = config or load_core_config()
        self.bus = bus or EventBus()
        self.clock = clock
        self.catalog = SlotCatalog(self.session_factory)
        self.resolver = AvailabilityResolver(
            self.session_factory, self.config.booking, catalog=self.catalog, clock=clock
        )
        self.bookings = BookingCoordinator(
            self.session_factory,
            self.resolver,
            self.config.booking,
            bus=self.bus,
            notifier=notifier,
            clock=clock,
        )
        self.callbacks = CallbackQueue(self.session_factory, self.config.callbacks, bus=self.bus, clock=clock)
        self.health = HealthMonitor(
            self.session_factory, self.config.health, callbacks=self.callbacks, clock=clock
        )

    @property
    def timeout(self) -> float:
        return self.config.booking.store_timeout_seconds

    # ---------- escalation ----------
    async def _escalate(
        self,
        restaurant_id: uuid.UUID,
        *,
        failure_reason: str,
        error_code: str,
        phone: Optional[str] = None,
        name: Optional[str] = None,
        party_size: Optional[int] = None,
        seating: Optional[str] = None,
        special_requests: Optional[str] = None,
        call_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """Queue a human follow-up. Returns the callback id, or None if even that failed."""
        try:
            cb = await self.callbacks.create(
                restaurant_id,
                failure_reason=failure_reason,
                error_code=error_code,
                customer_phone=phone,
                customer_name=name,
                party_size=party_size,
                seating_preference=seating,
                special_requests=special_requests,
                call_id=call_id,
                error_details=details,
                require_contact=False,
            )
        except Exception:  # noqa: BLE001
            _log.exception("Could not queue %s callback for restaurant %s", error_code, restaurant_id)
            return None
        return cb["id"]

    def _follow_up(self, error: str, callback_id: Optional[str], **extra: Any) -> Dict[str, Any]:
        out = {
            "success": False,
            "error": error,
            "follow_up": True,
            "callback_id": callback_id,
            "message": FOLLOW_UP_MESSAGE,
        }
        out.update(extra)
        return out

    # ---------- availability ----------
    async def check_availability(
        self,
        restaurant_id: Any,
        date: Any,
        time: Any,
        party_size: int,
        seating_pref: Optional[str] = "any",
        *,
        caller_phone: Optional[str] = None,
        customer_name: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        rid = _as_uuid(restaurant_id, "restaurant id")
        try:
            day, at = parse_date(date), parse_time(time)
            result = await with_timeout(
                self.resolver.resolve(rid, day, at, party_size, seating_pref),
                self.timeout,
                "check_availability",
            )
        except ValidationError as e:
            return {
                "available": False,
                "status": "error",
                "reason": e.code,
                "message": e.message,
                "alternatives": [],
            }
        except SystemUnavailable as e:
            cb_id = await self._escalate(
                rid,
                failure_reason="SYSTEM_TIMEOUT",
                error_code="SYSTEM_TIMEOUT",
                phone=caller_phone,
                name=customer_name,
                party_size=party_size,
                seating=seating_pref,
                call_id=call_id,
                details={"operation": "check_availability", "requested": _requested_at(date, time), "error": str(e)},
            )
            return {
                "available": False,
                "status": "system_unavailable",
                "reason": "SYSTEM_TIMEOUT",
                "follow_up": True,
                "callback_id": cb_id,
                "message": FOLLOW_UP_MESSAGE,
                "alternatives": [],
            }

        out = result.to_dict()
        out["alternative_times"] = [a["local_time"] for a in result.alternatives]
        if result.status == "requires_special_handling":
            out["transfer_required"] = True
            _log.info("Availability check for party of %d routed to large-party transfer", party_size)
        return out

    # ---------- bookings ----------
    async def create_booking(
        self,
        restaurant_id: Any,
        customer_name: str,
        phone: str,
        email: Optional[str],
        date: Any,
        time: Any,
        party_size: int,
        seating_pref: Optional[str] = "any",
        special_requests: Optional[str] = None,
        sms_consent: bool = False,
        *,
        request_id: Optional[str] = None,
        call_id: Optional[str] = None,
        source: str = "voice_ai",
    ) -> Dict[str, Any]:
        rid = _as_uuid(restaurant_id, "restaurant id")
        try:
            req = BookingRequest(
                restaurant_id=rid,
                customer_name=customer_name,
                phone=phone,
                day=parse_date(date),
                at=parse_time(time),
                party_size=party_size,
                seating_pref=seating_pref,
                email=email,
                special_requests=special_requests,
                sms_consent=bool(sms_consent),
                request_id=request_id,
                call_id=call_id,
                source=source,
            )
            outcome = await with_timeout(self.bookings.book(req), self.timeout, "create_booking")
        except SafetyTrigger as e:
            _log.warning(
                "Booking bypassed for %s: %s %s (transfer required)",
                mask_phone(phone),
                e.kind,
                ",".join(e.keywords),
            )
            return {
                "success": False,
                "transfer_required": True,
                "error": e.kind,
                "keywords": e.keywords,
                "message": e.message,
            }
        except CapacityConflict as e:
            alt_times = " or ".join(a["time_display"] for a in e.alternatives)
            message = (
                f"I'm sorry, that time was just taken. I do have {alt_times}. Would one of those work?"
                if e.alternatives
                else "I'm sorry, that time was just taken and I don't have anything close to it."
            )
            return {
                "success": False,
                "error": e.code,
                "message": message,
                "alternatives": e.alternatives,
            }
        except ValidationError as e:
            return {"success": False, "error": e.code, "message": e.message}
        except SystemUnavailable as e:
            cb_id = await self._escalate(
                rid,
                failure_reason="SYSTEM_TIMEOUT",
                error_code="SYSTEM_TIMEOUT",
                phone=phone,
                name=customer_name,
                party_size=party_size,
                seating=seating_pref,
                special_requests=special_requests,
                call_id=call_id,
                details={
                    "operation": "create_booking",
                    "requested": _requested_at(date, time),
                    "request_id": request_id,
                    "error": str(e),
                },
            )
            return self._follow_up("SYSTEM_TIMEOUT", cb_id)
        except ConfirmationCodeExhausted:
            _log.exception("Booking for %s could not get a confirmation code", mask_phone(phone))
            cb_id = await self._escalate(
                rid,
                failure_reason="INTERNAL_ERROR",
                error_code="INTERNAL_ERROR",
                phone=phone,
                name=customer_name,
                party_size=party_size,
                seating=seating_pref,
                special_requests=special_requests,
                call_id=call_id,
                details={"operation": "create_booking", "requested": _requested_at(date, time)},
            )
            return self._follow_up("FOLLOW_UP_REQUIRED", cb_id)

        r = outcome.reservation
        return {
            "success": True,
            "replayed": outcome.replayed,
            "confirmation_code": r["confirmation_code"],
            "reservation_id": r["id"],
            "reservation": r,
            "message": (
                f"You're all set for {r['party_size']} on {r['date']} at {r['time']}. "
                f"Your confirmation code is {r['confirmation_code']}."
            ),
        }

    async def update_booking(
        self, reservation_ref: Any, fields: Mapping[str, Any], *, restaurant_id: Any = None
    ) -> Dict[str, Any]:
        try:
            return await with_timeout(self.bookings.update(reservation_ref, dict(fields)), self.timeout, "update_booking")
        except SystemUnavailable as e:
            if restaurant_id is None:
                raise
            cb_id = await self._escalate(
                _as_uuid(restaurant_id, "restaurant id"),
                failure_reason="SYSTEM_TIMEOUT",
                error_code="SYSTEM_TIMEOUT",
                details={"operation": "update_booking", "reservation": str(reservation_ref), "error": str(e)},
            )
            return self._follow_up("SYSTEM_TIMEOUT", cb_id)

    async def cancel_booking(
        self,
        reservation_ref: Any,
        reason: Optional[str] = None,
        *,
        source: str = "voice_ai",
        restaurant_id: Any = None,
    ) -> Dict[str, Any]:
        try:
            return await with_timeout(
                self.bookings.cancel(reservation_ref, reason, source), self.timeout, "cancel_booking"
            )
        except SystemUnavailable as e:
            if restaurant_id is None:
                raise
            cb_id = await self._escalate(
                _as_uuid(restaurant_id, "restaurant id"),
                failure_reason="SYSTEM_TIMEOUT",
                error_code="SYSTEM_TIMEOUT",
                details={"operation": "cancel_booking", "reservation": str(reservation_ref), "error": str(e)},
            )
            return self._follow_up("SYSTEM_TIMEOUT", cb_id)

    async def set_reservation_status(self, reservation_ref: Any, status: str, changed_by: str = "staff") -> Dict[str, Any]:
        return await self.bookings.set_status(reservation_ref, status, changed_by)

    async def get_reservation(self, reservation_ref: Any) -> Dict[str, Any]:
        return await self.bookings.get_reservation(reservation_ref)

    async def list_reservations(self, restaurant_id: Any, day: Any, include_cancelled: bool = False) -> List[Dict[str, Any]]:
        return await self.bookings.list_reservations_for_day(
            _as_uuid(restaurant_id, "restaurant id"), parse_date(day), include_cancelled=include_cancelled
        )

    async def get_customer(self, restaurant_id: Any, phone: str) -> Optional[Dict[str, Any]]:
        rid = _as_uuid(restaurant_id, "restaurant id")
        normalized = normalize_phone(phone)
        async with store_guard("get_customer"):
            async with self.session_factory() as db:
                c = await get_customer_by_phone(db, rid, normalized)
                return customer_to_dict(c) if c else None

    # ---------- callbacks ----------
    async def create_callback(
        self,
        restaurant_id: Any,
        contact: Mapping[str, Any],
        reason: str,
        error_code: Optional[str] = None,
        priority: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> str:
        ctx = dict(context or {})
        requested = ctx.pop("requested_datetime", None)
        if isinstance(requested, str):
            try:
                requested = datetime.fromisoformat(requested)
            except ValueError as e:
                raise ValidationError("requested_datetime must be ISO 8601.", code="INVALID_DATE") from e
        cb = await self.callbacks.create(
            _as_uuid(restaurant_id, "restaurant id"),
            failure_reason=reason,
            error_code=error_code,
            priority=priority,
            customer_phone=contact.get("phone"),
            customer_name=contact.get("name"),
            requested_datetime=requested,
            party_size=ctx.pop("party_size", None),
            seating_preference=ctx.pop("seating_preference", None),
            special_requests=ctx.pop("special_requests", None),
            call_id=ctx.pop("call_id", None),
            error_details=ctx,
        )
        return cb["id"]

    async def advance_callback(self, callback_id: Any, action: str, **kwargs: Any) -> Dict[str, Any]:
        if action == "start":
            return await self.callbacks.start(callback_id, kwargs.get("staff") or "staff")
        if action == "attempt":
            return await self.callbacks.record_attempt(callback_id, kwargs.get("note"))
        if action == "complete":
            return await self.callbacks.complete(
                callback_id,
                kwargs.get("outcome"),
                kwargs.get("notes") or "",
                resolved_by=kwargs.get("resolved_by"),
                reservation_id=kwargs.get("reservation_id"),
            )
        if action == "fail":
            return await self.callbacks.fail(callback_id, kwargs.get("reason"), resolved_by=kwargs.get("resolved_by"))
        if action == "cancel":
            return await self.callbacks.cancel(callback_id, kwargs.get("reason"), resolved_by=kwargs.get("resolved_by"))
        raise ValidationError(
            f"Unknown callback action {action!r}; expected one of {', '.join(CALLBACK_ACTIONS)}.",
            code="INVALID_FIELD",
        )

    async def list_callbacks(
        self, restaurant_id: Any, statuses: Optional[List[str]] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        rid = _as_uuid(restaurant_id, "restaurant id")
        try:
            if not statuses:
                return await self.callbacks.list_pending(rid, limit=limit)
            return await self.callbacks.list_callbacks(rid, statuses=statuses, limit=limit)
        except ValueError as e:
            raise ValidationError(str(e), code="INVALID_FIELD") from e

    # ---------- health / calls ----------
    async def get_health(self, restaurant_id: Any) -> Dict[str, Any]:
        snap = await self.health.evaluate(_as_uuid(restaurant_id, "restaurant id"))
        return snap.to_dict()

    async def run_health_checks(self) -> List[Dict[str, Any]]:
        return await self.health.run_health_checks()

    async def log_call(self, restaurant_id: Any, external_call_id: str, **fields: Any) -> Dict[str, Any]:
        return await call_service.log_call(
            restaurant_id=_as_uuid(restaurant_id, "restaurant id"),
            external_call_id=external_call_id,
            session_factory=self.session_factory,
            clock=self.clock,
            **fields,
        )

    async def list_calls(self, restaurant_id: Any, limit: int = 50) -> List[Dict[str, Any]]:
        return await call_service.list_recent_calls(
            _as_uuid(restaurant_id, "restaurant id"), limit=limit, session_factory=self.session_factory
        )

    # ---------- staff configuration ----------
    async def create_restaurant(
        self,
        name: str,
        *,
        timezone: str = "America/New_York",
        business_hours: Optional[Mapping[str, Any]] = None,
        settings: Optional[Mapping[str, Any]] = None,
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not (name or "").strip():
            raise ValidationError("Restaurant name is required.", code="INVALID_FIELD")
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValidationError(f"Unknown timezone {timezone!r}.", code="INVALID_FIELD") from e
        hours: Dict[str, Any] = {}
        for day_name, h in (business_hours or {}).items():
            if day_name not in WEEKDAYS:
                raise ValidationError(f"Unknown weekday {day_name!r}.", code="INVALID_FIELD")
            if h:
                hours[day_name] = {
                    "open": parse_hhmm(h.get("open")).strftime("%H:%M"),
                    "close": parse_hhmm(h.get("close")).strftime("%H:%M"),
                }
            else:
                hours[day_name] = None
        try:
            RestaurantSettings.from_mapping(settings)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid restaurant settings: {e}", code="INVALID_FIELD") from e
        r = Restaurant(
            name=name.strip(),
            timezone=timezone,
            business_hours=hours,
            settings=dict(settings or {}),
            phone=normalize_phone(phone) if phone else None,
        )
        async with store_guard("create_restaurant"):
            async with self.session_factory() as db:
                db.add(r)
                await db.commit()
        _log.info("Restaurant %s created (%s)", r.id, r.name)
        return {
            "id": str(r.id),
            "name": r.name,
            "timezone": r.timezone,
            "business_hours": r.business_hours,
            "settings": r.settings,
            "is_active": r.is_active,
        }

    async def publish_slots(
        self,
        restaurant_id: Any,
        start_date: Any,
        end_date: Any,
        capacities: Mapping[str, int],
        weekdays: Optional[List[int]] = None,
    ) -> Dict[str, int]:
        return await self.catalog.publish_slots(
            restaurant_id=_as_uuid(restaurant_id, "restaurant id"),
            start_date=parse_date(start_date),
            end_date=parse_date(end_date),
            capacities=capacities,
            weekdays=weekdays,
        )

    async def set_slot_blocked(self, slot_id: Any, blocked: bool, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self.catalog.set_slot_blocked(_as_uuid(slot_id, "slot id"), blocked, reason)

    async def add_blocked_dates(
        self,
        restaurant_id: Any,
        start_date: Any,
        end_date: Any,
        block_type: str = BlockType.closed.value,
        *,
        special_hours: Optional[Mapping[str, str]] = None,
        reason: str = "",
        public_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        rid = _as_uuid(restaurant_id, "restaurant id")
        async with store_guard("add_blocked_dates"):
            async with self.session_factory() as db:
                await get_restaurant(db, rid)
                row = await add_blocked_dates(
                    db,
                    rid,
                    parse_date(start_date),
                    parse_date(end_date),
                    block_type,
                    special_hours=special_hours,
                    reason=reason,
                    public_message=public_message,
                )
                await db.commit()
                return blocked_date_to_dict(row)

    async def aclose(self) -> None:
        await self.bookings.drain()


__all__ = ["ReservationCore", "FOLLOW_UP_MESSAGE"]
