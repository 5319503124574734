from __future__ import annotations

import datetime as dt
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator

# --- Load env before importing models/engine ---
for name in (".env.local", "env.local", ".env"):
    if os.path.exists(name):
        load_dotenv(name, override=False)

# --- Project imports ---
from api.errors import reservation_error_handler
from common.errors import ReservationError
from common.logging_config import configure_logging
from db.models import init_db, engine
from db.session import ping
from services.reservation_service import CALLBACK_ACTIONS, ReservationCore

_log = logging.getLogger("reservation-core")

HEALTH_JOB_ID = "restaurant_health"


async def _health_tick(core: ReservationCore) -> None:
    try:
        await core.run_health_checks()
    except ReservationError as e:
        _log.warning("Health check run skipped: %s", e.message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(logging.DEBUG if os.getenv("DEBUG") else None)
    core: Optional[ReservationCore] = getattr(app.state, "core", None)
    if core is None:
        # Initialize DB once at startup
        await init_db()
        core = ReservationCore()
        app.state.core = core

    scheduler: Optional[AsyncIOScheduler] = None
    if os.getenv("HEALTH_SCHEDULER", "1").lower() not in ("0", "false", "no"):
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            _health_tick,
            "interval",
            seconds=core.config.health.interval_seconds,
            args=[core],
            id=HEALTH_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        _log.info("Health checks scheduled every %ss", core.config.health.interval_seconds)
    app.state.scheduler = scheduler
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await core.aclose()
    await engine.dispose()


app = FastAPI(
    lifespan=lifespan,
    title="Restaurant Reservation Core API",
    version="0.1.0",
)
app.add_exception_handler(ReservationError, reservation_error_handler)


# ---------------------------
# Pydantic Schemas (v2)
# ---------------------------
class DayHoursIn(BaseModel):
    open: str = Field(description="HH:MM local time")
    close: str = Field(description="HH:MM local time; at or before open means past midnight")


class RestaurantCreate(BaseModel):
    name: str
    timezone: str = Field(default="America/New_York")
    phone: Optional[str] = None
    business_hours: Dict[str, Optional[DayHoursIn]] = Field(
        default_factory=dict, description="monday..sunday; null or omitted means closed"
    )
    settings: Dict[str, Any] = Field(default_factory=dict)


class AvailabilityQuery(BaseModel):
    date: dt.date
    time: str
    party_size: int
    seating_preference: Optional[str] = "any"
    caller_phone: Optional[str] = None
    customer_name: Optional[str] = None
    call_id: Optional[str] = None


class BookingCreate(BaseModel):
    customer_name: str
    phone: str
    email: Optional[EmailStr] = None
    date: dt.date
    time: str
    party_size: int
    seating_preference: Optional[str] = "any"
    special_requests: Optional[str] = None
    sms_consent: bool = False
    request_id: Optional[str] = Field(default=None, description="Idempotency key; replays return the first booking")
    call_id: Optional[str] = None
    source: str = "voice_ai"


class BookingUpdate(BaseModel):
    party_size: Optional[int] = None
    seating_type: Optional[str] = None
    date: Optional[dt.date] = None
    time: Optional[str] = None
    special_requests: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None
    internal_notes: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None
    source: str = "staff"


class StatusIn(BaseModel):
    status: str
    changed_by: str = "staff"


class CallbackCreate(BaseModel):
    failure_reason: str
    customer_phone: str
    customer_name: Optional[str] = None
    error_code: Optional[str] = None
    priority: Optional[str] = None
    requested_datetime: Optional[dt.datetime] = None
    party_size: Optional[int] = None
    seating_preference: Optional[str] = None
    special_requests: Optional[str] = None
    call_id: Optional[str] = None
    error_details: Dict[str, Any] = Field(default_factory=dict)


class CallbackActionIn(BaseModel):
    staff: Optional[str] = None
    note: Optional[str] = None
    outcome: Optional[str] = None
    notes: Optional[str] = None
    reason: Optional[str] = None
    resolved_by: Optional[str] = None
    reservation_id: Optional[str] = None


class CallLogIn(BaseModel):
    external_call_id: str
    caller_phone: Optional[str] = None
    started_at: Optional[dt.datetime] = None
    ended_at: Optional[dt.datetime] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    safety_trigger: bool = False
    safety_type: Optional[str] = None
    reservation_id: Optional[str] = None
    callback_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PublishSlotsIn(BaseModel):
    start_date: dt.date
    end_date: dt.date
    capacities: Dict[str, int] = Field(description="seating type -> guests per slot, e.g. {'indoor': 40}")
    weekdays: Optional[List[int]] = Field(default=None, description="0=Mon ... 6=Sun. Omit for every day.")

    @field_validator("weekdays")
    @classmethod
    def _validate_weekdays(cls, v: Optional[List[int]]):
        if v is None:
            return v
        bad = [x for x in v if not isinstance(x, int) or x < 0 or x > 6]
        if bad:
            raise ValueError("weekdays values must be integers in 0..6")
        return sorted(set(v))

    @field_validator("capacities")
    @classmethod
    def _validate_capacities(cls, v: Dict[str, int]):
        if not v:
            raise ValueError("capacities must name at least one seating type")
        if any(n <= 0 for n in v.values()):
            raise ValueError("capacities must be positive")
        return v


class SlotBlockIn(BaseModel):
    blocked: bool = True
    reason: Optional[str] = None


class BlockedDatesIn(BaseModel):
    start_date: dt.date
    end_date: dt.date
    block_type: str = "closed"
    special_hours: Optional[Dict[str, str]] = None
    reason: str = ""
    public_message: Optional[str] = None


# ---------------------------
# Helpers
# ---------------------------
def _core(request: Request) -> ReservationCore:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(503, "Reservation core not initialized")
    return core


def _booking_status(out: Dict[str, Any]) -> int:
    if out.get("success"):
        return 200 if out.get("replayed") else 201
    if out.get("follow_up"):
        return 202
    if out.get("transfer_required"):
        return 200
    if out.get("error") == "SLOT_UNAVAILABLE":
        return 409
    return 422


# ---------------------------
# Service health
# ---------------------------
@app.get("/health")
async def service_health():
    db_ok = await ping()
    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={"status": "ok" if db_ok else "degraded", "database": db_ok},
    )


# ---------------------------
# Restaurants / staff configuration
# ---------------------------
@app.post("/restaurants", status_code=201)
async def create_restaurant(request: Request, payload: RestaurantCreate):
    hours = {k: (v.model_dump() if v else None) for k, v in payload.business_hours.items()}
    return await _core(request).create_restaurant(
        payload.name,
        timezone=payload.timezone,
        business_hours=hours,
        settings=payload.settings,
        phone=payload.phone,
    )


@app.post("/restaurants/{restaurant_id}/slots/publish", status_code=201)
async def publish_slots(request: Request, restaurant_id: str, payload: PublishSlotsIn):
    return await _core(request).publish_slots(
        restaurant_id, payload.start_date, payload.end_date, payload.capacities, payload.weekdays
    )


@app.post("/slots/{slot_id}/block")
async def block_slot(request: Request, slot_id: str, payload: Optional[SlotBlockIn] = None):
    payload = payload or SlotBlockIn()
    return await _core(request).set_slot_blocked(slot_id, payload.blocked, payload.reason)


@app.post("/restaurants/{restaurant_id}/blocked-dates", status_code=201)
async def add_blocked_dates(request: Request, restaurant_id: str, payload: BlockedDatesIn):
    return await _core(request).add_blocked_dates(
        restaurant_id,
        payload.start_date,
        payload.end_date,
        payload.block_type,
        special_hours=payload.special_hours,
        reason=payload.reason,
        public_message=payload.public_message,
    )


# ---------------------------
# Availability & bookings
# ---------------------------
@app.post("/restaurants/{restaurant_id}/availability")
async def check_availability(request: Request, restaurant_id: str, payload: AvailabilityQuery):
    out = await _core(request).check_availability(
        restaurant_id,
        payload.date,
        payload.time,
        payload.party_size,
        payload.seating_preference,
        caller_phone=payload.caller_phone,
        customer_name=payload.customer_name,
        call_id=payload.call_id,
    )
    status_code = 503 if out.get("status") == "system_unavailable" else 200
    return JSONResponse(status_code=status_code, content=jsonable_encoder(out))


@app.post("/restaurants/{restaurant_id}/bookings")
async def create_booking(request: Request, restaurant_id: str, payload: BookingCreate):
    out = await _core(request).create_booking(
        restaurant_id,
        payload.customer_name,
        payload.phone,
        str(payload.email) if payload.email else None,
        payload.date,
        payload.time,
        payload.party_size,
        payload.seating_preference,
        payload.special_requests,
        payload.sms_consent,
        request_id=payload.request_id,
        call_id=payload.call_id,
        source=payload.source,
    )
    return JSONResponse(status_code=_booking_status(out), content=jsonable_encoder(out))


@app.get("/restaurants/{restaurant_id}/reservations")
async def list_reservations(
    request: Request,
    restaurant_id: str,
    day: dt.date = Query(...),
    include_cancelled: bool = Query(False),
):
    return await _core(request).list_reservations(restaurant_id, day, include_cancelled=include_cancelled)


@app.get("/bookings/{ref}")
async def get_booking(request: Request, ref: str):
    return await _core(request).get_reservation(ref)


@app.patch("/bookings/{ref}")
async def update_booking(request: Request, ref: str, payload: BookingUpdate):
    fields = payload.model_dump(exclude_unset=True)
    if "customer_email" in fields and fields["customer_email"] is not None:
        fields["customer_email"] = str(fields["customer_email"])
    return await _core(request).update_booking(ref, fields)


@app.post("/bookings/{ref}/cancel")
async def cancel_booking(request: Request, ref: str, payload: Optional[CancelIn] = None):
    payload = payload or CancelIn()
    return await _core(request).cancel_booking(ref, payload.reason, source=payload.source)


@app.post("/bookings/{ref}/status")
async def set_booking_status(request: Request, ref: str, payload: StatusIn):
    return await _core(request).set_reservation_status(ref, payload.status, payload.changed_by)


@app.get("/restaurants/{restaurant_id}/customers/{phone}")
async def get_customer(request: Request, restaurant_id: str, phone: str):
    c = await _core(request).get_customer(restaurant_id, phone)
    if c is None:
        raise HTTPException(404, "Customer not found")
    return c


# ---------------------------
# Callbacks
# ---------------------------
@app.post("/restaurants/{restaurant_id}/callbacks", status_code=201)
async def create_callback(request: Request, restaurant_id: str, payload: CallbackCreate):
    core = _core(request)
    context: Dict[str, Any] = dict(payload.error_details)
    context.update(
        {
            "requested_datetime": payload.requested_datetime,
            "party_size": payload.party_size,
            "seating_preference": payload.seating_preference,
            "special_requests": payload.special_requests,
            "call_id": payload.call_id,
        }
    )
    cb_id = await core.create_callback(
        restaurant_id,
        {"phone": payload.customer_phone, "name": payload.customer_name},
        payload.failure_reason,
        error_code=payload.error_code,
        priority=payload.priority,
        context=context,
    )
    return await core.callbacks.get(cb_id)


@app.get("/restaurants/{restaurant_id}/callbacks")
async def list_callbacks(
    request: Request,
    restaurant_id: str,
    status: Optional[List[str]] = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    return await _core(request).list_callbacks(restaurant_id, statuses=status, limit=limit)


@app.post("/callbacks/{callback_id}/{action}")
async def advance_callback(
    request: Request,
    callback_id: str,
    action: str,
    payload: Optional[CallbackActionIn] = None,
):
    payload = payload or CallbackActionIn()
    if action not in CALLBACK_ACTIONS:
        raise HTTPException(404, f"Unknown callback action {action!r}")
    return await _core(request).advance_callback(callback_id, action, **payload.model_dump(exclude_none=True))


# ---------------------------
# Health & calls
# ---------------------------
@app.get("/restaurants/{restaurant_id}/health")
async def restaurant_health(request: Request, restaurant_id: str):
    return await _core(request).get_health(restaurant_id)


@app.post("/restaurants/{restaurant_id}/calls")
async def log_call(request: Request, restaurant_id: str, payload: CallLogIn):
    fields = payload.model_dump(exclude={"external_call_id"})
    out = await _core(request).log_call(restaurant_id, payload.external_call_id, **fields)
    return JSONResponse(status_code=201 if out["is_new"] else 200, content=jsonable_encoder(out))


@app.get("/restaurants/{restaurant_id}/calls")
async def list_calls(request: Request, restaurant_id: str, limit: int = Query(50, ge=1, le=500)):
    return await _core(request).list_calls(restaurant_id, limit=limit)
