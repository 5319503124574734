from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from db.session import engine
from db.utils import UTCDateTime, utcnow


class Base(DeclarativeBase):
    pass


def _enum(cls: type[PyEnum], name: str) -> SAEnum:
    # stored as plain strings; avoids native enum type caches on asyncpg
    return SAEnum(cls, name=name, native_enum=False, create_constraint=False, length=32)


# ---------- Enums ----------
class SeatingType(str, PyEnum):
    indoor = "indoor"
    outdoor = "outdoor"
    bar = "bar"
    private = "private"


class ReservationStatus(str, PyEnum):
    pending = "pending"
    confirmed = "confirmed"
    seated = "seated"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class CallbackStatus(str, PyEnum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class CallbackPriority(str, PyEnum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    CallbackPriority.low: 0,
    CallbackPriority.normal: 1,
    CallbackPriority.high: 2,
    CallbackPriority.urgent: 3,
}


class ResolutionOutcome(str, PyEnum):
    booked = "booked"
    no_answer = "no_answer"
    declined = "declined"
    resolved = "resolved"
    invalid = "invalid"
    other = "other"


class BlockType(str, PyEnum):
    closed = "closed"
    special_hours = "special_hours"
    private_event = "private_event"


class CallStatus(str, PyEnum):
    completed = "completed"
    transferred = "transferred"
    abandoned = "abandoned"
    error = "error"


class CallOutcome(str, PyEnum):
    booking_made = "booking_made"
    callback_requested = "callback_requested"
    faq_answered = "faq_answered"
    transferred_safety = "transferred_safety"
    transferred_large_party = "transferred_large_party"
    transferred_customer = "transferred_customer"
    no_availability = "no_availability"
    caller_hangup = "caller_hangup"
    system_error = "system_error"


# ---------- Models ----------
class Restaurant(Base):
    __tablename__ = "restaurants"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    timezone: Mapped[str] = mapped_column(String(50), default="America/New_York")
    # {"monday": {"open": "17:00", "close": "22:00"}, "tuesday": null, ...}
    business_hours: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("restaurant_id", "phone_hash", name="uq_customers_phone"),)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("restaurants.id", ondelete="CASCADE"))
    phone: Mapped[str] = mapped_column(String(20))
    phone_hash: Mapped[str] = mapped_column(String(64))
    name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    sms_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    sms_consent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    sms_consent_source: Mapped[Optional[str]] = mapped_column(String(50))
    total_reservations: Mapped[int] = mapped_column(Integer, default=0)
    completed_visits: Mapped[int] = mapped_column(Integer, default=0)
    no_show_count: Mapped[int] = mapped_column(Integer, default=0)
    last_visit_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class AvailabilitySlot(Base):
    __tablename__ = "availability_slots"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "slot_datetime", "seating_type", name="uq_slot_key"),
        CheckConstraint("total_capacity > 0", name="ck_slot_total_positive"),
        CheckConstraint("booked_count >= 0", name="ck_slot_booked_nonnegative"),
        CheckConstraint("booked_count <= total_capacity", name="ck_slot_booked_within_total"),
    )
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("restaurants.id", ondelete="CASCADE"))
    slot_datetime: Mapped[datetime] = mapped_column(UTCDateTime)
    seating_type: Mapped[SeatingType] = mapped_column(_enum(SeatingType, "seating_type"), default=SeatingType.indoor)
    total_capacity: Mapped[int] = mapped_column(Integer)
    booked_count: Mapped[int] = mapped_column(Integer, default=0)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    block_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def remaining(self) -> int:
        return max(0, self.total_capacity - self.booked_count)


class BlockedDate(Base):
    __tablename__ = "blocked_dates"
    __table_args__ = (CheckConstraint("end_date >= start_date", name="ck_blocked_dates_range"),)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("restaurants.id", ondelete="CASCADE"))
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    block_type: Mapped[BlockType] = mapped_column(_enum(BlockType, "block_type"), default=BlockType.closed)
    special_hours: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    reason: Mapped[str] = mapped_column(Text, default="")
    public_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        UniqueConstraint("confirmation_code", name="uq_reservations_confirmation_code"),
        UniqueConstraint("restaurant_id", "request_id", name="uq_reservations_request_id"),
        CheckConstraint("party_size >= 1", name="ck_reservations_party_size"),
    )
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("restaurants.id", ondelete="CASCADE"))
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("customers.id", ondelete="SET NULL"))
    slot_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("availability_slots.id", ondelete="SET NULL"))
    call_id: Mapped[Optional[str]] = mapped_column(String(100))
    # caller-supplied idempotency key
    request_id: Mapped[Optional[str]] = mapped_column(String(100))
    confirmation_code: Mapped[str] = mapped_column(String(12))
    reservation_datetime: Mapped[datetime] = mapped_column(UTCDateTime)
    party_size: Mapped[int] = mapped_column(Integer)
    seating_type: Mapped[SeatingType] = mapped_column(_enum(SeatingType, "seating_type"))
    special_requests: Mapped[Optional[str]] = mapped_column(Text)
    customer_name: Mapped[str] = mapped_column(String(255))
    customer_phone: Mapped[str] = mapped_column(String(20))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[ReservationStatus] = mapped_column(
        _enum(ReservationStatus, "reservation_status"), default=ReservationStatus.confirmed
    )
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    status_changed_by: Mapped[Optional[str]] = mapped_column(String(255))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_source: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[str] = mapped_column(String(50), default="voice_ai")
    sms_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    sms_confirmation_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sms_confirmation_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    seated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    internal_notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Callback(Base):
    __tablename__ = "callbacks"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("restaurants.id", ondelete="CASCADE"))
    call_id: Mapped[Optional[str]] = mapped_column(String(100))
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20))
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    requested_datetime: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    party_size: Mapped[Optional[int]] = mapped_column(Integer)
    seating_preference: Mapped[Optional[str]] = mapped_column(String(20))
    special_requests: Mapped[Optional[str]] = mapped_column(Text)
    failure_reason: Mapped[str] = mapped_column(String(100))
    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    priority: Mapped[CallbackPriority] = mapped_column(
        _enum(CallbackPriority, "callback_priority"), default=CallbackPriority.normal
    )
    immediate_transfer: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[CallbackStatus] = mapped_column(_enum(CallbackStatus, "callback_status"), default=CallbackStatus.pending)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255))
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255))
    resolution_outcome: Mapped[Optional[str]] = mapped_column(String(50))
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text)
    resulting_reservation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("reservations.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Call(Base):
    __tablename__ = "calls"
    __table_args__ = (UniqueConstraint("external_call_id", name="uq_calls_external_call_id"),)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("restaurants.id", ondelete="CASCADE"))
    external_call_id: Mapped[str] = mapped_column(String(100))
    caller_phone: Mapped[Optional[str]] = mapped_column(String(20))
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    status: Mapped[CallStatus] = mapped_column(_enum(CallStatus, "call_status"), default=CallStatus.completed)
    outcome: Mapped[Optional[CallOutcome]] = mapped_column(_enum(CallOutcome, "call_outcome"))
    safety_trigger_activated: Mapped[bool] = mapped_column(Boolean, default=False)
    safety_trigger_type: Mapped[Optional[str]] = mapped_column(String(50))
    reservation_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("reservations.id", ondelete="SET NULL"))
    callback_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("callbacks.id", ondelete="SET NULL"))
    meta_json: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


Index("ix_slots_restaurant_datetime", AvailabilitySlot.restaurant_id, AvailabilitySlot.slot_datetime)
Index("ix_blocked_dates_range", BlockedDate.restaurant_id, BlockedDate.start_date, BlockedDate.end_date)
Index("ix_reservations_datetime", Reservation.restaurant_id, Reservation.reservation_datetime)
Index("ix_reservations_phone", Reservation.restaurant_id, Reservation.customer_phone)
Index("ix_callbacks_queue", Callback.restaurant_id, Callback.status, Callback.created_at)
Index("ix_calls_restaurant_started", Call.restaurant_id, Call.started_at)


async def init_db(eng=None) -> None:
    async with (eng or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = [
    "engine",
    "Base",
    "utcnow",
    "Restaurant",
    "Customer",
    "AvailabilitySlot",
    "BlockedDate",
    "Reservation",
    "Callback",
    "Call",
    "SeatingType",
    "ReservationStatus",
    "CallbackStatus",
    "CallbackPriority",
    "ResolutionOutcome",
    "BlockType",
    "CallStatus",
    "CallOutcome",
    "init_db",
]
