"""
Customer data access layer (async)
----------------------------------
Functions:
  - upsert_customer(db, restaurant_id, *, name, phone, email=None, sms_consent=False, consent_source="voice_ai")
  - get_customer_by_phone(db, restaurant_id, phone)
  - record_visit(db, customer_id, status, visit_day)
  - customer_to_dict(c)

Notes:
  - Functions take the caller's session; they run inside the booking transaction.
  - Customers are keyed by (restaurant_id, phone_hash). Phones are E.164 already.
  - SMS consent only ever flips to true here; revocation is a staff action.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.phone import hash_phone
from db.models import Customer, ReservationStatus, utcnow


# ---------- helpers ----------
def _iso(dt: Optional[datetime | date]) -> Optional[str]:
    return dt.isoformat() if isinstance(dt, (datetime, date)) else None


def _normalize_email(email: Optional[str]) -> Optional[str]:
    return email.lower().strip() if email else None


def customer_to_dict(c: Customer) -> Dict[str, Any]:
    return {
        "id": str(c.id),
        "restaurant_id": str(c.restaurant_id),
        "name": c.name,
        "phone": c.phone,
        "email": c.email,
        "sms_consent": c.sms_consent,
        "total_reservations": c.total_reservations,
        "completed_visits": c.completed_visits,
        "no_show_count": c.no_show_count,
        "last_visit_date": _iso(c.last_visit_date),
        "created_at": _iso(c.created_at),
    }


# ---------- public API ----------
async def get_customer_by_phone(db: AsyncSession, restaurant_id: uuid.UUID, phone: str) -> Optional[Customer]:
    q = select(Customer).where(Customer.restaurant_id == restaurant_id, Customer.phone_hash == hash_phone(phone))
    return (await db.execute(q)).scalar_one_or_none()


async def upsert_customer(
    db: AsyncSession,
    restaurant_id: uuid.UUID,
    *,
    name: str,
    phone: str,
    email: Optional[str] = None,
    sms_consent: bool = False,
    consent_source: str = "voice_ai",
) -> Customer:
    email = _normalize_email(email)
    c = await get_customer_by_phone(db, restaurant_id, phone)
    if c is None:
        c = Customer(
            restaurant_id=restaurant_id,
            phone=phone,
            phone_hash=hash_phone(phone),
            name=name,
            email=email,
            sms_consent=False,
            total_reservations=0,
            completed_visits=0,
            no_show_count=0,
        )
        try:
            # a concurrent booking from the same number may insert first
            async with db.begin_nested():
                db.add(c)
                await db.flush()
        except IntegrityError:
            c = await get_customer_by_phone(db, restaurant_id, phone)
            if c is None:
                raise

    if name:
        c.name = name
    if email:
        c.email = email
    if sms_consent and not c.sms_consent:
        c.sms_consent = True
        c.sms_consent_at = utcnow()
        c.sms_consent_source = consent_source
    c.total_reservations = (c.total_reservations or 0) + 1
    await db.flush()
    return c


async def record_visit(
    db: AsyncSession,
    customer_id: Optional[uuid.UUID],
    status: ReservationStatus,
    visit_day: Optional[date] = None,
) -> None:
    """Bump visit statistics when a reservation completes or no-shows."""
    if customer_id is None:
        return
    if status == ReservationStatus.completed:
        values: Dict[str, Any] = {"completed_visits": Customer.completed_visits + 1}
        if visit_day is not None:
            values["last_visit_date"] = visit_day
    elif status == ReservationStatus.no_show:
        values = {"no_show_count": Customer.no_show_count + 1}
    else:
        return
    values["updated_at"] = utcnow()
    await db.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
