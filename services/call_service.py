# services/call_service.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.errors import NotFound, ValidationError
from common.phone import mask_phone
from db.models import Call, CallOutcome, CallStatus, Restaurant, utcnow
from db.session import Session
from db.utils import as_utc
from services.store import store_guard

_log = logging.getLogger("reservation-core")


def _parse_status(value: Union[str, CallStatus, None]) -> Optional[CallStatus]:
    if value is None:
        return None
    try:
        return CallStatus(value)
    except ValueError:
        _log.warning("Unknown call status %r; recording as completed", value)
        return CallStatus.completed


def _parse_outcome(value: Union[str, CallOutcome, None]) -> Optional[CallOutcome]:
    if value is None:
        return None
    try:
        return CallOutcome(value)
    except ValueError:
        _log.warning("Unknown call outcome %r; ignoring", value)
        return None


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid id {value!r}.", code="INVALID_FIELD") from e


def call_to_dict(c: Call) -> Dict[str, Any]:
    return {
        "id": str(c.id),
        "restaurant_id": str(c.restaurant_id),
        "external_call_id": c.external_call_id,
        "caller_phone_masked": mask_phone(c.caller_phone),
        "started_at": c.started_at.isoformat() if c.started_at else None,
        "ended_at": c.ended_at.isoformat() if c.ended_at else None,
        "status": c.status.value,
        "outcome": c.outcome.value if c.outcome else None,
        "safety_trigger_activated": c.safety_trigger_activated,
        "safety_trigger_type": c.safety_trigger_type,
        "reservation_id": str(c.reservation_id) if c.reservation_id else None,
        "callback_id": str(c.callback_id) if c.callback_id else None,
        "metadata": c.meta_json or {},
    }


def _apply_update(c: Call, fields: Dict[str, Any]) -> None:
    # later deliveries fill gaps but never erase what an earlier one recorded
    if fields["ended_at"] is not None:
        c.ended_at = fields["ended_at"]
    if fields["status"] is not None:
        c.status = fields["status"]
    if fields["outcome"] is not None:
        c.outcome = fields["outcome"]
    if fields["reservation_id"] is not None:
        c.reservation_id = fields["reservation_id"]
    if fields["callback_id"] is not None:
        c.callback_id = fields["callback_id"]
    c.safety_trigger_activated = bool(c.safety_trigger_activated) or fields["safety_trigger"]
    if fields["safety_type"]:
        c.safety_trigger_type = fields["safety_type"]
    if fields["metadata"]:
        c.meta_json = {**(c.meta_json or {}), **fields["metadata"]}


async def _find(db: AsyncSession, external_call_id: str) -> Optional[Call]:
    q = select(Call).where(Call.external_call_id == external_call_id)
    return (await db.execute(q)).scalar_one_or_none()


async def log_call(
    *,
    restaurant_id: uuid.UUID,
    external_call_id: str,
    caller_phone: Optional[str] = None,
    started_at: Optional[datetime] = None,
    ended_at: Optional[datetime] = None,
    status: Union[str, CallStatus, None] = None,
    outcome: Union[str, CallOutcome, None] = None,
    safety_trigger: bool = False,
    safety_type: Optional[str] = None,
    reservation_id: Any = None,
    callback_id: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Dict[str, Any]:
    """
    Record or update a call by its external id. Safe to call repeatedly for the same call:
    the first delivery creates the row, later ones merge into it.
    Returns {status: created|updated, call_id, is_new}.
    """
    if not (external_call_id or "").strip():
        raise ValidationError("external_call_id is required", code="INVALID_FIELD")
    fields = {
        "ended_at": as_utc(ended_at),
        "status": _parse_status(status),
        "outcome": _parse_outcome(outcome),
        "reservation_id": _as_uuid(reservation_id),
        "callback_id": _as_uuid(callback_id),
        "safety_trigger": bool(safety_trigger),
        "safety_type": safety_type,
        "metadata": dict(metadata or {}),
    }
    sf = session_factory or Session

    async with store_guard("log_call"):
        async with sf() as db:
            if await db.get(Restaurant, restaurant_id) is None:
                raise NotFound("Restaurant not found")
            existing = await _find(db, external_call_id)
            if existing is None:
                c = Call(
                    restaurant_id=restaurant_id,
                    external_call_id=external_call_id,
                    caller_phone=caller_phone,
                    started_at=as_utc(started_at) or clock(),
                    ended_at=fields["ended_at"],
                    status=fields["status"] or CallStatus.completed,
                    outcome=fields["outcome"],
                    safety_trigger_activated=fields["safety_trigger"],
                    safety_trigger_type=safety_type,
                    reservation_id=fields["reservation_id"],
                    callback_id=fields["callback_id"],
                    meta_json=fields["metadata"],
                )
                db.add(c)
                try:
                    await db.commit()
                    _log.info("Call %s logged (%s)", external_call_id, c.status.value)
                    return {"status": "created", "call_id": str(c.id), "is_new": True, "call": call_to_dict(c)}
                except IntegrityError:
                    # another delivery of the same call inserted first
                    await db.rollback()
                    existing = await _find(db, external_call_id)
                    if existing is None:
                        raise

            _apply_update(existing, fields)
            try:
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            _log.info("Call %s updated (%s)", external_call_id, existing.status.value)
            return {"status": "updated", "call_id": str(existing.id), "is_new": False, "call": call_to_dict(existing)}


async def list_recent_calls(
    restaurant_id: uuid.UUID,
    *,
    limit: int = 50,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> List[Dict[str, Any]]:
    sf = session_factory or Session
    async with store_guard("list_calls"):
        async with sf() as db:
            q = (
                select(Call)
                .where(Call.restaurant_id == restaurant_id)
                .order_by(Call.started_at.desc())
                .limit(max(1, int(limit)))
            )
            return [call_to_dict(c) for c in (await db.execute(q)).scalars()]
