# services/callbacks.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from common.config_loader import CallbackPolicy
from common.errors import ConcurrentModification, InvalidTransition, NotFound, ValidationError
from common.event_bus import CallbackCreated, CallbackResolved, EventBus
from common.phone import mask_phone, normalize_phone
from db.models import Callback, CallbackPriority, CallbackStatus, ResolutionOutcome, utcnow
from db.utils import as_utc
from services.store import store_guard
from utils.logger import truncate

_log = logging.getLogger("reservation-core")

OPEN_STATUSES = (CallbackStatus.pending, CallbackStatus.in_progress)
TERMINAL_STATUSES = (CallbackStatus.completed, CallbackStatus.failed, CallbackStatus.cancelled)
# staff work order: priority descending, then oldest first
PRIORITY_ORDER = case(*((Callback.priority == p, p.rank) for p in CallbackPriority), else_=0)

FAILURE_PRIORITY: Dict[str, CallbackPriority] = {
    "SAFETY_TRIGGER": CallbackPriority.urgent,
    "ALLERGY": CallbackPriority.urgent,
    "SYSTEM_TIMEOUT": CallbackPriority.high,
    "SYSTEM_UNAVAILABLE": CallbackPriority.high,
    "CRM_TIMEOUT": CallbackPriority.high,
    "INTERNAL_ERROR": CallbackPriority.high,
    "LARGE_PARTY": CallbackPriority.high,
    "BOOKING_CONFLICT": CallbackPriority.normal,
    "VALIDATION_ERROR": CallbackPriority.normal,
    "TIMEOUT": CallbackPriority.normal,
    "CUSTOMER_REQUEST": CallbackPriority.low,
}


def classify_priority(failure_reason: Optional[str]) -> CallbackPriority:
    """Priority is a pure function of the failure classification."""
    key = (failure_reason or "").strip().upper()
    return FAILURE_PRIORITY.get(key, CallbackPriority.normal)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if isinstance(dt, datetime) else None


def callback_to_dict(cb: Callback, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    return {
        "id": str(cb.id),
        "restaurant_id": str(cb.restaurant_id),
        "call_id": cb.call_id,
        "customer_name": cb.customer_name,
        "customer_phone": cb.customer_phone,
        "customer_phone_masked": mask_phone(cb.customer_phone),
        "requested_datetime": _iso(cb.requested_datetime),
        "party_size": cb.party_size,
        "seating_preference": cb.seating_preference,
        "special_requests": cb.special_requests,
        "failure_reason": cb.failure_reason,
        "error_code": cb.error_code,
        "error_details": cb.error_details or {},
        "priority": cb.priority.value,
        "immediate_transfer": cb.immediate_transfer,
        "status": cb.status.value,
        "assigned_to": cb.assigned_to,
        "attempt_count": cb.attempt_count,
        "last_attempt_at": _iso(cb.last_attempt_at),
        "resolved_at": _iso(cb.resolved_at),
        "resolved_by": cb.resolved_by,
        "resolution_outcome": cb.resolution_outcome,
        "resolution_notes": cb.resolution_notes,
        "resulting_reservation_id": str(cb.resulting_reservation_id) if cb.resulting_reservation_id else None,
        "created_at": _iso(cb.created_at),
        "age_minutes": round((now - cb.created_at).total_seconds() / 60.0, 1) if cb.created_at else None,
    }


class CallbackQueue:
    """
    Escalation workflow: pending -> in_progress -> {completed, failed, cancelled}.

    Each transition is a single UPDATE guarded on the row's previous status and
    attempt count, so two staff members acting on the same row cannot both win.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: Optional[CallbackPolicy] = None,
        *,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or CallbackPolicy()
        self.bus = bus or EventBus()
        self._clock = clock

    # ---------- creation ----------
    async def create(
        self,
        restaurant_id: uuid.UUID,
        *,
        failure_reason: str,
        customer_phone: Optional[str],
        customer_name: Optional[str] = None,
        error_code: Optional[str] = None,
        priority: Optional[CallbackPriority | str] = None,
        requested_datetime: Optional[datetime] = None,
        party_size: Optional[int] = None,
        seating_preference: Optional[str] = None,
        special_requests: Optional[str] = None,
        call_id: Optional[str] = None,
        error_details: Optional[Mapping[str, Any]] = None,
        require_contact: bool = True,
    ) -> Dict[str, Any]:
        """
        Queue a follow-up. System-raised escalations (require_contact=False) may
        arrive before the caller gave a number.
        """
        if require_contact and not (customer_phone or "").strip():
            raise ValidationError("Customer phone is required", code="INVALID_PHONE")
        if not (failure_reason or "").strip():
            raise ValidationError("failure_reason is required", code="INVALID_FIELD")
        phone: Optional[str] = None
        if (customer_phone or "").strip():
            try:
                phone = normalize_phone(customer_phone)
            except ValidationError:
                # keep what the caller gave; staff can still read it back
                phone = customer_phone.strip()[:20]

        resolved_priority = classify_priority(failure_reason)
        if priority is not None:
            try:
                explicit = CallbackPriority(priority)
            except ValueError as e:
                raise ValidationError(f"Unknown priority {priority!r}.", code="INVALID_FIELD") from e
            # an explicit priority may raise but never lower the classification
            if explicit.rank > resolved_priority.rank:
                resolved_priority = explicit
        immediate = resolved_priority == CallbackPriority.urgent

        async with store_guard("create_callback"):
            async with self._session_factory() as db:
                cb = Callback(
                    restaurant_id=restaurant_id,
                    call_id=call_id,
                    customer_phone=phone,
                    customer_name=(customer_name or "").strip() or None,
                    requested_datetime=requested_datetime,
                    party_size=party_size,
                    seating_preference=seating_preference,
                    special_requests=special_requests,
                    failure_reason=failure_reason.strip().upper(),
                    error_code=error_code,
                    error_details=dict(error_details or {}),
                    priority=resolved_priority,
                    immediate_transfer=immediate,
                    status=CallbackStatus.pending,
                    attempt_count=0,
                    created_at=self._clock(),
                )
                db.add(cb)
                try:
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise

        if immediate:
            _log.warning(
                "URGENT callback %s (%s) for %s requires immediate transfer",
                cb.id,
                cb.failure_reason,
                mask_phone(phone),
            )
        else:
            _log.info(
                "Callback %s queued priority=%s reason=%s code=%s details=%s",
                cb.id,
                cb.priority.value,
                cb.failure_reason,
                cb.error_code,
                truncate(cb.error_details, 300),
            )
        await self.bus.emit(
            CallbackCreated(
                restaurant_id=restaurant_id,
                callback_id=cb.id,
                priority=cb.priority.value,
                failure_reason=cb.failure_reason,
                immediate_transfer=immediate,
                created_at=cb.created_at,
            )
        )
        return callback_to_dict(cb, self._clock())

    # ---------- helpers ----------
    async def _load(self, db: AsyncSession, callback_id: uuid.UUID | str) -> Callback:
        try:
            cid = callback_id if isinstance(callback_id, uuid.UUID) else uuid.UUID(str(callback_id))
        except ValueError as e:
            raise NotFound("Callback not found") from e
        cb = await db.get(Callback, cid, populate_existing=True)
        if cb is None:
            raise NotFound("Callback not found")
        return cb

    async def _guarded(self, db: AsyncSession, cb: Callback, values: Dict[str, Any]) -> None:
        values.setdefault("updated_at", self._clock())
        res = await db.execute(
            update(Callback)
            .where(
                Callback.id == cb.id,
                Callback.status == cb.status,
                Callback.attempt_count == cb.attempt_count,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConcurrentModification("Callback changed concurrently; please retry.")

    async def _transition(self, callback_id, fn) -> Dict[str, Any]:
        """Load, apply fn(db, cb) -> values, write guarded, commit, emit."""
        async with store_guard("advance_callback"):
            async with self._session_factory() as db:
                try:
                    cb = await self._load(db, callback_id)
                    values = await fn(db, cb)
                    if values is None:
                        return callback_to_dict(cb, self._clock())
                    await self._guarded(db, cb, values)
                    await db.commit()
                    await db.refresh(cb)
                except Exception:
                    await db.rollback()
                    raise

        if cb.status in TERMINAL_STATUSES:
            if cb.status == CallbackStatus.failed:
                _log.warning("Callback %s failed: %s", cb.id, truncate(cb.resolution_notes or "", 300))
            else:
                _log.info("Callback %s %s (%s)", cb.id, cb.status.value, cb.resolution_outcome)
            await self.bus.emit(
                CallbackResolved(
                    restaurant_id=cb.restaurant_id,
                    callback_id=cb.id,
                    status=cb.status.value,
                    outcome=cb.resolution_outcome,
                )
            )
        else:
            _log.info("Callback %s %s (attempt %d)", cb.id, cb.status.value, cb.attempt_count)
        return callback_to_dict(cb, self._clock())

    def _attempt_values(self, cb: Callback, note: Optional[str]) -> Dict[str, Any]:
        now = self._clock()
        attempts = (cb.attempt_count or 0) + 1
        values: Dict[str, Any] = {"attempt_count": attempts, "last_attempt_at": now}
        if attempts > self.policy.max_attempts:
            values.update(
                status=CallbackStatus.failed,
                resolved_at=now,
                resolved_by="system",
                resolution_notes=(
                    f"Auto-failed after {attempts} contact attempts (max {self.policy.max_attempts})."
                    + (f" Last attempt: {note}" if note else "")
                ),
            )
        elif note:
            values["resolution_notes"] = note
        return values

    @staticmethod
    def _require_open(cb: Callback, action: str) -> None:
        if cb.status not in OPEN_STATUSES:
            raise InvalidTransition(f"Cannot {action} a {cb.status.value} callback.")

    # ---------- transitions ----------
    async def start(self, callback_id, staff: str) -> Dict[str, Any]:
        """pending -> in_progress; counts as a contact attempt."""

        async def apply(db, cb):
            if cb.status == CallbackStatus.in_progress and cb.assigned_to == staff:
                return None
            if cb.status != CallbackStatus.pending:
                raise InvalidTransition(f"Cannot start a {cb.status.value} callback.")
            values = self._attempt_values(cb, None)
            if values.get("status") != CallbackStatus.failed:
                values.update(status=CallbackStatus.in_progress, assigned_to=staff, assigned_at=self._clock())
            return values

        return await self._transition(callback_id, apply)

    async def record_attempt(self, callback_id, note: Optional[str] = None) -> Dict[str, Any]:
        async def apply(db, cb):
            self._require_open(cb, "record an attempt on")
            return self._attempt_values(cb, note)

        return await self._transition(callback_id, apply)

    async def complete(
        self,
        callback_id,
        outcome: ResolutionOutcome | str,
        notes: str,
        resolved_by: Optional[str] = None,
        reservation_id: Optional[uuid.UUID | str] = None,
    ) -> Dict[str, Any]:
        try:
            outcome = ResolutionOutcome(outcome)
        except ValueError as e:
            allowed = ", ".join(o.value for o in ResolutionOutcome)
            raise ValidationError(f"Outcome must be one of: {allowed}.", code="INVALID_OUTCOME") from e
        if not (notes or "").strip():
            raise ValidationError("Resolution notes are required.", code="MISSING_NOTES")
        res_id = None
        if reservation_id:
            try:
                res_id = reservation_id if isinstance(reservation_id, uuid.UUID) else uuid.UUID(str(reservation_id))
            except ValueError as e:
                raise ValidationError("reservation_id must be a UUID.", code="INVALID_FIELD") from e

        async def apply(db, cb):
            if cb.status != CallbackStatus.in_progress:
                raise InvalidTransition(f"Cannot complete a {cb.status.value} callback.")
            return {
                "status": CallbackStatus.completed,
                "resolution_outcome": outcome.value,
                "resolution_notes": notes.strip(),
                "resolved_at": self._clock(),
                "resolved_by": resolved_by or cb.assigned_to,
                "resulting_reservation_id": res_id,
            }

        return await self._transition(callback_id, apply)

    async def fail(self, callback_id, reason: Optional[str] = None, resolved_by: Optional[str] = None) -> Dict[str, Any]:
        async def apply(db, cb):
            self._require_open(cb, "fail")
            return {
                "status": CallbackStatus.failed,
                "resolution_notes": (reason or "").strip() or "Marked failed by staff.",
                "resolved_at": self._clock(),
                "resolved_by": resolved_by or cb.assigned_to,
            }

        return await self._transition(callback_id, apply)

    async def cancel(self, callback_id, reason: Optional[str] = None, resolved_by: Optional[str] = None) -> Dict[str, Any]:
        async def apply(db, cb):
            if cb.status == CallbackStatus.cancelled:
                return None
            self._require_open(cb, "cancel")
            return {
                "status": CallbackStatus.cancelled,
                "resolution_notes": (reason or "").strip() or None,
                "resolved_at": self._clock(),
                "resolved_by": resolved_by,
            }

        return await self._transition(callback_id, apply)

    async def fail_exhausted(self, restaurant_id: Optional[uuid.UUID] = None) -> int:
        """Sweep open callbacks whose attempt_count is already beyond the maximum."""
        async with store_guard("fail_exhausted_callbacks"):
            async with self._session_factory() as db:
                now = self._clock()
                ids_q = select(Callback.id, Callback.restaurant_id).where(
                    Callback.status.in_(OPEN_STATUSES),
                    Callback.attempt_count > self.policy.max_attempts,
                )
                if restaurant_id is not None:
                    ids_q = ids_q.where(Callback.restaurant_id == restaurant_id)
                rows = (await db.execute(ids_q)).all()
                failed: List[tuple] = []
                for cid, rid in rows:
                    res = await db.execute(
                        update(Callback)
                        .where(Callback.id == cid, Callback.status.in_(OPEN_STATUSES))
                        .values(
                            status=CallbackStatus.failed,
                            resolved_at=now,
                            resolved_by="system",
                            resolution_notes=f"Auto-failed: exceeded {self.policy.max_attempts} contact attempts.",
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 1:
                        failed.append((cid, rid))
                await db.commit()

        for cid, rid in failed:
            _log.warning("Callback %s auto-failed after exceeding %d attempts", cid, self.policy.max_attempts)
            await self.bus.emit(CallbackResolved(restaurant_id=rid, callback_id=cid, status="failed", outcome=None))
        return len(failed)

    # ---------- reads ----------
    async def get(self, callback_id) -> Dict[str, Any]:
        async with store_guard("get_callback"):
            async with self._session_factory() as db:
                return callback_to_dict(await self._load(db, callback_id), self._clock())

    async def list_pending(self, restaurant_id: uuid.UUID, limit: int = 50) -> List[Dict[str, Any]]:
        """Staff work order of open callbacks."""
        return await self.list_callbacks(restaurant_id, statuses=OPEN_STATUSES, limit=limit)

    async def list_callbacks(
        self,
        restaurant_id: uuid.UUID,
        statuses: Optional[Iterable[CallbackStatus | str]] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        wanted = [CallbackStatus(s) for s in statuses] if statuses else list(OPEN_STATUSES)
        async with store_guard("list_callbacks"):
            async with self._session_factory() as db:
                q = (
                    select(Callback)
                    .where(Callback.restaurant_id == restaurant_id, Callback.status.in_(wanted))
                    .order_by(PRIORITY_ORDER.desc(), Callback.created_at, Callback.id)
                    .limit(max(0, int(limit)))
                )
                rows = list((await db.execute(q)).scalars())
        now = self._clock()
        return [callback_to_dict(cb, now) for cb in rows]

    async def oldest_pending_age(self, restaurant_id: uuid.UUID) -> Optional[float]:
        """Minutes since the oldest open callback was created, or None when the queue is empty."""
        async with store_guard("oldest_pending_age"):
            async with self._session_factory() as db:
                q = select(func.min(Callback.created_at)).where(
                    Callback.restaurant_id == restaurant_id,
                    Callback.status.in_(OPEN_STATUSES),
                )
                oldest = (await db.execute(q)).scalar_one_or_none()
        if oldest is None:
            return None
        return (self._clock() - as_utc(oldest)).total_seconds() / 60.0
