# common/event_bus.py
from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

_log = logging.getLogger("reservation-core")


@dataclass(frozen=True)
class SlotBooked:
    restaurant_id: uuid.UUID
    slot_id: uuid.UUID
    reservation_id: uuid.UUID
    seats: int
    booked_count: int
    total_capacity: int


@dataclass(frozen=True)
class SlotReleased:
    restaurant_id: uuid.UUID
    slot_id: uuid.UUID
    reservation_id: uuid.UUID
    seats: int
    reason: str


@dataclass(frozen=True)
class CallbackCreated:
    restaurant_id: uuid.UUID
    callback_id: uuid.UUID
    priority: str
    failure_reason: str
    immediate_transfer: bool
    created_at: datetime


@dataclass(frozen=True)
class CallbackResolved:
    restaurant_id: uuid.UUID
    callback_id: uuid.UUID
    status: str
    outcome: Optional[str]


Handler = Callable[[Any], "Awaitable[None] | None"]


class EventBus:
    """
    Small async event bus for booking and callback notifications.
    Usage:
        bus = EventBus()
        async def on_booked(ev: SlotBooked): ...
        bus.on(SlotBooked, on_booked)
        await bus.emit(SlotBooked(...))
    Handlers run in registration order; a failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[Any], List[Handler]] = {}

    def on(self, event_type: Type[Any], handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: Type[Any], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: Any) -> None:
        for h in list(self._handlers.get(type(event), [])):
            try:
                res = h(event)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:  # noqa: BLE001
                # don't crash the bus
                _log.exception("EventBus handler error for %s", type(event).__name__)


__all__ = [
    "EventBus",
    "SlotBooked",
    "SlotReleased",
    "CallbackCreated",
    "CallbackResolved",
]
