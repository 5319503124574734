# common/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class ReservationError(Exception):
    """Base for every error the reservation core raises on purpose."""

    code = "RESERVATION_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ValidationError(ReservationError):
    """Bad input. Surfaced to the caller as-is and never retried."""

    code = "VALIDATION_ERROR"


class DuplicateBooking(ValidationError):
    code = "DUPLICATE_BOOKING"


class CapacityConflict(ReservationError):
    """The slot filled up between the availability snapshot and the commit."""

    code = "SLOT_UNAVAILABLE"

    def __init__(self, message: str, *, slot_id: Any = None, alternatives: Optional[List[dict]] = None) -> None:
        super().__init__(message)
        self.slot_id = slot_id
        self.alternatives: List[dict] = list(alternatives or [])

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["alternatives"] = self.alternatives
        return d


class SafetyTrigger(ReservationError):
    """Allergy keywords or an oversized party: hand the caller to a human."""

    code = "SAFETY_TRIGGER"

    def __init__(self, message: str, *, kind: str = "SAFETY_TRIGGER", keywords: Sequence[str] = ()) -> None:
        super().__init__(message, code=kind)
        self.kind = kind
        self.keywords = list(keywords)


class SystemUnavailable(ReservationError):
    """The store timed out or could not be reached. Never means "no availability"."""

    code = "SYSTEM_TIMEOUT"


class ConfirmationCodeExhausted(ReservationError):
    code = "INTERNAL_ERROR"


class NotFound(ReservationError):
    code = "NOT_FOUND"


class InvalidTransition(ReservationError):
    code = "INVALID_TRANSITION"


class ConcurrentModification(ReservationError):
    code = "CONCURRENT_MODIFICATION"


__all__ = [
    "ReservationError",
    "ValidationError",
    "DuplicateBooking",
    "CapacityConflict",
    "SafetyTrigger",
    "SystemUnavailable",
    "ConfirmationCodeExhausted",
    "NotFound",
    "InvalidTransition",
    "ConcurrentModification",
]
