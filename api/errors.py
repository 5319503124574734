"""
HTTP mapping for reservation-core errors.
Routes raise domain errors; the exception handler maps them to responses via ERROR_RULES.
"""
from __future__ import annotations

import logging
from typing import List, Tuple, Type

from fastapi import Request
from fastapi.responses import JSONResponse

from common.errors import (
    CapacityConflict,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    ReservationError,
    SafetyTrigger,
    SystemUnavailable,
    ValidationError,
)

_log = logging.getLogger("reservation-core")

STATUS_UNPROCESSABLE = 422
STATUS_NOT_FOUND = 404
STATUS_CONFLICT = 409
STATUS_SERVICE_UNAVAILABLE = 503
STATUS_INTERNAL_ERROR = 500

# (error type, status code). First match wins, so subclasses go before their bases.
ERROR_RULES: List[Tuple[Type[ReservationError], int]] = [
    (NotFound, STATUS_NOT_FOUND),
    (CapacityConflict, STATUS_CONFLICT),
    (InvalidTransition, STATUS_CONFLICT),
    (ConcurrentModification, STATUS_CONFLICT),
    (SafetyTrigger, STATUS_UNPROCESSABLE),
    (ValidationError, STATUS_UNPROCESSABLE),
    (SystemUnavailable, STATUS_SERVICE_UNAVAILABLE),
]


def status_for(exc: ReservationError) -> int:
    for kind, status_code in ERROR_RULES:
        if isinstance(exc, kind):
            return status_code
    return STATUS_INTERNAL_ERROR


async def reservation_error_handler(request: Request, exc: ReservationError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        _log.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=status_code, content=exc.to_dict())
