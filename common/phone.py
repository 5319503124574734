# common/phone.py
from __future__ import annotations

import hashlib
import re
from typing import Optional

from common.errors import ValidationError

_E164 = re.compile(r"^\+?[1-9]\d{1,14}$")
_FORMATTING = re.compile(r"[\s\-().]")
_NON_DIGIT = re.compile(r"\D")
_MASKABLE = re.compile(r"^(\+?1?)(\d{3})(\d{3})(\d{4})$")


def normalize_phone(raw: Optional[str]) -> str:
    """
    Return the number in E.164 form. Numbers without a leading "+" are taken as
    North American: ten digits get "+1", eleven digits starting with 1 get "+".
    Raises ValidationError(INVALID_PHONE) for anything else.
    """
    cleaned = _FORMATTING.sub("", raw or "")
    if not cleaned or not _E164.match(cleaned):
        raise ValidationError("Please provide a valid phone number with area code.", code="INVALID_PHONE")
    if cleaned.startswith("+"):
        return cleaned
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return "+" + cleaned
    if len(cleaned) == 10:
        return "+1" + cleaned
    raise ValidationError("Please provide a valid phone number with area code.", code="INVALID_PHONE")


def hash_phone(phone: str) -> str:
    """sha256 hex of the digits only, for lookups that don't expose the number."""
    return hashlib.sha256(_NON_DIGIT.sub("", phone or "").encode()).hexdigest()


def mask_phone(phone: Optional[str]) -> str:
    # +15551234567 -> +1***-***-4567
    if not phone or len(phone) < 10:
        return "***-***-****"
    m = _MASKABLE.match(phone)
    if not m:
        return "***-***-" + phone[-4:]
    return f"{m.group(1)}***-***-{m.group(4)}"
