# common/safety.py
from __future__ import annotations

import re
from typing import Iterable, List, Optional

from common.config_loader import DEFAULT_SAFETY_KEYWORDS


def find_safety_keywords(text: Optional[str], keywords: Iterable[str] = DEFAULT_SAFETY_KEYWORDS) -> List[str]:
    """Keywords found in free text, matched case-insensitively on word boundaries."""
    if not text:
        return []
    hay = " ".join(text.lower().replace("-", " ").split())
    hits: List[str] = []
    for kw in keywords:
        needle = " ".join(kw.lower().split())
        if re.search(r"\b" + re.escape(needle) + r"\b", hay):
            hits.append(kw)
    return hits


def is_large_party(party_size: int, threshold: int) -> bool:
    return party_size > threshold
