"""Shared utility functions for ragchat-memory."""

import hashlib
import math
from datetime import datetime

DEFAULT_SIMILARITY_THRESHOLD = 0.75


def now_iso() -> str:
    """Get current timestamp as ISO string."""
    return datetime.now().isoformat()


def normalize_threshold(value, default: float = DEFAULT_SIMILARITY_THRESHOLD) -> float:
    """Coerce a threshold given as 0-1 float, "0.75" or "85%" into [0, 1].

    Examples:
        0.8 -> 0.8
        "85%" -> 0.85
        "1.7" -> 1.0
        "abc" -> 0.75
    """
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, str):
        text = value.strip()
        try:
            number = float(text[:-1]) / 100 if text.endswith("%") else float(text)
        except ValueError:
            return default
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return default
    if math.isnan(number):
        return default
    return min(1.0, max(0.0, number))


def parse_factor(value, default: float) -> float:
    """Parse a positive threshold adjustment factor, falling back to ``default``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or number <= 0:
        return default
    return number


def memory_id_for_upsert(content: str, memory_type: str) -> str:
    """Content-derived identity key used by both sync and hydrate.

    Built from normalised content and type only, never from the row id or
    timestamp, so identical content always maps to the same remote record.
    """
    unique = f"{content.strip().lower()}_{memory_type}"
    digest = hashlib.sha256(unique.encode("utf-8")).hexdigest()
    return f"dedup_{digest[:16]}"
