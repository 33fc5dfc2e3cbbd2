"""
Shared utility functions.
"""

import logging
import math
from typing import Any, Optional
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

IMAGE_PREFIX = "img_"
VIDEO_PREFIX = "vid_"


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or an ISO-8601 string (``Z`` suffix allowed). Returns naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        elif len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
            # Graph returns offsets as +0000
            text = f"{text[:-2]}:{text[-2:]}"
        return to_naive_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        logger.warning(f"Ignoring unparseable datetime: {value!r}")
        return None


def safe_float(val: Any, default: float = 0.0) -> float:
    """Coerce to a finite float; anything else becomes ``default``."""
    if isinstance(val, bool):
        return default
    try:
        f = float(val) if val is not None else default
    except (ValueError, TypeError):
        return default
    return f if math.isfinite(f) else default


def hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def kind_from_variant_id(variant_id: str) -> Optional[str]:
    """Classify a variant id by its prefix: ``img_*`` → image, ``vid_*`` → video."""
    vid = variant_id or ""
    if vid.startswith(IMAGE_PREFIX):
        return "image"
    if vid.startswith(VIDEO_PREFIX):
        return "video"
    return None


def count_variants_by_kind(variant_map: dict) -> dict:
    counts = {"images": 0, "videos": 0}
    for variant_id in (variant_map or {}):
        kind = kind_from_variant_id(variant_id)
        if kind == "image":
            counts["images"] += 1
        elif kind == "video":
            counts["videos"] += 1
    return counts
