from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from flask import request

from .errors import ApiError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# -------------------------
# Time
# -------------------------
def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string; lexical order equals chronological order.

    Dates are stored this way so Mongo range queries are plain string comparisons.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def iso_now() -> str:
    return to_iso(now_utc())


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept ISO 8601 date or datetime strings. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        s = value.strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return parse_datetime(value) if value else None


# -------------------------
# Ids & numbers
# -------------------------
def to_oid(value: Any, field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ApiError("El identificador no es válido.", 400, "INVALID_ID", {"field": field})


def safe_int(value: Any, field: str, min_value: Optional[int] = None, max_value: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ApiError(f"{field} debe ser un número entero.", 400, "VALIDATION_ERROR", {"field": field})
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} debe ser un número entero.", 400, "VALIDATION_ERROR", {"field": field})
    if min_value is not None and n < min_value:
        raise ApiError(f"{field} debe ser >= {min_value}.", 400, "VALIDATION_ERROR", {"field": field})
    if max_value is not None and n > max_value:
        raise ApiError(f"{field} debe ser <= {max_value}.", 400, "VALIDATION_ERROR", {"field": field})
    return n


def safe_float(value: Any, field: str, min_value: Optional[float] = None) -> float:
    if isinstance(value, bool):
        raise ApiError(f"{field} debe ser un número.", 400, "VALIDATION_ERROR", {"field": field})
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} debe ser un número.", 400, "VALIDATION_ERROR", {"field": field})
    if min_value is not None and n < min_value:
        raise ApiError(f"{field} debe ser >= {min_value}.", 400, "VALIDATION_ERROR", {"field": field})
    return n


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return EMAIL_RE.match(email.strip()) is not None


def clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def page_args(default_limit: int = 10, max_limit: int = 100) -> Tuple[int, int]:
    page = safe_int(request.args.get("page", 1), "page", min_value=1)
    limit = safe_int(request.args.get("limit", default_limit), "limit", min_value=1, max_value=max_limit)
    return page, limit


def total_pages(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit else 0
