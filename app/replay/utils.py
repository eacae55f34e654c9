from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_BLANKS = {"", "n/a", "na", "-", "none"}


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_text(value: object) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if s.lower() in _BLANKS:
        return None
    return s


def parse_number(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    s = normalize_text(value)
    if s is None:
        return None
    s = s.replace(",", "").replace("kg", "").strip()
    try:
        f = float(s)
    except ValueError:
        return None
    return f if math.isfinite(f) else None


def parse_date(value: object) -> str | None:
    """Return YYYY-MM-DD or None. Accepts date/datetime objects and ISO strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = normalize_text(value)
    if s is None or not _DATE_RE.match(s):
        return None
    try:
        return date.fromisoformat(s[:10]).isoformat()
    except ValueError:
        return None


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    s = normalize_text(value)
    return bool(s) and s.lower() in ("yes", "true", "1", "complete", "y")


def normalize_material_type(value: object) -> str | None:
    s = normalize_text(value)
    if s is None:
        return None
    s = s.upper()
    if s in ("PI", "POST-INDUSTRIAL", "POST INDUSTRIAL", "POST-INDRUSTIAL"):
        return "PI"
    if s in ("PCR", "POST-CONSUMER", "POST CONSUMER"):
        return "PCR"
    return None


def weights_match(a: float | None, b: float | None, tolerance: float) -> bool:
    if a is None or b is None:
        return a is b
    return abs(float(a) - float(b)) <= tolerance


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
