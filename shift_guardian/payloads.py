"""
Wire payload (JSON dict) -> domain record conversion.

Mobile clients send camelCase keys (driverId, radiusMeters, ...); snake_case
is accepted as well. Only shape and type problems are detected here, value
ranges are checked by the engine.
"""
import datetime as dt
import math
from typing import Optional

from shift_guardian.domain import Geofence, LocationPing
from shift_guardian.errors import ValidationError

UTC = dt.timezone.utc

_MISSING = object()


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=UTC)

    if isinstance(v, bool):
        return None

    if isinstance(v, (int, float)):
        # epoch milliseconds, as sent by the mobile app
        if not math.isfinite(v):
            return None
        try:
            return dt.datetime.fromtimestamp(v / 1000.0, tz=UTC)
        except (ValueError, OverflowError, OSError):
            # microsecond or nanosecond epochs land outside the datetime range
            return None

    if isinstance(v, str):
        s = v.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt_obj = dt.datetime.fromisoformat(s)
        except ValueError:
            return None
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=UTC)

    return None


def _get(payload: dict, camel: str, snake: str, default=_MISSING):
    if camel in payload:
        return payload[camel]
    if snake in payload:
        return payload[snake]
    return default


def required_int(payload, camel, snake) -> int:
    v = _get(payload, camel, snake)
    if v is _MISSING or v is None or v == "":
        raise ValidationError(f"missing required field {camel}")
    try:
        return int(v)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{camel} must be an integer, got {v!r}")


def required_float(payload, camel, snake) -> float:
    v = _get(payload, camel, snake)
    if v is _MISSING or v is None or v == "" or isinstance(v, bool):
        raise ValidationError(f"missing required field {camel}")
    try:
        return float(v)
    except (TypeError, ValueError):
        raise ValidationError(f"{camel} must be numeric, got {v!r}")


def _optional_rounded(payload, camel, snake) -> Optional[int]:
    v = _get(payload, camel, snake, None)
    if v is None or v == "":
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        raise ValidationError(f"{camel} must be numeric, got {v!r}")
    if not math.isfinite(f):
        raise ValidationError(f"{camel} must be finite")
    return round(f)


def optional_int(payload, camel, snake) -> Optional[int]:
    v = _get(payload, camel, snake, None)
    if v is None or v == "":
        return None
    return required_int(payload, camel, snake)


def ping_from_payload(payload: dict, default_timestamp: Optional[dt.datetime] = None) -> LocationPing:
    """
    Build a LocationPing from a submitted dict. A missing timestamp falls back
    to default_timestamp (live pings are stamped on receipt); batch items
    pass no default and must carry their own.
    """
    if not isinstance(payload, dict):
        raise ValidationError("location must be an object")

    raw_ts = _get(payload, "timestamp", "timestamp", None)
    if raw_ts is None:
        if default_timestamp is None:
            raise ValidationError("missing required field timestamp")
        timestamp = default_timestamp
    else:
        timestamp = to_dt(raw_ts)
        if timestamp is None:
            raise ValidationError(f"unreadable timestamp {raw_ts!r}")

    return LocationPing(
        driver_id=required_int(payload, "driverId", "driver_id"),
        company_id=required_int(payload, "companyId", "company_id"),
        latitude=required_float(payload, "latitude", "latitude"),
        longitude=required_float(payload, "longitude", "longitude"),
        speed=_optional_rounded(payload, "speed", "speed") or 0,
        heading=_optional_rounded(payload, "heading", "heading"),
        accuracy=_optional_rounded(payload, "accuracy", "accuracy"),
        timestamp=timestamp,
    )


def geofence_from_payload(payload: dict) -> Geofence:
    name = _get(payload, "name", "name", None)
    if not name or not str(name).strip():
        raise ValidationError("missing required field name")

    radius = _optional_rounded(payload, "radiusMeters", "radius_meters")
    return Geofence(
        company_id=required_int(payload, "companyId", "company_id"),
        name=str(name).strip(),
        latitude=required_float(payload, "latitude", "latitude"),
        longitude=required_float(payload, "longitude", "longitude"),
        radius_meters=radius,  # None -> company default, filled in by the engine
        is_active=bool(_get(payload, "isActive", "is_active", True)),
        is_depot=bool(_get(payload, "isDepot", "is_depot", True)),
    )


def geofence_changes(payload: dict) -> dict:
    """Fields present in a PATCH body, keyed by Geofence attribute name."""
    changes = {}
    if _get(payload, "name", "name") is not _MISSING:
        name = payload["name"]
        if not name or not str(name).strip():
            raise ValidationError("name cannot be empty")
        changes["name"] = str(name).strip()
    for camel, snake in (("latitude", "latitude"), ("longitude", "longitude")):
        if _get(payload, camel, snake) is not _MISSING:
            changes[snake] = required_float(payload, camel, snake)
    if _get(payload, "radiusMeters", "radius_meters") is not _MISSING:
        radius = _optional_rounded(payload, "radiusMeters", "radius_meters")
        if radius is None:
            raise ValidationError("radiusMeters cannot be empty")
        changes["radius_meters"] = radius
    for camel, snake in (("isActive", "is_active"), ("isDepot", "is_depot")):
        v = _get(payload, camel, snake)
        if v is not _MISSING:
            changes[snake] = bool(v)
    return changes
