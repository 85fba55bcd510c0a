from __future__ import annotations

from datetime import datetime
from typing import Any

from shopledger.time_utils import parse_iso_datetime, to_utc_naive


# Maximum money amount: 9,999,999.99 in major units
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT = 999_999_999


class ValidationError(ValueError):
    """400-level input problem. Raised before any transaction is opened."""


class ConflictError(ValueError):
    """409-level business rule conflict (state machine or invariant violation)."""


class NotFoundError(LookupError):
    """404-level unknown id or code."""


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON input.

    Rejects floats, bools, scientific notation and decimal strings so that
    money never silently passes through a float.
    """
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_int(
    payload: dict,
    field: str,
    *,
    minimum: int | None = None,
    maximum: int | None = MAX_AMOUNT,
) -> int:
    if payload.get(field) is None:
        raise ValidationError(f"{field} is required")
    return optional_int(payload, field, minimum=minimum, maximum=maximum)


def optional_int(
    payload: dict,
    field: str,
    *,
    minimum: int | None = None,
    maximum: int | None = MAX_AMOUNT,
) -> int | None:
    value = payload.get(field)
    if value is None:
        return None
    number = coerce_int(value, field)
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return number


def require_str(payload: dict, field: str, *, max_length: int = 255) -> str:
    value = optional_str(payload, field, max_length=max_length)
    if not value:
        raise ValidationError(f"{field} is required")
    return value


def optional_str(payload: dict, field: str, *, max_length: int = 255) -> str | None:
    value = payload.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return value or None


def optional_bool(payload: dict, field: str, default: bool = False) -> bool:
    value = payload.get(field)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValidationError(f"{field} must be a boolean")


def optional_datetime(payload: dict, field: str) -> datetime | None:
    value = payload.get(field)
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 datetime")
    raise ValidationError(f"{field} must be an ISO-8601 datetime")


def require_choice(payload: dict, field: str, choices) -> str:
    value = require_str(payload, field, max_length=64)
    if value not in choices:
        raise ValidationError(f"{field} must be one of {sorted(choices)}")
    return value


def int_list(payload: dict, field: str) -> list[int]:
    value = payload.get(field)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list")
    return [coerce_int(v, field) for v in value]


def json_object(data: Any) -> dict:
    """Request bodies must be JSON objects."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
