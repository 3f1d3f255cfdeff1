"""Coercion of raw feed values into custom field datatypes."""

from __future__ import annotations

import json
import math
import re
from typing import Any

import pendulum

TRUE_VALUES = frozenset({"1", "true", "yes", "y"})
FALSE_VALUES = frozenset({"0", "false", "no", "n"})
ABSENT_TOKENS = frozenset({"", "null", "undefined"})

NUMBER_STRIP_RE = re.compile(r"[^\d.\-]")


def is_absent(value: Any) -> bool:
    """Return True when a source value should not touch the stored field."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in ABSENT_TOKENS
    return False


def coerce(value: Any, datatype: str) -> Any:
    if value is None:
        return None
    try:
        handler = _HANDLERS.get(datatype, _to_text)
        return handler(value)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _to_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = NUMBER_STRIP_RE.sub("", str(value).replace(",", "."))
        if not cleaned:
            return None
        number = float(cleaned)
    if not math.isfinite(number):
        return None
    if number.is_integer():
        return int(number)
    return number


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def _to_date(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        moment = pendulum.from_timestamp(value / 1000, tz="UTC")
    else:
        parsed = pendulum.parse(str(value).strip(), strict=False)
        if isinstance(parsed, pendulum.DateTime):
            moment = parsed.in_timezone("UTC")
        elif isinstance(parsed, pendulum.Date):
            moment = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC")
        else:
            return None
    return moment.isoformat()


def _to_json(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(str(value))
    except json.JSONDecodeError:
        return None


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


_HANDLERS = {
    "number": _to_number,
    "bool": _to_bool,
    "date": _to_date,
    "json": _to_json,
    "text": _to_text,
}
