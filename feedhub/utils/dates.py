"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone

import pendulum

DEFAULT_TZ = "UTC"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | str | None) -> datetime | None:
    """Normalize a stored timestamp (driver datetime or ISO text) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        parsed = pendulum.parse(value, strict=False)
        return datetime.fromtimestamp(parsed.timestamp(), tz=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(started: datetime, finished: datetime | None = None) -> int:
    finished = finished or utc_now()
    return int((finished - started).total_seconds() * 1000)
