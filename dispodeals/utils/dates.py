"""Datetime helpers."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone

import pendulum

from dispodeals.config import DEFAULT_TZ

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def now_in_tz(tz_name: str = DEFAULT_TZ) -> pendulum.DateTime:
    return pendulum.now(pendulum.timezone(tz_name))


def today_in_tz(tz_name: str = DEFAULT_TZ) -> date:
    now = now_in_tz(tz_name)
    return date(now.year, now.month, now.day)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_date(value: str) -> date:
    """Parse a strict YYYY-MM-DD string; raises ValueError otherwise."""
    if not ISO_DATE_RE.match(value or ""):
        raise ValueError(f"Not a YYYY-MM-DD date: {value!r}")
    parsed = pendulum.parse(value, exact=True)
    return date(parsed.year, parsed.month, parsed.day)


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")
