"""Provide utility helpers for timestamps and slugs."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional


_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def _now_iso() -> str:
    return _format_iso(datetime.now(timezone.utc))


def _format_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(value: Optional[Any]) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # If a naive timestamp slips in, assume UTC to avoid crashes.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _iso_to_ms(value: Optional[Any]) -> int:
    dt = _parse_iso(value)
    if dt is None:
        return 0
    return int(dt.timestamp() * 1000)


def _date_prefix(value: str) -> str:
    """Return the ``YYYY-MM-DD`` part of an ISO timestamp."""
    dt = _parse_iso(value)
    if dt is None:
        return value[:10]
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d")


def _slugify(title: str) -> str:
    slug = _SLUG_STRIP_RE.sub("-", title.strip().lower()).strip("-")
    return slug or "task"
