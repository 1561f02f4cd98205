"""Utility helpers for the catalog sync service."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in SQLite."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def coerce_bool(value: object) -> bool:
    """Interpret loosely typed flags from query strings and JSON bodies."""

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return bool(value)
    return False
