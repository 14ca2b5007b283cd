"""Shared helpers for ORM models."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now, millisecond precision (the precision stored everywhere)."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)
