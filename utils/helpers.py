"""Small shared helpers for timestamps and reference generation"""

import uuid
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every table column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_aware_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def generate_reference(prefix: str) -> str:
    """Generate an external reference such as ESC-3F9A1C2B7D4E"""
    return f"{prefix.upper()}-{uuid.uuid4().hex[:12].upper()}"
