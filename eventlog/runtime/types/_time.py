"""Time utilities for the types package.

Store timestamps are UTC ISO-8601 text with microsecond precision and a Z
suffix, so string order in the store equals chronological order.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

STORE_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

TimestampLike = Union[datetime, str]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_to_datetime(iso_str: Optional[str]) -> Optional[datetime]:
    """Parse ISO format string to an aware UTC datetime.

    Naive values are taken to be UTC.
    """
    if iso_str is None:
        return None
    value = iso_str.strip()
    # Remove Z suffix if present for parsing
    if value.endswith("Z") or value.endswith("z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_store_ts(value: Optional[TimestampLike]) -> Optional[str]:
    """Normalize a datetime or ISO string into the store's timestamp text.

    Raises:
        ValueError: If a string value is not a parseable ISO timestamp.
    """
    if value is None:
        return None
    if isinstance(value, str):
        dt = _iso_to_datetime(value)
    else:
        dt = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(STORE_TS_FORMAT)
