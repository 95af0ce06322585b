"""
keyrotator.utils
----------------
Small helpers for base64 handling, timestamps and log messages.
"""

from __future__ import annotations
import base64, binascii, time
from datetime import datetime, timezone
from typing import Union

from .errors import SerializationError

Timestamp = Union[datetime, int, float]


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    if not isinstance(s, str):
        raise SerializationError(f"couldn't decode base64: expected a string, got {type(s).__name__}")
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as err:
        raise SerializationError(f"couldn't decode base64: {err}") from err


def raw_b64e(b: bytes) -> str:
    # standard alphabet, no padding
    return b64e(b).rstrip("=")


def raw_b64d(s: str) -> bytes:
    if not isinstance(s, str):
        raise SerializationError(f"couldn't decode base64: expected a string, got {type(s).__name__}")
    s = s.strip()
    return b64d(s + "=" * (-len(s) % 4))


def unix_seconds(ts: Timestamp) -> int:
    """Convert a datetime (or a number of Unix seconds) to whole Unix seconds.

    Naive datetimes are taken to be UTC.
    """
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return int(ts.timestamp())
    return int(ts)


def now_ts() -> str:
    # RFC3339 / ISO 8601 in UTC, second precision
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def semicolon_join(*vals: str) -> str:
    """Join the given values with "; ", dropping empty ones."""
    return "; ".join(v for v in vals if v)
