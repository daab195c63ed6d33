"""
Utility functions for the Loupe agent.

Includes id generation, the Loupe timestamp format and JSON helpers.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Optional


def generate_id() -> str:
    """Generate a UUID string for keys and agent session ids."""
    return str(uuid.uuid4())


def _pad(num: float) -> str:
    return f"{abs(int(num)):02d}"


def create_timestamp(now: Optional[datetime] = None) -> str:
    """
    Format local time as ``YYYY-MM-DDTHH:mm:ss.SSS+HH:MM``.

    Args:
        now: Aware or naive datetime; naive values are treated as local time.

    Returns:
        Timestamp whose offset is the local-to-UTC difference in minutes.
    """
    now = (now or datetime.now()).astimezone()
    offset = now.utcoffset()
    tzo = int(offset.total_seconds() // 60) if offset is not None else 0
    sign = "+" if tzo >= 0 else "-"

    return (
        f"{now.year:04d}-{now.month:02d}-{now.day:02d}"
        f"T{now.hour:02d}:{now.minute:02d}:{now.second:02d}"
        f".{now.microsecond // 1000:03d}"
        f"{sign}{_pad(abs(tzo) // 60)}:{_pad(abs(tzo) % 60)}"
    )


def compact_json(value: Any) -> str:
    """Serialize like JSON.stringify: no whitespace, unknown types as str."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def strip_trailing_slash(origin: str) -> str:
    return origin[:-1] if origin.endswith("/") else origin
