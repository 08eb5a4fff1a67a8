"""
Time helpers shared by the Message Store and the Reply Index.
"""

import math
from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Current time as a naive UTC datetime, truncated to milliseconds.

    Truncation keeps the stored created_at and the Reply Index score
    (epoch milliseconds) describing exactly the same instant.
    """
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_score(created_at: datetime) -> int:
    """
    Convert a creation timestamp into a Reply Index score.

    Args:
        created_at: Naive UTC or timezone-aware datetime

    Returns:
        Milliseconds since the Unix epoch
    """
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return int(created_at.timestamp() * 1000)


def page_count(total: int, size: int) -> int:
    """Number of pages needed to show `total` items `size` at a time."""
    return math.ceil(total / size)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to the naive UTC form stored in the database."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
