"""Exponential backoff shared by the task ladder and the outbox ladder.

``attempts`` is the post-increment value: the first failed attempt
(attempts=1) waits ``base``, the second ``2 * base``, then ``4 * base``...
"""

from __future__ import annotations

from datetime import datetime, timedelta


def retry_delay_seconds(base_delay_seconds: int, attempts: int) -> int:
    return base_delay_seconds * 2 ** max(attempts - 1, 0)


def next_retry_at(base_delay_seconds: int, attempts: int, now: datetime) -> datetime:
    return now + timedelta(seconds=retry_delay_seconds(base_delay_seconds, attempts))
