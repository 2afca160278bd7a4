"""Retry eligibility for processing jobs and transcription attempts."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

DEFAULT_BACKOFF_MINUTES: tuple[int, ...] = (1, 5, 15)
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RetryDecision:
    """Answer of :func:`should_retry`.

    ``wait_minutes`` is the remaining wait rounded up and is ``0`` whenever
    ``retry`` is true. ``exhausted`` marks a record that must never be retried.
    """

    retry: bool
    wait_minutes: int = 0
    exhausted: bool = False

    def __bool__(self) -> bool:
        return self.retry


def should_retry(
    attempts: int,
    last_attempt_at: datetime | None,
    *,
    now: datetime | None = None,
    table: Sequence[int] = DEFAULT_BACKOFF_MINUTES,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> RetryDecision:
    """Decide whether a record with ``attempts`` failures may run again.

    The first attempt is always allowed. After ``n`` failed attempts the
    record waits ``table[n - 1]`` minutes from ``last_attempt_at``; once
    ``max_attempts`` is reached the record is exhausted. A missing
    ``last_attempt_at`` counts as eligible.
    """

    if attempts <= 0:
        return RetryDecision(retry=True)
    if attempts >= max_attempts:
        return RetryDecision(retry=False, exhausted=True)
    if last_attempt_at is None:
        return RetryDecision(retry=True)

    current = now or datetime.now(timezone.utc)
    index = min(attempts - 1, len(table) - 1)
    required = timedelta(minutes=table[index])
    elapsed = current - last_attempt_at
    if elapsed >= required:
        return RetryDecision(retry=True)

    remaining = (required - elapsed).total_seconds() / 60
    return RetryDecision(retry=False, wait_minutes=max(1, math.ceil(remaining)))


__all__ = ["DEFAULT_BACKOFF_MINUTES", "DEFAULT_MAX_ATTEMPTS", "RetryDecision", "should_retry"]
