from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, TypeVar

from aifilmmaker.errors import QuotaExceeded

from .store import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUOTA_DATE_KEY = "quota_date"
QUOTA_COUNT_KEY = "quota_count"

RETRYABLE_STATUSES = {429, 503}
RETRYABLE_MARKERS = ("429", "resource_exhausted", "rate limit", "rate-limit", "quota")


@dataclass(frozen=True)
class QuotaInfo:
    daily_count: int
    daily_limit: int
    remaining: int


class RateGate:
    """Daily request quota shared by every stage in the process.

    The gate only rejects; it never delays. The counter resets when the local
    calendar day changes and is persisted through the optional store so a
    restart on the same day resumes the count.
    """

    def __init__(
        self,
        daily_limit: int = 250,
        store: KeyValueStore | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        if daily_limit < 1:
            raise ValueError("daily_limit must be positive")
        self.daily_limit = daily_limit
        self._store = store
        self._today = today
        self._count = 0
        self._day = today().isoformat()
        self._restore()

    def _restore(self) -> None:
        if self._store is None:
            return
        stored_day = self._store.get(QUOTA_DATE_KEY)
        stored_count = self._store.get(QUOTA_COUNT_KEY)
        if stored_day == self._day and stored_count:
            try:
                self._count = max(0, int(stored_count))
            except ValueError:
                logger.warning("Ignoring corrupt quota counter %r", stored_count)
                self._count = 0
        else:
            self._persist()

    def _persist(self) -> None:
        if self._store is None:
            return
        self._store.set(QUOTA_DATE_KEY, self._day)
        self._store.set(QUOTA_COUNT_KEY, str(self._count))

    def _roll_over(self) -> None:
        today = self._today().isoformat()
        if today != self._day:
            logger.info("New quota day %s; resetting request counter", today)
            self._day = today
            self._count = 0

    def try_consume(self) -> None:
        # No await between read and write: atomic for coroutines on one loop.
        self._roll_over()
        if self._count >= self.daily_limit:
            raise QuotaExceeded(self.daily_limit)
        self._count += 1
        self._persist()

    def quota_info(self) -> QuotaInfo:
        self._roll_over()
        return QuotaInfo(
            daily_count=self._count,
            daily_limit=self.daily_limit,
            remaining=max(0, self.daily_limit - self._count),
        )


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, QuotaExceeded):
        return False
    flag = getattr(exc, "retryable", None)
    if flag is not None:
        return bool(flag)
    for attr in ("status", "code", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and value in RETRYABLE_STATUSES:
            return True
    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "request",
) -> T:
    """Run ``operation`` and retry transient provider failures with exponential backoff."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts:
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning(
                "%s hit a transient error (%s); retrying in %.1fs (attempt %d/%d)",
                label,
                exc,
                delay,
                attempt,
                max_attempts,
            )
            await sleep(delay)
            attempt += 1
