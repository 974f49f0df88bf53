"""Cooldown between locally logged drinks.

The last admission time lives in this device's own storage and is never
sent to the peer, so phone and watch each enforce their own cooldown.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..replica import local_now
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

LAST_ADMITTED_KEY = "last_entry_time"
DEFAULT_MINIMUM_INTERVAL = timedelta(seconds=120)
RATE_LIMIT_MESSAGE = "Please wait before adding another drink."


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of a rate limit check. A denial is not an error."""

    allowed: bool
    message: str | None = None


class RateLimiter:
    """Gate that denies a new entry while the previous one is too recent."""

    def __init__(
        self,
        kv: KeyValueStore,
        minimum_interval: timedelta = DEFAULT_MINIMUM_INTERVAL,
    ):
        self._kv = kv
        self.minimum_interval = minimum_interval

    @property
    def last_admitted(self) -> datetime | None:
        return self._kv.get_datetime(LAST_ADMITTED_KEY)

    def _elapsed(self, now: datetime) -> timedelta | None:
        last = self.last_admitted
        if last is None:
            return None
        # Mixed naive/aware values can come from older stored data
        if (last.tzinfo is None) != (now.tzinfo is None):
            last = last.astimezone() if last.tzinfo is None else last
            now = now.astimezone() if now.tzinfo is None else now
        return now - last

    def can_admit(self, now: datetime | None = None) -> AdmissionDecision:
        """Check whether a new entry may be logged now.

        A clock that moved backwards counts as too recent.
        """
        now = now or local_now()
        elapsed = self._elapsed(now)
        if elapsed is not None and elapsed < self.minimum_interval:
            logger.debug(f"Admission denied, {elapsed.total_seconds():.0f}s since last entry")
            return AdmissionDecision(allowed=False, message=RATE_LIMIT_MESSAGE)
        return AdmissionDecision(allowed=True)

    def record_admission(self, now: datetime | None = None) -> None:
        """Store the time of an entry that was actually persisted."""
        self._kv.set_datetime(LAST_ADMITTED_KEY, now or local_now())

    def seconds_remaining(self, now: datetime | None = None) -> float:
        """Seconds until the next entry will be admitted, 0 if allowed now."""
        now = now or local_now()
        elapsed = self._elapsed(now)
        if elapsed is None:
            return 0.0
        remaining = (self.minimum_interval - elapsed).total_seconds()
        return max(0.0, remaining)
