"""
Per (user, challenge) throttle for flag attempts.

State lives in process memory: a restart forgets it and several instances
each keep their own. The unique correct-submission index is what protects
scores; this only slows down brute forcing.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, List, Optional

from .models import RateLimitDecision

logger = logging.getLogger(__name__)


@dataclass
class AttemptRecord:
    attempts: List[float] = field(default_factory=list)
    last_fail_time: Optional[float] = None


class SubmissionRateLimiter:
    """Sliding window of failed attempts followed by a cooldown."""

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 60,
        cooldown_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._records: Dict[Hashable, AttemptRecord] = {}

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.monotonic):
        return cls(
            max_attempts=config.get("rate_limit", "max_attempts"),
            window_seconds=config.get("rate_limit", "window_seconds"),
            cooldown_seconds=config.get("rate_limit", "cooldown_seconds"),
            clock=clock,
        )

    @staticmethod
    def key_for(user_id: int, challenge_id: int) -> str:
        return f"{user_id}:{challenge_id}"

    def check_allowed(
        self,
        key: Hashable,
    ) -> RateLimitDecision:
        """
        Decide whether another attempt may go through.

        The cooldown clock starts on the check that finds the window full,
        not on the failure that filled it.

        @param key: Limiter key, see key_for
        @return: Decision with remaining cooldown seconds when denied
        """
        now = self._clock()
        record = self._records.setdefault(key, AttemptRecord())

        if record.last_fail_time is not None:
            elapsed = now - record.last_fail_time
            if elapsed < self.cooldown_seconds:
                return RateLimitDecision.deny(self.cooldown_seconds - elapsed)

        record.attempts = [t for t in record.attempts if now - t < self.window_seconds]

        if len(record.attempts) >= self.max_attempts:
            record.last_fail_time = now
            logger.info("Flag attempts throttled for %s", key)
            return RateLimitDecision.deny(self.cooldown_seconds)

        return RateLimitDecision(allowed=True)

    def record_failure(
        self,
        key: Hashable,
    ) -> None:
        """Remember a failed attempt for ``key``."""
        record = self._records.setdefault(key, AttemptRecord())
        record.attempts.append(self._clock())

    def clear(
        self,
        key: Hashable,
    ) -> None:
        """Forget everything about ``key`` (after a correct flag)."""
        self._records.pop(key, None)

    def sweep(self) -> int:
        """
        Drop keys that no longer influence any decision.

        @return: Number of keys removed
        """
        now = self._clock()
        stale = []

        for key, record in self._records.items():
            cooling = (
                record.last_fail_time is not None
                and now - record.last_fail_time < self.cooldown_seconds
            )
            recent = any(now - t < self.window_seconds for t in record.attempts)
            if not cooling and not recent:
                stale.append(key)

        for key in stale:
            del self._records[key]

        if stale:
            logger.debug("Swept %d idle rate limiter keys", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._records
