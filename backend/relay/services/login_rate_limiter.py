"""Admin login throttling.

Failed admin Basic-auth attempts are counted per client address; after
max_attempts failures inside the window the address is locked out, and
each further lockout doubles (up to max_lockout_seconds).
"""
import time
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from threading import Lock

logger = logging.getLogger(__name__)


@dataclass
class AttemptRecord:
    """Failed attempts for one client address."""
    attempts: int = 0
    first_attempt_at: float = 0.0
    locked_until: float = 0.0
    last_attempt_at: float = 0.0


class LoginRateLimiter:
    """Sliding-window limiter with progressive lockout.

    Lockout n lasts lockout_seconds * 2**(n-1), capped at max_lockout_seconds.
    Records are created only when an attempt is recorded, never on checks,
    so probing with random identifiers does not grow memory.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 300,
        lockout_seconds: int = 300,
        max_lockout_seconds: int = 3600,
        clock=time.time,
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.max_lockout_seconds = max_lockout_seconds
        self._clock = clock

        self._records: Dict[str, AttemptRecord] = {}
        self._lockout_counts: Dict[str, int] = {}
        self._lock = Lock()

    def check_rate_limit(self, identifier: str) -> Tuple[bool, Optional[int]]:
        """Return (is_allowed, retry_after_seconds) for an identifier."""
        now = self._clock()

        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                return True, None

            if record.locked_until > now:
                retry_after = max(1, int(record.locked_until - now))
                logger.warning(f"Admin login blocked for {identifier}: locked for {retry_after}s")
                return False, retry_after

            if record.first_attempt_at > 0 and now > record.first_attempt_at + self.window_seconds:
                record.attempts = 0
                record.first_attempt_at = 0.0

            return True, None

    def record_attempt(self, identifier: str, success: bool) -> None:
        now = self._clock()

        with self._lock:
            if success:
                record = self._records.get(identifier)
                if record is not None:
                    # Keep the lockout count so repeat offenders stay escalated
                    record.attempts = 0
                    record.first_attempt_at = 0.0
                    record.locked_until = 0.0
                return

            record = self._records.setdefault(identifier, AttemptRecord())
            if record.first_attempt_at == 0:
                record.first_attempt_at = now
            record.attempts += 1
            record.last_attempt_at = now

            logger.info(
                f"Failed admin login for {identifier}: "
                f"{record.attempts}/{self.max_attempts}"
            )

            if record.attempts >= self.max_attempts:
                count = self._lockout_counts.get(identifier, 0) + 1
                self._lockout_counts[identifier] = count
                lockout_duration = min(
                    self.lockout_seconds * (2 ** (count - 1)),
                    self.max_lockout_seconds,
                )
                record.locked_until = now + lockout_duration
                record.attempts = 0
                record.first_attempt_at = 0.0

                logger.warning(
                    f"Admin login for {identifier} locked out for {lockout_duration}s "
                    f"(lockout #{count})"
                )

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)
            self._lockout_counts.pop(identifier, None)

    def cleanup_expired(self) -> int:
        """Drop records idle for two windows and no longer locked."""
        now = self._clock()
        threshold = now - (self.window_seconds * 2)

        with self._lock:
            expired = [
                k for k, v in self._records.items()
                if v.last_attempt_at < threshold and v.locked_until < now
            ]
            for key in expired:
                del self._records[key]
                self._lockout_counts.pop(key, None)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired rate limit records")
        return len(expired)
