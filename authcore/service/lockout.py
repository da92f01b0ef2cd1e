from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from authcore.storage.models import User


@dataclass(frozen=True)
class LockoutState:
    failed_login_count: int
    locked_until: Optional[datetime] = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


UNLOCKED = LockoutState(failed_login_count=0)


class LockoutPolicy:
    """Per-user ``Unlocked(count) -> Locked(until)`` state machine.

    The policy is pure: it reads the counters off a ``User`` and returns the
    next state, leaving persistence to the caller. An expired lock behaves as
    ``Unlocked(0)``.
    """

    def __init__(
        self, threshold: int = 5, lock_duration: timedelta = timedelta(minutes=15)
    ) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be positive")
        self.threshold = threshold
        self.lock_duration = lock_duration

    def is_locked(self, user: User, now: datetime) -> bool:
        return user.locked_until is not None and now < user.locked_until

    def register_failure(self, user: User, now: datetime) -> LockoutState:
        count = user.failed_login_count
        if user.locked_until is not None and now >= user.locked_until:
            count = 0
        count += 1
        if count >= self.threshold:
            return LockoutState(count, now + self.lock_duration)
        return LockoutState(count)

    def register_success(self) -> LockoutState:
        return UNLOCKED
