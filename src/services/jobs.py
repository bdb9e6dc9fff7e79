"""
FetchJob - per-feed retry/backoff state for one fetch cycle.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


class JobState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}


@dataclass
class FetchJob:
    """
    Transient unit of work for one feed. Transitions:

        PENDING -> FETCHING -> SUCCEEDED
                   FETCHING -> BACKING_OFF -> FETCHING ...   (attempt < max_attempts)
                   FETCHING -> FAILED                         (attempt == max_attempts)
        any non-terminal -> CANCELLED
    """
    feed_url: str
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    attempt: int = 0
    state: JobState = JobState.PENDING
    last_error: Optional[str] = None
    next_eligible_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def backoff_delay(self) -> float:
        """Delay before the next attempt: base * 2^(attempt-1), capped."""
        if self.attempt <= 0:
            return 0.0
        return min(self.base_delay * (2 ** (self.attempt - 1)), self.max_delay)

    def begin_attempt(self) -> int:
        if self.state not in (JobState.PENDING, JobState.BACKING_OFF):
            raise RuntimeError(f"cannot start an attempt from state {self.state.value}")
        self.attempt += 1
        self.state = JobState.FETCHING
        self.next_eligible_at = None
        return self.attempt

    def record_failure(self, error: str, now: Optional[datetime] = None) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if another attempt is allowed (state BACKING_OFF), False once the
            attempt ceiling is reached (state FAILED)
        """
        if self.state != JobState.FETCHING:
            raise RuntimeError(f"no attempt in progress (state {self.state.value})")
        self.last_error = error
        if self.attempt >= self.max_attempts:
            self.state = JobState.FAILED
            return False
        now = now or datetime.now(timezone.utc)
        self.state = JobState.BACKING_OFF
        self.next_eligible_at = now + timedelta(seconds=self.backoff_delay())
        return True

    def record_success(self) -> None:
        if self.state != JobState.FETCHING:
            raise RuntimeError(f"no attempt in progress (state {self.state.value})")
        self.state = JobState.SUCCEEDED
        self.last_error = None

    def fail(self, error: str) -> None:
        """Terminal failure that retrying cannot fix (unparseable feed, store error)."""
        self.last_error = error
        self.state = JobState.FAILED

    def cancel(self) -> None:
        if not self.done:
            self.state = JobState.CANCELLED
