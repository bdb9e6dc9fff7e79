"""
Messages carried on the single ordered channel consumed by the interface loop.

Scheduler tasks only ever communicate with the interface through these.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from core.entities import ExtractionStatus


@dataclass(frozen=True)
class KeyPressed:
    key: str


@dataclass(frozen=True)
class FetchStarted:
    feed_url: str


@dataclass(frozen=True)
class FetchAttemptFailed:
    feed_url: str
    attempt: int
    max_attempts: int
    error: str


@dataclass(frozen=True)
class FeedRefreshed:
    """
    Terminal notification of one fetch cycle. `error` is set when the cycle failed.
    """
    feed_url: str
    new_items: int
    skipped_entries: int
    error: Optional[str]
    finished_at: datetime

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ExtractionFinished:
    item_key: str
    feed_url: str
    status: ExtractionStatus
    error: Optional[str] = None


SchedulerEvent = Union[FetchStarted, FetchAttemptFailed, FeedRefreshed, ExtractionFinished]
Event = Union[KeyPressed, SchedulerEvent]
