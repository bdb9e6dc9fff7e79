from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit


def _host(url: str) -> str:
    return urlsplit(url).hostname or url


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class FeedSource:
    """
    One subscribed feed as supplied by the registry.
    """
    url: str
    label: str = ""
    group: Optional[str] = None
    description: str = ""

    @property
    def display_name(self) -> str:
        return self.label or _host(self.url)


@dataclass(frozen=True)
class Feed:
    """
    Persisted feed with the outcome of its latest fetch attempts.
    `label` is the configured name, `title` the one the feed document announces.
    """
    url: str
    label: str
    title: Optional[str]
    group: Optional[str]
    description: str
    last_success_at: Optional[datetime]
    last_attempt_at: Optional[datetime]
    last_error: Optional[str]

    @property
    def display_name(self) -> str:
        return self.label or self.title or _host(self.url)

    @property
    def has_error(self) -> bool:
        return self.last_error is not None


@dataclass(frozen=True)
class Item:
    """
    Canonical representation of a stored feed entry.
    """
    key: str
    feed_url: str
    title: str
    link: Optional[str]
    guid: Optional[str]
    summary: str
    published_at: Optional[datetime]
    inserted_at: datetime


@dataclass(frozen=True)
class ExtractedContent:
    """
    Result of reading-mode extraction for one item.
    """
    item_key: str
    status: ExtractionStatus
    extracted_at: datetime
    title: Optional[str] = None
    body: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def pending(cls, item_key: str, at: datetime) -> "ExtractedContent":
        return cls(item_key=item_key, status=ExtractionStatus.PENDING, extracted_at=at)

    @classmethod
    def success(cls, item_key: str, at: datetime, body: str, title: Optional[str]) -> "ExtractedContent":
        return cls(
            item_key=item_key,
            status=ExtractionStatus.SUCCESS,
            extracted_at=at,
            title=title,
            body=body,
        )

    @classmethod
    def failed(cls, item_key: str, at: datetime, error: str) -> "ExtractedContent":
        return cls(item_key=item_key, status=ExtractionStatus.FAILED, extracted_at=at, error=error)


@dataclass(frozen=True)
class ReadState:
    item_key: str
    read: bool = False
    starred: bool = False


@dataclass(frozen=True)
class ItemView:
    """
    An item joined with its read state and extraction status, as listed in the UI.
    """
    item: Item
    read: bool
    starred: bool
    extraction_status: Optional[ExtractionStatus]

    @property
    def key(self) -> str:
        return self.item.key


@dataclass(frozen=True)
class FeedSummary:
    feed: Feed
    total: int
    unread: int
