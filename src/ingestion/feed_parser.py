"""
Feed document parsing (RSS 0.9x/1.0/2.0 and Atom) via feedparser
"""
import calendar
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import feedparser
from pydantic import ValidationError

from core.errors import FeedParseError
from ingestion.base import ParsedEntry, ParsedFeed
from processing.cleaner import html_to_text, truncate_text

logger = logging.getLogger(__name__)

SUMMARY_MAX_LENGTH = 500
UNTITLED = "(untitled)"


def _entry_time(entry: Any) -> Optional[datetime]:
    for field in ("published_parsed", "updated_parsed", "created_parsed"):
        value = entry.get(field)
        if value:
            # feedparser normalizes parsed dates to UTC struct_time
            return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    return None


def _entry_summary(entry: Any) -> str:
    raw = entry.get("summary") or ""
    if not raw and entry.get("content"):
        raw = entry["content"][0].get("value", "")
    return truncate_text(html_to_text(raw), SUMMARY_MAX_LENGTH)


def _normalize_entry(entry: Any) -> ParsedEntry:
    guid = (entry.get("id") or "").strip() or None
    link = (entry.get("link") or "").strip() or None
    if guid is None and link is None:
        raise ValueError("entry has no guid and no link")

    title = html_to_text(entry.get("title") or "") or link or UNTITLED

    return ParsedEntry(
        title=title,
        link=link,
        guid=guid,
        published_at=_entry_time(entry),
        summary=_entry_summary(entry),
    )


def _normalize_entries(entries: List[Any]) -> Tuple[List[ParsedEntry], int]:
    items: List[ParsedEntry] = []
    skipped = 0
    for index, entry in enumerate(entries):
        try:
            items.append(_normalize_entry(entry))
        except (ValueError, TypeError, KeyError, ValidationError) as e:
            skipped += 1
            logger.debug(f"Skipping entry #{index}: {e}")
    return items, skipped


def parse_feed(body: bytes, source_url: str = "") -> ParsedFeed:
    """
    Decode a feed document into normalized entries, preserving document order.

    Malformed individual entries are skipped and counted, not fatal.

    Raises:
        FeedParseError: if the body is not a recognizable syndication document
    """
    if not body or not body.strip():
        raise FeedParseError("empty feed document")

    parsed = feedparser.parse(body)

    if not parsed.get("version") and not parsed.entries:
        reason = parsed.get("bozo_exception") or "not a syndication document"
        raise FeedParseError(f"cannot parse feed {source_url}: {reason}")

    if parsed.get("bozo"):
        logger.warning(
            f"Feed {source_url} is not well-formed, continuing with what parsed: "
            f"{parsed.get('bozo_exception')}"
        )

    entries, skipped = _normalize_entries(parsed.entries)
    if skipped:
        logger.warning(f"Skipped {skipped} malformed entries in {source_url}")

    channel = parsed.get("feed", {})
    return ParsedFeed(
        title=html_to_text(channel.get("title") or "") or None,
        description=html_to_text(channel.get("subtitle") or channel.get("description") or "") or None,
        entries=entries,
        skipped=skipped,
    )
