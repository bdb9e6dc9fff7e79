"""
Interface Controller - the single owner of screen state.

Keys and scheduler notifications are applied here; neither re-renders directly.
They mark the controller dirty (and stale when stored data changed), and the
interface loop calls `sync()` then `frame()` once per batch of events.
"""
import dataclasses
import logging
import textwrap
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from core.entities import ExtractedContent, ExtractionStatus, FeedSummary, ItemView
from core.errors import StoreError
from core.events import (
    Event,
    ExtractionFinished,
    FeedRefreshed,
    FetchAttemptFailed,
    FetchStarted,
    KeyPressed,
)
from ingestion.registry import FeedRegistry
from services.scheduler import Scheduler
from services.store import Store
from tui.frame import Frame, Popup, Row

logger = logging.getLogger(__name__)

ALL_ITEMS_LABEL = "All items"
CHROME_LINES = 4

HINTS = {
    "feed_list": "j/k move  l open  r refresh  R refresh all  ? help  q quit",
    "item_list": "j/k move  l read  m read/unread  s star  u unread  S starred  A mark all read  r refresh  h back",
    "reader": "j/k scroll  space/b page  n/p next/prev  m read/unread  s star  h back",
}

HELP_LINES = (
    "Feeds:   j/k or arrows move, l/Enter open a feed or group, r refresh it,",
    "         R refresh all",
    "Items:   l/Enter read, m toggle read, s toggle star, u unread only,",
    "         S starred only, A mark all read, h/Esc back",
    "Reader:  j/k scroll, space/PgDn page down, b/PgUp page up, g/G top/bottom,",
    "         n/p next/previous item, m toggle read, s toggle star, h/Esc back",
    "Anywhere: q quit, ? close this help",
)


class Screen(str, Enum):
    FEED_LIST = "feed_list"
    ITEM_LIST = "item_list"
    READER = "reader"


@dataclass
class FeedBadge:
    """In-memory fetch status for a feed, fed by scheduler notifications."""
    refreshing: bool = False
    error: Optional[str] = None
    new_items: int = 0
    failed_attempts: int = 0


class EntryKind(str, Enum):
    ALL = "all"
    GROUP = "group"
    FEED = "feed"


def _feed_list_entries(registry: FeedRegistry) -> List[Tuple[EntryKind, Optional[str]]]:
    """All items first, then each group followed by its feeds, then ungrouped feeds."""
    entries: List[Tuple[EntryKind, Optional[str]]] = [(EntryKind.ALL, None)]
    groups: List[str] = []
    for source in registry:
        if source.group and source.group not in groups:
            groups.append(source.group)
    for group in groups:
        entries.append((EntryKind.GROUP, group))
        entries.extend((EntryKind.FEED, s.url) for s in registry if s.group == group)
    entries.extend((EntryKind.FEED, s.url) for s in registry if not s.group)
    return entries


def _window(count: int, cursor: int, visible: int) -> Tuple[int, int]:
    if count <= visible:
        return 0, count
    start = max(0, min(cursor - visible // 2, count - visible))
    return start, start + visible


def _format_time(view: ItemView) -> str:
    stamp = view.item.published_at or view.item.inserted_at
    if stamp is None:
        return ""
    return stamp.astimezone().strftime("%Y-%m-%d %H:%M")


class Controller:
    def __init__(
        self,
        store: Store,
        scheduler: Scheduler,
        registry: FeedRegistry,
        *,
        confirm_quit: bool = True,
        mark_read_on_open: bool = True,
    ):
        self.store = store
        self.scheduler = scheduler
        self.registry = registry
        self.confirm_quit = confirm_quit
        self.mark_read_on_open = mark_read_on_open

        self.screen = Screen.FEED_LIST
        self.should_quit = False
        self.dirty = True
        self.width = 80
        self.height = 24

        self.entries = _feed_list_entries(registry)
        self.feed_cursor = 0
        self.current_feed: Optional[str] = None
        self.current_group: Optional[str] = None
        self.items: List[ItemView] = []
        self.item_cursor = 0
        self.unread_only = False
        self.starred_only = False

        self.reader_item: Optional[ItemView] = None
        self.reader_content: Optional[ExtractedContent] = None
        self.reader_scroll = 0

        self.summaries: Dict[str, FeedSummary] = {}
        self.badges: Dict[str, FeedBadge] = {url: FeedBadge() for url in registry.urls}
        self.popup: Optional[str] = None
        self.status_message = ""
        self._stale = True

    # ------------------------------------------------------------ data sync

    def resize(self, width: int, height: int) -> None:
        if (width, height) != (self.width, self.height):
            self.width, self.height = width, height
            self.dirty = True

    @property
    def page_size(self) -> int:
        return max(1, self.height - CHROME_LINES)

    async def sync(self) -> None:
        """Reload whatever the current screen shows from the store, if it changed."""
        if not self._stale:
            return
        self._stale = False
        try:
            self.summaries = {s.feed.url: s for s in await self.store.feed_summaries()}
            if self.screen in (Screen.ITEM_LIST, Screen.READER):
                await self._reload_items()
            if self.screen == Screen.READER and self.reader_item is not None:
                self.reader_content = await self.store.get_extracted_content(self.reader_item.key)
        except StoreError as e:
            logger.error(f"Store read failed: {e}")
            self.status_message = f"Store error: {e}"
        self.dirty = True

    async def _reload_items(self) -> None:
        selected = self.items[self.item_cursor].key if self.items else None
        self.items = await self.store.query_items(
            self.current_feed,
            group=self.current_group,
            unread_only=self.unread_only,
            starred_only=self.starred_only,
        )
        keys = [view.key for view in self.items]
        pinned = self.reader_item if self.screen == Screen.READER else None
        if pinned is not None and pinned.key not in keys:
            # the open item keeps its place until the reader is left
            position = min(self.item_cursor, len(self.items))
            self.items.insert(position, pinned)
            keys.insert(position, pinned.key)
        if selected in keys:
            self.item_cursor = keys.index(selected)
        else:
            self.item_cursor = min(self.item_cursor, max(0, len(self.items) - 1))
        if self.reader_item is not None and self.reader_item.key in keys:
            self.reader_item = self.items[keys.index(self.reader_item.key)]

    # ------------------------------------------------------------ dispatch

    async def handle(self, event: Event) -> None:
        if isinstance(event, KeyPressed):
            await self.handle_key(event.key)
        else:
            self.on_notification(event)

    def on_notification(self, event) -> None:
        """Merge a scheduler notification into badges; never switches screens."""
        if isinstance(event, FetchStarted):
            badge = self.badges.setdefault(event.feed_url, FeedBadge())
            badge.refreshing = True
            badge.failed_attempts = 0
        elif isinstance(event, FetchAttemptFailed):
            badge = self.badges.setdefault(event.feed_url, FeedBadge())
            badge.failed_attempts = event.attempt
            self.status_message = (
                f"{self._feed_name(event.feed_url)}: attempt {event.attempt}/{event.max_attempts} failed"
            )
        elif isinstance(event, FeedRefreshed):
            badge = self.badges.setdefault(event.feed_url, FeedBadge())
            badge.refreshing = False
            badge.error = event.error
            badge.new_items += event.new_items
            if event.ok:
                self.status_message = f"{self._feed_name(event.feed_url)}: {event.new_items} new"
            else:
                self.status_message = f"{self._feed_name(event.feed_url)}: last fetch failed"
            self._stale = True
        elif isinstance(event, ExtractionFinished):
            if self.reader_item is not None and self.reader_item.key == event.item_key:
                self._stale = True
            elif self.screen == Screen.ITEM_LIST:
                self._stale = True
        self.dirty = True

    async def handle_key(self, key: str) -> None:
        self.dirty = True
        if key == "QUIT":
            self.should_quit = True
            return

        if self.popup == "quit":
            if key in ("y", "Y"):
                self.should_quit = True
            elif key in ("n", "N", "ESC", "q"):
                self.popup = None
            return
        if self.popup == "help":
            self.popup = None
            return

        if key == "q":
            if self.confirm_quit:
                self.popup = "quit"
            else:
                self.should_quit = True
            return
        if key == "?":
            self.popup = "help"
            return

        if self.screen == Screen.FEED_LIST:
            await self._feed_list_key(key)
        elif self.screen == Screen.ITEM_LIST:
            await self._item_list_key(key)
        else:
            await self._reader_key(key)

    # ------------------------------------------------------------ feed list

    def _selected_entry(self) -> Tuple[EntryKind, Optional[str]]:
        return self.entries[self.feed_cursor]

    def _group_urls(self, group: str) -> List[str]:
        return [s.url for s in self.registry if s.group == group]

    def _feed_name(self, url: str) -> str:
        summary = self.summaries.get(url)
        if summary is not None:
            return summary.feed.display_name
        source = self.registry.get(url)
        return source.display_name if source is not None else url

    async def _feed_list_key(self, key: str) -> None:
        last = len(self.entries) - 1
        kind, value = self._selected_entry()
        if key in ("j", "DOWN"):
            self.feed_cursor = min(self.feed_cursor + 1, last)
        elif key in ("k", "UP"):
            self.feed_cursor = max(self.feed_cursor - 1, 0)
        elif key == "g":
            self.feed_cursor = 0
        elif key == "G":
            self.feed_cursor = last
        elif key in ("l", "ENTER", "RIGHT"):
            if kind == EntryKind.GROUP:
                await self._open_item_list(group=value)
            else:
                await self._open_item_list(feed_url=value)
        elif key == "r":
            if kind == EntryKind.GROUP:
                self._refresh(self._group_urls(value))
            else:
                self._refresh(None if value is None else [value])
        elif key == "R":
            self._refresh(None)

    def _refresh(self, feed_urls: Optional[List[str]]) -> None:
        scheduled = self.scheduler.trigger(feed_urls)
        if scheduled:
            self.status_message = f"Refreshing {len(scheduled)} feed(s)"
        else:
            self.status_message = "Refresh already in progress"

    async def _open_item_list(self, feed_url: Optional[str] = None, group: Optional[str] = None) -> None:
        self.current_feed = feed_url
        self.current_group = group
        self.screen = Screen.ITEM_LIST
        self.items = []
        self.item_cursor = 0
        if feed_url is not None:
            opened = [feed_url]
        elif group is not None:
            opened = self._group_urls(group)
        else:
            opened = self.registry.urls
        for url in opened:
            if url in self.badges:
                self.badges[url].new_items = 0
        self._stale = True
        await self.sync()

    # ------------------------------------------------------------ item list

    async def _item_list_key(self, key: str) -> None:
        last = max(0, len(self.items) - 1)
        if key in ("j", "DOWN"):
            self.item_cursor = min(self.item_cursor + 1, last)
        elif key in ("k", "UP"):
            self.item_cursor = max(self.item_cursor - 1, 0)
        elif key == "g":
            self.item_cursor = 0
        elif key == "G":
            self.item_cursor = last
        elif key in ("l", "ENTER", "RIGHT"):
            if self.items:
                await self._open_reader(self.item_cursor)
        elif key in ("h", "ESC", "BACKSPACE", "LEFT"):
            self.screen = Screen.FEED_LIST
            self._stale = True
        elif key == "m" and self.items:
            view = self.items[self.item_cursor]
            await self._set_read_state(view, read=not view.read, starred=view.starred)
        elif key == "s" and self.items:
            view = self.items[self.item_cursor]
            await self._set_read_state(view, read=view.read, starred=not view.starred)
        elif key == "u":
            self.unread_only = not self.unread_only
            self.status_message = "Showing unread only" if self.unread_only else "Showing all items"
            self._stale = True
        elif key == "S":
            self.starred_only = not self.starred_only
            self.status_message = "Showing starred only" if self.starred_only else "Showing all items"
            self._stale = True
        elif key == "A":
            await self._mark_all_read()
        elif key == "r":
            if self.current_group is not None:
                self._refresh(self._group_urls(self.current_group))
            else:
                self._refresh(None if self.current_feed is None else [self.current_feed])

    async def _mark_all_read(self) -> None:
        try:
            count = await self.store.mark_all_read(self.current_feed, group=self.current_group)
        except StoreError as e:
            self.status_message = f"Could not mark read: {e}"
            return
        self.status_message = f"Marked {count} item(s) read"
        self._stale = True

    async def _set_read_state(self, view: ItemView, read: bool, starred: bool) -> None:
        try:
            await self.store.set_read_state(view.key, read, starred)
        except StoreError as e:
            logger.error(f"Could not update read state: {e}", extra={"item": view.key})
            self.status_message = f"Could not update item: {e}"
            return

        updated = dataclasses.replace(view, read=read, starred=starred)
        self.items = [updated if v.key == view.key else v for v in self.items]
        if self.reader_item is not None and self.reader_item.key == view.key:
            self.reader_item = updated
        summary = self.summaries.get(view.item.feed_url)
        if summary is not None and read != view.read:
            delta = -1 if read else 1
            self.summaries[view.item.feed_url] = dataclasses.replace(
                summary, unread=max(0, summary.unread + delta)
            )

    # ------------------------------------------------------------ reader

    async def _open_reader(self, index: int) -> None:
        view = self.items[index]
        self.item_cursor = index
        self.reader_item = view
        self.reader_scroll = 0
        self.screen = Screen.READER

        try:
            content = await self.store.get_extracted_content(view.key)
        except StoreError as e:
            self.status_message = f"Store error: {e}"
            content = None

        # a stored success or failure is final; pending without a running task was interrupted
        needs_extraction = content is None or (
            content.status == ExtractionStatus.PENDING and not self.scheduler.is_extracting(view.key)
        )
        if needs_extraction and self.scheduler.request_extraction(view.item) is not None:
            content = ExtractedContent.pending(view.key, datetime.now(timezone.utc))
        self.reader_content = content

        if self.mark_read_on_open and not view.read:
            await self._set_read_state(view, read=True, starred=view.starred)

    def _reader_lines(self) -> List[str]:
        view = self.reader_item
        if view is None:
            return []
        width = max(20, self.width - 4)
        item = view.item

        lines: List[str] = []
        lines.extend(textwrap.wrap(item.title, width) or [item.title])
        meta = " · ".join(p for p in (self._feed_name(item.feed_url), _format_time(view)) if p)
        lines.append(meta)
        if item.link:
            lines.append(item.link)
        lines.append("")

        content = self.reader_content
        if content is None or content.status == ExtractionStatus.PENDING:
            text = "Extracting article…\n\n" + item.summary
        elif content.status == ExtractionStatus.FAILED:
            text = f"Content unavailable ({content.error}).\n\n" + (item.summary or "")
        else:
            text = content.body or ""

        for paragraph in text.split("\n"):
            if not paragraph.strip():
                lines.append("")
            elif paragraph.startswith("    "):
                lines.append(paragraph[:width])
            else:
                indent = "  " if paragraph.startswith(("• ", "  ")) else ""
                lines.extend(textwrap.wrap(paragraph, width, subsequent_indent=indent))
        return lines

    def _max_scroll(self) -> int:
        return max(0, len(self._reader_lines()) - self.page_size)

    async def _reader_key(self, key: str) -> None:
        if key in ("j", "DOWN"):
            self.reader_scroll = min(self.reader_scroll + 1, self._max_scroll())
        elif key in ("k", "UP"):
            self.reader_scroll = max(self.reader_scroll - 1, 0)
        elif key in (" ", "PGDN"):
            self.reader_scroll = min(self.reader_scroll + self.page_size, self._max_scroll())
        elif key in ("b", "PGUP"):
            self.reader_scroll = max(self.reader_scroll - self.page_size, 0)
        elif key == "g":
            self.reader_scroll = 0
        elif key == "G":
            self.reader_scroll = self._max_scroll()
        elif key in ("h", "ESC", "BACKSPACE", "LEFT"):
            self.screen = Screen.ITEM_LIST
            self.reader_item = None
            self.reader_content = None
            self._stale = True
        elif key == "n" and self.item_cursor + 1 < len(self.items):
            await self._open_reader(self.item_cursor + 1)
        elif key == "p" and self.item_cursor > 0:
            await self._open_reader(self.item_cursor - 1)
        elif key == "m" and self.reader_item is not None:
            view = self.reader_item
            await self._set_read_state(view, read=not view.read, starred=view.starred)
        elif key == "s" and self.reader_item is not None:
            view = self.reader_item
            await self._set_read_state(view, read=view.read, starred=not view.starred)

    # ------------------------------------------------------------ frames

    def frame(self) -> Frame:
        """Describe the current screen. Pure: reads state, changes nothing."""
        if self.screen == Screen.FEED_LIST:
            title, rows, body, scroll = "Feeds", self._feed_rows(), None, (0, 0)
        elif self.screen == Screen.ITEM_LIST:
            if self.current_feed is not None:
                name = self._feed_name(self.current_feed)
            elif self.current_group is not None:
                name = f"[{self.current_group}]"
            else:
                name = ALL_ITEMS_LABEL
            filters = [label for label, on in (("unread", self.unread_only), ("starred", self.starred_only)) if on]
            suffix = f" ({', '.join(filters)})" if filters else ""
            title, rows, body, scroll = f"{name}{suffix}", self._item_rows(), None, (0, 0)
        else:
            lines = self._reader_lines()
            start = min(self.reader_scroll, max(0, len(lines) - self.page_size))
            title = self.reader_item.item.title if self.reader_item else ""
            rows = ()
            body = tuple(lines[start:start + self.page_size])
            scroll = (start, len(lines))

        popup = None
        if self.popup == "quit":
            popup = Popup(title="Quit", lines=("Quit termfeed? (y/n)",))
        elif self.popup == "help":
            popup = Popup(title="Keys", lines=HELP_LINES)

        return Frame(
            title=title,
            rows=rows,
            body=body,
            status=self._status_text(),
            hints=HINTS[self.screen.value],
            popup=popup,
            scroll=scroll,
        )

    def _status_text(self) -> str:
        parts = []
        busy = len(self.scheduler.in_flight)
        if busy:
            parts.append(f"refreshing {busy}")
        if self.status_message:
            parts.append(self.status_message)
        return " · ".join(parts)

    def _feed_rows(self) -> Tuple[Row, ...]:
        total_unread = sum(s.unread for s in self.summaries.values())
        rows = [Row(
            text=ALL_ITEMS_LABEL,
            badge=str(total_unread) if total_unread else "",
            unread=total_unread > 0,
            busy=bool(self.scheduler.in_flight),
        )]
        for kind, value in self.entries[1:]:
            if kind == EntryKind.GROUP:
                rows.append(self._group_row(value))
            else:
                rows.append(self._feed_row(value))

        start, end = _window(len(rows), self.feed_cursor, self.page_size)
        return tuple(
            dataclasses.replace(row, selected=(i == self.feed_cursor))
            for i, row in enumerate(rows)
        )[start:end]

    def _group_row(self, group: str) -> Row:
        urls = self._group_urls(group)
        summaries = [self.summaries[url] for url in urls if url in self.summaries]
        unread = sum(s.unread for s in summaries)
        total = sum(s.total for s in summaries)
        refreshing = any(self.badges.get(url, FeedBadge()).refreshing for url in urls)
        return Row(
            text=f"[{group}]",
            badge=f"{unread}/{total}",
            detail=f"{len(urls)} feed(s)",
            unread=unread > 0,
            busy=refreshing,
        )

    def _feed_row(self, url: str) -> Row:
        summary = self.summaries.get(url)
        badge = self.badges.get(url, FeedBadge())
        error = badge.error or (summary.feed.last_error if summary else None)
        unread = summary.unread if summary else 0
        total = summary.total if summary else 0

        if badge.refreshing:
            detail = "refreshing…"
        elif error:
            detail = f"last fetch failed: {error}"
        elif badge.new_items:
            detail = f"+{badge.new_items} new"
        else:
            detail = ""

        return Row(
            text=self._feed_name(url),
            badge=f"{unread}/{total}",
            detail=detail,
            unread=unread > 0,
            error=bool(error) and not badge.refreshing,
            busy=badge.refreshing,
        )

    def _item_rows(self) -> Tuple[Row, ...]:
        start, end = _window(len(self.items), self.item_cursor, self.page_size)
        rows = []
        for i in range(start, end):
            view = self.items[i]
            detail = _format_time(view)
            if self.current_feed is None:
                detail = f"{self._feed_name(view.item.feed_url)} · {detail}"
            marker = ""
            if view.extraction_status == ExtractionStatus.FAILED:
                marker = "✗"
            elif view.extraction_status == ExtractionStatus.SUCCESS:
                marker = "✓"
            rows.append(Row(
                text=view.item.title,
                selected=(i == self.item_cursor),
                badge=marker,
                detail=detail,
                unread=not view.read,
                starred=view.starred,
                busy=self.scheduler.is_extracting(view.key),
            ))
        return tuple(rows)
