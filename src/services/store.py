"""
Store - durable SQLite persistence for feeds, items, extracted content and read state.

Every write runs in its own IMMEDIATE transaction, so concurrent writers are
serialized by SQLite and readers only ever see whole fetch cycles.
"""
import aiosqlite
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, List, Optional, Tuple
import logging
import os

from core.entities import (
    ExtractedContent,
    ExtractionStatus,
    Feed,
    FeedSource,
    FeedSummary,
    Item,
    ItemView,
    ReadState,
)
from core.errors import StoreError, StoreErrorKind
from ingestion.base import ParsedEntry, ParsedFeed
from processing.deduplicator import make_dedup_key

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO-8601, so stored timestamps compare correctly as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _store_error(e: Exception) -> StoreError:
    message = str(e)
    lowered = message.lower()
    if isinstance(e, aiosqlite.IntegrityError) or "locked" in lowered or "busy" in lowered:
        return StoreError(StoreErrorKind.WRITE_CONFLICT, message)
    return StoreError(StoreErrorKind.IO_ERROR, message)


def _row_to_feed(row: aiosqlite.Row) -> Feed:
    return Feed(
        url=row["url"],
        label=row["label"],
        title=row["title"],
        group=row["group_name"],
        description=row["description"],
        last_success_at=_parse_ts(row["last_success_at"]),
        last_attempt_at=_parse_ts(row["last_attempt_at"]),
        last_error=row["last_error"],
    )


def _row_to_item(row: aiosqlite.Row) -> Item:
    return Item(
        key=row["key"],
        feed_url=row["feed_url"],
        title=row["title"],
        link=row["link"],
        guid=row["guid"],
        summary=row["summary"],
        published_at=_parse_ts(row["published_at"]),
        inserted_at=_parse_ts(row["inserted_at"]),
    )


def _row_to_item_view(row: aiosqlite.Row) -> ItemView:
    status = row["extraction_status"]
    return ItemView(
        item=_row_to_item(row),
        read=bool(row["read"]),
        starred=bool(row["starred"]),
        extraction_status=ExtractionStatus(status) if status else None,
    )


ITEM_VIEW_SELECT = """
    SELECT i.key, i.feed_url, i.guid, i.link, i.title, i.summary,
           i.published_at, i.inserted_at,
           COALESCE(r.read, 0) AS read,
           COALESCE(r.starred, 0) AS starred,
           e.status AS extraction_status
    FROM items i
    LEFT JOIN read_state r ON r.item_key = i.key
    LEFT JOIN extracted_content e ON e.item_key = i.key
"""

GROUP_FILTER = "i.feed_url IN (SELECT f.url FROM feeds f WHERE f.group_name = ?)"


class Store:
    def __init__(self, path: str, refresh_existing: bool = False, busy_timeout: float = 30.0):
        self.path = path
        self.refresh_existing = refresh_existing
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            conn = await aiosqlite.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        except (aiosqlite.Error, OSError) as e:
            raise StoreError(StoreErrorKind.IO_ERROR, f"cannot open {self.path}: {e}") from e
        conn.row_factory = aiosqlite.Row
        try:
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        except aiosqlite.Error as e:
            raise _store_error(e) from e
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run the body as one IMMEDIATE transaction: committed on success,
        rolled back on any exception (including cancellation).
        """
        async with self.connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def fetchone(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def fetchall(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    async def init_tables(self) -> None:
        """
        Create the schema if missing.

        Raises:
            StoreError: if the database file cannot be opened or written
        """
        directory = os.path.dirname(self.path)
        if directory:
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise StoreError(StoreErrorKind.IO_ERROR, f"cannot create {directory}: {e}") from e

        async with self.transaction() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS feeds (
                    url TEXT PRIMARY KEY,
                    label TEXT NOT NULL DEFAULT '',
                    title TEXT,
                    group_name TEXT,
                    description TEXT NOT NULL DEFAULT '',
                    last_success_at TEXT,
                    last_attempt_at TEXT,
                    last_error TEXT
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    key TEXT PRIMARY KEY,
                    feed_url TEXT NOT NULL REFERENCES feeds(url) ON DELETE CASCADE,
                    guid TEXT,
                    link TEXT,
                    title TEXT NOT NULL,
                    summary TEXT NOT NULL DEFAULT '',
                    published_at TEXT,
                    inserted_at TEXT NOT NULL
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS extracted_content (
                    item_key TEXT PRIMARY KEY REFERENCES items(key) ON DELETE CASCADE,
                    status TEXT NOT NULL CHECK (status IN ('pending', 'success', 'failed')),
                    title TEXT,
                    body TEXT,
                    error TEXT,
                    extracted_at TEXT NOT NULL
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS read_state (
                    item_key TEXT PRIMARY KEY REFERENCES items(key) ON DELETE CASCADE,
                    read INTEGER NOT NULL DEFAULT 0,
                    starred INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_items_feed_published ON items(feed_url, published_at)"
            )
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_items_published ON items(published_at)")
            await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.info(f"Store initialized at {self.path}")

    # ---------------------------------------------------------------- feeds

    async def _ensure_feed(self, conn: aiosqlite.Connection, feed_url: str) -> None:
        await conn.execute("INSERT OR IGNORE INTO feeds (url) VALUES (?)", (feed_url,))

    async def upsert_feeds(self, sources: Iterable[FeedSource]) -> None:
        """Register feeds from the registry; configured metadata wins, fetch history is kept."""
        async with self.transaction() as conn:
            for source in sources:
                await conn.execute(
                    """
                    INSERT INTO feeds (url, label, group_name, description)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(url) DO UPDATE SET
                        label = excluded.label,
                        group_name = excluded.group_name,
                        description = excluded.description
                    """,
                    (source.url, source.label, source.group, source.description),
                )

    async def _record_outcome(
        self,
        conn: aiosqlite.Connection,
        feed_url: str,
        at: datetime,
        error: Optional[str],
    ) -> None:
        if error is None:
            # last_success_at only ever moves forward
            await conn.execute(
                """
                UPDATE feeds SET
                    last_success_at = CASE
                        WHEN last_success_at IS NULL OR last_success_at < ? THEN ?
                        ELSE last_success_at END,
                    last_attempt_at = ?,
                    last_error = NULL
                WHERE url = ?
                """,
                (_ts(at), _ts(at), _ts(at), feed_url),
            )
        else:
            await conn.execute(
                "UPDATE feeds SET last_attempt_at = ?, last_error = ? WHERE url = ?",
                (_ts(at), error, feed_url),
            )

    async def record_fetch_outcome(self, feed_url: str, at: datetime, error: Optional[str] = None) -> None:
        """Record a fetch attempt outcome; `error=None` means success."""
        async with self.transaction() as conn:
            await self._ensure_feed(conn, feed_url)
            await self._record_outcome(conn, feed_url, at, error)

    async def get_feed(self, url: str) -> Optional[Feed]:
        row = await self.fetchone("SELECT * FROM feeds WHERE url = ?", (url,))
        return _row_to_feed(row) if row else None

    async def list_feeds(self) -> List[Feed]:
        rows = await self.fetchall("SELECT * FROM feeds ORDER BY rowid")
        return [_row_to_feed(row) for row in rows]

    async def feed_summaries(self) -> List[FeedSummary]:
        """Feeds with total and unread item counts."""
        rows = await self.fetchall("""
            SELECT f.*,
                   COUNT(i.key) AS total,
                   COALESCE(SUM(CASE WHEN i.key IS NOT NULL AND COALESCE(r.read, 0) = 0
                                     THEN 1 ELSE 0 END), 0) AS unread
            FROM feeds f
            LEFT JOIN items i ON i.feed_url = f.url
            LEFT JOIN read_state r ON r.item_key = i.key
            GROUP BY f.url
            ORDER BY f.rowid
        """)
        return [FeedSummary(feed=_row_to_feed(r), total=r["total"], unread=r["unread"]) for r in rows]

    # ---------------------------------------------------------------- items

    async def _upsert_items(
        self,
        conn: aiosqlite.Connection,
        feed_url: str,
        entries: Iterable[ParsedEntry],
        now: datetime,
    ) -> List[Item]:
        new_items: List[Item] = []
        seen = set()

        for entry in entries:
            try:
                key = make_dedup_key(feed_url, entry.guid, entry.link)
            except ValueError:
                logger.warning(f"Entry without guid or link ignored: {entry.title!r}", extra={"feed": feed_url})
                continue
            if key in seen:
                continue
            seen.add(key)

            cursor = await conn.execute("SELECT 1 FROM items WHERE key = ?", (key,))
            if await cursor.fetchone() is not None:
                if self.refresh_existing:
                    await conn.execute(
                        "UPDATE items SET title = ?, summary = ?, link = ?, published_at = ? WHERE key = ?",
                        (entry.title, entry.summary, entry.link, _ts(entry.published_at), key),
                    )
                continue

            await conn.execute(
                """
                INSERT INTO items (key, feed_url, guid, link, title, summary, published_at, inserted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (key, feed_url, entry.guid, entry.link, entry.title, entry.summary,
                 _ts(entry.published_at), _ts(now)),
            )
            new_items.append(Item(
                key=key,
                feed_url=feed_url,
                title=entry.title,
                link=entry.link,
                guid=entry.guid,
                summary=entry.summary,
                published_at=entry.published_at,
                inserted_at=now,
            ))

        return new_items

    async def upsert_items(self, feed_url: str, entries: Iterable[ParsedEntry]) -> List[Item]:
        """
        Idempotently store entries for a feed.

        Returns:
            The items that were not known before this call, in input order
        """
        async with self.transaction() as conn:
            await self._ensure_feed(conn, feed_url)
            return await self._upsert_items(conn, feed_url, entries, utcnow())

    async def commit_fetch_cycle(self, feed_url: str, parsed: ParsedFeed, fetched_at: datetime) -> List[Item]:
        """
        Store one successful fetch cycle atomically: the items and the feed's
        success record are committed together or not at all.
        """
        async with self.transaction() as conn:
            await self._ensure_feed(conn, feed_url)
            new_items = await self._upsert_items(conn, feed_url, parsed.entries, fetched_at)
            await conn.execute(
                "UPDATE feeds SET title = COALESCE(?, title), "
                "description = CASE WHEN description = '' THEN COALESCE(?, '') ELSE description END "
                "WHERE url = ?",
                (parsed.title, parsed.description, feed_url),
            )
            await self._record_outcome(conn, feed_url, fetched_at, None)
        return new_items

    async def get_item(self, key: str) -> Optional[ItemView]:
        row = await self.fetchone(ITEM_VIEW_SELECT + " WHERE i.key = ?", (key,))
        return _row_to_item_view(row) if row else None

    async def query_items(
        self,
        feed_url: Optional[str] = None,
        unread_only: bool = False,
        starred_only: bool = False,
        limit: Optional[int] = None,
        group: Optional[str] = None,
    ) -> List[ItemView]:
        """
        Items of one feed, one feed group (or all feeds), newest first. Undated
        items sort by the time they were first stored; ties keep feed document order.
        """
        clauses: List[str] = []
        params: List[object] = []
        if feed_url is not None:
            clauses.append("i.feed_url = ?")
            params.append(feed_url)
        if group is not None:
            clauses.append(GROUP_FILTER)
            params.append(group)
        if unread_only:
            clauses.append("COALESCE(r.read, 0) = 0")
        if starred_only:
            clauses.append("COALESCE(r.starred, 0) = 1")

        query = ITEM_VIEW_SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY COALESCE(i.published_at, i.inserted_at) DESC, i.rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = await self.fetchall(query, tuple(params))
        return [_row_to_item_view(row) for row in rows]

    # ------------------------------------------------------ extracted content

    async def attach_extracted_content(self, content: ExtractedContent) -> None:
        """Store the extraction result for an item, replacing any previous one."""
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO extracted_content (item_key, status, title, body, error, extracted_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_key) DO UPDATE SET
                    status = excluded.status,
                    title = excluded.title,
                    body = excluded.body,
                    error = excluded.error,
                    extracted_at = excluded.extracted_at
                """,
                (content.item_key, content.status.value, content.title, content.body,
                 content.error, _ts(content.extracted_at)),
            )

    async def get_extracted_content(self, item_key: str) -> Optional[ExtractedContent]:
        row = await self.fetchone("SELECT * FROM extracted_content WHERE item_key = ?", (item_key,))
        if row is None:
            return None
        return ExtractedContent(
            item_key=row["item_key"],
            status=ExtractionStatus(row["status"]),
            extracted_at=_parse_ts(row["extracted_at"]),
            title=row["title"],
            body=row["body"],
            error=row["error"],
        )

    # ------------------------------------------------------------ read state

    async def set_read_state(self, item_key: str, read: bool, starred: bool) -> ReadState:
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO read_state (item_key, read, starred, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(item_key) DO UPDATE SET
                    read = excluded.read,
                    starred = excluded.starred,
                    updated_at = excluded.updated_at
                """,
                (item_key, int(read), int(starred), _ts(utcnow())),
            )
        return ReadState(item_key=item_key, read=read, starred=starred)

    async def get_read_state(self, item_key: str) -> ReadState:
        row = await self.fetchone("SELECT read, starred FROM read_state WHERE item_key = ?", (item_key,))
        if row is None:
            return ReadState(item_key=item_key)
        return ReadState(item_key=item_key, read=bool(row["read"]), starred=bool(row["starred"]))

    async def mark_all_read(self, feed_url: Optional[str] = None, group: Optional[str] = None) -> int:
        """Mark every item of a feed, a feed group (or of all feeds) read. Returns rows touched."""
        query = """
            INSERT INTO read_state (item_key, read, starred, updated_at)
            SELECT i.key, 1, 0, ? FROM items i
            LEFT JOIN read_state r ON r.item_key = i.key
            WHERE COALESCE(r.read, 0) = 0 {filters}
            ON CONFLICT(item_key) DO UPDATE SET read = 1, updated_at = excluded.updated_at
        """
        params: Tuple[object, ...] = (_ts(utcnow()),)
        filters = ""
        if feed_url is not None:
            filters += " AND i.feed_url = ?"
            params += (feed_url,)
        if group is not None:
            filters += " AND " + GROUP_FILTER
            params += (group,)
        query = query.format(filters=filters)
        async with self.transaction() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount
