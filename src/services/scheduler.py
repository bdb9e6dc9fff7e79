"""
Scheduler - runs fetch -> parse -> store (-> extract) cycles for registered feeds.

Concurrency is bounded by a semaphore; results reach the interface only through
the ordered `events` queue.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from core.entities import ExtractedContent, ExtractionStatus, FeedSource, Item
from core.errors import ExtractionError, FeedParseError, NetworkError, StoreError
from core.events import (
    ExtractionFinished,
    FeedRefreshed,
    FetchAttemptFailed,
    FetchStarted,
    SchedulerEvent,
)
from ingestion.feed_parser import parse_feed
from ingestion.fetcher import Fetcher, FetchResponse
from ingestion.registry import FeedRegistry
from processing.extractor import Extractor
from services.jobs import FetchJob
from services.store import Store

logger = logging.getLogger(__name__)

READABLE_CONTENT_TYPES = ("text/", "application/xhtml", "application/xml")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    def __init__(
        self,
        registry: FeedRegistry,
        store: Store,
        fetcher: Fetcher,
        extractor: Extractor,
        events: Optional["asyncio.Queue[SchedulerEvent]"] = None,
        *,
        max_concurrent: int = 4,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        refresh_interval: float = 900.0,
        extract_on_ingest: bool = False,
    ):
        self.registry = registry
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.events: "asyncio.Queue[SchedulerEvent]" = events if events is not None else asyncio.Queue()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.refresh_interval = refresh_interval
        self.extract_on_ingest = extract_on_ingest

        self._gate = asyncio.Semaphore(max_concurrent)
        self._jobs: Dict[str, Tuple[FetchJob, asyncio.Task]] = {}
        self._extractions: Dict[str, asyncio.Task] = {}
        self._ticker: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------------------------------------------ scheduling

    @property
    def in_flight(self) -> List[str]:
        return list(self._jobs)

    def is_refreshing(self, feed_url: str) -> bool:
        return feed_url in self._jobs

    def is_extracting(self, item_key: str) -> bool:
        return item_key in self._extractions

    def start(self) -> None:
        """Start the periodic refresh ticker (first tick fires immediately)."""
        if self._ticker is None:
            self._ticker = asyncio.create_task(self._tick_loop(), name="scheduler-ticker")

    async def _tick_loop(self) -> None:
        while not self._closed:
            self.trigger()
            await asyncio.sleep(self.refresh_interval)

    def trigger(self, feed_urls: Optional[Iterable[str]] = None) -> List[str]:
        """
        Enqueue one fetch job per feed (all feeds, or the given ones) that has no
        job in flight. Returns the URLs actually scheduled.
        """
        if self._closed:
            return []
        wanted = set(feed_urls) if feed_urls is not None else None
        scheduled: List[str] = []

        for source in self.registry:
            if wanted is not None and source.url not in wanted:
                continue
            if source.url in self._jobs:
                logger.debug(f"Refresh already in flight, skipping {source.url}")
                continue
            job = FetchJob(
                feed_url=source.url,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
            )
            task = asyncio.create_task(self._run_job(job, source), name=f"fetch:{source.url}")
            self._jobs[source.url] = (job, task)
            scheduled.append(source.url)

        if scheduled:
            logger.info(f"Scheduled refresh of {len(scheduled)} feeds")
        return scheduled

    def _emit(self, event: SchedulerEvent) -> None:
        self.events.put_nowait(event)

    # ------------------------------------------------------------ fetch cycle

    async def _run_job(self, job: FetchJob, source: FeedSource) -> None:
        try:
            self._emit(FetchStarted(feed_url=source.url))
            response = await self._fetch_with_retry(job)
            if response is None:
                await self._finish_failed(job)
                return
            new_items = await self._ingest(job, response)
            if new_items and self.extract_on_ingest:
                tasks = [self.request_extraction(item) for item in new_items]
                await asyncio.gather(*[t for t in tasks if t is not None])
        except asyncio.CancelledError:
            job.cancel()
            raise
        finally:
            current = self._jobs.get(job.feed_url)
            if current is not None and current[0] is job:
                del self._jobs[job.feed_url]

    async def _fetch_with_retry(self, job: FetchJob) -> Optional[FetchResponse]:
        """Attempt the fetch until success or the attempt ceiling. None means failed."""
        while True:
            job.begin_attempt()
            try:
                async with self._gate:
                    response = await self.fetcher.fetch(job.feed_url)
            except NetworkError as e:
                retry = job.record_failure(str(e))
                self._emit(FetchAttemptFailed(
                    feed_url=job.feed_url,
                    attempt=job.attempt,
                    max_attempts=job.max_attempts,
                    error=str(e),
                ))
                if not retry:
                    logger.error(
                        f"Fetch failed after {job.attempt} attempts: {e}",
                        extra={"feed": job.feed_url},
                    )
                    return None
                delay = job.backoff_delay()
                logger.warning(
                    f"Fetch attempt {job.attempt}/{job.max_attempts} failed: {e}; retrying in {delay:.1f}s",
                    extra={"feed": job.feed_url},
                )
                await asyncio.sleep(delay)
                continue
            return response

    async def _finish_failed(self, job: FetchJob) -> None:
        error = job.last_error or "unknown error"
        try:
            await self.store.record_fetch_outcome(job.feed_url, utcnow(), error=error)
        except StoreError as e:
            logger.error(f"Could not record fetch failure: {e}", extra={"feed": job.feed_url})
        self._emit(FeedRefreshed(
            feed_url=job.feed_url,
            new_items=0,
            skipped_entries=0,
            error=error,
            finished_at=utcnow(),
        ))

    async def _ingest(self, job: FetchJob, response: FetchResponse) -> List[Item]:
        async with self._gate:
            try:
                parsed = await asyncio.to_thread(parse_feed, response.content, job.feed_url)
            except FeedParseError as e:
                job.fail(f"parse error: {e}")
                logger.error(str(e), extra={"feed": job.feed_url})
                await self._finish_failed(job)
                return []

            fetched_at = utcnow()
            try:
                new_items = await self.store.commit_fetch_cycle(job.feed_url, parsed, fetched_at)
            except StoreError as e:
                # the cycle's transaction was rolled back; nothing from it is visible
                job.fail(f"store error: {e}")
                logger.error(f"Dropping fetch cycle, store write failed: {e}", extra={"feed": job.feed_url})
                await self._finish_failed(job)
                return []

        job.record_success()
        logger.info(
            f"Refreshed feed: {len(new_items)} new, {len(parsed.entries)} seen, {parsed.skipped} skipped",
            extra={"feed": job.feed_url},
        )
        self._emit(FeedRefreshed(
            feed_url=job.feed_url,
            new_items=len(new_items),
            skipped_entries=parsed.skipped,
            error=None,
            finished_at=fetched_at,
        ))
        return new_items

    # ------------------------------------------------------------ extraction

    def request_extraction(self, item: Item) -> Optional[asyncio.Task]:
        """
        Start extracting an item's article unless already running.
        Returns the task, or None if one was already in flight.
        """
        if self._closed or item.key in self._extractions:
            return None
        task = asyncio.create_task(self._extract_item(item), name=f"extract:{item.key}")
        self._extractions[item.key] = task
        task.add_done_callback(lambda _t, key=item.key: self._extractions.pop(key, None))
        return task

    async def _extract_item(self, item: Item) -> None:
        try:
            await self.store.attach_extracted_content(ExtractedContent.pending(item.key, utcnow()))
            content = await self._run_extraction(item)
            await self.store.attach_extracted_content(content)
        except StoreError as e:
            logger.error(f"Could not store extraction result: {e}", extra={"item": item.key})
            self._emit(ExtractionFinished(
                item_key=item.key,
                feed_url=item.feed_url,
                status=ExtractionStatus.FAILED,
                error=f"store error: {e}",
            ))
            return

        self._emit(ExtractionFinished(
            item_key=item.key,
            feed_url=item.feed_url,
            status=content.status,
            error=content.error,
        ))

    async def _run_extraction(self, item: Item) -> ExtractedContent:
        if not item.link:
            return ExtractedContent.failed(item.key, utcnow(), "item has no link")

        try:
            async with self._gate:
                response = await self.fetcher.fetch(item.link)
        except NetworkError as e:
            logger.warning(f"Article fetch failed: {e}", extra={"item": item.key})
            return ExtractedContent.failed(item.key, utcnow(), f"fetch failed: {e}")

        content_type = response.content_type.lower()
        if content_type and not content_type.startswith(READABLE_CONTENT_TYPES):
            return ExtractedContent.failed(item.key, utcnow(), f"unsupported content type {content_type}")

        try:
            result = await asyncio.to_thread(self.extractor.extract, response.text, response.url)
        except ExtractionError as e:
            logger.warning(f"Extraction failed ({e.kind.value}): {e}", extra={"item": item.key})
            return ExtractedContent.failed(item.key, utcnow(), f"{e.kind.value}: {e}")

        return ExtractedContent.success(item.key, utcnow(), body=result.text, title=result.title)

    # ------------------------------------------------------------ lifecycle

    async def wait_idle(self) -> None:
        """Wait until no fetch job or extraction is in flight."""
        while self._jobs or self._extractions:
            tasks = [task for _, task in self._jobs.values()] + list(self._extractions.values())
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel everything in flight without waiting for backoff delays, then close the fetcher."""
        self._closed = True
        tasks: List[asyncio.Task] = []
        if self._ticker is not None:
            tasks.append(self._ticker)
        for job, task in self._jobs.values():
            job.cancel()
            tasks.append(task)
        tasks.extend(self._extractions.values())

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
        self._extractions.clear()

        await self.fetcher.aclose()
        logger.info(f"Scheduler stopped, {len(tasks)} tasks cancelled")
