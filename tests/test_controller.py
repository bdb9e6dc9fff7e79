from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from core.entities import ExtractedContent, ExtractionStatus, FeedSource
from core.events import ExtractionFinished, FeedRefreshed, FetchAttemptFailed, FetchStarted, KeyPressed
from ingestion.feed_parser import parse_feed
from ingestion.registry import FeedRegistry
from tui.controller import ALL_ITEMS_LABEL, Controller, Screen

from conftest import FEED_URL

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)
OTHER_URL = "https://other.example.org/rss"

THREE_ITEMS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Three</title>
  <item><title>I0</title><link>https://other.example.org/0</link><pubDate>Wed, 03 Jan 2024 10:00:00 GMT</pubDate></item>
  <item><title>I1</title><link>https://other.example.org/1</link><pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate></item>
  <item><title>I2</title><link>https://other.example.org/2</link><pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate></item>
</channel></rss>"""


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.in_flight = []
    scheduler.is_extracting.return_value = False
    scheduler.request_extraction.return_value = MagicMock()
    scheduler.trigger.return_value = [FEED_URL]
    return scheduler


@pytest_asyncio.fixture
async def controller(store, registry, scheduler, rss_document):
    await store.upsert_feeds(registry)
    await store.commit_fetch_cycle(FEED_URL, parse_feed(rss_document, FEED_URL), NOW)
    controller = Controller(store, scheduler, registry)
    await controller.sync()
    return controller


async def press(controller: Controller, *keys: str) -> None:
    for key in keys:
        await controller.handle(KeyPressed(key))
    await controller.sync()


@pytest_asyncio.fixture
async def grouped(store, scheduler, rss_document):
    registry = FeedRegistry([
        FeedSource(url=FEED_URL, label="Example", group="news"),
        FeedSource(url=OTHER_URL, label="Other", group="misc"),
    ])
    await store.upsert_feeds(registry)
    await store.commit_fetch_cycle(FEED_URL, parse_feed(rss_document, FEED_URL), NOW)
    await store.commit_fetch_cycle(OTHER_URL, parse_feed(THREE_ITEMS, OTHER_URL), NOW)
    controller = Controller(store, scheduler, registry)
    await controller.sync()
    return controller


class TestFeedList:
    @pytest.mark.asyncio
    async def test_rows_show_counts(self, controller):
        frame = controller.frame()

        assert frame.title == "Feeds"
        assert [r.text for r in frame.rows] == [ALL_ITEMS_LABEL, "[news]", "Example"]
        assert frame.rows[0].selected
        assert frame.rows[1].badge == "2/2"
        assert frame.rows[1].detail == "1 feed(s)"
        assert frame.rows[2].badge == "2/2"
        assert frame.rows[2].detail == ""

    @pytest.mark.asyncio
    async def test_cursor_is_clamped(self, controller):
        await press(controller, "k", "j", "j", "j")

        assert controller.feed_cursor == 2

    @pytest.mark.asyncio
    async def test_open_single_feed(self, controller):
        await press(controller, "j", "j", "l")

        assert controller.screen == Screen.ITEM_LIST
        assert controller.current_feed == FEED_URL
        assert [v.item.title for v in controller.items] == ["First & foremost", "Second"]

    @pytest.mark.asyncio
    async def test_open_all_items(self, controller):
        await press(controller, "ENTER")

        assert controller.current_feed is None
        assert controller.frame().title == ALL_ITEMS_LABEL
        assert controller.frame().rows[0].detail.startswith("Example · ")

    @pytest.mark.asyncio
    async def test_refresh_keys(self, controller, scheduler):
        await press(controller, "j", "r")
        scheduler.trigger.assert_called_with([FEED_URL])

        await press(controller, "R")
        scheduler.trigger.assert_called_with(None)
        assert controller.status_message == "Refreshing 1 feed(s)"

    @pytest.mark.asyncio
    async def test_refresh_while_in_flight(self, controller, scheduler):
        scheduler.trigger.return_value = []

        await press(controller, "R")

        assert controller.status_message == "Refresh already in progress"


class TestGroups:
    @pytest.mark.asyncio
    async def test_groups_head_their_feeds(self, grouped):
        rows = grouped.frame().rows

        assert [r.text for r in rows] == [ALL_ITEMS_LABEL, "[news]", "Example", "[misc]", "Other"]
        assert rows[3].badge == "3/3"
        assert rows[3].detail == "1 feed(s)"

    @pytest.mark.asyncio
    async def test_open_group_shows_only_its_feeds(self, grouped):
        await press(grouped, "j", "j", "j", "l")

        assert grouped.screen == Screen.ITEM_LIST
        assert grouped.current_group == "misc"
        assert grouped.current_feed is None
        assert grouped.frame().title == "[misc]"
        assert [v.item.title for v in grouped.items] == ["I0", "I1", "I2"]
        assert grouped.frame().rows[0].detail.startswith("Other · ")

    @pytest.mark.asyncio
    async def test_mark_all_read_stays_inside_group(self, grouped):
        await press(grouped, "j", "j", "j", "l", "A")

        assert grouped.summaries[OTHER_URL].unread == 0
        assert grouped.summaries[FEED_URL].unread == 2

    @pytest.mark.asyncio
    async def test_refresh_group(self, grouped, scheduler):
        await press(grouped, "j", "j", "j", "r")
        scheduler.trigger.assert_called_with([OTHER_URL])

        await press(grouped, "l", "r")
        scheduler.trigger.assert_called_with([OTHER_URL])

class TestItemList:
    @pytest.mark.asyncio
    async def test_toggle_read_and_star(self, controller, store):
        await press(controller, "j", "j", "l", "m", "s")

        view = controller.items[0]
        state = await store.get_read_state(view.key)
        assert state.read and state.starred
        assert controller.summaries[FEED_URL].unread == 1

        await press(controller, "m")
        assert not (await store.get_read_state(view.key)).read

    @pytest.mark.asyncio
    async def test_unread_filter(self, controller):
        await press(controller, "j", "j", "l", "m", "u")

        assert [v.item.title for v in controller.items] == ["Second"]
        assert controller.frame().title == "Example (unread)"

    @pytest.mark.asyncio
    async def test_starred_filter(self, controller):
        await press(controller, "j", "j", "l", "j", "s", "S")

        assert [v.item.title for v in controller.items] == ["Second"]
        assert controller.frame().title == "Example (starred)"

        await press(controller, "u")
        assert controller.frame().title == "Example (unread, starred)"

        await press(controller, "u", "S")
        assert len(controller.items) == 2

    @pytest.mark.asyncio
    async def test_mark_all_read(self, controller):
        await press(controller, "j", "j", "l", "A")

        assert all(v.read for v in controller.items)
        assert controller.summaries[FEED_URL].unread == 0

    @pytest.mark.asyncio
    async def test_back_to_feed_list(self, controller):
        await press(controller, "j", "j", "l", "h")

        assert controller.screen == Screen.FEED_LIST


class TestReader:
    @pytest.mark.asyncio
    async def test_open_requests_extraction_and_marks_read(self, controller, scheduler, store):
        await press(controller, "j", "j", "l", "l")

        assert controller.screen == Screen.READER
        view = controller.reader_item
        scheduler.request_extraction.assert_called_once_with(view.item)
        assert view.read
        assert (await store.get_read_state(view.key)).read
        body = controller.frame().body
        assert "Extracting article…" in body
        assert "The first post." in body

    @pytest.mark.asyncio
    async def test_stored_result_is_not_extracted_again(self, controller, scheduler, store):
        key = (await store.query_items(FEED_URL))[0].key
        await store.attach_extracted_content(ExtractedContent.success(key, NOW, body="Full article text.", title=None))

        await press(controller, "j", "j", "l", "l")

        scheduler.request_extraction.assert_not_called()
        assert "Full article text." in controller.frame().body

    @pytest.mark.asyncio
    async def test_stored_failure_shows_summary(self, controller, scheduler, store):
        key = (await store.query_items(FEED_URL))[0].key
        await store.attach_extracted_content(ExtractedContent.failed(key, NOW, "fetch failed: HTTP 404"))

        await press(controller, "j", "j", "l", "l")

        scheduler.request_extraction.assert_not_called()
        body = controller.frame().body
        assert "Content unavailable (fetch failed: HTTP 404)." in body
        assert "The first post." in body

    @pytest.mark.asyncio
    async def test_interrupted_pending_is_retried(self, controller, scheduler, store):
        key = (await store.query_items(FEED_URL))[0].key
        await store.attach_extracted_content(ExtractedContent.pending(key, NOW))

        await press(controller, "j", "j", "l", "l")

        scheduler.request_extraction.assert_called_once()

    @pytest.mark.asyncio
    async def test_mark_read_on_open_can_be_disabled(self, store, registry, scheduler, rss_document):
        await store.commit_fetch_cycle(FEED_URL, parse_feed(rss_document, FEED_URL), NOW)
        controller = Controller(store, scheduler, registry, mark_read_on_open=False)

        await press(controller, "j", "j", "l", "l")

        assert not controller.reader_item.read

    @pytest.mark.asyncio
    async def test_next_and_previous(self, controller):
        await press(controller, "j", "j", "l", "l", "n")
        assert controller.reader_item.item.title == "Second"

        await press(controller, "n")
        assert controller.reader_item.item.title == "Second"

        await press(controller, "p")
        assert controller.reader_item.item.title == "First & foremost"

    @pytest.mark.asyncio
    async def test_read_item_keeps_its_place_under_unread_filter(self, grouped):
        await press(grouped, "j", "j", "j", "j", "l", "u", "l")
        opened = grouped.reader_item
        assert opened.item.title == "I0"

        await grouped.handle(ExtractionFinished(opened.key, OTHER_URL, ExtractionStatus.SUCCESS))
        await grouped.sync()
        assert [v.item.title for v in grouped.items] == ["I0", "I1", "I2"]

        await press(grouped, "n")
        assert grouped.reader_item.item.title == "I1"

        await press(grouped, "p")
        assert grouped.reader_item.item.title == "I0"

        await press(grouped, "h")
        assert [v.item.title for v in grouped.items] == ["I2"]

    @pytest.mark.asyncio
    async def test_scroll_is_bounded(self, controller, store):
        key = (await store.query_items(FEED_URL))[0].key
        body = "\n".join(f"Line {n}" for n in range(100))
        await store.attach_extracted_content(ExtractedContent.success(key, NOW, body=body, title=None))
        controller.resize(80, 24)

        await press(controller, "j", "j", "l", "l", "G")
        bottom = controller.reader_scroll
        await press(controller, "j", " ")
        assert controller.reader_scroll == bottom

        frame = controller.frame()
        assert frame.body[-1] == "Line 99"
        assert len(frame.body) == controller.page_size

        await press(controller, "g", "k")
        assert controller.reader_scroll == 0

    @pytest.mark.asyncio
    async def test_back_returns_to_item_list(self, controller):
        await press(controller, "j", "j", "l", "l", "ESC")

        assert controller.screen == Screen.ITEM_LIST
        assert controller.reader_item is None
        assert controller.items[0].read


class TestNotifications:
    @pytest.mark.asyncio
    async def test_notifications_never_switch_screens(self, controller):
        await press(controller, "j", "j", "l", "l")

        for event in (
            FetchStarted(FEED_URL),
            FetchAttemptFailed(FEED_URL, 1, 3, "timeout"),
            FeedRefreshed(FEED_URL, 3, 0, None, NOW),
            ExtractionFinished("other", FEED_URL, ExtractionStatus.SUCCESS),
        ):
            await controller.handle(event)
            assert controller.screen == Screen.READER
        await controller.sync()
        assert controller.screen == Screen.READER

    @pytest.mark.asyncio
    async def test_fetch_badges(self, controller):
        await controller.handle(FetchStarted(FEED_URL))
        assert controller.frame().rows[2].detail == "refreshing…"
        assert controller.frame().rows[2].busy

        await controller.handle(FeedRefreshed(FEED_URL, 0, 0, "HTTP 503", NOW))
        row = controller.frame().rows[2]
        assert row.detail == "last fetch failed: HTTP 503"
        assert row.error
        assert controller.status_message == "Example: last fetch failed"

    @pytest.mark.asyncio
    async def test_extraction_result_reloads_open_reader(self, controller, store):
        await press(controller, "j", "j", "l", "l")
        key = controller.reader_item.key
        await store.attach_extracted_content(ExtractedContent.success(key, NOW, body="Arrived.", title=None))

        await controller.handle(ExtractionFinished(key, FEED_URL, ExtractionStatus.SUCCESS))
        await controller.sync()

        assert controller.reader_content.status == ExtractionStatus.SUCCESS
        assert "Arrived." in controller.frame().body


    @pytest.mark.asyncio
    async def test_new_items_shown_until_feed_is_opened(self, controller):
        await controller.handle(FeedRefreshed(FEED_URL, 3, 0, None, NOW))
        assert controller.frame().rows[2].detail == "+3 new"

        await controller.handle(FeedRefreshed(FEED_URL, 1, 0, None, NOW))
        assert controller.frame().rows[2].detail == "+4 new"

        await press(controller, "j", "j", "l", "h")
        assert controller.frame().rows[2].detail == ""


class TestPopups:
    @pytest.mark.asyncio
    async def test_quit_needs_confirmation(self, controller):
        await press(controller, "q")
        assert controller.frame().popup.title == "Quit"
        assert not controller.should_quit

        await press(controller, "n")
        assert controller.popup is None

        await press(controller, "q", "y")
        assert controller.should_quit

    @pytest.mark.asyncio
    async def test_quit_without_confirmation(self, store, registry, scheduler):
        controller = Controller(store, scheduler, registry, confirm_quit=False)

        await press(controller, "q")

        assert controller.should_quit

    @pytest.mark.asyncio
    async def test_ctrl_c_quits_immediately(self, controller):
        await press(controller, "QUIT")

        assert controller.should_quit

    @pytest.mark.asyncio
    async def test_help_closes_on_any_key(self, controller):
        await press(controller, "?")
        assert controller.frame().popup.title == "Keys"

        await press(controller, "j")
        assert controller.popup is None
        assert controller.feed_cursor == 0
