import asyncio
from typing import Dict, List, Optional, Union

import pytest
import pytest_asyncio

from core.entities import FeedSource
from core.errors import NetworkError, NetworkErrorKind
from ingestion.fetcher import FetchResponse
from ingestion.registry import FeedRegistry
from services.store import Store


FEED_URL = "https://example.com/feed.xml"


RSS_DOCUMENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example News</title>
    <description>Things that happened</description>
    <link>https://example.com/</link>
    <item>
      <title>First &amp; foremost</title>
      <link>https://example.com/posts/1</link>
      <guid>post-1</guid>
      <pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate>
      <description>&lt;p&gt;The &lt;b&gt;first&lt;/b&gt; post.&lt;/p&gt;</description>
    </item>
    <item>
      <title>Second</title>
      <link>https://example.com/posts/2</link>
      <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
      <description>No guid on this one.</description>
    </item>
    <item>
      <title>Orphan</title>
      <description>Neither guid nor link.</description>
    </item>
  </channel>
</rss>
"""

ATOM_DOCUMENT = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <subtitle>An atom feed</subtitle>
  <id>urn:uuid:feed</id>
  <updated>2024-02-01T12:00:00Z</updated>
  <entry>
    <title type="html">&lt;em&gt;Atom&lt;/em&gt; entry</title>
    <id>urn:uuid:entry-1</id>
    <link href="https://example.org/atom/1"/>
    <updated>2024-02-01T12:00:00+02:00</updated>
    <content type="html">&lt;p&gt;Body of the atom entry.&lt;/p&gt;</content>
  </entry>
</feed>
"""

ARTICLE_HTML = """<!DOCTYPE html>
<html>
<head>
  <title>A Long Walk</title>
  <base href="https://blog.example.com/2024/">
  <script>var tracking = "should never appear";</script>
</head>
<body>
  <nav class="site-nav"><a href="/">Home</a> <a href="/about">About</a></nav>
  <div class="sidebar"><p>Subscribe to our newsletter for more great stories, deals, and updates every week.</p></div>
  <div id="content" class="post-body">
    <h1>A Long Walk</h1>
    <p>We set out early in the morning, before the sun had risen over the hills, carrying little more than water, bread, and a map.</p>
    <p>The path wound through pine forest, across two streams, and up a ridge where the wind was cold, sharp, and constant.</p>
    <h2>The summit</h2>
    <p>At the top we could see the whole valley, the river, and the town, and we read about it <a href="notes.html">in our notes</a> later.</p>
    <ul><li>Water</li><li>Bread</li></ul>
    <blockquote>Walk while you can.</blockquote>
    <pre>elevation = 1200
distance  = 14</pre>
  </div>
  <div class="comments"><p>Great post, thanks for sharing it with all of us, really enjoyed reading it today.</p></div>
  <footer><p>Copyright Example Blog, all rights reserved, since the beginning of time itself.</p></footer>
</body>
</html>
"""


class FakeFetcher:
    """
    Stands in for Fetcher. Each URL maps to a list of outcomes consumed in order;
    the last outcome repeats. An outcome is a FetchResponse, raw bytes, or an exception.
    """

    def __init__(self, responses: Optional[Dict[str, List[Union[bytes, str, Exception, FetchResponse]]]] = None):
        self.responses = responses or {}
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self.delay = 0.0
        self.closed = False
        self.release: Optional[asyncio.Event] = None

    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResponse:
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.release is not None:
                await self.release.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            outcomes = self.responses.get(url)
            if not outcomes:
                raise NetworkError(NetworkErrorKind.HTTP_STATUS, f"{url} returned 404", status_code=404)
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        finally:
            self.active -= 1

        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FetchResponse):
            return outcome
        if isinstance(outcome, str):
            return FetchResponse(url=url, status_code=200, content=outcome.encode(), text=outcome,
                                 content_type="text/html; charset=utf-8")
        return FetchResponse(url=url, status_code=200, content=outcome, text=outcome.decode("utf-8"),
                             content_type="application/rss+xml")

    async def aclose(self) -> None:
        self.closed = True


def timeout_error(url: str = FEED_URL) -> NetworkError:
    return NetworkError(NetworkErrorKind.TIMEOUT, f"request to {url} timed out")


@pytest.fixture
def rss_document():
    return RSS_DOCUMENT


@pytest.fixture
def atom_document():
    return ATOM_DOCUMENT


@pytest.fixture
def article_html():
    return ARTICLE_HTML


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "termfeed.db")


@pytest_asyncio.fixture
async def store(db_path):
    store = Store(db_path)
    await store.init_tables()
    return store


@pytest.fixture
def registry():
    return FeedRegistry([
        FeedSource(url=FEED_URL, label="Example", group="news"),
    ])


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()
