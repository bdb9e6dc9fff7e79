"""
Feed Registry - the immutable, ordered list of subscribed feeds for a run.
"""
import logging
from typing import Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from core.entities import FeedSource
from services.config import Config, FeedConfig

logger = logging.getLogger(__name__)


class FeedRegistry:
    """Ordered, read-only collection of feed sources keyed by URL."""

    def __init__(self, sources: Sequence[FeedSource]):
        unique: List[FeedSource] = []
        seen = set()
        for source in sources:
            if source.url in seen:
                logger.warning(f"Duplicate feed ignored: {source.url}")
                continue
            seen.add(source.url)
            unique.append(source)
        self._sources: Tuple[FeedSource, ...] = tuple(unique)

    def __iter__(self) -> Iterator[FeedSource]:
        return iter(self._sources)

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, url: object) -> bool:
        return any(s.url == url for s in self._sources)

    @property
    def sources(self) -> Tuple[FeedSource, ...]:
        return self._sources

    @property
    def urls(self) -> List[str]:
        return [s.url for s in self._sources]

    def get(self, url: str) -> Optional[FeedSource]:
        for source in self._sources:
            if source.url == url:
                return source
        return None


def create_feed_source(feed_config: FeedConfig, group: Optional[str] = None) -> FeedSource:
    """
    Create a feed source from configuration.

    Raises:
        ValueError: If the link is not an http(s) URL
    """
    link = feed_config.link.strip()
    if urlsplit(link).scheme not in ("http", "https"):
        raise ValueError(f"Feed link must be an http(s) URL: {link!r}")

    return FeedSource(
        url=link,
        label=(feed_config.name or "").strip(),
        group=group,
        description=feed_config.desc or "",
    )


def create_registry_from_config(config: Config) -> FeedRegistry:
    """
    Flatten configured feed groups into a registry, in configuration order.
    Invalid feed entries are logged and left out.
    """
    sources: List[FeedSource] = []
    for group in config.groups:
        for feed_config in group.feeds:
            try:
                sources.append(create_feed_source(feed_config, group=group.name))
            except ValueError as e:
                logger.error(f"Failed to register feed in group '{group.name}': {e}")

    registry = FeedRegistry(sources)
    logger.info(f"Registered {len(registry)} feeds")
    return registry
