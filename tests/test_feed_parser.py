from datetime import datetime, timezone

import pytest

from core.errors import FeedParseError
from ingestion.feed_parser import SUMMARY_MAX_LENGTH, parse_feed


class TestParseRss:
    def test_entries_in_document_order(self, rss_document):
        parsed = parse_feed(rss_document, "https://example.com/feed.xml")

        assert [e.title for e in parsed.entries] == ["First & foremost", "Second"]
        assert parsed.title == "Example News"
        assert parsed.description == "Things that happened"

    def test_entry_without_guid_or_link_is_skipped_and_counted(self, rss_document):
        parsed = parse_feed(rss_document)

        assert parsed.skipped == 1
        assert all(e.guid or e.link for e in parsed.entries)

    def test_fields_are_normalized(self, rss_document):
        first, second = parse_feed(rss_document).entries

        assert first.guid == "post-1"
        assert first.link == "https://example.com/posts/1"
        assert first.summary == "The first post."
        assert first.published_at == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)
        assert second.guid is None
        assert second.link == "https://example.com/posts/2"

    def test_long_summary_is_truncated(self):
        body = ("<rss version=\"2.0\"><channel><title>t</title><item><link>https://x.test/1</link>"
                f"<description>{'word ' * 400}</description></item></channel></rss>").encode()

        entry = parse_feed(body).entries[0]

        assert len(entry.summary) <= SUMMARY_MAX_LENGTH + 1
        assert entry.summary.endswith("…")

    def test_missing_title_falls_back_to_link(self):
        body = b"<rss version=\"2.0\"><channel><title>t</title><item><link>https://x.test/1</link></item></channel></rss>"

        assert parse_feed(body).entries[0].title == "https://x.test/1"


class TestParseAtom:
    def test_atom_entry(self, atom_document):
        parsed = parse_feed(atom_document)

        assert parsed.title == "Atom Example"
        assert parsed.description == "An atom feed"
        entry = parsed.entries[0]
        assert entry.title == "Atom entry"
        assert entry.guid == "urn:uuid:entry-1"
        assert entry.link == "https://example.org/atom/1"
        assert entry.published_at == datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc)
        assert "Body of the atom entry." in entry.summary


class TestParseErrors:
    def test_empty_body(self):
        with pytest.raises(FeedParseError):
            parse_feed(b"")

    def test_whitespace_body(self):
        with pytest.raises(FeedParseError):
            parse_feed(b"   \n")

    def test_html_page_is_not_a_feed(self):
        with pytest.raises(FeedParseError):
            parse_feed(b"<html><body><p>Hello there</p></body></html>", "https://example.com/")

    def test_empty_feed_is_valid(self):
        parsed = parse_feed(b"<rss version=\"2.0\"><channel><title>Quiet</title></channel></rss>")

        assert parsed.entries == []
        assert parsed.title == "Quiet"
