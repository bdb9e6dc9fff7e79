import pytest

from processing.deduplicator import make_dedup_key, normalize_link

FEED = "https://example.com/feed.xml"


class TestNormalizeLink:
    @pytest.mark.parametrize("link, expected", [
        ("HTTPS://Example.COM/a/", "https://example.com/a"),
        ("https://example.com:443/a", "https://example.com/a"),
        ("http://example.com:8080/a", "http://example.com:8080/a"),
        ("https://example.com", "https://example.com/"),
        ("https://example.com/a#section", "https://example.com/a"),
        ("https://example.com/a?utm_source=rss&b=2&a=1", "https://example.com/a?a=1&b=2"),
        ("https://example.com/a?fbclid=xyz", "https://example.com/a"),
    ])
    def test_normalize(self, link, expected):
        assert normalize_link(link) == expected

    def test_path_case_is_kept(self):
        assert normalize_link("https://example.com/CaseSensitive") == "https://example.com/CaseSensitive"


class TestMakeDedupKey:
    def test_guid_wins_over_link(self):
        assert make_dedup_key(FEED, "g1", "https://example.com/a") == make_dedup_key(FEED, "g1", "https://example.com/b")

    def test_link_variants_share_a_key(self):
        assert make_dedup_key(FEED, None, "https://example.com/a") == make_dedup_key(FEED, None, "https://EXAMPLE.com/a/")

    def test_blank_guid_falls_back_to_link(self):
        assert make_dedup_key(FEED, "  ", "https://example.com/a") == make_dedup_key(FEED, None, "https://example.com/a")

    def test_keys_are_scoped_per_feed(self):
        assert make_dedup_key(FEED, "g1", None) != make_dedup_key("https://other.test/rss", "g1", None)

    def test_guid_and_link_namespaces_do_not_collide(self):
        assert make_dedup_key(FEED, "https://example.com/a", None) != make_dedup_key(FEED, None, "https://example.com/a")

    def test_stable_and_fixed_length(self):
        key = make_dedup_key(FEED, "g1", None)
        assert key == make_dedup_key(FEED, "g1", None)
        assert len(key) == 32

    def test_requires_guid_or_link(self):
        with pytest.raises(ValueError):
            make_dedup_key(FEED, None, None)
