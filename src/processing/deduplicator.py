import hashlib
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# Query parameters that only carry campaign tracking
TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid", "ref", "ref_src"}


def _is_tracking_param(name: str) -> bool:
    return name.lower().startswith("utm_") or name.lower() in TRACKING_PARAMS


def normalize_link(link: str) -> str:
    """
    Canonical form of an item link used for deduplication:
    lowercase scheme and host, no default port, no fragment, no trailing slash,
    tracking parameters dropped and the remaining query sorted.
    """
    link = link.strip()
    parts = urlsplit(link)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()

    port = parts.port
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"

    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/")

    query = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(k)
    ]
    query.sort()

    return urlunsplit((scheme, host, path, urlencode(query), ""))


def make_dedup_key(feed_url: str, guid: Optional[str], link: Optional[str]) -> str:
    """
    Derive the stable identity of an item within a feed.
    The GUID wins when present, otherwise the normalized link is used.

    Raises:
        ValueError: if the entry has neither a GUID nor a link
    """
    if guid and guid.strip():
        basis = f"guid:{guid.strip()}"
    elif link and link.strip():
        basis = f"link:{normalize_link(link)}"
    else:
        raise ValueError("entry has neither guid nor link")

    digest = hashlib.sha256(f"{feed_url}\n{basis}".encode("utf-8")).hexdigest()
    return digest[:32]
