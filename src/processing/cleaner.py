"""
Text cleanup for HTML fragments embedded in feed entries (summaries, titles).
"""
import html
import logging
import re

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TAG = re.compile(r"<[^>]+>")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def html_to_text(fragment: str) -> str:
    """Strip markup from a fragment and collapse whitespace to single spaces."""
    if not fragment:
        return ""
    if "<" not in fragment and "&" not in fragment:
        return normalize_whitespace(fragment)

    soup = BeautifulSoup(fragment, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    # entities escaped twice survive a single parse
    if _TAG.search(text):
        text = _TAG.sub(" ", html.unescape(text))
    return normalize_whitespace(text)


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    cut = text[:max_length].rsplit(" ", 1)[0]
    return (cut or text[:max_length]).rstrip() + "…"
