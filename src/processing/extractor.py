"""
Readable-text extraction from article pages.

Scores candidate content regions by paragraph text density, class/id hints and
link density, then renders the winning region as plain text with light structure
(headings, bullets, quotes, preformatted blocks, numbered link references).
The parsed tree is only read, and traversal stops at a fixed element budget.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

from core.errors import ExtractionError, ExtractionErrorKind
from processing.cleaner import normalize_whitespace

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 2_000_000
MAX_ELEMENTS = 25_000
MIN_PARAGRAPH_CHARS = 25
MIN_CONTENT_CHARS = 140

SKIP_TAGS = {
    "script", "style", "noscript", "template", "svg", "canvas", "iframe", "object",
    "embed", "form", "button", "input", "select", "textarea", "nav", "header",
    "footer", "aside", "menu", "dialog", "head", "link", "meta",
}
SCORED_TAGS = {"p", "pre", "td", "blockquote"}
BLOCK_TAGS = {
    "p", "div", "section", "article", "main", "ul", "ol", "li", "dl", "dt", "dd",
    "table", "tr", "figure", "figcaption", "hr", "br", "address", "center",
    "blockquote", "pre", "h1", "h2", "h3", "h4", "h5", "h6",
}
HEADINGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 4, "h6": 4}

UNLIKELY = re.compile(
    r"(^|[\s_-])(ads?|advert\w*|banner|breadcrumbs?|cookie\w*|comments?|disqus|footer|"
    r"menu|masthead|nav\w*|newsletter|outbrain|pagination|popup|promo\w*|related|"
    r"share\w*|sidebar|social|sponsor\w*|subscribe|taboola|widget)($|[\s_-])",
    re.I,
)
MAYBE_CONTENT = re.compile(r"article|body|content|main|post|story", re.I)
POSITIVE = re.compile(r"article|body|content|entry|hentry|main|page|post|prose|story|text|blog", re.I)
NEGATIVE = re.compile(
    r"byline|caption|combx|comment|contact|foot|meta|modal|remark|rss|shoutbox|skyscraper|tags|tool",
    re.I,
)


@dataclass(frozen=True)
class ExtractionResult:
    text: str
    title: Optional[str]
    links: Tuple[str, ...] = ()


def _class_and_id(tag: Tag) -> str:
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    return " ".join(classes + [tag.get("id") or ""])


def _is_hidden(tag: Tag) -> bool:
    if tag.has_attr("hidden") or tag.get("aria-hidden") == "true":
        return True
    style = (tag.get("style") or "").replace(" ", "").lower()
    return "display:none" in style or "visibility:hidden" in style


def _is_boilerplate(tag: Tag) -> bool:
    if tag.name in SKIP_TAGS or _is_hidden(tag):
        return True
    if tag.name in ("body", "html", "article", "main"):
        return False
    names = _class_and_id(tag)
    return bool(names) and bool(UNLIKELY.search(names)) and not MAYBE_CONTENT.search(names)


def _class_weight(tag: Tag) -> int:
    names = _class_and_id(tag)
    if not names.strip():
        return 0
    weight = 0
    if POSITIVE.search(names):
        weight += 25
    if NEGATIVE.search(names):
        weight -= 25
    return weight


def _tag_weight(tag: Tag) -> int:
    if tag.name in ("article", "main"):
        return 10
    if tag.name == "div":
        return 5
    if tag.name in ("pre", "td", "blockquote"):
        return 3
    if tag.name in ("address", "ol", "ul", "dl", "dd", "dt", "li", "form"):
        return -3
    if tag.name in HEADINGS or tag.name == "th":
        return -5
    return 0


def _text(tag: Tag) -> str:
    return normalize_whitespace(tag.get_text(" "))


@dataclass
class _Measure:
    """Text statistics of one element's non-boilerplate subtree."""
    chars: int = 0
    pieces: int = 0
    link_chars: int = 0
    commas: int = 0

    @property
    def length(self) -> int:
        # whitespace-normalized pieces joined by single spaces
        return self.chars + max(0, self.pieces - 1)

    @property
    def link_density(self) -> float:
        if self.length == 0:
            return 0.0
        return min(self.link_chars / self.length, 1.0)

    def add_text(self, text: str) -> None:
        text = normalize_whitespace(text)
        if text:
            self.chars += len(text)
            self.pieces += 1
            self.commas += text.count(",")

    def absorb(self, child: "_Measure") -> None:
        self.chars += child.chars
        self.pieces += child.pieces
        self.link_chars += child.link_chars
        self.commas += child.commas


class _TextRenderer:
    """Iteratively renders a subtree to text; no recursion so deep markup is safe."""

    def __init__(self, base_url: str, budget: int):
        self.base_url = base_url
        self.budget = budget
        self.blocks: List[str] = []
        self.links: List[str] = []
        self._link_numbers: Dict[str, int] = {}
        self._inline: List[str] = []
        self._prefixes: List[List[str]] = []
        self._pre_depth = 0
        self._heading: Optional[int] = None

    def _prefix(self) -> str:
        out = []
        for entry in self._prefixes:
            out.append(entry[0])
            entry[0] = entry[1]
        return "".join(out)

    def _flush(self) -> None:
        text = normalize_whitespace("".join(self._inline))
        self._inline = []
        if not text:
            return
        if self._heading:
            text = "#" * self._heading + " " + text
        self.blocks.append(self._prefix() + text)

    def _flush_pre(self) -> None:
        raw = "".join(self._inline).strip("\n")
        self._inline = []
        if raw.strip():
            self.blocks.append("\n".join("    " + line.rstrip() for line in raw.splitlines()))

    def _link_reference(self, href: str) -> Optional[int]:
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            return None
        absolute = urljoin(self.base_url, href)
        if urlsplit(absolute).scheme not in ("http", "https"):
            return None
        if absolute not in self._link_numbers:
            self.links.append(absolute)
            self._link_numbers[absolute] = len(self.links)
        return self._link_numbers[absolute]

    def render(self, roots: List[Tag]) -> None:
        stack: List[tuple] = [("open", root) for root in reversed(roots)]
        visited = 0

        while stack:
            entry = stack.pop()
            action, node = entry[0], entry[1]

            if action == "close":
                self._close(node, entry[2])
                continue

            if isinstance(node, NavigableString):
                if isinstance(node, PreformattedString):
                    continue
                self._inline.append(str(node) if self._pre_depth else str(node).replace("\n", " "))
                continue

            if not isinstance(node, Tag) or _is_boilerplate(node):
                continue

            visited += 1
            if visited > self.budget:
                raise ExtractionError(ExtractionErrorKind.TRAVERSAL_LIMIT, "element budget exhausted while rendering")

            name = node.name
            extra = None
            if name == "br":
                if self._pre_depth:
                    self._inline.append("\n")
                else:
                    self._flush()
                continue
            if name == "hr":
                self._flush()
                continue
            if name == "img":
                continue

            if name == "pre":
                self._flush()
                self._pre_depth += 1
            elif name in HEADINGS:
                self._flush()
                self._heading = HEADINGS[name]
            elif name == "li":
                self._flush()
                self._prefixes.append(["• ", "  "])
            elif name == "blockquote":
                self._flush()
                self._prefixes.append(["> ", "> "])
            elif name == "a":
                extra = node.get("href")
            elif name in BLOCK_TAGS and not self._pre_depth:
                self._flush()

            stack.append(("close", node, extra))
            for child in reversed(node.contents):
                stack.append(("open", child))

    def _close(self, node: Tag, extra: Optional[str]) -> None:
        name = node.name
        if name == "pre":
            self._pre_depth -= 1
            if self._pre_depth == 0:
                self._flush_pre()
        elif name in HEADINGS:
            self._flush()
            self._heading = None
        elif name in ("li", "blockquote"):
            self._flush()
            self._prefixes.pop()
        elif name == "a":
            number = self._link_reference(extra or "")
            if number is not None and not self._pre_depth:
                self._inline.append(f" [{number}]")
        elif name in BLOCK_TAGS and not self._pre_depth:
            self._flush()

    def finish(self) -> str:
        if self._pre_depth:
            self._flush_pre()
        else:
            self._flush()
        return "\n\n".join(self.blocks)


class Extractor:
    """
    Deterministic heuristic article extractor. Pure function of (html, url).
    """

    def __init__(self, max_elements: int = MAX_ELEMENTS, min_content_chars: int = MIN_CONTENT_CHARS):
        self.max_elements = max_elements
        self.min_content_chars = min_content_chars

    def extract(self, html: str, url: str) -> ExtractionResult:
        """
        Extract the main readable content of a page.

        Raises:
            ExtractionError: malformed markup, no main content, or traversal limit hit
        """
        soup = self._parse(html)
        base_url = self._base_url(soup, url)
        title = self._title(soup)

        scores, measures = self._measure(soup)
        roots = self._select_roots(scores, measures)
        if not roots:
            fallback = soup.find("article") or soup.find("main") or soup.body
            if fallback is None:
                raise ExtractionError(ExtractionErrorKind.NO_CONTENT, "no content region found")
            roots = [fallback]

        renderer = _TextRenderer(base_url, self.max_elements)
        renderer.render(roots)
        body = renderer.finish()

        if len(body) < self.min_content_chars:
            raise ExtractionError(
                ExtractionErrorKind.NO_CONTENT,
                f"main content too short ({len(body)} chars)",
            )

        if title and renderer.blocks and renderer.blocks[0].lstrip("# ") == title:
            renderer.blocks.pop(0)
            body = "\n\n".join(renderer.blocks)

        text = body
        if renderer.links:
            references = "\n".join(f"[{n}] {link}" for n, link in enumerate(renderer.links, start=1))
            text = f"{body}\n\nLinks:\n{references}"

        return ExtractionResult(text=text, title=title, links=tuple(renderer.links))

    def _parse(self, html: str) -> BeautifulSoup:
        if not isinstance(html, str) or "<" not in html:
            raise ExtractionError(ExtractionErrorKind.MALFORMED, "document contains no markup")
        if len(html) > MAX_DOCUMENT_CHARS:
            html = html[:MAX_DOCUMENT_CHARS]
        try:
            soup = BeautifulSoup(html, "html.parser")
        except (AssertionError, ValueError, TypeError) as e:
            raise ExtractionError(ExtractionErrorKind.MALFORMED, f"unparseable markup: {e}") from e
        if soup.find() is None:
            raise ExtractionError(ExtractionErrorKind.MALFORMED, "document contains no elements")
        return soup

    @staticmethod
    def _base_url(soup: BeautifulSoup, url: str) -> str:
        base = soup.find("base", href=True)
        if base is not None:
            return urljoin(url, base["href"])
        return url

    @staticmethod
    def _title(soup: BeautifulSoup) -> Optional[str]:
        og = soup.find("meta", attrs={"property": "og:title"})
        if og is not None and og.get("content"):
            return normalize_whitespace(og["content"]) or None
        if soup.title is not None:
            title = normalize_whitespace(soup.title.get_text())
            if title:
                return title
        h1 = soup.find("h1")
        if h1 is not None:
            return _text(h1) or None
        return None

    def _measure(self, soup: BeautifulSoup) -> Tuple[Dict[int, Tuple[Tag, float]], Dict[int, _Measure]]:
        """
        Walk the tree once (iterative post-order), pruning boilerplate.

        Every element's text and link-text length is summed bottom-up, so no subtree
        is re-read later; paragraph scores go to the parent and half to the grandparent.
        """
        scores: Dict[int, Tuple[Tag, float]] = {}
        measures: Dict[int, _Measure] = {}

        def add(tag: Optional[Tag], amount: float) -> None:
            if tag is None or not isinstance(tag, Tag) or tag.name in ("[document]", "html"):
                return
            key = id(tag)
            if key not in scores:
                scores[key] = (tag, float(_tag_weight(tag) + _class_weight(tag)))
            node, score = scores[key]
            scores[key] = (node, score + amount)

        stack: List[Tuple[bool, Tag]] = [(False, soup)]
        visited = 0
        while stack:
            leaving, node = stack.pop()

            if leaving:
                measure = measures[id(node)]
                if node.name == "a":
                    measure.link_chars = measure.length
                if node.name in SCORED_TAGS and measure.length >= MIN_PARAGRAPH_CHARS:
                    score = 1 + measure.commas + min(measure.length // 100, 3)
                    add(node.parent, score)
                    if node.parent is not None:
                        add(node.parent.parent, score / 2)
                parent = measures.get(id(node.parent)) if node.parent is not None else None
                if parent is not None:
                    parent.absorb(measure)
                continue

            visited += 1
            if visited > self.max_elements:
                raise ExtractionError(
                    ExtractionErrorKind.TRAVERSAL_LIMIT,
                    f"more than {self.max_elements} elements",
                )

            measure = measures[id(node)] = _Measure()
            stack.append((True, node))
            for child in reversed(node.contents):
                if isinstance(child, Tag):
                    if not _is_boilerplate(child):
                        stack.append((False, child))
                elif isinstance(child, NavigableString) and not isinstance(child, PreformattedString):
                    measure.add_text(str(child))

        return scores, measures

    def _select_roots(self, scores: Dict[int, Tuple[Tag, float]], measures: Dict[int, _Measure]) -> List[Tag]:
        best: Optional[Tag] = None
        best_score = 0.0
        final: Dict[int, float] = {}
        for key, (tag, score) in scores.items():
            adjusted = score * (1 - measures[key].link_density)
            final[key] = adjusted
            if best is None or adjusted > best_score:
                best, best_score = tag, adjusted

        if best is None or best_score <= 0:
            return []

        parent = best.parent
        if parent is None or parent.name in ("[document]", "html"):
            return [best]

        threshold = max(10.0, best_score * 0.2)
        roots = []
        for sibling in parent.children:
            if not isinstance(sibling, Tag) or _is_boilerplate(sibling):
                continue
            if sibling is best:
                roots.append(sibling)
                continue
            if final.get(id(sibling), 0.0) >= threshold:
                roots.append(sibling)
            elif sibling.name == "p":
                measure = measures.get(id(sibling))
                if measure is not None and measure.length > 80 and measure.link_density < 0.25:
                    roots.append(sibling)
        return roots
