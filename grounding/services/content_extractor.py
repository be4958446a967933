"""
Main-text and head-metadata extraction for fetched pages.

``HtmlContentExtractor`` drops chrome (navigation, banners, forms, embedded
media), weighs the remaining container elements by how much prose they
carry, and keeps the heaviest one together with any sibling of comparable
weight. Headings, paragraphs and list items of the kept containers become
newline-separated text. Pages with no usable container fall back to the
block elements of the whole document.

:func:`inspect_page` reads the ``<head>``: title, description, author,
publication date and language, plus the good-practice signals the web
validator scores.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Sequence, Set, Tuple

from bs4 import BeautifulSoup, Tag

from grounding.models.pipeline import PageMetadata
from grounding.utils.date_utils import iso_or_none
from grounding.utils.error_handling import ExtractionError

TEXT_BLOCKS = ("h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "blockquote", "pre")
_NEVER_CONTENT = ("script", "style", "noscript", "template", "iframe", "svg", "canvas")
_CHROME_TAGS = (
    "nav", "header", "footer", "aside", "form", "button", "input", "select", "label",
    "figure", "figcaption", "video", "audio",
)
# id/class fragments that mark page chrome rather than prose
_CHROME_MARKERS = (
    "nav", "menu", "breadcrumb", "footer", "header", "sidebar", "widget", "subscribe",
    "newsletter", "social", "share", "modal", "overlay", "banner", "cookie", "consent",
    "promo", "advert", "ad-", "ads", "related", "recommend", "comment", "pagination",
)
_SENTENCE_MARKS = re.compile(r"[\.!?,;:]")
_ARTICLE_TYPES = {"article", "newsarticle", "blogposting", "scholarlyarticle", "techarticle"}


class ContentExtractor(Protocol):
    def extract_main_text(self, raw_body: str, *, content_type: Optional[str] = None) -> str: ...


def _strip_chrome(soup: BeautifulSoup) -> None:
    for el in soup.find_all(list(_NEVER_CONTENT) + list(_CHROME_TAGS)):
        if not el.decomposed:
            el.decompose()
    for el in soup.find_all(True):
        if el.decomposed or el.attrs is None:
            continue  # inside something removed above
        marker = f"{el.get('id') or ''} {' '.join(el.get('class') or [])}".lower()
        if any(m in marker for m in _CHROME_MARKERS):
            el.decompose()


def _join_blocks(nodes: Sequence[Tag], limit: Optional[int]) -> str:
    lines: List[str] = []
    size = 0
    for node in nodes:
        text = node.get_text(" ", strip=True)
        if not text:
            continue
        line = f"- {text}" if node.name.lower() == "li" else text
        lines.append(line)
        size += len(line) + 1
        if limit and size >= limit:
            break
    joined = "\n".join(lines).strip()
    return joined[:limit] if limit else joined


class _BlockRanker:
    """Weighs container elements by prose mass, discounting link-heavy blocks."""

    containers = ("article", "main", "section", "div")

    def __init__(self, sibling_ratio: float) -> None:
        self.sibling_ratio = sibling_ratio

    @staticmethod
    def weight(el: Tag) -> float:
        text = el.get_text(" ", strip=True)
        if not text:
            return 0.0
        size = float(len(text))
        anchors = sum(len(a.get_text(" ", strip=True) or "") for a in el.find_all("a"))
        link_share = min(0.9, anchors / size)
        punctuation = min(0.5, len(_SENTENCE_MARKS.findall(text)) / size)
        weight = size * (1.0 - link_share) * (1.0 + punctuation)
        return weight * 1.15 if el.find(["h1", "h2", "h3"]) else weight

    def pick(self, soup: BeautifulSoup) -> List[Tag]:
        """Heaviest container first, then its siblings within ``sibling_ratio`` of it."""
        ranked: List[Tuple[float, int, Tag]] = []
        for priority, name in enumerate(self.containers):
            for el in soup.find_all(name):
                w = self.weight(el)
                if w > 0:
                    ranked.append((w, priority, el))
        if not ranked:
            return []
        # ties go to the earlier container kind, then document order
        ranked.sort(key=lambda item: (-item[0], item[1]))
        best_weight, _, best = ranked[0]
        picked = [best]
        if best.parent is not None:
            for sib in best.parent.find_all(recursive=False):
                if sib is not best and self.weight(sib) >= self.sibling_ratio * best_weight:
                    picked.append(sib)
        return picked


class HtmlContentExtractor:
    def __init__(self, max_chars: Optional[int] = 250_000, sibling_ratio: float = 0.35) -> None:
        self.max_chars = max_chars
        self.ranker = _BlockRanker(sibling_ratio)

    def extract_main_text(self, raw_body: str, *, content_type: Optional[str] = None) -> str:
        """Main-body text of *raw_body*; ``text/plain`` only has blank lines squeezed out.

        Raises ``ExtractionError`` (reason ``extraction_failed``) when nothing
        readable is left.
        """
        if content_type and content_type.lower().startswith("text/plain"):
            text = "\n".join(line.strip() for line in (raw_body or "").splitlines() if line.strip())
        else:
            text = self._from_html(raw_body or "")
        if not text.strip():
            raise ExtractionError("no main text could be extracted")
        return text[: self.max_chars] if self.max_chars else text

    def _whole_document(self, soup: BeautifulSoup) -> str:
        text = _join_blocks(soup.find_all(list(TEXT_BLOCKS)), self.max_chars) or soup.get_text(" ", strip=True)
        return text[: self.max_chars] if self.max_chars else text

    def _from_html(self, html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        _strip_chrome(soup)
        chunks: List[str] = []
        for el in self.ranker.pick(soup):
            chunk = _join_blocks(el.find_all(list(TEXT_BLOCKS)), self.max_chars) or el.get_text(" ", strip=True)
            if chunk:
                chunks.append(chunk)
            if self.max_chars and sum(len(c) + 1 for c in chunks) >= self.max_chars:
                break
        return "\n".join(chunks).strip() or self._whole_document(soup)


def _first_non_empty(*vals: Optional[str]) -> Optional[str]:
    for v in vals:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def _json_ld_items(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for s in soup.find_all("script", type=lambda t: bool(t and "ld+json" in t)):
        try:
            data = json.loads(s.get_text() or "{}")
        except ValueError:
            continue
        items.extend(it for it in (data if isinstance(data, list) else [data]) if isinstance(it, dict))
    return items


def _article_item(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    for it in items:
        kind = it.get("@type")
        if isinstance(kind, list):
            kind = kind[0] if kind else None
        if str(kind).lower() in _ARTICLE_TYPES:
            return it
    return {}


def _ld_authors(ld: Dict[str, Any]) -> List[str]:
    raw = ld.get("author")
    names = []
    for entry in raw if isinstance(raw, list) else [raw]:
        if isinstance(entry, dict) and entry.get("name"):
            names.append(str(entry["name"]))
        elif isinstance(entry, str):
            names.append(entry)
    return names


def header_signals(headers: Optional[Dict[str, str]]) -> Set[str]:
    h = {k.lower(): v for k, v in (headers or {}).items()}
    signals = set()
    if h.get("content-security-policy"):
        signals.add("csp")
    if h.get("strict-transport-security"):
        signals.add("hsts")
    return signals


def inspect_page(
    html: str, headers: Optional[Dict[str, str]] = None
) -> Tuple[PageMetadata, FrozenSet[str]]:
    """Head metadata plus good-practice signals of one page.

    OpenGraph/article tags win over JSON-LD, which wins over generic meta
    tags and ``<title>``; ``Last-Modified`` is the date of last resort.
    Signals are a subset of ``open_graph``, ``twitter_card``,
    ``schema_org``, ``canonical``, ``csp`` and ``hsts``.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    og: Dict[str, str] = {}
    meta: Dict[str, str] = {}
    for m in soup.find_all("meta"):
        key = (m.get("property") or m.get("name") or "").strip().lower()
        value = m.get("content")
        if not key or value is None:
            continue
        (og if key.startswith(("og:", "article:")) else meta).setdefault(key, value)
    ld_items = _json_ld_items(soup)
    ld = _article_item(ld_items)

    authors = [
        (m.get("content") or "").strip() for m in soup.find_all("meta", attrs={"name": "citation_author"})
    ]
    for key in ("author", "article:author", "parsely-author"):
        value = meta.get(key) or og.get(key)
        if isinstance(value, str):
            authors.append(value.strip())
    authors.extend(_ld_authors(ld))
    authors = list(dict.fromkeys(a for a in authors if a))

    h = {k.lower(): v for k, v in (headers or {}).items()}
    published = _first_non_empty(
        og.get("article:published_time"),
        ld.get("datePublished") if isinstance(ld.get("datePublished"), str) else None,
        meta.get("date"),
        meta.get("citation_publication_date"),
        meta.get("dc.date"),
        meta.get("dcterms.date"),
        og.get("og:updated_time"),
        h.get("last-modified"),
    )

    language = None
    root = soup.find("html")
    if root is not None and root.get("lang"):
        language = root.get("lang").strip().split("-")[0].lower() or None

    title_tag = soup.title.get_text(strip=True) if soup.title else None
    metadata = PageMetadata(
        title=_first_non_empty(og.get("og:title"), ld.get("headline"), meta.get("twitter:title"), title_tag),
        description=_first_non_empty(og.get("og:description"), meta.get("description"), meta.get("twitter:description")),
        author=", ".join(authors) if authors else None,
        date=iso_or_none(published) or published,
        language=language,
    )

    signals = header_signals(h)
    if og.get("og:title"):
        signals.add("open_graph")
    if meta.get("twitter:card"):
        signals.add("twitter_card")
    if ld_items:
        signals.add("schema_org")
    if soup.find("link", rel="canonical"):
        signals.add("canonical")
    return metadata, frozenset(signals)
