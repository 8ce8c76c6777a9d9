from __future__ import annotations

import ipaddress
import logging
import re
from typing import Any, Iterable, Iterator
from urllib.parse import parse_qsl, urljoin, urlsplit

import feedparser
from bs4 import BeautifulSoup, Tag

from .models import CrawlConfig, ListingCandidate, ListSelectors
from .utils import (
    DEFAULT_TRACKING_PARAMS,
    canonicalize_url,
    find_date_in_text,
    log_event,
    normalize_whitespace,
    parse_date_value,
    strip_tracking_params,
)

logger = logging.getLogger("feedwarden.discovery")

SECOND_LEVEL_SUFFIXES = frozenset(
    {
        "edu.cn",
        "com.cn",
        "gov.cn",
        "org.cn",
        "net.cn",
        "ac.cn",
        "ac.uk",
        "co.uk",
        "org.uk",
        "gov.uk",
        "com.au",
        "edu.au",
        "co.jp",
        "ac.jp",
        "com.hk",
        "edu.hk",
        "com.tw",
        "edu.tw",
    }
)

NON_DOCUMENT_EXTENSIONS = (
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".wps", ".txt",
    ".zip", ".rar", ".7z", ".tar", ".gz",
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg", ".ico",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".m4a",
    ".apk", ".exe", ".css", ".js",
)

PAGINATION_PATH = re.compile(r"list\d+\.(?:htm|html|psp)$", re.IGNORECASE)
PAGINATION_QUERY_KEYS = frozenset({"page"})
NAV_TEXT_MAX_LENGTH = 12
NAV_WORDS = re.compile(r"\b(?:more|next|prev|previous)\b", re.IGNORECASE)
NAV_PHRASES = ("下页", "下一页", "上一页", "上页", "更多", "尾页", "首页", "末页", "返回")
NAV_SYMBOLS = re.compile(r"^[<>»«\s.]+$")
ONCLICK_URL = re.compile(r"['\"]((?:https?://|/)[^'\"]+)['\"]")
SKIP_SCHEMES = ("javascript:", "mailto:", "tel:", "#")
LINK_ATTRS = ("href", "data-href", "data-url")


def registrable_domain(host: str) -> str:
    host = (host or "").lower().strip(".")
    if not host:
        return ""
    try:
        ipaddress.ip_address(host.strip("[]"))
        return host
    except ValueError:
        pass
    labels = host.split(".")
    if len(labels) <= 2:
        return host
    if ".".join(labels[-2:]) in SECOND_LEVEL_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def is_navigation_text(text: str | None) -> bool:
    text = normalize_whitespace(text)
    if not text or len(text) > NAV_TEXT_MAX_LENGTH:
        return False
    if NAV_SYMBOLS.match(text):
        return True
    if any(phrase in text for phrase in NAV_PHRASES):
        return True
    return bool(NAV_WORDS.search(text))


def is_pagination_url(url: str) -> bool:
    split = urlsplit(url)
    if PAGINATION_PATH.search(split.path):
        return True
    return any(key.lower() in PAGINATION_QUERY_KEYS for key, _ in parse_qsl(split.query, keep_blank_values=True))


def is_document_file(url: str) -> bool:
    return urlsplit(url).path.lower().endswith(NON_DOCUMENT_EXTENSIONS)


def element_link(element: Tag) -> str | None:
    """Return the raw link carried by an element, if any."""
    for attr in LINK_ATTRS:
        value = element.get(attr)
        if isinstance(value, str) and value.strip():
            return value.strip()
    onclick = element.get("onclick")
    if isinstance(onclick, str):
        match = ONCLICK_URL.search(onclick)
        if match:
            return match.group(1)
    return None


def resolve_link(raw: str | None, base_url: str) -> str | None:
    if not raw:
        return None
    lowered = raw.strip().lower()
    if lowered.startswith(SKIP_SCHEMES):
        return None
    resolved = urljoin(base_url, raw.strip())
    if urlsplit(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def discover_links(
    listing_html: str,
    base_url: str,
    crawl: CrawlConfig,
    *,
    list_urls: Iterable[str] = (),
    tracking_params: Iterable[str] = DEFAULT_TRACKING_PARAMS,
) -> list[ListingCandidate]:
    """Turn a listing page into ordered candidate detail-page links.

    Candidates keep document order and the first occurrence of a URL wins.
    """
    tracking = tuple(tracking_params)
    pattern = re.compile(crawl.detail_pattern) if crawl.detail_pattern else None
    base_domain = registrable_domain(urlsplit(base_url).hostname or "")
    self_loops = {canonicalize_url(url, tracking) for url in (base_url, *list_urls)}
    soup = BeautifulSoup(listing_html, "html.parser")

    candidates: list[ListingCandidate] = []
    seen: set[str] = set()
    rejected: dict[str, int] = {}
    for raw_link, anchor_text, title, published_at in _iter_listing_items(soup, crawl.list_selectors):
        url = resolve_link(raw_link, base_url)
        if url is None:
            continue
        url = strip_tracking_params(url, tracking)
        reason = _rejection_reason(url, anchor_text, base_url, base_domain, pattern, self_loops, tracking)
        if reason:
            rejected[reason] = rejected.get(reason, 0) + 1
            continue
        key = canonicalize_url(url, tracking)
        if key in seen:
            continue
        seen.add(key)
        candidates.append(
            ListingCandidate(
                url=url,
                title=title or None,
                published_at=published_at,
                position=len(candidates),
            )
        )

    log_event(
        logger,
        logging.DEBUG,
        "links_discovered",
        base_url=base_url,
        candidates=len(candidates),
        rejected=",".join(f"{key}:{value}" for key, value in sorted(rejected.items())) or "none",
    )
    return candidates


def _rejection_reason(
    url: str,
    anchor_text: str,
    base_url: str,
    base_domain: str,
    pattern: re.Pattern[str] | None,
    self_loops: set[str],
    tracking: tuple[str, ...],
) -> str | None:
    host = urlsplit(url).hostname or ""
    if registrable_domain(host) != base_domain:
        return "off_domain"
    if is_document_file(url):
        return "file"
    if pattern is not None:
        if not pattern.search(url):
            return "pattern"
    elif len(url) <= len(base_url) + 5 or "#" in url:
        return "pattern"
    if canonicalize_url(url, tracking) in self_loops:
        return "self_loop"
    if is_pagination_url(url):
        return "pagination"
    if is_navigation_text(anchor_text):
        return "navigation"
    return None


def _iter_listing_items(
    soup: BeautifulSoup, selectors: ListSelectors
) -> Iterator[tuple[str | None, str, str, Any]]:
    if selectors.item:
        for item in soup.select(selectors.item):
            yield _read_list_item(item, selectors)
        return
    for element in soup.find_all(_is_link_element):
        text = normalize_whitespace(element.get_text(" ", strip=True))
        title = text or normalize_whitespace(element.get("title") or "")
        container = element.find_parent(["li", "tr", "dd", "dt", "p"])
        published_at = find_date_in_text(container.get_text(" ", strip=True)) if container else None
        yield element_link(element), text, title, published_at


def _is_link_element(element: Tag) -> bool:
    if element.name == "a":
        return True
    return any(element.has_attr(attr) for attr in ("data-href", "data-url", "onclick"))


def _read_list_item(item: Tag, selectors: ListSelectors) -> tuple[str | None, str, str, Any]:
    if selectors.url:
        target = item.select_one(selectors.url)
    elif item.name == "a" or element_link(item):
        target = item
    else:
        target = item.find(_is_link_element)
    raw_link = element_link(target) if target is not None else None
    anchor_text = normalize_whitespace(target.get_text(" ", strip=True)) if target is not None else ""

    title = ""
    if selectors.title:
        title_el = item.select_one(selectors.title)
        if title_el is not None:
            title = normalize_whitespace(title_el.get("title") or title_el.get_text(" ", strip=True))
    if not title:
        title = anchor_text

    published_at = None
    if selectors.date:
        date_el = item.select_one(selectors.date)
        if date_el is not None:
            published_at = parse_date_value(date_el.get_text(" ", strip=True))
    if published_at is None:
        published_at = find_date_in_text(item.get_text(" ", strip=True))
    return raw_link, anchor_text, title, published_at


def parse_feed_entries(
    content: bytes | str,
    *,
    tracking_params: Iterable[str] = DEFAULT_TRACKING_PARAMS,
    source_id: str | None = None,
) -> list[ListingCandidate]:
    tracking = tuple(tracking_params)
    parsed = feedparser.parse(content)
    if parsed.bozo:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            source_id=source_id,
            error=str(parsed.bozo_exception),
        )
    candidates: list[ListingCandidate] = []
    seen: set[str] = set()
    for entry in parsed.entries or []:
        link = entry.get("link")
        if not link:
            continue
        url = strip_tracking_params(str(link).strip(), tracking)
        key = canonicalize_url(url, tracking)
        if key in seen:
            continue
        seen.add(key)
        published_at = parse_date_value(entry.get("published_parsed")) or parse_date_value(
            entry.get("updated_parsed")
        )
        if published_at is None:
            published_at = parse_date_value(entry.get("published") or entry.get("updated"))
        candidates.append(
            ListingCandidate(
                url=url,
                title=normalize_whitespace(entry.get("title")) or None,
                published_at=published_at,
                summary=_entry_text(entry) or None,
                position=len(candidates),
            )
        )
    return candidates


def _entry_text(entry: Any) -> str:
    content = entry.get("content")
    if isinstance(content, list) and content:
        value = content[0].get("value")
        if value:
            return _html_to_text(value)
    for key in ("summary", "description"):
        value = entry.get(key)
        if value:
            return _html_to_text(value)
    return ""


def _html_to_text(value: str) -> str:
    return normalize_whitespace(BeautifulSoup(value, "html.parser").get_text(" ", strip=True))
