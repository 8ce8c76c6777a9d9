from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable
from urllib.parse import urljoin, urlsplit

import trafilatura
from bs4 import BeautifulSoup, Tag

from .errors import InsufficientContent
from .models import Attachment, DetailSelectors, ExtractedContent
from .utils import find_date_in_text, log_event, normalize_whitespace, parse_date_value

logger = logging.getLogger("feedwarden.extractor")

DEFAULT_MIN_CONTENT_LENGTH = 300

NOISE_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "aside", "iframe", "form"]
NOISE_SELECTORS = (
    ".nav, .navbar, .menu, .footer, .header, .sidebar, .breadcrumb, .related, "
    ".comment, .comments, #comments, .share, .pagination"
)
ATTACHMENT_EXTENSIONS = (
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".wps", ".zip", ".rar", ".7z", ".txt",
)
ATTACHMENT_WORDS = ("附件", "下载")

StageHook = Callable[[str, int], None]


def strip_noise(soup: BeautifulSoup) -> BeautifulSoup:
    for tag in soup(NOISE_TAGS):
        tag.decompose()
    for tag in soup.select(NOISE_SELECTORS):
        tag.decompose()
    return soup


def densest_block_text(soup: BeautifulSoup) -> str:
    article = soup.find("article")
    if article:
        return normalize_whitespace(article.get_text(" ", strip=True))
    best = ""
    for div in soup.find_all(["div", "section", "td"]):
        text = div.get_text(" ", strip=True)
        if len(text) > len(best):
            best = text
    if best:
        return normalize_whitespace(best)
    body = soup.body or soup
    return normalize_whitespace(body.get_text(" ", strip=True))


def readability_extract(html: str, url: str | None = None) -> tuple[str, str | None]:
    """Extract main text and title from the unstripped document."""
    text = normalize_whitespace(
        trafilatura.extract(html, url=url, include_comments=False, include_tables=True) or ""
    )
    metadata = trafilatura.extract_metadata(html)
    title = None
    if metadata is not None:
        title = normalize_whitespace(getattr(metadata, "title", None)) or None
    fallback = densest_block_text(strip_noise(BeautifulSoup(html, "html.parser")))
    if len(fallback) > len(text):
        text = fallback
    return text, title


def extract_document(
    html: str,
    url: str,
    selectors: DetailSelectors | None = None,
    *,
    min_length: int = DEFAULT_MIN_CONTENT_LENGTH,
    on_stage: StageHook | None = None,
) -> ExtractedContent:
    """Extract title, date, body text and attachments from a detail page.

    Body stages run in order and stop at the first one yielding at least
    ``min_length`` characters: configured selector, fallback selectors, then
    readability over the raw document. ``on_stage`` sees every stage that ran
    together with the length it produced.
    """
    selectors = selectors or DetailSelectors()
    raw = BeautifulSoup(html, "html.parser")
    work = strip_noise(BeautifulSoup(html, "html.parser"))
    _notify(on_stage, "strip", len(normalize_whitespace(work.get_text(" ", strip=True))))

    best_length = 0
    text = ""
    stage: str | None = None
    region: list[Tag] = []
    readability_title: str | None = None

    if selectors.content:
        nodes = work.select(selectors.content)
        text = _joined_text(nodes)
        _notify(on_stage, "primary", len(text))
        best_length = max(best_length, len(text))
        if len(text) >= min_length:
            stage, region = "primary", nodes

    if stage is None and selectors.fallback_content:
        nodes = _union_select(work, selectors.fallback_content)
        text = _joined_text(nodes)
        _notify(on_stage, "secondary", len(text))
        best_length = max(best_length, len(text))
        if len(text) >= min_length:
            stage, region = "secondary", nodes

    if stage is None:
        text, readability_title = readability_extract(html, url)
        _notify(on_stage, "readability", len(text))
        best_length = max(best_length, len(text))
        if len(text) >= min_length:
            stage, region = "readability", [work]

    if stage is None:
        log_event(logger, logging.INFO, "extract_insufficient", url=url, best_length=best_length)
        raise InsufficientContent(best_length, min_length, url=url)

    title = _extract_title(raw, selectors.title, readability_title)
    published_at = _extract_date(raw, work, selectors.date)
    attachments = extract_attachments(region, url, selectors.attachments)
    log_event(
        logger,
        logging.DEBUG,
        "extract_complete",
        url=url,
        stage=stage,
        length=len(text),
        attachments=len(attachments),
    )
    return ExtractedContent(
        title=title,
        published_at=published_at,
        text=text,
        attachments=attachments,
        stage=stage,
    )


def extract_attachments(
    region: Iterable[Tag],
    base_url: str,
    selector: str | None = None,
) -> tuple[Attachment, ...]:
    anchors: list[Tag] = []
    for node in region:
        if selector:
            for match in node.select(selector):
                if match.name == "a":
                    anchors.append(match)
                else:
                    anchors.extend(match.find_all("a"))
        else:
            anchors.extend(a for a in node.find_all("a") if _looks_like_attachment(a))

    attachments: list[Attachment] = []
    seen: set[str] = set()
    for anchor in anchors:
        href = anchor.get("href")
        if not isinstance(href, str) or not href.strip():
            continue
        if href.strip().lower().startswith(("javascript:", "mailto:", "#")):
            continue
        absolute = urljoin(base_url, href.strip())
        if absolute in seen:
            continue
        seen.add(absolute)
        name = normalize_whitespace(anchor.get_text(" ", strip=True)) or "Attachment"
        attachments.append(Attachment(name=name, url=absolute))
    return tuple(attachments)


def _looks_like_attachment(anchor: Tag) -> bool:
    href = anchor.get("href")
    if not isinstance(href, str) or not href.strip():
        return False
    if urlsplit(href.strip()).path.lower().endswith(ATTACHMENT_EXTENSIONS):
        return True
    text = anchor.get_text(" ", strip=True)
    return any(word in text for word in ATTACHMENT_WORDS)


def _extract_title(raw: BeautifulSoup, selector: str | None, readability_title: str | None) -> str | None:
    if selector:
        node = raw.select_one(selector)
        if node is not None:
            title = normalize_whitespace(node.get_text(" ", strip=True))
            if title:
                return title
    if readability_title:
        return readability_title
    if raw.title and raw.title.string:
        title = normalize_whitespace(raw.title.string)
        if title:
            return title
    heading = raw.find("h1")
    if heading is not None:
        return normalize_whitespace(heading.get_text(" ", strip=True)) or None
    return None


def _extract_date(raw: BeautifulSoup, work: BeautifulSoup, selector: str | None) -> datetime | None:
    if selector:
        node = raw.select_one(selector)
        if node is not None:
            parsed = parse_date_value(node.get("datetime") or node.get_text(" ", strip=True))
            if parsed is not None:
                return parsed
    return find_date_in_text(work.get_text(" ", strip=True)) or find_date_in_text(
        raw.get_text(" ", strip=True)
    )


def _union_select(soup: BeautifulSoup, selectors: Iterable[str]) -> list[Tag]:
    picked: list[Tag] = []
    picked_ids: set[int] = set()
    for selector in selectors:
        for node in soup.select(selector):
            if id(node) in picked_ids:
                continue
            if any(id(parent) in picked_ids for parent in node.parents):
                continue
            picked.append(node)
            picked_ids.add(id(node))
    return picked


def _joined_text(nodes: Iterable[Tag]) -> str:
    return normalize_whitespace(" ".join(node.get_text(" ", strip=True) for node in nodes))


def _notify(hook: StageHook | None, stage: str, length: int) -> None:
    if hook is not None:
        hook(stage, length)
