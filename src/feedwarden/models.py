from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SourceKind(str, Enum):
    RSS = "RSS"
    HTML = "HTML"


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


class LinkPolicy(str, Enum):
    TRUST_DISCOVERED_LINKS = "trust_discovered_links"
    FORCE_CANONICAL_TO_ROOT = "force_canonical_to_root"


class AdmissionOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE_SKIP"
    TOO_OLD = "TOO_OLD_SKIP"


class PushOutcome(str, Enum):
    PUSH = "PUSH"
    SKIP_PER_TASK_LIMIT = "SKIP_PER_TASK_LIMIT"
    SKIP_PER_SOURCE_WINDOW = "SKIP_PER_SOURCE_WINDOW"
    DOWNGRADED_BIG_BATCH = "DOWNGRADED_BIG_BATCH"


@dataclass(frozen=True)
class ListSelectors:
    item: str | None = None
    title: str | None = None
    date: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class DetailSelectors:
    title: str | None = None
    date: str | None = None
    content: str | None = None
    fallback_content: tuple[str, ...] = ()
    attachments: str | None = None


@dataclass(frozen=True)
class CrawlConfig:
    list_urls: tuple[str, ...] = ()
    detail_pattern: str | None = None
    list_selectors: ListSelectors = field(default_factory=ListSelectors)
    selectors: DetailSelectors = field(default_factory=DetailSelectors)
    headers: dict[str, str] = field(default_factory=dict)
    transport: str = "default"
    curl_args: tuple[str, ...] = ()
    requires_js: bool = False
    link_policy: LinkPolicy = LinkPolicy.TRUST_DISCOVERED_LINKS
    fetch_detail: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CrawlConfig":
        data = data or {}
        list_selectors = data.get("list_selectors") or {}
        selectors = data.get("selectors") or {}
        return cls(
            list_urls=tuple(data.get("list_urls") or ()),
            detail_pattern=data.get("detail_pattern") or None,
            list_selectors=ListSelectors(
                item=list_selectors.get("item"),
                title=list_selectors.get("title"),
                date=list_selectors.get("date"),
                url=list_selectors.get("url"),
            ),
            selectors=DetailSelectors(
                title=selectors.get("title"),
                date=selectors.get("date"),
                content=selectors.get("content"),
                fallback_content=tuple(selectors.get("fallback_content") or ()),
                attachments=selectors.get("attachments"),
            ),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            transport=str(data.get("transport") or "default"),
            curl_args=tuple(data.get("curl_args") or ()),
            requires_js=bool(data.get("requires_js", False)),
            link_policy=LinkPolicy(data.get("link_policy") or LinkPolicy.TRUST_DISCOVERED_LINKS.value),
            fetch_detail=bool(data.get("fetch_detail", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "list_urls": list(self.list_urls),
            "detail_pattern": self.detail_pattern,
            "list_selectors": {
                key: value
                for key, value in vars(self.list_selectors).items()
                if value is not None
            },
            "selectors": {
                "title": self.selectors.title,
                "date": self.selectors.date,
                "content": self.selectors.content,
                "fallback_content": list(self.selectors.fallback_content),
                "attachments": self.selectors.attachments,
            },
            "headers": dict(self.headers),
            "transport": self.transport,
            "curl_args": list(self.curl_args),
            "requires_js": self.requires_js,
            "link_policy": self.link_policy.value,
            "fetch_detail": self.fetch_detail,
        }


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    kind: SourceKind
    url: str
    crawl: CrawlConfig
    is_active: bool
    priority: int
    fetch_interval_minutes: int
    last_fetched_at: str | None
    last_error: str | None
    last_run_stats: dict[str, int] | None
    needs_review: bool = False
    review_reason: str | None = None
    zero_fetch_streak: int = 0

    @property
    def list_urls(self) -> tuple[str, ...]:
        return self.crawl.list_urls or (self.url,)


@dataclass(frozen=True)
class Attachment:
    name: str
    url: str


@dataclass(frozen=True)
class ListingCandidate:
    """One candidate document as seen on a listing page or feed."""

    url: str
    title: str | None = None
    published_at: datetime | None = None
    summary: str | None = None
    position: int = 0


@dataclass(frozen=True)
class ExtractedContent:
    title: str | None
    published_at: datetime | None
    text: str
    attachments: tuple[Attachment, ...]
    stage: str


@dataclass(frozen=True)
class CandidateDocument:
    url: str
    title: str
    published_at: datetime | None
    observed_at: datetime
    raw_text: str
    attachments: tuple[Attachment, ...] = ()
    position: int = 0


@dataclass(frozen=True)
class Admission:
    outcome: AdmissionOutcome
    candidate: CandidateDocument
    canonical_url: str
    status: DocumentStatus | None
    skip_reason: str | None


@dataclass(frozen=True)
class Document:
    id: int | None
    source_id: str
    url: str
    canonical_url: str
    title: str
    published_at: str | None
    observed_at: str
    raw_text: str
    status: DocumentStatus
    digest: dict[str, Any] | None
    skip_reason: str | None
    attachments: tuple[Attachment, ...]
    pushed_at: str | None
    push_error: str | None = None
    push_attempts: int = 0


@dataclass(frozen=True)
class PushDecision:
    document: Document
    outcome: PushOutcome


@dataclass
class RunStats:
    fetched: int = 0
    upserted: int = 0
    pushed: int = 0
    dedup_skipped: int = 0
    skipped_too_old: int = 0
    skipped_by_limit: int = 0
    errors: int = 0
    push_failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return dict(vars(self))

    def add(self, other: "RunStats") -> None:
        for key, value in vars(other).items():
            setattr(self, key, getattr(self, key) + value)
