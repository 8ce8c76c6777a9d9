from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from .admission import admit, canonical_identity
from .config import IngestConfig
from .discovery import discover_links, parse_feed_entries
from .errors import (
    BudgetExceeded,
    DynamicSite,
    FetchError,
    IllegalTransition,
    InsufficientContent,
)
from .extractor import extract_document
from .fetcher import Deadline, Fetcher
from .models import (
    Admission,
    AdmissionOutcome,
    CandidateDocument,
    ListingCandidate,
    RunStats,
    Source,
    SourceKind,
)
from .utils import log_event, normalize_whitespace, utc_now_iso


class SourceRunState(str, Enum):
    IDLE = "Idle"
    FETCHING = "Fetching"
    EXTRACTING = "Extracting"
    FILTERING = "Filtering"
    GATING = "Gating"
    DONE = "Done"
    ERRORED = "Errored"


ALLOWED_TRANSITIONS: dict[SourceRunState, frozenset[SourceRunState]] = {
    SourceRunState.IDLE: frozenset({SourceRunState.FETCHING, SourceRunState.ERRORED}),
    SourceRunState.FETCHING: frozenset({SourceRunState.EXTRACTING, SourceRunState.ERRORED}),
    SourceRunState.EXTRACTING: frozenset({SourceRunState.FILTERING, SourceRunState.ERRORED}),
    SourceRunState.FILTERING: frozenset({SourceRunState.GATING, SourceRunState.ERRORED}),
    SourceRunState.GATING: frozenset({SourceRunState.DONE, SourceRunState.ERRORED}),
    SourceRunState.DONE: frozenset(),
    SourceRunState.ERRORED: frozenset(),
}


@dataclass
class SourceRun:
    """Outcome of one source's pass through the pipeline.

    Built by a worker thread without touching the database; the orchestrator
    persists it afterwards.
    """

    source: Source
    state: SourceRunState = SourceRunState.IDLE
    stats: RunStats = field(default_factory=RunStats)
    error: FetchError | None = None
    error_at: str | None = None
    admissions: list[Admission] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    started_monotonic: float = field(default_factory=time.monotonic)
    budget_exhausted: bool = False

    def transition(self, target: SourceRunState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.source.id}: {self.state.value} -> {target.value}")
        self.state = target

    def fail(self, error: FetchError) -> None:
        self.record_error(error)
        if self.state not in (SourceRunState.DONE, SourceRunState.ERRORED):
            self.transition(SourceRunState.ERRORED)

    def record_error(self, error: FetchError) -> None:
        self.stats.errors += 1
        if self.error is None:
            self.error = error
            self.error_at = utc_now_iso()

    def record_budget_exceeded(self, error: BudgetExceeded) -> bool:
        """Count the first budget overrun only; returns True when it was counted."""
        if self.budget_exhausted:
            return False
        self.budget_exhausted = True
        self.record_error(error)
        return True

    @property
    def terminal(self) -> bool:
        return self.state in (SourceRunState.DONE, SourceRunState.ERRORED)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)


@dataclass(frozen=True)
class SourceContext:
    fetcher: Fetcher
    ingest: IngestConfig
    known_canonical_urls: frozenset[str]
    now: datetime
    logger: logging.Logger


def process_source(source: Source, ctx: SourceContext, deadline: Deadline | None = None) -> SourceRun:
    """Fetch, discover, extract and admit documents for one source.

    Stops at Filtering; gating and persistence are left to the caller.
    """
    run = SourceRun(source=source)
    deadline = deadline or Deadline(ctx.ingest.source_budget_seconds)
    run.transition(SourceRunState.FETCHING)
    log_event(ctx.logger, logging.INFO, "source_fetch_start", source_id=source.id, kind=source.kind.value)

    candidates, feed_mode = _collect_candidates(source, ctx, deadline, run)
    if run.terminal:
        return run
    candidates = candidates[: ctx.ingest.max_candidates]
    run.stats.fetched = len(candidates)

    if not candidates and source.crawl.requires_js:
        run.fail(DynamicSite("no candidate links", url=source.url))
        log_event(ctx.logger, logging.WARNING, "source_dynamic_site", source_id=source.id)
        return run

    run.transition(SourceRunState.EXTRACTING)
    known = set(ctx.known_canonical_urls)
    pending: list[ListingCandidate] = []
    for candidate in candidates:
        canonical_url = canonical_identity(candidate.url, source, ctx.ingest.tracking_params)
        if canonical_url in known:
            run.stats.dedup_skipped += 1
            continue
        known.add(canonical_url)
        pending.append(candidate)

    documents = _build_documents(pending, source, ctx, deadline, run, feed_mode)

    run.transition(SourceRunState.FILTERING)
    age_window = timedelta(days=ctx.ingest.max_age_days)
    admitted: set[str] = set(ctx.known_canonical_urls)
    for document in documents:
        admission = admit(
            document,
            source,
            admitted,
            age_window,
            now=ctx.now,
            tracking_params=ctx.ingest.tracking_params,
        )
        if admission.outcome == AdmissionOutcome.DUPLICATE:
            run.stats.dedup_skipped += 1
            continue
        admitted.add(admission.canonical_url)
        if admission.outcome == AdmissionOutcome.TOO_OLD:
            run.stats.skipped_too_old += 1
        run.admissions.append(admission)

    log_event(
        ctx.logger,
        logging.INFO,
        "source_processed",
        source_id=source.id,
        fetched=run.stats.fetched,
        admitted=len(run.admissions),
        errors=run.stats.errors,
        elapsed_ms=run.elapsed_ms(),
    )
    return run


def _collect_candidates(
    source: Source,
    ctx: SourceContext,
    deadline: Deadline,
    run: SourceRun,
) -> tuple[list[ListingCandidate], bool]:
    candidates: list[ListingCandidate] = []
    seen: set[str] = set()
    succeeded = 0
    feed_mode = source.kind == SourceKind.RSS and not source.crawl.fetch_detail
    for list_url in source.list_urls:
        try:
            result = ctx.fetcher.fetch(
                list_url,
                deadline=deadline,
                headers=source.crawl.headers,
                transport=source.crawl.transport,
                curl_args=source.crawl.curl_args,
            )
        except BudgetExceeded as exc:
            log_event(ctx.logger, logging.WARNING, "source_budget_exceeded", source_id=source.id, url=list_url)
            run.record_budget_exceeded(exc)
            break
        except FetchError as exc:
            log_event(
                ctx.logger,
                logging.WARNING,
                "listing_fetch_failed",
                source_id=source.id,
                url=list_url,
                error=exc.describe(),
            )
            run.record_error(exc)
            continue
        succeeded += 1
        if source.kind == SourceKind.RSS:
            found = parse_feed_entries(
                result.body,
                tracking_params=ctx.ingest.tracking_params,
                source_id=source.id,
            )
        else:
            found = discover_links(
                result.body,
                result.final_url or list_url,
                source.crawl,
                list_urls=source.list_urls,
                tracking_params=ctx.ingest.tracking_params,
            )
        for candidate in found:
            if candidate.url in seen:
                continue
            seen.add(candidate.url)
            candidates.append(candidate)
    if succeeded == 0 and run.error is not None and not run.terminal:
        run.transition(SourceRunState.ERRORED)
    return candidates, feed_mode


def _build_documents(
    pending: list[ListingCandidate],
    source: Source,
    ctx: SourceContext,
    deadline: Deadline,
    run: SourceRun,
    feed_mode: bool,
) -> list[CandidateDocument]:
    if feed_mode:
        return [_feed_document(candidate, ctx.now) for candidate in pending]

    def build(candidate: ListingCandidate) -> CandidateDocument | FetchError:
        try:
            return _detail_document(candidate, source, ctx, deadline)
        except FetchError as exc:
            return exc

    workers = max(1, min(ctx.ingest.detail_workers, len(pending) or 1))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        outcomes = list(executor.map(build, pending))

    documents: list[CandidateDocument] = []
    for candidate, outcome in zip(pending, outcomes):
        if isinstance(outcome, CandidateDocument):
            documents.append(outcome)
            continue
        if isinstance(outcome, BudgetExceeded):
            if run.record_budget_exceeded(outcome):
                log_event(ctx.logger, logging.WARNING, "source_budget_exceeded", source_id=source.id, url=candidate.url)
            continue
        if isinstance(outcome, InsufficientContent) and source.kind == SourceKind.RSS and candidate.summary:
            documents.append(_feed_document(candidate, ctx.now))
            continue
        log_event(
            ctx.logger,
            logging.WARNING,
            "detail_failed",
            source_id=source.id,
            url=candidate.url,
            error=outcome.describe(),
        )
        run.record_error(outcome)
    return documents


def _detail_document(
    candidate: ListingCandidate,
    source: Source,
    ctx: SourceContext,
    deadline: Deadline,
) -> CandidateDocument:
    result = ctx.fetcher.fetch(
        candidate.url,
        deadline=deadline,
        headers=source.crawl.headers,
        transport=source.crawl.transport,
        curl_args=source.crawl.curl_args,
    )
    extracted = extract_document(
        result.body,
        result.final_url or candidate.url,
        source.crawl.selectors,
        min_length=ctx.ingest.min_content_length,
    )
    return CandidateDocument(
        url=candidate.url,
        title=candidate.title or extracted.title or "No Title",
        published_at=candidate.published_at or extracted.published_at,
        observed_at=ctx.now,
        raw_text=extracted.text,
        attachments=extracted.attachments,
        position=candidate.position,
    )


def _feed_document(candidate: ListingCandidate, observed_at: datetime) -> CandidateDocument:
    title = candidate.title or "No Title"
    return CandidateDocument(
        url=candidate.url,
        title=title,
        published_at=candidate.published_at,
        observed_at=observed_at,
        raw_text=normalize_whitespace(candidate.summary) or title,
        position=candidate.position,
    )


def preview_source(source: Source, ctx: SourceContext, limit: int = 10) -> dict[str, object]:
    """Run the pipeline for one source and describe the admissions without persisting."""
    run = process_source(source, ctx)
    return {
        "source_id": source.id,
        "state": run.state.value,
        "stats": run.stats.to_dict(),
        "error": run.error.describe() if run.error else None,
        "admissions": [
            {
                "outcome": admission.outcome.value,
                "url": admission.candidate.url,
                "canonical_url": admission.canonical_url,
                "title": admission.candidate.title,
                "published_at": admission.candidate.published_at.isoformat()
                if admission.candidate.published_at
                else None,
                "text_length": len(admission.candidate.raw_text),
            }
            for admission in run.admissions[:limit]
        ],
    }
