from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping

from .config import Config
from .errors import PushFailure, UnexpectedError
from .fetcher import Fetcher, HostThrottle, Transport
from .ingest import SourceContext, SourceRun, SourceRunState, process_source
from .models import (
    Admission,
    AdmissionOutcome,
    Document,
    DocumentStatus,
    PushDecision,
    PushOutcome,
    RunStats,
    Source,
)
from .notify import WebhookNotifier
from .push_gate import PUSH_GATE_REVIEWER, PushLimits, RunPushBudget, SourceWindowBudget, gate
from .storage import (
    AUDIT_ADMIT,
    AUDIT_PUSH,
    AUDIT_PUSH_GATE,
    AUDIT_STOP_LOSS,
    PUSH_RESULT_ERROR,
    PUSH_RESULT_PUSHED,
    count_recent_pushes,
    document_snapshot,
    get_document,
    insert_audit,
    insert_document,
    list_due_sources,
    list_retry_documents,
    load_canonical_urls,
    mark_document_pushed,
    mark_document_push_failed,
    record_source_run,
    source_snapshot,
    update_source_after_run,
)
from .utils import isoformat_utc, log_event, utc_now

ADMISSION_REVIEWER = "system:admission"
NOTIFIER_REVIEWER = "system:notifier"
STOP_LOSS_REVIEWER = "system:stop-loss"
ZERO_FETCHED = "ZeroFetched"


@dataclass
class RunState:
    """Shared counters for one run; never reused across runs."""

    throttle: HostThrottle
    semaphore: threading.BoundedSemaphore
    run_budget: RunPushBudget
    window_budget: SourceWindowBudget

    @classmethod
    def create(
        cls,
        config: Config,
        seed_loader: Callable[[str], int] | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RunState":
        return cls(
            throttle=HostThrottle(config.http.min_host_interval_ms / 1000.0, sleep=sleep),
            semaphore=threading.BoundedSemaphore(config.ingest.concurrency),
            run_budget=RunPushBudget(config.push.per_task_max),
            window_budget=SourceWindowBudget(config.push.per_source_window_max, seed_loader),
        )


@dataclass
class SourceReport:
    source_id: str
    name: str
    state: str
    stats: dict[str, int]
    error: str | None
    disabled: bool = False
    needs_review: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dict(vars(self))


@dataclass
class RunReport:
    run_id: str
    started_at: str
    finished_at: str | None = None
    dry_run: bool = False
    totals: RunStats = field(default_factory=RunStats)
    sources: list[SourceReport] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "totals": self.totals.to_dict(),
            "sources": [source.to_dict() for source in self.sources],
        }


class Orchestrator:
    def __init__(
        self,
        conn: sqlite3.Connection,
        config: Config,
        *,
        notifier: Any | None = None,
        transports: Mapping[str, Transport] | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.notifier = notifier or WebhookNotifier(
            config.push.webhook_url, config.push.timeout_seconds
        )
        self.transports = transports
        self.clock = clock
        self.sleep = sleep
        self.limits = PushLimits.from_config(config.push)
        self.logger = logger or logging.getLogger("feedwarden.orchestrator")

    def run(self, source_ids: Iterable[str] | None = None, *, dry_run: bool = False) -> RunReport:
        now = self.clock()
        wanted = list(source_ids) if source_ids else None
        sources = list_due_sources(self.conn, now.isoformat(), wanted)
        report = RunReport(run_id=uuid.uuid4().hex[:12], started_at=now.isoformat(), dry_run=dry_run)
        log_event(
            self.logger,
            logging.INFO,
            "run_start",
            run_id=report.run_id,
            due=len(sources),
            dry_run=dry_run,
        )
        if wanted:
            missing = sorted(set(wanted) - {source.id for source in sources})
            if missing:
                log_event(self.logger, logging.WARNING, "run_sources_skipped", source_ids=",".join(missing))

        window_since = (now - timedelta(minutes=self.limits.per_source_window_minutes)).isoformat()
        state = RunState.create(
            self.config,
            seed_loader=lambda source_id: count_recent_pushes(self.conn, source_id, window_since),
            sleep=self.sleep,
        )
        fetcher = Fetcher(
            self.config.http,
            throttle=state.throttle,
            semaphore=state.semaphore,
            waf_markers=self.config.ingest.waf_markers,
            transports=self.transports,
            logger=logging.getLogger("feedwarden.fetcher"),
        )
        known = {source.id: frozenset(load_canonical_urls(self.conn, source.id)) for source in sources}

        runs: dict[str, SourceRun] = {}
        with ThreadPoolExecutor(max_workers=self.config.ingest.concurrency) as executor:
            futures = {
                source.id: executor.submit(
                    self._process_safely,
                    source,
                    SourceContext(
                        fetcher=fetcher,
                        ingest=self.config.ingest,
                        known_canonical_urls=known[source.id],
                        now=now,
                        logger=logging.getLogger("feedwarden.ingest"),
                    ),
                )
                for source in sources
            }
            for source_id, future in futures.items():
                runs[source_id] = future.result()

        for source in sources:
            source_report = self._finalize(runs[source.id], state, report.run_id, dry_run)
            report.sources.append(source_report)
            report.totals.add(runs[source.id].stats)

        report.finished_at = self.clock().isoformat()
        log_event(
            self.logger,
            logging.INFO,
            "run_complete",
            run_id=report.run_id,
            sources=len(report.sources),
            **report.totals.to_dict(),
        )
        return report

    def _process_safely(self, source: Source, ctx: SourceContext) -> SourceRun:
        try:
            return process_source(source, ctx)
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("event=source_crashed source_id=%s", source.id)
            run = SourceRun(source=source)
            run.fail(UnexpectedError(exc, url=source.url))
            return run

    def _finalize(self, run: SourceRun, state: RunState, run_id: str, dry_run: bool) -> SourceReport:
        source = run.source
        if run.state != SourceRunState.ERRORED:
            run.transition(SourceRunState.GATING)
            accepted = self._persist_admissions(run, dry_run)
            retry = [] if dry_run else list_retry_documents(self.conn, source.id)
            result = gate(
                accepted + retry,
                source,
                state.run_budget,
                state.window_budget,
                self.limits,
                new_count=len(accepted),
                record=None if dry_run else self._audit_gate_decision,
            )
            run.stats.skipped_by_limit += len(result.skipped)
            for document in result.to_push:
                self._deliver(document, source, run, dry_run)
            run.transition(SourceRunState.DONE)

        if dry_run:
            return SourceReport(
                source_id=source.id,
                name=source.name,
                state=run.state.value,
                stats=run.stats.to_dict(),
                error=run.error.describe() if run.error else None,
            )
        return self._apply_outcome(run, run_id)

    def _persist_admissions(self, run: SourceRun, dry_run: bool) -> list[Document]:
        accepted: list[Document] = []
        for admission in run.admissions:
            if dry_run:
                run.stats.upserted += 1
                if admission.outcome == AdmissionOutcome.ACCEPTED:
                    accepted.append(_unsaved_document(run.source.id, admission))
                continue
            document_id = insert_document(self.conn, run.source.id, admission)
            if document_id is None:
                run.stats.dedup_skipped += 1
                if admission.outcome == AdmissionOutcome.TOO_OLD:
                    run.stats.skipped_too_old -= 1
                continue
            run.stats.upserted += 1
            document = get_document(self.conn, document_id)
            insert_audit(
                self.conn,
                document_id=document_id,
                source_id=run.source.id,
                action=AUDIT_ADMIT,
                result=admission.outcome.value,
                reason=admission.skip_reason,
                reviewer=ADMISSION_REVIEWER,
                after=document_snapshot(document) if document else None,
            )
            if admission.outcome == AdmissionOutcome.ACCEPTED and document is not None:
                accepted.append(document)
        return accepted

    def _audit_gate_decision(self, decision: PushDecision) -> None:
        document = decision.document
        insert_audit(
            self.conn,
            document_id=document.id,
            source_id=document.source_id,
            action=AUDIT_PUSH_GATE,
            result=decision.outcome.value,
            reviewer=PUSH_GATE_REVIEWER,
            is_important=decision.outcome == PushOutcome.PUSH,
        )

    def _deliver(self, document: Document, source: Source, run: SourceRun, dry_run: bool) -> None:
        if dry_run:
            run.stats.pushed += 1
            return
        before = document_snapshot(document)
        try:
            self.notifier.send_document(document, source.name)
        except PushFailure as exc:
            run.stats.push_failed += 1
            mark_document_push_failed(self.conn, int(document.id), exc.reason)
            insert_audit(
                self.conn,
                document_id=document.id,
                source_id=source.id,
                action=AUDIT_PUSH,
                result=PUSH_RESULT_ERROR,
                reason=exc.reason,
                reviewer=NOTIFIER_REVIEWER,
                before=before,
            )
            log_event(
                self.logger,
                logging.WARNING,
                "push_failed",
                source_id=source.id,
                document_id=document.id,
                reason=exc.reason,
            )
            return
        pushed_at = self.clock().isoformat()
        mark_document_pushed(self.conn, int(document.id), pushed_at)
        run.stats.pushed += 1
        updated = get_document(self.conn, int(document.id))
        insert_audit(
            self.conn,
            document_id=document.id,
            source_id=source.id,
            action=AUDIT_PUSH,
            result=PUSH_RESULT_PUSHED,
            reviewer=NOTIFIER_REVIEWER,
            is_important=True,
            before=before,
            after=document_snapshot(updated) if updated else None,
            created_at=pushed_at,
        )

    def _apply_outcome(self, run: SourceRun, run_id: str) -> SourceReport:
        """Write the source row once and apply stop-loss."""
        source = run.source
        stop_loss = self.config.stop_loss
        finished_at = self.clock().isoformat()
        stats = run.stats
        last_error = f"{run.error.describe()} at {run.error_at}" if run.error else None
        is_active = source.is_active
        needs_review = source.needs_review
        review_reason = source.review_reason
        streak = source.zero_fetch_streak
        disabled = False

        if stats.errors > 0:
            streak = 0
            if stop_loss.enabled:
                is_active = False
                disabled = True
                tag = run.error.tag if run.error else "Errors"
                detail = run.error.describe() if run.error else "errors>0"
                last_error = f"AutoDisabled:{tag} at {finished_at} reason={detail} errors={stats.errors}"
        elif stats.fetched == 0:
            streak += 1
            needs_review = True
            review_reason = ZERO_FETCHED
            threshold = stop_loss.zero_fetch_disable_after
            if stop_loss.enabled and threshold > 0 and streak >= threshold:
                is_active = False
                disabled = True
                last_error = f"AutoDisabled:{ZERO_FETCHED} at {finished_at} reason=fetched=0 streak={streak}"
        else:
            streak = 0
            if review_reason == ZERO_FETCHED:
                needs_review = False
                review_reason = None

        update_source_after_run(
            self.conn,
            source.id,
            last_fetched_at=finished_at,
            last_error=last_error,
            stats=stats.to_dict(),
            is_active=is_active,
            needs_review=needs_review,
            review_reason=review_reason,
            zero_fetch_streak=streak,
        )
        if disabled or needs_review != source.needs_review:
            insert_audit(
                self.conn,
                source_id=source.id,
                action=AUDIT_STOP_LOSS,
                result="DISABLED" if disabled else ("NEEDS_REVIEW" if needs_review else "CLEARED"),
                reason=last_error if disabled else review_reason,
                reviewer=STOP_LOSS_REVIEWER,
                is_important=disabled,
                before=source_snapshot(source),
                after={
                    "is_active": is_active,
                    "last_error": last_error,
                    "needs_review": needs_review,
                    "zero_fetch_streak": streak,
                },
            )
        if disabled:
            log_event(
                self.logger,
                logging.WARNING,
                "source_auto_disabled",
                source_id=source.id,
                reason=last_error,
            )
        record_source_run(
            self.conn,
            source_id=source.id,
            run_id=run_id,
            started_at=run.started_at,
            finished_at=finished_at,
            state=run.state.value,
            error=run.error.describe() if run.error else None,
            stats=stats.to_dict(),
            duration_ms=run.elapsed_ms(),
        )
        return SourceReport(
            source_id=source.id,
            name=source.name,
            state=run.state.value,
            stats=stats.to_dict(),
            error=last_error,
            disabled=disabled,
            needs_review=needs_review,
        )


def _unsaved_document(source_id: str, admission: Admission) -> Document:
    candidate = admission.candidate
    return Document(
        id=None,
        source_id=source_id,
        url=candidate.url,
        canonical_url=admission.canonical_url,
        title=candidate.title,
        published_at=isoformat_utc(candidate.published_at),
        observed_at=isoformat_utc(candidate.observed_at) or "",
        raw_text=candidate.raw_text,
        status=admission.status or DocumentStatus.PENDING,
        digest=None,
        skip_reason=admission.skip_reason,
        attachments=candidate.attachments,
        pushed_at=None,
    )
