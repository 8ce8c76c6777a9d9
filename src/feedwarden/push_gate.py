from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from .config import PushConfig
from .models import Document, PushDecision, PushOutcome, Source
from .utils import log_event, parse_iso

logger = logging.getLogger("feedwarden.push_gate")

PUSH_GATE_REVIEWER = "system:push-gate"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class PushLimits:
    per_task_max: int = 10
    per_source_window_minutes: int = 10
    per_source_window_max: int = 10
    big_batch_threshold: int = 50
    big_batch_mode: str = "suppress"
    big_batch_sample_size: int = 3

    @classmethod
    def from_config(cls, push: PushConfig) -> "PushLimits":
        return cls(
            per_task_max=push.per_task_max,
            per_source_window_minutes=push.per_source_window_minutes,
            per_source_window_max=push.per_source_window_max,
            big_batch_threshold=push.big_batch_threshold,
            big_batch_mode=push.big_batch_mode,
            big_batch_sample_size=push.big_batch_sample_size,
        )


class RunPushBudget:
    """Pushes granted across all sources in one run."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._taken = 0
        self._lock = threading.Lock()

    @property
    def taken(self) -> int:
        with self._lock:
            return self._taken

    def try_take(self) -> bool:
        with self._lock:
            if self._taken >= self.limit:
                return False
            self._taken += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._taken > 0:
                self._taken -= 1


class SourceWindowBudget:
    """Pushes per source inside the rolling window.

    Each source's counter is seeded once per run from ``seed_loader``, which
    returns the pushes already delivered inside the window.
    """

    def __init__(self, limit: int, seed_loader: Callable[[str], int] | None = None) -> None:
        self.limit = limit
        self._seed_loader = seed_loader
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def count(self, source_id: str) -> int:
        with self._lock:
            return self._ensure_seeded(source_id)

    def try_take(self, source_id: str) -> bool:
        with self._lock:
            current = self._ensure_seeded(source_id)
            if current >= self.limit:
                return False
            self._counts[source_id] = current + 1
            return True

    def _ensure_seeded(self, source_id: str) -> int:
        if source_id not in self._counts:
            seeded = self._seed_loader(source_id) if self._seed_loader else 0
            self._counts[source_id] = max(0, int(seeded))
        return self._counts[source_id]


@dataclass
class GateResult:
    to_push: list[Document] = field(default_factory=list)
    skipped: list[PushDecision] = field(default_factory=list)

    @property
    def decisions(self) -> list[PushDecision]:
        pushed = [PushDecision(document=doc, outcome=PushOutcome.PUSH) for doc in self.to_push]
        return pushed + self.skipped


def order_for_push(documents: Iterable[Document]) -> list[Document]:
    """Newest first; ties keep the order the documents were listed in."""
    return sorted(documents, key=_recency, reverse=True)


def gate(
    accepted_docs: Iterable[Document],
    source: Source,
    run_budget: RunPushBudget,
    window_budget: SourceWindowBudget,
    limits: PushLimits,
    *,
    new_count: int | None = None,
    record: Callable[[PushDecision], None] | None = None,
) -> GateResult:
    """Decide which of a source's accepted documents are pushed this run.

    Checks run in order big batch, per-task cap, per-source window. Every
    document ends up either in ``to_push`` or in ``skipped`` and is passed to
    ``record`` exactly once.
    """
    ordered = order_for_push(accepted_docs)
    new_count = len(ordered) if new_count is None else new_count
    big_batch = new_count > limits.big_batch_threshold
    sample_left = limits.big_batch_sample_size if limits.big_batch_mode == "sample" else 0
    if big_batch:
        log_event(
            logger,
            logging.WARNING,
            "push_big_batch",
            source_id=source.id,
            new_count=new_count,
            threshold=limits.big_batch_threshold,
            mode=limits.big_batch_mode,
        )

    result = GateResult()
    for document in ordered:
        outcome = _decide(document, source, run_budget, window_budget, big_batch, sample_left)
        if big_batch and sample_left > 0 and outcome != PushOutcome.DOWNGRADED_BIG_BATCH:
            sample_left -= 1
        decision = PushDecision(document=document, outcome=outcome)
        if outcome == PushOutcome.PUSH:
            result.to_push.append(document)
        else:
            result.skipped.append(decision)
        if record is not None:
            record(decision)

    log_event(
        logger,
        logging.INFO,
        "push_gated",
        source_id=source.id,
        eligible=len(ordered),
        to_push=len(result.to_push),
        skipped=len(result.skipped),
    )
    return result


def _decide(
    document: Document,
    source: Source,
    run_budget: RunPushBudget,
    window_budget: SourceWindowBudget,
    big_batch: bool,
    sample_left: int,
) -> PushOutcome:
    if big_batch and sample_left <= 0:
        return PushOutcome.DOWNGRADED_BIG_BATCH
    if not run_budget.try_take():
        return PushOutcome.SKIP_PER_TASK_LIMIT
    if not window_budget.try_take(source.id):
        run_budget.release()
        return PushOutcome.SKIP_PER_SOURCE_WINDOW
    return PushOutcome.PUSH


def _recency(document: Document) -> datetime:
    value = document.published_at or document.observed_at
    if not value:
        return _EPOCH
    try:
        return parse_iso(value)
    except ValueError:
        return _EPOCH
