from __future__ import annotations

from datetime import datetime, timedelta
from typing import AbstractSet, Iterable

from .models import (
    Admission,
    AdmissionOutcome,
    CandidateDocument,
    DocumentStatus,
    LinkPolicy,
    Source,
)
from .utils import DEFAULT_TRACKING_PARAMS, canonicalize_url, utc_now

TOO_OLD_TO_PUSH = "TOO_OLD_TO_PUSH"


def canonical_identity(
    candidate_url: str,
    source: Source,
    tracking_params: Iterable[str] = DEFAULT_TRACKING_PARAMS,
) -> str:
    tracking = tuple(tracking_params)
    if source.crawl.link_policy == LinkPolicy.FORCE_CANONICAL_TO_ROOT:
        return canonicalize_url(source.url, tracking)
    return canonicalize_url(candidate_url, tracking)


def admit(
    candidate: CandidateDocument,
    source: Source,
    existing_canonical_urls: AbstractSet[str],
    age_window: timedelta,
    *,
    now: datetime | None = None,
    tracking_params: Iterable[str] = DEFAULT_TRACKING_PARAMS,
) -> Admission:
    """Decide whether ``candidate`` is new and fresh enough to keep.

    The caller owns ``existing_canonical_urls`` and must add the canonical
    URL of every persisted admission before admitting the next candidate.
    """
    canonical_url = canonical_identity(candidate.url, source, tracking_params)
    if canonical_url in existing_canonical_urls:
        return Admission(
            outcome=AdmissionOutcome.DUPLICATE,
            candidate=candidate,
            canonical_url=canonical_url,
            status=None,
            skip_reason=None,
        )
    now = now or utc_now()
    effective = candidate.published_at or candidate.observed_at
    if effective < now - age_window:
        return Admission(
            outcome=AdmissionOutcome.TOO_OLD,
            candidate=candidate,
            canonical_url=canonical_url,
            status=DocumentStatus.SKIPPED,
            skip_reason=TOO_OLD_TO_PUSH,
        )
    return Admission(
        outcome=AdmissionOutcome.ACCEPTED,
        candidate=candidate,
        canonical_url=canonical_url,
        status=DocumentStatus.PENDING,
        skip_reason=None,
    )
