from datetime import datetime, timedelta, timezone

from feedwarden.admission import TOO_OLD_TO_PUSH, admit, canonical_identity
from feedwarden.models import (
    AdmissionOutcome,
    CandidateDocument,
    CrawlConfig,
    DocumentStatus,
    LinkPolicy,
    Source,
    SourceKind,
)

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)
WINDOW = timedelta(days=30)


def _source(policy=LinkPolicy.TRUST_DISCOVERED_LINKS):
    return Source(
        id="news",
        name="News Office",
        kind=SourceKind.HTML,
        url="https://news.example.edu.cn/tzgg/index.htm",
        crawl=CrawlConfig(link_policy=policy),
        is_active=True,
        priority=0,
        fetch_interval_minutes=60,
        last_fetched_at=None,
        last_error=None,
        last_run_stats=None,
    )


def _candidate(url="https://news.example.edu.cn/info/1001.htm", published_at=None):
    return CandidateDocument(
        url=url,
        title="Notice",
        published_at=published_at,
        observed_at=NOW,
        raw_text="body",
    )


def test_age_boundary_is_inclusive():
    boundary = NOW - WINDOW
    at_boundary = admit(_candidate(published_at=boundary), _source(), set(), WINDOW, now=NOW)
    newer = admit(_candidate(published_at=boundary + timedelta(seconds=1)), _source(), set(), WINDOW, now=NOW)
    older = admit(_candidate(published_at=boundary - timedelta(seconds=1)), _source(), set(), WINDOW, now=NOW)

    assert at_boundary.outcome == AdmissionOutcome.ACCEPTED
    assert at_boundary.status == DocumentStatus.PENDING
    assert newer.outcome == AdmissionOutcome.ACCEPTED
    assert older.outcome == AdmissionOutcome.TOO_OLD
    assert older.status == DocumentStatus.SKIPPED
    assert older.skip_reason == TOO_OLD_TO_PUSH


def test_missing_publish_date_uses_observed_time():
    admission = admit(_candidate(published_at=None), _source(), set(), WINDOW, now=NOW)
    assert admission.outcome == AdmissionOutcome.ACCEPTED


def test_duplicate_is_detected_by_canonical_url():
    existing = {"https://news.example.edu.cn/info/1001.htm"}
    admission = admit(
        _candidate(url="HTTPS://news.example.edu.cn:443/info/1001.htm?utm_source=wx#top"),
        _source(),
        existing,
        WINDOW,
        now=NOW,
    )
    assert admission.outcome == AdmissionOutcome.DUPLICATE
    assert admission.status is None


def test_duplicate_wins_over_age():
    old = NOW - timedelta(days=365)
    admission = admit(
        _candidate(published_at=old),
        _source(),
        {"https://news.example.edu.cn/info/1001.htm"},
        WINDOW,
        now=NOW,
    )
    assert admission.outcome == AdmissionOutcome.DUPLICATE


def test_force_canonical_to_root_collapses_identity():
    source = _source(LinkPolicy.FORCE_CANONICAL_TO_ROOT)
    first = canonical_identity("https://news.example.edu.cn/info/1001.htm", source)
    second = canonical_identity("https://news.example.edu.cn/info/1002.htm", source)
    assert first == second == "https://news.example.edu.cn/tzgg/index.htm"

    admitted = admit(_candidate(), source, set(), WINDOW, now=NOW)
    repeat = admit(
        _candidate(url="https://news.example.edu.cn/info/1002.htm"),
        source,
        {admitted.canonical_url},
        WINDOW,
        now=NOW,
    )
    assert repeat.outcome == AdmissionOutcome.DUPLICATE
