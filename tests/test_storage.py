from datetime import timedelta

import pytest

from conftest import FIXED_NOW, add_source
from feedwarden.admission import admit
from feedwarden.config import parse_source_definition
from feedwarden.models import AdmissionOutcome, Attachment, CandidateDocument, DocumentStatus
from feedwarden.storage import (
    get_document,
    get_source,
    insert_document,
    list_due_sources,
    list_retry_documents,
    list_sources,
    load_canonical_urls,
    mark_document_push_failed,
    mark_document_pushed,
    set_source_active,
    update_source_after_run,
    upsert_source,
)


def _admission(source, url="https://news.example.edu.cn/info/1001.htm"):
    candidate = CandidateDocument(
        url=url,
        title="Notice",
        published_at=FIXED_NOW - timedelta(days=1),
        observed_at=FIXED_NOW,
        raw_text="Body text",
        attachments=(Attachment(name="Form", url="https://news.example.edu.cn/files/form.docx"),),
    )
    return admit(candidate, source, set(), timedelta(days=30), now=FIXED_NOW)


def test_upsert_source_is_keyed_by_url(conn):
    add_source(conn, priority=1)
    result = upsert_source(
        conn,
        parse_source_definition(
            {
                "id": "renamed",
                "name": "News Office (renamed)",
                "url": "https://news.example.edu.cn/tzgg/index.htm",
                "priority": 9,
            }
        ),
    )
    assert result == "updated"
    sources = list_sources(conn)
    assert [source.id for source in sources] == ["news"]
    assert sources[0].name == "News Office (renamed)"
    assert sources[0].priority == 9


def test_upsert_source_rejects_id_reuse(conn):
    add_source(conn)
    with pytest.raises(ValueError, match="already used"):
        upsert_source(
            conn,
            parse_source_definition({"id": "news", "name": "Other", "url": "https://other.example.com/"}),
        )


def test_import_keeps_quarantine(conn):
    add_source(conn)
    set_source_active(conn, "news", False)
    add_source(conn, name="News Office v2")
    source = get_source(conn, "news")
    assert source.is_active is False
    assert source.name == "News Office v2"


def test_reactivation_clears_review_state(conn):
    add_source(conn)
    update_source_after_run(
        conn,
        "news",
        last_fetched_at=FIXED_NOW.isoformat(),
        last_error="AutoDisabled:ZeroFetched",
        stats={"fetched": 0},
        is_active=False,
        needs_review=True,
        review_reason="ZeroFetched",
        zero_fetch_streak=3,
    )
    assert set_source_active(conn, "news", True)
    source = get_source(conn, "news")
    assert source.is_active is True
    assert source.needs_review is False
    assert source.zero_fetch_streak == 0
    assert not set_source_active(conn, "missing", True)


def test_due_sources_respect_interval_priority_and_override(conn):
    add_source(conn, id="low", url="https://low.example.com/", priority=1)
    add_source(conn, id="high", url="https://high.example.com/", priority=5, fetch_interval_minutes=30)
    add_source(conn, id="off", url="https://off.example.com/", is_active=False)
    update_source_after_run(
        conn,
        "high",
        last_fetched_at=(FIXED_NOW - timedelta(minutes=10)).isoformat(),
        last_error=None,
        stats={},
        is_active=True,
        needs_review=False,
        review_reason=None,
        zero_fetch_streak=0,
    )

    due = list_due_sources(conn, FIXED_NOW.isoformat())
    assert [source.id for source in due] == ["low"]
    later = (FIXED_NOW + timedelta(minutes=25)).isoformat()
    assert [source.id for source in list_due_sources(conn, later)] == ["high", "low"]
    forced = list_due_sources(conn, FIXED_NOW.isoformat(), ["high", "off"])
    assert [source.id for source in forced] == ["high"]


def test_insert_document_is_idempotent(conn):
    definition = add_source(conn)
    source = get_source(conn, definition.id)
    admission = _admission(source)
    assert admission.outcome == AdmissionOutcome.ACCEPTED

    document_id = insert_document(conn, source.id, admission)
    assert document_id is not None
    assert insert_document(conn, source.id, admission) is None
    assert load_canonical_urls(conn, source.id) == {"https://news.example.edu.cn/info/1001.htm"}

    document = get_document(conn, document_id)
    assert document.status == DocumentStatus.PENDING
    assert document.attachments == (Attachment(name="Form", url="https://news.example.edu.cn/files/form.docx"),)


def test_push_failure_marks_document_for_retry(conn):
    definition = add_source(conn)
    source = get_source(conn, definition.id)
    document_id = insert_document(conn, source.id, _admission(source))

    mark_document_push_failed(conn, document_id, "errcode=93000")
    retry = list_retry_documents(conn, source.id)
    assert [document.id for document in retry] == [document_id]
    assert retry[0].push_attempts == 1

    conn.execute("UPDATE documents SET status = ? WHERE id = ?", (DocumentStatus.REJECTED.value, document_id))
    conn.commit()
    assert list_retry_documents(conn, source.id) == []

    conn.execute("UPDATE documents SET status = ? WHERE id = ?", (DocumentStatus.APPROVED.value, document_id))
    conn.commit()
    mark_document_pushed(conn, document_id, FIXED_NOW.isoformat())
    document = get_document(conn, document_id)
    assert document.pushed_at == FIXED_NOW.isoformat()
    assert document.push_error is None
    assert document.push_attempts == 2
    assert list_retry_documents(conn, source.id) == []
